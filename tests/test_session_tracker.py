"""Tests for session expiry and resume reconciliation."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from chorus.engine.models import SessionState
from chorus.engine.session_tracker import SessionTracker, SessionUpdate, parse_timestamp

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_no_session_starts_fresh():
    decision = SessionTracker().resolve(SessionState(), now=NOW)
    assert decision.resume_session_id is None
    assert not decision.expired
    assert not decision.resuming


def test_session_older_than_max_age_is_expired():
    session = SessionState("s-old", NOW - timedelta(days=26))
    decision = SessionTracker(max_age_days=25).resolve(session, now=NOW)
    assert decision.resume_session_id is None
    assert decision.expired
    assert round(decision.age_days) == 26


def test_young_session_is_resumed():
    session = SessionState("s-young", NOW - timedelta(days=10))
    decision = SessionTracker().resolve(session, now=NOW)
    assert decision.resume_session_id == "s-young"
    assert decision.resuming
    assert not decision.expired


def test_exactly_max_age_is_still_resumed():
    session = SessionState("s1", NOW - timedelta(days=25))
    assert SessionTracker(max_age_days=25).resolve(session, now=NOW).resuming


def test_iso_string_created_at_is_accepted():
    created = (NOW - timedelta(days=30)).isoformat().replace("+00:00", "Z")
    decision = SessionTracker().resolve(SessionState("s1", created), now=NOW)
    assert decision.expired


def test_missing_or_garbage_created_at_resumes():
    tracker = SessionTracker()
    assert tracker.resolve(SessionState("s1", None), now=NOW).resuming
    assert tracker.resolve(SessionState("s1", "yesterday-ish"), now=NOW).resuming


def test_naive_timestamp_treated_as_utc():
    parsed = parse_timestamp("2026-01-01T00:00:00")
    assert parsed.tzinfo is not None
    assert parsed.utcoffset() == timedelta(0)


def test_fresh_turn_reports_new_session_with_creation_time():
    tracker = SessionTracker()
    update = tracker.reconcile("a1", None, "s-new", now=NOW)
    assert update == SessionUpdate(session_id="s-new", is_new=True, created_at=NOW)
    assert update.as_fields() == {
        "session_id": "s-new",
        "session_created_at": NOW.isoformat(),
    }
    assert tracker.get_session_id("a1") == "s-new"


def test_successful_resume_keeps_creation_time():
    tracker = SessionTracker()
    update = tracker.reconcile("a1", "s1", "s1", now=NOW)
    assert not update.is_new
    assert update.created_at is None
    assert update.as_fields() == {"session_id": "s1"}


def test_failed_resume_logs_warning_and_is_new(caplog):
    tracker = SessionTracker()
    with caplog.at_level(logging.WARNING, logger="chorus.engine.session_tracker"):
        update = tracker.reconcile("a1", "s-old", "s-other", now=NOW)
    assert update.is_new
    assert update.created_at == NOW
    assert "Resume failed for agent a1 - expected s-old, got s-other" in caplog.text


def test_fallback_capture_on_fresh_turn_is_new():
    tracker = SessionTracker()
    update = tracker.capture_fallback("a1", None, "s-r", now=NOW)
    assert update.is_new
    assert update.created_at == NOW
    assert tracker.get_session_id("a1") == "s-r"


def test_fallback_capture_of_resumed_session_keeps_creation_time():
    tracker = SessionTracker()
    update = tracker.capture_fallback("a1", "s1", "s1", now=NOW)
    assert not update.is_new
    assert update.created_at is None
    assert update.as_fields() == {"session_id": "s1"}
    assert tracker.get_session_id("a1") == "s1"


def test_fallback_capture_with_different_id_is_new(caplog):
    tracker = SessionTracker()
    with caplog.at_level(logging.WARNING, logger="chorus.engine.session_tracker"):
        update = tracker.capture_fallback("a1", "s-old", "s-other", now=NOW)
    assert update.is_new
    assert update.created_at == NOW
    assert "Resume failed for agent a1" in caplog.text


def test_clear_session():
    tracker = SessionTracker()
    tracker.reconcile("a1", None, "s1")
    tracker.clear_session("a1")
    tracker.clear_session("never-seen")
    assert tracker.get_session_id("a1") is None
