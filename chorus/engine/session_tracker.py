"""Session continuity: resume-vs-fresh policy and id reconciliation.

The agent CLI expires sessions after about 30 days. Resuming is only
attempted for sessions younger than ``max_age_days`` (25 by default) so
a turn never starts on a session that could expire mid-turn.

When a resume is requested the CLI may silently start a new session
instead. That is detected by comparing the id reported in the init
event with the requested one; the session is then treated as new.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .models import SessionState

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_DAYS = 25.0


@dataclass(frozen=True)
class SessionDecision:
    """Outcome of the pre-turn expiry check."""
    resume_session_id: str | None
    expired: bool = False
    age_days: float | None = None

    @property
    def resuming(self) -> bool:
        return self.resume_session_id is not None


@dataclass(frozen=True)
class SessionUpdate:
    """Session fields to persist after the CLI reported its session id.

    ``created_at`` is None for a resumed session: its stored creation
    time must not be rewritten.
    """
    session_id: str
    is_new: bool
    created_at: datetime | None = None

    def as_fields(self) -> dict[str, object]:
        fields: dict[str, object] = {"session_id": self.session_id}
        if self.created_at is not None:
            fields["session_created_at"] = self.created_at.isoformat()
        return fields


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse a stored ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Ignoring unparseable session timestamp %r", value)
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionTracker:
    """Decides resume vs. fresh and caches the live session id per agent."""

    def __init__(self, max_age_days: float = DEFAULT_MAX_AGE_DAYS) -> None:
        self._max_age = timedelta(days=max_age_days)
        self._sessions: dict[str, str] = {}

    @property
    def max_age(self) -> timedelta:
        return self._max_age

    def resolve(
        self,
        session: SessionState,
        now: datetime | None = None,
    ) -> SessionDecision:
        """Return the session id to resume, or None when fresh/expired."""
        if not session.session_id:
            return SessionDecision(resume_session_id=None)

        created_at = parse_timestamp(session.created_at)
        if created_at is None:
            # No creation time recorded; nothing to expire against.
            return SessionDecision(resume_session_id=session.session_id)

        now = now or _utcnow()
        age = now - created_at
        age_days = age.total_seconds() / 86400
        if age > self._max_age:
            logger.info(
                "Session %s expired (%.1f days old), starting fresh",
                session.session_id, age_days,
            )
            return SessionDecision(
                resume_session_id=None, expired=True, age_days=age_days,
            )
        return SessionDecision(
            resume_session_id=session.session_id, age_days=age_days,
        )

    def reconcile(
        self,
        agent_id: str,
        requested_session_id: str | None,
        reported_session_id: str,
        now: datetime | None = None,
    ) -> SessionUpdate:
        """Classify the session reported by the CLI as new or resumed."""
        self._sessions[agent_id] = reported_session_id

        if requested_session_id and reported_session_id != requested_session_id:
            logger.warning(
                "Resume failed for agent %s - expected %s, got %s",
                agent_id, requested_session_id, reported_session_id,
            )

        if requested_session_id and reported_session_id == requested_session_id:
            return SessionUpdate(session_id=reported_session_id, is_new=False)
        return SessionUpdate(
            session_id=reported_session_id,
            is_new=True,
            created_at=now or _utcnow(),
        )

    def capture_fallback(
        self,
        agent_id: str,
        requested_session_id: str | None,
        session_id: str,
        now: datetime | None = None,
    ) -> SessionUpdate:
        """Record a session id seen only on the result event.

        Classified exactly like an id reported by the init event, so a
        resumed session keeps its stored creation time.
        """
        logger.debug(
            "No init event for agent %s, using result session %s",
            agent_id, session_id,
        )
        return self.reconcile(agent_id, requested_session_id, session_id, now)

    def get_session_id(self, agent_id: str) -> str | None:
        return self._sessions.get(agent_id)

    def clear_session(self, agent_id: str) -> None:
        """Forget the cached session so the next turn starts fresh."""
        self._sessions.pop(agent_id, None)
