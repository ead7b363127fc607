"""Tests for the file-backed conversation store."""
from __future__ import annotations

import json

import pytest

from chorus.engine.models import ConversationMessage, MessageType, SessionState
from chorus.shared.services.conversation_store import ConversationStore


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "conversations")


def test_messages_round_trip_in_order(store):
    first = ConversationMessage(type=MessageType.USER, content="hi")
    second = ConversationMessage(
        type=MessageType.TOOL_USE,
        content="Using tool: Read",
        tool_name="Read",
        tool_input={"path": "a.py"},
        tool_use_id="t1",
    )
    store.append_message("c1", first)
    store.append_message("c1", second)

    loaded = store.load_messages("c1")
    assert [m.id for m in loaded] == [first.id, second.id]
    assert loaded[1].type is MessageType.TOOL_USE
    assert loaded[1].tool_input == {"path": "a.py"}
    assert loaded[1].timestamp == second.timestamp


def test_truncated_line_is_skipped(store, caplog):
    store.append_message("c1", ConversationMessage(type=MessageType.USER, content="ok"))
    path = store.base_dir / "c1" / "messages.jsonl"
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"id": "x", "type": "assis')

    loaded = store.load_messages("c1")
    assert [m.content for m in loaded] == ["ok"]
    assert "Skipping unreadable message" in caplog.text


def test_metadata_merge_and_session_state(store):
    assert store.get_conversation("c1") == {}
    assert store.session_state("c1") == SessionState()

    store.update_conversation("c1", session_id="s1", session_created_at="2026-01-01T00:00:00+00:00")
    store.update_conversation("c1", title="Fix the build")

    meta = json.loads((store.base_dir / "c1" / "meta.json").read_text())
    assert meta["title"] == "Fix the build"
    assert meta["session_id"] == "s1"
    assert "updated_at" in meta
    assert store.session_state("c1") == SessionState("s1", "2026-01-01T00:00:00+00:00")


def test_unknown_metadata_field_rejected(store):
    with pytest.raises(ValueError, match="Unknown conversation fields"):
        store.update_conversation("c1", owner="me")


@pytest.mark.parametrize("bad_id", ["../escape", "", ".hidden", "a/b"])
def test_unsafe_conversation_ids_rejected(store, bad_id):
    with pytest.raises(ValueError):
        store.append_message(bad_id, ConversationMessage(type=MessageType.USER, content="x"))


def test_list_conversations(store):
    store.update_conversation("b", title="B")
    store.append_message("a", ConversationMessage(type=MessageType.USER, content="x"))
    assert store.list_conversations() == ["a", "b"]
    assert store.load_messages("missing") == []
