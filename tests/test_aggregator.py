"""Tests for turning protocol events into conversation messages."""
from __future__ import annotations

import json

import pytest

from chorus.engine.aggregator import MessageAggregator, format_turn_summary
from chorus.engine.interfaces import InMemoryConversationRepository
from chorus.engine.models import MessageType, SessionState
from chorus.engine.protocol import decode_line
from chorus.engine.session_tracker import SessionTracker


class Recorder:
    def __init__(self):
        self.events = []

    async def __call__(self, event):
        self.events.append(event)

    def of(self, name):
        return [e for e in self.events if e["event"] == name]


def _event(obj):
    return decode_line(json.dumps(obj))


def _make(session=SessionState(), requested=None, prompt="Fix the build"):
    repo = InMemoryConversationRepository()
    recorder = Recorder()
    agg = MessageAggregator(
        conversation_id="c1",
        agent_id="a1",
        prompt=prompt,
        session=session,
        requested_session_id=requested,
        repository=repo,
        tracker=SessionTracker(),
        title_generator=lambda text: f"title:{text}",
        event_callback=recorder,
    )
    return agg, repo, recorder


def _assistant(*blocks, usage=None):
    message = {"content": list(blocks)}
    if usage:
        message["usage"] = usage
    return _event({"type": "assistant", "message": message})


def _tool_result(tool_use_id, content, is_error=False):
    return _event({"type": "user", "message": {"content": [
        {"type": "tool_result", "tool_use_id": tool_use_id, "content": content, "is_error": is_error},
    ]}})


RESULT = {"type": "result", "session_id": "s1", "total_cost_usd": 0.0123, "duration_ms": 2500, "num_turns": 3}


@pytest.mark.asyncio
async def test_tool_use_and_result_pair_in_order():
    agg, repo, _ = _make()
    await agg.handle(_assistant({"type": "tool_use", "id": "t1", "name": "Bash", "input": {"command": "ls"}}))
    await agg.handle(_event({"type": "stream_event"}))
    await agg.handle(_assistant({"type": "text", "text": "checking"}))
    await agg.handle(_tool_result("t1", "a.py\nb.py"))

    msgs = repo.messages["c1"]
    assert [m.type for m in msgs] == [MessageType.TOOL_USE, MessageType.TOOL_RESULT]
    tool_use, tool_result = msgs
    assert tool_use.content == "Using tool: Bash"
    assert tool_use.tool_name == "Bash"
    assert tool_use.tool_input == {"command": "ls"}
    assert tool_result.tool_use_id == tool_use.tool_use_id == "t1"
    assert tool_result.content == "a.py\nb.py"
    assert tool_result.is_tool_error is False


@pytest.mark.asyncio
async def test_structured_tool_result_content_is_serialized():
    agg, repo, _ = _make()
    await agg.handle(_tool_result("t2", [{"type": "text", "text": "denied"}], is_error=True))
    msg = repo.messages["c1"][0]
    assert json.loads(msg.content) == [{"type": "text", "text": "denied"}]
    assert msg.is_tool_error is True


@pytest.mark.asyncio
async def test_text_thinking_and_deltas_accumulate_and_stream():
    agg, repo, recorder = _make()
    await agg.handle(_assistant({"type": "thinking", "thinking": "plan"}, {"type": "text", "text": "Hello"}))
    await agg.handle(_event({"type": "content_block_delta", "delta": {"text": " there"}}))
    await agg.handle(decode_line("not json"))

    assert agg.streaming_text == "\n<thinking>plan</thinking>\nHello therenot json\n"
    assert [e["delta"] for e in recorder.of("stream_delta")] == [
        "\n<thinking>plan</thinking>\n", "Hello", " there", "not json\n",
    ]
    assert "c1" not in repo.messages


@pytest.mark.asyncio
async def test_finalize_writes_assistant_then_summary_once():
    agg, repo, _ = _make()
    await agg.handle(_event({"type": "system", "subtype": "init", "session_id": "s1", "model": "m"}))
    await agg.handle(_assistant({"type": "text", "text": "Done."}, usage={"input_tokens": 5, "output_tokens": 7}))
    await agg.handle(_event(RESULT))
    assert len(repo.messages["c1"]) == 1

    written = await agg.finalize()
    assert await agg.finalize() == []
    assert agg.finalized

    assert [m.type for m in written] == [MessageType.ASSISTANT, MessageType.SYSTEM]
    assistant, summary = written
    assert assistant.content == "Done."
    assert assistant.session_id == "s1"
    assert (assistant.input_tokens, assistant.output_tokens) == (5, 7)
    assert (assistant.cost_usd, assistant.duration_ms) == (0.0123, 2500)
    assert summary.content == "Turn completed: 3 turns, $0.0123 USD, 2.5s"
    assert len(repo.messages["c1"]) == 3


@pytest.mark.asyncio
async def test_events_after_finalize_are_ignored():
    agg, repo, _ = _make()
    await agg.finalize()
    await agg.handle(_assistant({"type": "tool_use", "id": "t1", "name": "Read"}))
    assert "c1" not in repo.messages


@pytest.mark.asyncio
async def test_whitespace_only_text_writes_no_assistant_message():
    agg, repo, _ = _make()
    await agg.handle(_assistant({"type": "text", "text": "  \n"}))
    assert await agg.finalize() == []
    assert "c1" not in repo.messages


@pytest.mark.asyncio
async def test_first_turn_sets_title_from_prompt():
    agg, repo, _ = _make(prompt="Add tests")
    await agg.handle(_assistant({"type": "text", "text": "ok"}))
    await agg.finalize()
    assert repo.metadata["c1"]["title"] == "title:Add tests"


@pytest.mark.asyncio
async def test_later_turn_keeps_title():
    agg, repo, _ = _make(session=SessionState("s0", None), requested="s0")
    await agg.handle(_assistant({"type": "text", "text": "ok"}))
    await agg.finalize()
    assert "title" not in repo.metadata.get("c1", {})


@pytest.mark.asyncio
async def test_init_persists_new_session_and_system_message():
    agg, repo, recorder = _make()
    await agg.handle(_event({"type": "system", "subtype": "init", "session_id": "s-new", "model": "sonnet"}))

    meta = repo.metadata["c1"]
    assert meta["session_id"] == "s-new"
    assert "session_created_at" in meta
    msg = repo.messages["c1"][0]
    assert msg.type is MessageType.SYSTEM
    assert msg.content == "Session started with model sonnet"
    assert agg.session_id == "s-new"
    (update,) = recorder.of("session_updated")
    assert update["session_id"] == "s-new"
    assert update["session_created_at"] == meta["session_created_at"]


@pytest.mark.asyncio
async def test_resumed_session_does_not_rewrite_created_at():
    stored = SessionState("s1", "2026-01-01T00:00:00+00:00")
    agg, repo, recorder = _make(session=stored, requested="s1")
    await agg.handle(_event({"type": "system", "subtype": "init", "session_id": "s1", "model": "m"}))
    assert repo.metadata["c1"] == {"session_id": "s1"}
    assert recorder.of("session_updated")[0]["session_created_at"] == "2026-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_result_session_id_used_when_init_missing():
    agg, repo, _ = _make()
    await agg.handle(_event(RESULT))
    assert repo.metadata["c1"]["session_id"] == "s1"
    assert "session_created_at" in repo.metadata["c1"]
    assert agg.session_id == "s1"


@pytest.mark.asyncio
async def test_result_session_of_resumed_turn_keeps_created_at():
    stored = SessionState("s1", "2026-01-01T00:00:00+00:00")
    agg, repo, recorder = _make(session=stored, requested="s1")
    await agg.handle(_assistant({"type": "text", "text": "again"}))
    await agg.handle(_event(RESULT))
    assert repo.metadata["c1"] == {"session_id": "s1"}
    assert recorder.of("session_updated")[0]["session_created_at"] == "2026-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_result_does_not_override_init_session():
    agg, repo, _ = _make()
    await agg.handle(_event({"type": "system", "subtype": "init", "session_id": "s-init", "model": "m"}))
    await agg.handle(_event(dict(RESULT, session_id="s-other")))
    assert repo.metadata["c1"]["session_id"] == "s-init"


@pytest.mark.asyncio
async def test_raw_events_recorded_for_stored_types_only():
    agg, _, _ = _make()
    await agg.handle(_event({"type": "system", "subtype": "init", "session_id": "s", "model": "m"}))
    await agg.handle(_event({"type": "content_block_delta", "delta": {"text": "x"}}))
    await agg.handle(_event(RESULT))
    assert [e["type"] for e in agg.raw_events] == ["system", "result"]


@pytest.mark.asyncio
async def test_failing_callback_does_not_break_turn(caplog):
    agg, repo, _ = _make()

    async def broken(event):
        raise RuntimeError("frontend gone")

    agg._event_callback = broken
    await agg.handle(_assistant({"type": "tool_use", "id": "t1", "name": "Read"}))
    assert len(repo.messages["c1"]) == 1
    assert "Event callback failed" in caplog.text


def test_summary_format():
    result = decode_line(json.dumps(RESULT))
    assert format_turn_summary(result) == "Turn completed: 3 turns, $0.0123 USD, 2.5s"
