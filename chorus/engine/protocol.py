"""Decoder for the agent CLI's ``--output-format stream-json`` protocol.

The CLI writes one JSON object per line on stdout. Reads from the pipe
do not line up with line boundaries, so StreamDecoder keeps the trailing
partial line (as bytes, so split UTF-8 sequences survive) until the rest
arrives. Splitting the same byte stream into any sequence of chunks
yields the same events.

Event types handled:
- ``system`` (subtype ``init``): session id + model
- ``assistant``: text / tool_use / thinking content blocks + usage
- ``user``: tool_result blocks
- ``result``: cost, duration, turn count, session id
- ``content_block_delta``: transient streaming text

Lines that are not JSON (diagnostics printed by the CLI) become
PlainText events rather than errors.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import ProtocolDecodeError

logger = logging.getLogger(__name__)

STORED_EVENT_TYPES = frozenset({"system", "assistant", "user", "result"})


# ── Content blocks ─────────────────────────────────────────────

@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: Any = None


@dataclass(frozen=True)
class ThinkingBlock:
    thinking: str


ContentBlock = Union[TextBlock, ToolUseBlock, ThinkingBlock]


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: Any = ""
    is_error: bool = False


@dataclass(frozen=True)
class Usage:
    input_tokens: int | None = None
    output_tokens: int | None = None


# ── Events ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class SystemInit:
    session_id: str
    model: str
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class AssistantMessage:
    blocks: tuple[ContentBlock, ...]
    usage: Usage | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class UserMessage:
    results: tuple[ToolResultBlock, ...]
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ResultMessage:
    total_cost_usd: float
    duration_ms: int
    num_turns: int
    session_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class ContentBlockDelta:
    text: str


@dataclass(frozen=True)
class PlainText:
    """A non-JSON stdout line, newline restored."""
    text: str


@dataclass(frozen=True)
class Unrecognized:
    event_type: str
    raw: Any = field(default=None, repr=False)


ProtocolEvent = Union[
    SystemInit,
    AssistantMessage,
    UserMessage,
    ResultMessage,
    ContentBlockDelta,
    PlainText,
    Unrecognized,
]


# ── Field validation ───────────────────────────────────────────

def _require_str(obj: dict[str, Any], key: str, event_type: str) -> str:
    value = obj.get(key)
    if not isinstance(value, str):
        raise ProtocolDecodeError(event_type, f"missing string field '{key}'")
    return value


def _require_number(obj: dict[str, Any], key: str, event_type: str) -> float:
    value = obj.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolDecodeError(event_type, f"missing numeric field '{key}'")
    return value


def _optional_int(obj: dict[str, Any], key: str) -> int | None:
    value = obj.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _message_content(event: dict[str, Any], event_type: str) -> list[Any]:
    message = event.get("message")
    if not isinstance(message, dict):
        raise ProtocolDecodeError(event_type, "missing 'message' object")
    content = message.get("content")
    if isinstance(content, str):
        # Plain-string user content carries no blocks.
        return []
    if not isinstance(content, list):
        raise ProtocolDecodeError(event_type, "missing 'message.content' list")
    return content


def _parse_system(event: dict[str, Any]) -> ProtocolEvent:
    if event.get("subtype") != "init":
        return Unrecognized(event_type="system", raw=event)
    session_id = _require_str(event, "session_id", "system")
    model = event.get("model")
    return SystemInit(
        session_id=session_id,
        model=model if isinstance(model, str) and model else "unknown",
        raw=event,
    )


def _parse_content_block(block: Any) -> ContentBlock | None:
    if not isinstance(block, dict):
        raise ProtocolDecodeError("assistant", "content block is not an object")
    block_type = block.get("type")
    if block_type == "text":
        return TextBlock(text=_require_str(block, "text", "assistant"))
    if block_type == "tool_use":
        return ToolUseBlock(
            id=_require_str(block, "id", "assistant"),
            name=_require_str(block, "name", "assistant"),
            input=block.get("input", {}),
        )
    if block_type == "thinking":
        return ThinkingBlock(thinking=_require_str(block, "thinking", "assistant"))
    # redacted_thinking, image, ... carry nothing we display
    return None


def _parse_assistant(event: dict[str, Any]) -> AssistantMessage:
    blocks: list[ContentBlock] = []
    for raw_block in _message_content(event, "assistant"):
        block = _parse_content_block(raw_block)
        if block is not None:
            blocks.append(block)

    usage = None
    raw_usage = event["message"].get("usage")
    if isinstance(raw_usage, dict):
        usage = Usage(
            input_tokens=_optional_int(raw_usage, "input_tokens"),
            output_tokens=_optional_int(raw_usage, "output_tokens"),
        )
    return AssistantMessage(blocks=tuple(blocks), usage=usage, raw=event)


def _parse_user(event: dict[str, Any]) -> UserMessage:
    results: list[ToolResultBlock] = []
    for block in _message_content(event, "user"):
        if not isinstance(block, dict) or block.get("type") != "tool_result":
            continue
        results.append(ToolResultBlock(
            tool_use_id=_require_str(block, "tool_use_id", "user"),
            content=block.get("content", ""),
            is_error=bool(block.get("is_error", False)),
        ))
    return UserMessage(results=tuple(results), raw=event)


def _parse_result(event: dict[str, Any]) -> ResultMessage:
    session_id = event.get("session_id")
    return ResultMessage(
        total_cost_usd=float(_require_number(event, "total_cost_usd", "result")),
        duration_ms=int(_require_number(event, "duration_ms", "result")),
        num_turns=int(_require_number(event, "num_turns", "result")),
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        raw=event,
    )


def _parse_delta(event: dict[str, Any]) -> ProtocolEvent:
    delta = event.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("text"), str) and delta["text"]:
        return ContentBlockDelta(text=delta["text"])
    # input_json_delta and friends have no display text
    return Unrecognized(event_type="content_block_delta", raw=event)


_PARSERS = {
    "system": _parse_system,
    "assistant": _parse_assistant,
    "user": _parse_user,
    "result": _parse_result,
    "content_block_delta": _parse_delta,
}


def decode_event(event: dict[str, Any]) -> ProtocolEvent:
    """Turn a parsed JSON object into a typed protocol event.

    Recognized types missing required fields come back as Unrecognized.
    """
    event_type = event.get("type")
    parser = _PARSERS.get(event_type) if isinstance(event_type, str) else None
    if parser is None:
        return Unrecognized(event_type=str(event_type), raw=event)
    try:
        return parser(event)
    except ProtocolDecodeError as exc:
        logger.warning("Dropping malformed stream event: %s", exc)
        return Unrecognized(event_type=event_type, raw=event)


def decode_line(line: str) -> ProtocolEvent | None:
    """Decode one complete stdout line. Returns None for blank lines."""
    line = line.rstrip("\r")
    if not line.strip():
        return None
    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return PlainText(text=line + "\n")
    if not isinstance(data, dict):
        return Unrecognized(event_type=type(data).__name__, raw=data)
    return decode_event(data)


class StreamDecoder:
    """Incremental line-buffered decoder for agent stdout chunks."""

    def __init__(self) -> None:
        self._pending = b""

    @property
    def pending(self) -> bytes:
        """Bytes of the incomplete trailing line, if any."""
        return self._pending

    def feed(self, chunk: bytes) -> list[ProtocolEvent]:
        """Append *chunk* and decode every line it completes."""
        if not chunk:
            return []
        lines = (self._pending + chunk).split(b"\n")
        self._pending = lines.pop()
        return self._decode_lines(lines)

    def flush(self) -> list[ProtocolEvent]:
        """Decode whatever is left once the stream has ended."""
        if not self._pending:
            return []
        tail, self._pending = self._pending, b""
        return self._decode_lines([tail])

    @staticmethod
    def _decode_lines(lines: list[bytes]) -> list[ProtocolEvent]:
        events: list[ProtocolEvent] = []
        for raw_line in lines:
            event = decode_line(raw_line.decode("utf-8", errors="replace"))
            if event is not None:
                logger.debug("Decoded stream event %s", type(event).__name__)
                events.append(event)
        return events
