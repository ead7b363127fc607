"""Notification events emitted by the agent turn engine.

The engine fires plain dicts through its event callback; each dict is
parsed into a typed dataclass here for safe consumption by a frontend.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any


@dataclass
class EngineEvent:
    """Base event from the agent turn engine."""
    event_type: str = ""
    agent_id: str = ""


@dataclass
class AgentStatusChanged(EngineEvent):
    """busy / ready / error for one agent."""
    event_type: str = "agent_status"
    status: str = ""
    error: str | None = None


@dataclass
class StreamDelta(EngineEvent):
    event_type: str = "stream_delta"
    conversation_id: str = ""
    delta: str = ""


@dataclass
class MessageAppended(EngineEvent):
    event_type: str = "message_appended"
    conversation_id: str = ""
    message: dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionUpdated(EngineEvent):
    event_type: str = "session_updated"
    conversation_id: str = ""
    session_id: str = ""
    session_created_at: str | None = None


_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "agent_status": AgentStatusChanged,
    "stream_delta": StreamDelta,
    "message_appended": MessageAppended,
    "session_updated": SessionUpdated,
}


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    name = data.get("event", "")
    cls = _EVENT_MAP.get(name, EngineEvent)
    accepted = {f.name for f in fields(cls)}
    kwargs = {key: value for key, value in data.items() if key in accepted}
    kwargs.setdefault("event_type", name)
    return cls(**kwargs)
