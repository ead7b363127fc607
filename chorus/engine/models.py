"""Core data models for the agent turn engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TurnState(str, Enum):
    """Turn lifecycle states. See lifecycle.py for transition rules."""
    IDLE = "idle"
    SPAWNING = "spawning"
    STREAMING = "streaming"
    EXITED = "exited"
    ERRORED = "errored"
    KILLED = "killed"


class AgentStatus(str, Enum):
    """Externally visible agent status sent to the UI."""
    BUSY = "busy"
    READY = "ready"
    ERROR = "error"


class PermissionMode(str, Enum):
    """Maps to the agent CLI's --permission-mode values."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


class MessageType(str, Enum):
    """Type tag of a persisted conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ERROR = "error"


def _make_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TurnSettings:
    """Per-turn invocation settings supplied by the config layer.

    ``model`` and ``permission_mode`` use the literal ``"default"`` to
    mean "let the agent CLI decide".
    """
    permission_mode: str = PermissionMode.DEFAULT.value
    allowed_tools: tuple[str, ...] = ()
    model: str = "default"
    system_prompt_file: str | None = None

    def __post_init__(self) -> None:
        # Keep first occurrence order, drop duplicates.
        unique = tuple(dict.fromkeys(self.allowed_tools))
        object.__setattr__(self, "allowed_tools", unique)


@dataclass(frozen=True)
class SessionState:
    """Last known agent CLI session for a conversation.

    ``created_at`` may be a datetime or the ISO string read from storage.
    """
    session_id: str | None = None
    created_at: datetime | str | None = None


@dataclass(frozen=True)
class ConversationMessage:
    """A durable conversation entry. Written once, never mutated."""
    type: MessageType
    content: str
    id: str = field(default_factory=_make_id)
    timestamp: datetime = field(default_factory=_utcnow)
    session_id: str | None = None
    tool_name: str | None = None
    tool_input: Any = None
    tool_use_id: str | None = None
    is_tool_error: bool | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    # Raw protocol event this message was built from.
    raw_event: dict[str, Any] | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        optional = {
            "session_id": self.session_id,
            "tool_name": self.tool_name,
            "tool_input": self.tool_input,
            "tool_use_id": self.tool_use_id,
            "is_tool_error": self.is_tool_error,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "raw_event": self.raw_event,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationMessage:
        return cls(
            id=data["id"],
            type=MessageType(data["type"]),
            content=data.get("content", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            session_id=data.get("session_id"),
            tool_name=data.get("tool_name"),
            tool_input=data.get("tool_input"),
            tool_use_id=data.get("tool_use_id"),
            is_tool_error=data.get("is_tool_error"),
            input_tokens=data.get("input_tokens"),
            output_tokens=data.get("output_tokens"),
            cost_usd=data.get("cost_usd"),
            duration_ms=data.get("duration_ms"),
            raw_event=data.get("raw_event"),
        )


@dataclass(frozen=True)
class TurnRequest:
    """Everything needed to run one turn for one agent."""
    conversation_id: str
    agent_id: str
    prompt: str
    cwd: str
    session: SessionState = field(default_factory=SessionState)
    settings: TurnSettings = field(default_factory=TurnSettings)
