"""Adapters package - bridge between the engine and UI frontends.

Contains the notification event types and the event bus that connect
AgentManager callbacks to a frontend consumer loop.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EngineEvent",
    "AgentStatusChanged",
    "MessageAppended",
    "SessionUpdated",
    "StreamDelta",
    "dict_to_event",
]

from chorus.adapters.event_bus import EventBus
from chorus.adapters.events import (
    AgentStatusChanged,
    EngineEvent,
    MessageAppended,
    SessionUpdated,
    StreamDelta,
    dict_to_event,
)
