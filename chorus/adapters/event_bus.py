"""Async event bus bridging engine callbacks to frontend consumers.

AgentManager fires events via callback while turns run in background
tasks. The EventBus queues them for the frontend's consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from chorus.adapters.events import EngineEvent, dict_to_event

logger = logging.getLogger(__name__)


class EventBus:
    """Async queue bridging engine callbacks to frontend consumers."""

    def __init__(self, maxsize: int = 5000, put_timeout: float = 30.0) -> None:
        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue(
            maxsize=maxsize
        )
        self._put_timeout = put_timeout
        self._poll_interval = 0.5
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to AgentManager(event_callback=...)."""
        await self.emit(dict_to_event(data))

    def make_callback(self):
        """Return the async callback for AgentManager."""
        return self._callback

    async def emit(self, event: EngineEvent) -> None:
        """Queue an event, waiting for room rather than dropping."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._put_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %.0fs, dropping: %s (queue size: %d)",
                self._put_timeout,
                event.event_type,
                self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[EngineEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                yield await asyncio.wait_for(self._queue.get(), self._poll_interval)
            except asyncio.TimeoutError:
                # Wake up periodically so close() is noticed.
                pass

    def drain(self) -> list[EngineEvent]:
        """Return every queued event without waiting."""
        events: list[EngineEvent] = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True
