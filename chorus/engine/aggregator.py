"""Turn decoded stream events into durable conversation messages.

One MessageAggregator exists per turn. It consumes protocol events in
arrival order and:

- appends tool_use / tool_result / system messages as they happen,
- accumulates assistant text (text blocks, thinking, deltas, plain-text
  lines) and forwards each piece as a stream_delta notification,
- holds the result event until the process exits, then writes the
  final assistant message and the turn summary exactly once.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from .config import EventCallback, fire_event
from .interfaces import ConversationRepository, TitleGenerator
from .models import ConversationMessage, MessageType, SessionState
from .protocol import (
    AssistantMessage,
    ContentBlockDelta,
    PlainText,
    ProtocolEvent,
    ResultMessage,
    SystemInit,
    TextBlock,
    ThinkingBlock,
    ToolUseBlock,
    Unrecognized,
    UserMessage,
)
from .session_tracker import SessionTracker, SessionUpdate, parse_timestamp

logger = logging.getLogger(__name__)


def format_thinking(text: str) -> str:
    return f"\n<thinking>{text}</thinking>\n"


def format_turn_summary(result: ResultMessage) -> str:
    return (
        f"Turn completed: {result.num_turns} turns, "
        f"${result.total_cost_usd:.4f} USD, "
        f"{result.duration_ms / 1000:.1f}s"
    )


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


class MessageAggregator:
    """Per-turn event consumer producing ConversationMessages."""

    def __init__(
        self,
        *,
        conversation_id: str,
        agent_id: str,
        prompt: str,
        session: SessionState,
        requested_session_id: str | None,
        repository: ConversationRepository,
        tracker: SessionTracker,
        title_generator: TitleGenerator,
        event_callback: EventCallback | None = None,
    ) -> None:
        self.conversation_id = conversation_id
        self.agent_id = agent_id
        self._prompt = prompt
        self._stored_session = session
        self._requested_session_id = requested_session_id
        # No stored session means this is the conversation's first turn.
        self._first_turn = not session.session_id
        self._repository = repository
        self._tracker = tracker
        self._title_generator = title_generator
        self._event_callback = event_callback

        self._streaming_parts: list[str] = []
        self._captured_session_id: str | None = None
        self._last_assistant: AssistantMessage | None = None
        self._result: ResultMessage | None = None
        self._finalized = False
        self.raw_events: list[dict[str, Any]] = []
        self.messages: list[ConversationMessage] = []

    # ── Accessors ─────────────────────────────────────────────

    @property
    def streaming_text(self) -> str:
        return "".join(self._streaming_parts)

    @property
    def session_id(self) -> str | None:
        return self._captured_session_id

    @property
    def result(self) -> ResultMessage | None:
        return self._result

    @property
    def finalized(self) -> bool:
        return self._finalized

    # ── Emission helpers ──────────────────────────────────────

    async def _append(self, message: ConversationMessage) -> ConversationMessage:
        self._repository.append_message(self.conversation_id, message)
        self.messages.append(message)
        await fire_event(self._event_callback, {
            "event": "message_appended",
            "agent_id": self.agent_id,
            "conversation_id": self.conversation_id,
            "message": message.to_dict(),
        })
        return message

    async def _stream(self, text: str) -> None:
        self._streaming_parts.append(text)
        await fire_event(self._event_callback, {
            "event": "stream_delta",
            "agent_id": self.agent_id,
            "conversation_id": self.conversation_id,
            "delta": text,
        })

    async def _persist_session(self, update: SessionUpdate) -> None:
        self._repository.update_conversation(
            self.conversation_id, **update.as_fields(),
        )
        if update.created_at is not None:
            created_at = update.created_at.isoformat()
        else:
            stored = parse_timestamp(self._stored_session.created_at)
            created_at = stored.isoformat() if stored else None
        await fire_event(self._event_callback, {
            "event": "session_updated",
            "agent_id": self.agent_id,
            "conversation_id": self.conversation_id,
            "session_id": update.session_id,
            "session_created_at": created_at,
        })

    async def append_user_prompt(self) -> ConversationMessage:
        return await self._append(
            ConversationMessage(type=MessageType.USER, content=self._prompt)
        )

    async def append_error(self, text: str) -> ConversationMessage:
        return await self._append(
            ConversationMessage(type=MessageType.ERROR, content=text)
        )

    # ── Event dispatch ────────────────────────────────────────

    async def handle(self, event: ProtocolEvent) -> None:
        """Apply one decoded event. Events must arrive in stream order."""
        if self._finalized:
            logger.debug(
                "Ignoring %s for finalized turn of agent %s",
                type(event).__name__, self.agent_id,
            )
            return

        if isinstance(event, (SystemInit, AssistantMessage, UserMessage, ResultMessage)):
            self.raw_events.append(event.raw)

        if isinstance(event, SystemInit):
            await self._on_system_init(event)
        elif isinstance(event, AssistantMessage):
            await self._on_assistant(event)
        elif isinstance(event, UserMessage):
            await self._on_user(event)
        elif isinstance(event, ResultMessage):
            await self._on_result(event)
        elif isinstance(event, (ContentBlockDelta, PlainText)):
            await self._stream(event.text)
        elif isinstance(event, Unrecognized):
            logger.debug("Skipping stream event of type %s", event.event_type)

    async def _on_system_init(self, event: SystemInit) -> None:
        self._captured_session_id = event.session_id
        update = self._tracker.reconcile(
            self.agent_id, self._requested_session_id, event.session_id,
        )
        await self._persist_session(update)
        await self._append(ConversationMessage(
            type=MessageType.SYSTEM,
            content=f"Session started with model {event.model}",
            session_id=event.session_id,
            raw_event=event.raw,
        ))

    async def _on_assistant(self, event: AssistantMessage) -> None:
        self._last_assistant = event
        for block in event.blocks:
            if isinstance(block, TextBlock):
                await self._stream(block.text)
            elif isinstance(block, ToolUseBlock):
                await self._append(ConversationMessage(
                    type=MessageType.TOOL_USE,
                    content=f"Using tool: {block.name}",
                    tool_name=block.name,
                    tool_input=block.input,
                    tool_use_id=block.id,
                    raw_event=event.raw,
                ))
            elif isinstance(block, ThinkingBlock):
                await self._stream(format_thinking(block.thinking))

    async def _on_user(self, event: UserMessage) -> None:
        for block in event.results:
            await self._append(ConversationMessage(
                type=MessageType.TOOL_RESULT,
                content=_tool_result_text(block.content),
                tool_use_id=block.tool_use_id,
                is_tool_error=block.is_error,
                raw_event=event.raw,
            ))

    async def _on_result(self, event: ResultMessage) -> None:
        self._result = event
        if event.session_id and not self._captured_session_id:
            self._captured_session_id = event.session_id
            update = self._tracker.capture_fallback(
                self.agent_id, self._requested_session_id, event.session_id,
            )
            await self._persist_session(update)

    # ── Finalization ──────────────────────────────────────────

    async def finalize(self) -> list[ConversationMessage]:
        """Write the assistant message and turn summary. Runs at most once.

        Returns the messages written by this call.
        """
        if self._finalized:
            return []
        self._finalized = True
        written: list[ConversationMessage] = []

        text = self.streaming_text
        if text.strip():
            usage = self._last_assistant.usage if self._last_assistant else None
            written.append(await self._append(ConversationMessage(
                type=MessageType.ASSISTANT,
                content=text,
                session_id=self._captured_session_id,
                raw_event=self._last_assistant.raw if self._last_assistant else None,
                input_tokens=usage.input_tokens if usage else None,
                output_tokens=usage.output_tokens if usage else None,
                cost_usd=self._result.total_cost_usd if self._result else None,
                duration_ms=self._result.duration_ms if self._result else None,
            )))
            if self._first_turn:
                title = self._title_generator(self._prompt)
                self._repository.update_conversation(self.conversation_id, title=title)

        if self._result is not None:
            written.append(await self._append(ConversationMessage(
                type=MessageType.SYSTEM,
                content=format_turn_summary(self._result),
                session_id=self._result.session_id,
                raw_event=self._result.raw,
                cost_usd=self._result.total_cost_usd,
                duration_ms=self._result.duration_ms,
            )))
        return written

