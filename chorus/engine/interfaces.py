"""Collaborator interfaces consumed by the engine.

The engine does not own conversation storage. It appends messages and
updates conversation metadata through a ConversationRepository, and
derives titles through a TitleGenerator.
"""
from __future__ import annotations

import abc
from typing import Any, Callable

from .models import ConversationMessage

# Derives a short conversation title from the user's first prompt.
TitleGenerator = Callable[[str], str]


class ConversationRepository(abc.ABC):
    """Append-only message log plus per-conversation metadata."""

    @abc.abstractmethod
    def append_message(
        self, conversation_id: str, message: ConversationMessage,
    ) -> None:
        """Append *message* to the conversation's log."""

    @abc.abstractmethod
    def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        """Merge metadata fields (title, session_id, session_created_at)."""


class InMemoryConversationRepository(ConversationRepository):
    """Dict-backed repository for embedding and tests."""

    def __init__(self) -> None:
        self.messages: dict[str, list[ConversationMessage]] = {}
        self.metadata: dict[str, dict[str, Any]] = {}

    def append_message(
        self, conversation_id: str, message: ConversationMessage,
    ) -> None:
        self.messages.setdefault(conversation_id, []).append(message)

    def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        self.metadata.setdefault(conversation_id, {}).update(fields)
