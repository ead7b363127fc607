"""File-backed conversation store.

Storage layout:
    {base_dir}/{conversation_id}/messages.jsonl   append-only message log
    {base_dir}/{conversation_id}/meta.json        title, session_id, ...

Messages are never rewritten; metadata is replaced atomically.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from chorus.engine.interfaces import ConversationRepository
from chorus.engine.models import ConversationMessage, SessionState
from chorus.shared.services.durable_write import append_line, atomic_write_text

logger = logging.getLogger(__name__)

_SAFE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

METADATA_FIELDS = frozenset({"title", "session_id", "session_created_at"})


class ConversationStore(ConversationRepository):
    """Persist conversations as JSONL logs plus a JSON metadata file."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir).expanduser()
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _conversation_dir(self, conversation_id: str) -> Path:
        if not _SAFE_ID_RE.match(conversation_id):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self._base_dir / conversation_id

    def _messages_path(self, conversation_id: str) -> Path:
        return self._conversation_dir(conversation_id) / "messages.jsonl"

    def _meta_path(self, conversation_id: str) -> Path:
        return self._conversation_dir(conversation_id) / "meta.json"

    # ── ConversationRepository ────────────────────────────────

    def append_message(
        self, conversation_id: str, message: ConversationMessage,
    ) -> None:
        append_line(
            self._messages_path(conversation_id),
            json.dumps(message.to_dict(), ensure_ascii=False, default=str),
        )

    def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        unknown = set(fields) - METADATA_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        meta = self.get_conversation(conversation_id)
        meta.update(fields)
        meta["updated_at"] = datetime.now(timezone.utc).isoformat()
        atomic_write_text(
            self._meta_path(conversation_id),
            json.dumps(meta, indent=2, ensure_ascii=False),
        )

    # ── Reads ─────────────────────────────────────────────────

    def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        """Return stored metadata, or an empty dict for a new conversation."""
        path = self._meta_path(conversation_id)
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def session_state(self, conversation_id: str) -> SessionState:
        """Session fields needed to start the next turn."""
        meta = self.get_conversation(conversation_id)
        return SessionState(
            session_id=meta.get("session_id"),
            created_at=meta.get("session_created_at"),
        )

    def load_messages(self, conversation_id: str) -> list[ConversationMessage]:
        """Read the message log in append order.

        A truncated final line (crash mid-append) is skipped.
        """
        path = self._messages_path(conversation_id)
        if not path.exists():
            return []
        messages: list[ConversationMessage] = []
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    messages.append(ConversationMessage.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError):
                    logger.warning(
                        "Skipping unreadable message at %s:%d", path, lineno,
                    )
        return messages

    def list_conversations(self) -> list[str]:
        return sorted(
            p.name for p in self._base_dir.iterdir()
            if p.is_dir() and _SAFE_ID_RE.match(p.name)
        )
