"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CHORUS_* env vars.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .models import TurnSettings

logger = logging.getLogger(__name__)


# Optional async callback for real-time notifications (status changes,
# streaming text, appended messages, session updates).
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Callback errors never break a turn."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.warning(
            "Event callback failed for %s", event.get("event"), exc_info=True,
        )


def _default_store_dir() -> str:
    return str(Path.home() / ".chorus" / "conversations")


@dataclass
class EngineConfig:
    """Agent turn engine configuration."""

    # Agent CLI executable, resolved on PATH at every turn.
    agent_command: str = "claude"

    # The agent CLI expires sessions after roughly 30 days. Resume is
    # only attempted for sessions younger than this.
    session_max_age_days: float = 25.0

    # Bounded channel between a process reader and the turn consumer.
    event_queue_size: int = 1000
    # Max bytes pulled from agent stdout per read.
    read_chunk_size: int = 65536

    # Extra environment passed to the agent subprocess.
    agent_env: dict[str, str] = field(
        default_factory=lambda: {"TERM": "xterm-256color"},
    )

    # Where the file-backed ConversationStore keeps its data.
    store_dir: str = field(default_factory=_default_store_dir)

    # Logging
    log_level: str = "INFO"

    # Settings used when a turn request does not carry its own.
    default_settings: TurnSettings = field(default_factory=TurnSettings)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CHORUS_* environment variables."""
        chorus_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CHORUS_")
        }
        if chorus_vars:
            logger.info(
                "EngineConfig.from_env: CHORUS_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(chorus_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CHORUS_* env vars set, using defaults")

        config = cls(
            agent_command=os.getenv(
                "CHORUS_AGENT_COMMAND", cls.agent_command
            ),
            session_max_age_days=float(os.getenv(
                "CHORUS_SESSION_MAX_AGE_DAYS", str(cls.session_max_age_days)
            )),
            event_queue_size=int(os.getenv(
                "CHORUS_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            read_chunk_size=int(os.getenv(
                "CHORUS_READ_CHUNK_SIZE", str(cls.read_chunk_size)
            )),
            store_dir=os.getenv("CHORUS_STORE_DIR") or _default_store_dir(),
            log_level=os.getenv("CHORUS_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "EngineConfig.from_env: command=%s max_age_days=%s store=%s log_level=%s",
            config.agent_command, config.session_max_age_days,
            config.store_dir, config.log_level,
        )
        return config
