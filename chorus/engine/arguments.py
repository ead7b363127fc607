"""Argument vector construction for the agent CLI.

Pure function of (settings, resume decision, prompt). The agent CLI
does not reliably keep permission mode or model across a resume, so
both are always re-sent when resuming.
"""
from __future__ import annotations

import os
from typing import Callable

from .models import TurnSettings

BASE_ARGS = ("-p", "--verbose", "--output-format", "stream-json")
_DEFAULT = "default"


def build_agent_args(
    settings: TurnSettings,
    resume_session_id: str | None,
    prompt: str,
    *,
    path_exists: Callable[[str], bool] = os.path.exists,
) -> list[str]:
    """Build the agent CLI argument list (without the executable).

    Args:
        settings: Turn settings from the config layer.
        resume_session_id: Session to resume, or None for a fresh session.
        prompt: User prompt, always the final positional argument.
        path_exists: Existence check for the system prompt file.
    """
    args = list(BASE_ARGS)
    resuming = bool(resume_session_id)

    if settings.permission_mode and (
        settings.permission_mode != _DEFAULT or resuming
    ):
        args.extend(["--permission-mode", settings.permission_mode])

    if settings.allowed_tools:
        args.extend(["--allowedTools", ",".join(settings.allowed_tools)])

    if settings.model and (settings.model != _DEFAULT or resuming):
        args.extend(["--model", settings.model])

    if resuming:
        # Resumed sessions already carry their system prompt.
        args.extend(["--resume", resume_session_id])
    elif settings.system_prompt_file and path_exists(settings.system_prompt_file):
        args.extend(["--system-prompt-file", settings.system_prompt_file])

    if prompt.startswith("-"):
        # End of options, so the prompt is never parsed as a flag.
        args.append("--")
    args.append(prompt)
    return args
