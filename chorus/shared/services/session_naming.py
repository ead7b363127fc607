"""Derive a short conversation title from the user's first prompt.

Deterministic and synchronous: the title is set when the first turn
finalizes, without another agent call.
"""
from __future__ import annotations

import re

DEFAULT_TITLE = "New conversation"
MAX_TITLE_LENGTH = 50

_CODE_FENCE_RE = re.compile(r"```.*?(```|$)", re.DOTALL)


def generate_title_from_message(
    message: str,
    max_length: int = MAX_TITLE_LENGTH,
) -> str:
    """Return the prompt's first meaningful line, trimmed to *max_length*."""
    text = _CODE_FENCE_RE.sub(" ", message or "")
    first_line = next(
        (line for line in text.splitlines() if line.strip()), "",
    )
    title = " ".join(first_line.split())
    if not title:
        return DEFAULT_TITLE
    if len(title) <= max_length:
        return title

    cut = title[: max_length - 3]
    # Prefer breaking on a word boundary when one is reasonably close.
    if " " in cut and cut.rfind(" ") >= max_length // 2:
        cut = cut[: cut.rfind(" ")]
    return cut.rstrip(" ,.;:-") + "..."
