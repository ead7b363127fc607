"""fsync-backed file writes for the conversation store."""
from __future__ import annotations

import contextlib
import os
import tempfile
from pathlib import Path


def _sync_directory(directory: Path) -> None:
    """Flush directory entries so a create/rename survives a crash.

    Not every filesystem allows opening a directory for fsync; those
    errors are ignored.
    """
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    with contextlib.suppress(OSError):
        fd = os.open(directory, flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content* so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w",
        encoding=encoding,
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as tmp:
        tmp.write(content)
        tmp.flush()
        os.fsync(tmp.fileno())
    try:
        os.replace(tmp.name, path)
    except OSError:
        with contextlib.suppress(OSError):
            os.unlink(tmp.name)
        raise
    _sync_directory(path.parent)


def append_line(path: Path, line: str, *, encoding: str = "utf-8") -> None:
    """Append one newline-terminated record and fsync it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    created = not path.exists()
    with open(path, "a", encoding=encoding) as f:
        f.write(line.rstrip("\n") + "\n")
        f.flush()
        os.fsync(f.fileno())
    if created:
        _sync_directory(path.parent)
