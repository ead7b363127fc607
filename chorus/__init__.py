"""Chorus: run coding-agent CLI turns and record them as conversations."""

__version__ = "0.1.0"
