"""Tests for deterministic conversation titles."""
from __future__ import annotations

from chorus.shared.services.session_naming import DEFAULT_TITLE, generate_title_from_message


def test_short_prompt_is_used_verbatim():
    assert generate_title_from_message("Fix the flaky test") == "Fix the flaky test"


def test_first_non_empty_line_and_whitespace_collapsed():
    assert generate_title_from_message("\n\n  Refactor   the\tparser \nmore details") == "Refactor the parser"


def test_code_blocks_are_ignored():
    prompt = "```python\nprint('x')\n```\nWhy does this print x?"
    assert generate_title_from_message(prompt) == "Why does this print x?"


def test_empty_prompt_gets_default():
    assert generate_title_from_message("") == DEFAULT_TITLE
    assert generate_title_from_message("```\nonly code\n```") == DEFAULT_TITLE


def test_long_prompt_truncated_on_word_boundary():
    prompt = "Please investigate why the nightly integration build keeps timing out on arm runners"
    title = generate_title_from_message(prompt)
    assert len(title) <= 50
    assert title.endswith("...")
    assert prompt.startswith(title[:-3])
    assert not title[:-3].endswith(" ")


def test_long_word_is_hard_cut():
    title = generate_title_from_message("x" * 80, max_length=20)
    assert title == "x" * 17 + "..."
