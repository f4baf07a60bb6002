"""
Token budget utilities for bounding model context size.

Lightweight estimator: ~4 characters per token as a heuristic for English text.
"""

from __future__ import annotations


def estimate_tokens(text: str) -> int:
    """Rough token estimator (~4 chars per token)."""
    if not text:
        return 0
    return (len(text) + 3) // 4


def truncate_chars(text: str, max_chars: int) -> str:
    """Cut ``text`` to ``max_chars`` characters, appending an ellipsis when cut."""
    if not text or max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)].rstrip() + "..."


def trim_text_to_tokens(text: str, max_tokens: int) -> str:
    """Trim text to approximately max_tokens (by characters)."""
    if max_tokens <= 0 or not text:
        return ""
    return truncate_chars(text, max_tokens * 4)

