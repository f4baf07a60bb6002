"""
Text hygiene helpers for request input and model output.
"""

from __future__ import annotations

import re
from typing import List, Pattern

# C0/C1 control characters except tab/newline/carriage return
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_CITATION_MARKERS = re.compile(r"[ \t]?\[\d+(?:\s*,\s*\d+)*\]")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_TEMPLATE_BULLETS = re.compile(r"^[●○■□▪▫►◆◇→]\s*", re.MULTILINE)

# Report-template headers that read as boilerplate outside business answers
BANNED_HEADERS = [
    "REAL-TIME SNAPSHOT",
    "REAL TIME SNAPSHOT",
    "CURRENT MARKET SIGNALS",
    "MARKET SIGNALS",
    "INDUSTRY IMPACT",
    "ACTIONABLE TAKEAWAYS",
    "KEY TRENDS",
    "STRATEGIC IMPLICATIONS",
    "EXECUTIVE SUMMARY",
]


def _header_patterns(header: str) -> List[Pattern[str]]:
    h = re.escape(header)
    return [
        re.compile(rf"\*\*{h}\*\*[ \t]*\n?", re.IGNORECASE),
        re.compile(rf"^#{{1,3}}[ \t]*{h}[ \t]*\n?", re.IGNORECASE | re.MULTILINE),
        re.compile(rf"^{h}[ \t]*\n", re.IGNORECASE | re.MULTILINE),
    ]


_BANNED_HEADER_PATTERNS = [p for header in BANNED_HEADERS for p in _header_patterns(header)]


def sanitize_input(text: str, max_length: int = 5000) -> str:
    """Strip control characters, trim whitespace and cap length."""
    if not text:
        return ""
    cleaned = _CONTROL_CHARS.sub("", str(text)).strip()
    return cleaned[:max_length]


def strip_citation_markers(text: str) -> str:
    """Remove inline numeric markers such as ``[1]`` or ``[2, 3]``."""
    if not text:
        return ""
    return _CITATION_MARKERS.sub("", text)


def has_citation_markers(text: str) -> bool:
    return bool(_CITATION_MARKERS.search(text or ""))


def collapse_newlines(text: str) -> str:
    return _EXCESS_NEWLINES.sub("\n\n", text or "")


def sanitize_output(text: str, *, allow_report_headers: bool = True) -> str:
    """Clean model output before it reaches the caller.

    Citation markers are always removed. Unless ``allow_report_headers`` is
    set, template headers are dropped and decorative bullet glyphs become
    plain markdown list items.
    """
    out = text or ""
    if not allow_report_headers:
        for pattern in _BANNED_HEADER_PATTERNS:
            out = pattern.sub("", out)
        out = _TEMPLATE_BULLETS.sub("- ", out)
    out = strip_citation_markers(out)
    return collapse_newlines(out).strip()
