"""Paragraph splitting for input text.

Paragraphs are separated by blank lines. Scene-break lines (``***``,
``---``, ``* * *``) are dropped. A paragraph longer than the server's
character limit is cut into chunks at the last sentence or clause
boundary that still keeps each chunk at least half the limit long.
"""

from __future__ import annotations

import re

from .backend import DEFAULT_MAX_CHARACTERS

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SCENE_BREAK = re.compile(r"^\s*(?:[-*_~]{3,}|\*\s+\*\s+\*|#\s+#\s+#|~\s+~\s+~)\s*$")

# Preferred break characters, best first
_BREAK_CHARS = (".", ";", ",", " ")


def _break_point(text: str, max_length: int) -> int:
    for ch in _BREAK_CHARS:
        pos = text.rfind(ch, 0, max_length)
        if pos >= max_length / 2:
            return pos
    return max_length - 1


def split_text_into_chunks(text: str, max_length: int = DEFAULT_MAX_CHARACTERS) -> list[str]:
    """Split *text* into pieces of at most *max_length* characters."""
    if not text:
        return []
    if len(text) <= max_length:
        return [text]

    chunks = []
    remaining = text
    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break
        cut = _break_point(remaining, max_length) + 1
        chunk = remaining[:cut].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[cut:].strip()
    return chunks


def split_into_paragraphs(text: str, max_length: int = DEFAULT_MAX_CHARACTERS) -> list[str]:
    """Split *text* into readable paragraphs no longer than *max_length*."""
    if not text:
        return []
    paragraphs = []
    for block in _PARAGRAPH_BREAK.split(text):
        lines = [line for line in block.splitlines() if not _SCENE_BREAK.match(line)]
        paragraph = "\n".join(lines).strip()
        if paragraph:
            paragraphs.extend(split_text_into_chunks(paragraph, max_length))
    return paragraphs
