"""Split course documents into overlapping chunks for embedding."""

from __future__ import annotations

import re
from dataclasses import dataclass

_INLINE_WHITESPACE_RE = re.compile(r"[^\S\n]+")
_BOUNDARY_CHARS = (".", "!", "?", "\n")


@dataclass(frozen=True)
class TextChunk:
    content: str
    start_index: int
    end_index: int
    chunk_index: int


def clean_text(text: str) -> str:
    """Collapse runs of spaces and tabs, drop blank lines, keep single newlines."""
    lines = (_INLINE_WHITESPACE_RE.sub(" ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def _sentence_break(text: str, earliest: int, end: int) -> int | None:
    """Index just past the last sentence/newline boundary in text[earliest:end], if any."""
    best = max(text.rfind(char, earliest, end) for char in _BOUNDARY_CHARS)
    if best < earliest:
        return None
    return best + 1


def chunk_text(text: str, chunk_size: int = 1000, overlap: int = 200) -> list[TextChunk]:
    """Chunk cleaned text into windows of at most chunk_size characters.

    Consecutive chunks share exactly ``overlap`` characters. A window is shortened to
    end on a sentence or newline boundary when one falls in its second half.
    Offsets index into ``clean_text(text)``.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if overlap < 0 or overlap >= chunk_size:
        raise ValueError("overlap must be in [0, chunk_size)")

    cleaned = clean_text(text)
    if not cleaned:
        return []

    chunks: list[TextChunk] = []
    start = 0
    length = len(cleaned)
    while True:
        end = min(start + chunk_size, length)
        if end < length:
            # The break must leave the next window starting after this one.
            earliest = start + max(chunk_size // 2, overlap + 1)
            boundary = _sentence_break(cleaned, earliest, end)
            if boundary is not None:
                end = boundary
        chunks.append(TextChunk(content=cleaned[start:end], start_index=start, end_index=end, chunk_index=len(chunks)))
        if end >= length:
            return chunks
        start = end - overlap
