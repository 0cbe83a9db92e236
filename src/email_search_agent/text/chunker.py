"""Split, combine and size-check text for embedding."""

from __future__ import annotations

import math
import re
from collections.abc import Iterable

from email_search_agent.models import SizeCheck, TextChunk
from email_search_agent.text.normalizer import normalize

SECTION_DELIMITER = "\n\n---\n\n"
DEFAULT_MAX_TOKENS = 10_000
CHARS_PER_TOKEN = 4

# Share of the window, measured from its end, searched for a sentence boundary.
_BOUNDARY_LOOKBACK = 0.2
_SENTENCE_END = re.compile(r"[.!?](?=\s)")


def _find_cut(text: str, start: int, end: int) -> int:
    """Position just after the last sentence end in the tail of the window, or ``end``."""
    window = end - start
    lo = start + int(window * (1 - _BOUNDARY_LOOKBACK))
    # One extra character so a boundary at the very end of the window is seen.
    region = text[lo : end + 1]
    cut = end
    for match in _SENTENCE_END.finditer(region):
        pos = lo + match.end()
        if pos <= end:
            cut = pos
    return cut


def chunk(text: str, max_chunk_size: int) -> list[TextChunk]:
    """Split ``text`` into chunks of at most ``max_chunk_size`` characters.

    Cuts prefer a sentence boundary in the last fifth of each window.
    Whitespace at cut points is dropped, so joining the chunks gives back
    the text modulo that whitespace.

    Raises:
        ValueError: If ``max_chunk_size`` is smaller than 1.
    """
    if max_chunk_size < 1:
        raise ValueError(f"max_chunk_size must be >= 1, got {max_chunk_size}")

    if len(text) <= max_chunk_size:
        return [TextChunk(index=0, content=text, is_complete=True)]

    pieces: list[str] = []
    n = len(text)
    start = 0
    while start < n and text[start].isspace():
        start += 1

    while start < n:
        end = min(start + max_chunk_size, n)
        if end < n:
            end = _find_cut(text, start, end)
        piece = text[start:end].strip()
        if piece:
            pieces.append(piece)
        start = end
        while start < n and text[start].isspace():
            start += 1

    if not pieces:
        return [TextChunk(index=0, content="", is_complete=True)]

    last = len(pieces) - 1
    return [
        TextChunk(index=i, content=piece, is_complete=i == last) for i, piece in enumerate(pieces)
    ]


def combine(primary_text: str | None, attachment_texts: Iterable[str | None] = ()) -> str:
    """Join the body and attachment texts into labelled sections."""
    sections: list[str] = []

    body = normalize(primary_text)
    if body:
        sections.append(f"EMAIL CONTENT:\n{body}")

    n = 0
    for raw in attachment_texts:
        attachment = normalize(raw)
        if not attachment:
            continue
        n += 1
        sections.append(f"ATTACHMENT {n}:\n{attachment}")

    return SECTION_DELIMITER.join(sections)


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def validate_size(text: str | None, max_tokens: int = DEFAULT_MAX_TOKENS) -> SizeCheck:
    """Check that ``text`` is non-empty and within the token ceiling."""
    cleaned = normalize(text)
    if not cleaned:
        return SizeCheck(is_valid=False, reason="empty")
    if estimate_tokens(cleaned) > max_tokens:
        return SizeCheck(is_valid=False, reason="too long")
    return SizeCheck(is_valid=True)
