"""Boundary-aware text chunking with overlap.

Provides:
- validate_options: chunk size / overlap sanity checks (raises ConfigError)
- chunk_text: overlapping windows cut back to the last natural separator
- chunk_stats: size diagnostics for a chunk list
- split_sentences / split_paragraphs: simple structural splitters
- Chunker: chunk_text bound to a ChunkerConfig
"""
import re
from typing import List, Optional, Sequence

from docqa.config import DEFAULT_SEPARATORS, ChunkerConfig
from docqa.errors import ConfigError
from docqa.models import ChunkStats, TextSpan

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")


def validate_options(chunk_size: int, overlap: int) -> None:
    """Raise ConfigError unless chunk_size > 0 and 0 <= overlap < chunk_size."""
    if chunk_size <= 0:
        raise ConfigError(f"chunk_size must be greater than 0 (got {chunk_size})")
    if overlap < 0:
        raise ConfigError(f"overlap must be non-negative (got {overlap})")
    if overlap >= chunk_size:
        raise ConfigError(f"overlap must be less than chunk_size ({overlap} >= {chunk_size})")


def _find_break(text: str, start: int, end: int, separators: Sequence[str]) -> int:
    """Return the cut point for window [start, end).

    Tries each separator in priority order and uses its last occurrence when it
    falls in the second half of the window; the cut lands right after it.
    Falls back to the raw window end.
    """
    window = text[start:end]
    half = len(window) * 0.5
    for sep in separators:
        idx = window.rfind(sep)
        if idx > half:
            return start + idx + len(sep)
    return end


def chunk_text(
    text: str,
    chunk_size: int,
    overlap: int,
    separators: Optional[Sequence[str]] = None,
) -> List[TextSpan]:
    """Split text into overlapping, boundary-aware chunks.

    Args:
        text: Source text.
        chunk_size: Maximum window size in characters.
        overlap: Characters shared between consecutive windows.
        separators: Break separators in priority order; defaults to paragraph,
            line, sentence, clause and word boundaries.

    Returns:
        List[TextSpan]: Ordered chunks. Text is trimmed, offsets are the raw
        window in the source, so consecutive spans always touch or overlap.

    Raises:
        ConfigError: If chunk_size / overlap are invalid.
    """
    validate_options(chunk_size, overlap)
    seps = tuple(separators) if separators is not None else DEFAULT_SEPARATORS
    if not text:
        return []

    n = len(text)
    if n <= chunk_size:
        stripped = text.strip()
        return [TextSpan(stripped, 0, n)] if stripped else []

    spans: List[TextSpan] = []
    start = 0
    while start < n:
        end = min(n, start + chunk_size)
        if end < n:
            end = _find_break(text, start, end, seps)
        piece = text[start:end].strip()
        if piece:
            spans.append(TextSpan(piece, start, end))
        if end >= n:
            break
        next_start = end - overlap
        # must advance past this window's start or the loop never ends
        if next_start <= start:
            next_start = end
        start = next_start
    return spans


def chunk_stats(chunks: Sequence[TextSpan]) -> ChunkStats:
    """Summarize chunk sizes (diagnostics only)."""
    if not chunks:
        return ChunkStats()
    sizes = [len(c.text) for c in chunks]
    total = sum(sizes)
    return ChunkStats(
        count=len(chunks),
        average_size=round(total / len(chunks)),
        min_size=min(sizes),
        max_size=max(sizes),
        total_length=total,
    )


def split_sentences(text: str) -> List[str]:
    if not text:
        return []
    return [s for s in _SENTENCE_END.split(text) if s.strip()]


def split_paragraphs(text: str) -> List[str]:
    if not text:
        return []
    return [p for p in _PARAGRAPH_BREAK.split(text) if p.strip()]


class Chunker:
    """chunk_text with a fixed configuration, validated once at construction."""

    def __init__(self, config: Optional[ChunkerConfig] = None):
        self.config = config or ChunkerConfig.from_settings()
        validate_options(self.config.chunk_size, self.config.overlap)

    def chunk(self, text: str) -> List[TextSpan]:
        return chunk_text(text, self.config.chunk_size, self.config.overlap, self.config.separators)
