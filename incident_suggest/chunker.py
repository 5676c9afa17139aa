#!/usr/bin/env python3
"""Character-window chunking with fractional overlap for embedding."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Iterable, Iterator

from incident_suggest.errors import ValidationError

DEFAULT_MAX_CHARS = 1200
DEFAULT_OVERLAP_RATIO = 0.15
MAX_OVERLAP_RATIO = 0.5

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class TextChunk:
    index: int
    start: int
    content: str


def normalize_whitespace(text: str) -> str:
    """Collapse whitespace runs to one space and trim."""
    return _WHITESPACE.sub(" ", text or "").strip()


def step_size(max_chars: int, overlap_ratio: float) -> int:
    ratio = min(max(overlap_ratio, 0.0), MAX_OVERLAP_RATIO)
    return max(math.floor(max_chars * (1 - ratio)), 1)


def chunk_text(
    text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    overlap_ratio: float = DEFAULT_OVERLAP_RATIO,
) -> Iterator[TextChunk]:
    """
    Split text into overlapping windows sized for embedding.

    Each call returns a fresh generator, so the sequence can be restarted.
    The last chunk may be shorter than max_chars.

    Args:
        text: Source document text
        max_chars: Window size in characters
        overlap_ratio: Fraction of the window repeated in the next one, clamped to [0, 0.5]

    Raises:
        ValidationError: if max_chars < 1
    """
    if max_chars < 1:
        raise ValidationError("max_chars must be >= 1", field="max_chars")
    return _iter_chunks(normalize_whitespace(text), max_chars, step_size(max_chars, overlap_ratio))


def _iter_chunks(clean: str, max_chars: int, step: int) -> Iterator[TextChunk]:
    start = 0
    index = 0
    while start < len(clean):
        end = min(start + max_chars, len(clean))
        yield TextChunk(index=index, start=start, content=clean[start:end])
        if end >= len(clean):
            break
        index += 1
        start += step


def reconstruct(chunks: Iterable[TextChunk], max_chars: int, overlap_ratio: float) -> str:
    """Rebuild the normalized text from the non-overlapping region of each chunk."""
    step = step_size(max_chars, overlap_ratio)
    parts = []
    chunk_list = list(chunks)
    for pos, chunk in enumerate(chunk_list):
        is_last = pos == len(chunk_list) - 1
        parts.append(chunk.content if is_last else chunk.content[:step])
    return "".join(parts)
