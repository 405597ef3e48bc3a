"""Sentence-aware text chunker with a sliding-window fallback.

Chunks are exact slices of the segment text, so ``text[c.start:c.end] == c.text``
for every chunk and offsets never leave the segment.
"""

from __future__ import annotations

import re

from localdex.models import TextChunk

# Terminal punctuation followed by whitespace and a capital, or end of text
_SENTENCE_END = re.compile(r"[.!?]+(?:\s+(?=[A-Z])|\Z)")

# Quality gate for sentence chunking
_MIN_RATIO = 0.3
_MAX_RATIO = 1.5
_GOOD_SHARE = 0.7

# Sliding window only cuts at whitespace inside the last 30% of the window
_CUT_ZONE = 0.7


class Chunker:
    """Split one segment's text into overlapping, length-bounded chunks."""

    def __init__(self, chunk_size: int = 1000, chunk_overlap: int = 120):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if not 0 <= chunk_overlap < chunk_size:
            raise ValueError("chunk_overlap must be >= 0 and smaller than chunk_size")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def chunk(self, text: str) -> list[TextChunk]:
        """Chunk *text*, preferring sentence boundaries.

        Sentence chunking is kept when at least 70% of its chunks are between
        0.3x and 1.5x chunk_size; otherwise fixed-size windows are used.
        """
        if not text.strip():
            return []

        spans = self._chunk_by_sentences(text)
        if not self._is_good_chunking(spans):
            spans = self._chunk_by_window(text)

        return [
            TextChunk(text=text[start:end], start=start, end=end, index=i)
            for i, (start, end) in enumerate(spans)
        ]

    # -- Sentence chunking ---------------------------------------------------

    def _chunk_by_sentences(self, text: str) -> list[tuple[int, int]]:
        spans: list[tuple[int, int]] = []
        start: int | None = None
        end = 0

        for s_start, s_end in split_sentences(text):
            if start is None:
                start, end = s_start, s_end
            elif s_end - start <= self.chunk_size:
                end = s_end
            else:
                spans.append((start, end))
                overlap_start = self._overlap_start(text, start, end)
                start = overlap_start if overlap_start is not None else s_start
                end = s_end

        if start is not None:
            spans.append((start, end))
        return spans

    def _overlap_start(self, text: str, start: int, end: int) -> int | None:
        """Where the next chunk begins so it repeats the tail of [start, end)."""
        if self.chunk_overlap == 0:
            return None
        if end - start <= self.chunk_overlap:
            return start

        pos = end - self.chunk_overlap
        space = _first_space(text, pos, end)
        if space is not None and 0 < space - pos < self.chunk_overlap * 0.5:
            pos = space + 1
        while pos < end and text[pos].isspace():
            pos += 1
        return pos if pos < end else None

    def _is_good_chunking(self, spans: list[tuple[int, int]]) -> bool:
        if not spans:
            return False
        low = self.chunk_size * _MIN_RATIO
        high = self.chunk_size * _MAX_RATIO
        good = sum(1 for start, end in spans if low <= end - start <= high)
        return good / len(spans) >= _GOOD_SHARE

    # -- Sliding window ------------------------------------------------------

    def _chunk_by_window(self, text: str) -> list[tuple[int, int]]:
        spans: list[tuple[int, int]] = []
        length = len(text)
        start = 0

        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                threshold = start + self.chunk_size * _CUT_ZONE
                i = end - 1
                while i > threshold:
                    if text[i].isspace():
                        end = i
                        break
                    i -= 1

            span = _strip_span(text, start, end)
            if span:
                spans.append(span)

            if end >= length:
                break
            # Always advance, even when overlap swallows the whole step
            start = max(end - self.chunk_overlap, start + 1)

        return spans


def split_sentences(text: str) -> list[tuple[int, int]]:
    """Return (start, end) spans of sentences, whitespace-trimmed."""
    spans: list[tuple[int, int]] = []
    last = 0
    for match in _SENTENCE_END.finditer(text):
        span = _strip_span(text, last, match.end())
        if span:
            spans.append(span)
        last = match.end()
    if last < len(text):
        span = _strip_span(text, last, len(text))
        if span:
            spans.append(span)
    return spans


def _strip_span(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if start < end else None


def _first_space(text: str, start: int, end: int) -> int | None:
    for i in range(start, end):
        if text[i].isspace():
            return i
    return None
