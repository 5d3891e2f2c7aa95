"""
Sentence boundary chunking for streamed session text.

Generated text arrives token by token. Speech synthesis sounds best when it
receives whole sentences of reasonable length, so tokens are accumulated and
cut at sentence-ending punctuation once enough text has built up.

Architecture:
    generation tokens → SentenceChunker.consume() → sentences → synthesis

Rules:
    * A boundary is a run of ``.``, ``!`` or ``?`` followed by whitespace or
      the end of the text.
    * A single ``.`` after a known abbreviation (``Dr.``, ``e.g.``) is not a
      boundary.
    * Boundaries accumulate until the text since the last cut reaches
      ``min_length`` characters; then every pending sentence is emitted on its
      own.

Usage:
    chunker = SentenceChunker(min_length=40)

    async for token in tokens:
        for sentence in chunker.consume(token):
            await handle(sentence)

    final = chunker.flush()
    if final:
        await handle(final)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import AsyncIterable, AsyncIterator, Iterator, Optional

DEFAULT_MIN_LENGTH = 40

# Compared against the lower-cased word before a single period, minus that period
ABBREVIATIONS = frozenset(
    {
        "mr",
        "mrs",
        "ms",
        "dr",
        "prof",
        "sr",
        "jr",
        "st",
        "ave",
        "blvd",
        "dept",
        "est",
        "govt",
        "i.e",
        "e.g",
        "vs",
        "etc",
        "approx",
        "min",
        "max",
        "no",
        "vol",
    }
)

_SENTENCE_END = re.compile(r"([.!?]+)(\s+|\Z)")


@dataclass(frozen=True)
class SplitResult:
    """Sentences ready to emit plus the text still buffering."""

    complete: list[str] = field(default_factory=list)
    remainder: str = ""


@dataclass(frozen=True)
class _Boundary:
    sentence_end: int
    next_start: int


def _is_abbreviation(text: str, end: int) -> bool:
    words = text[:end].strip().split()
    if not words:
        return False
    word = words[-1]
    if word.endswith("."):
        word = word[:-1]
    return word.lower() in ABBREVIATIONS


def _find_boundaries(text: str) -> list[_Boundary]:
    boundaries: list[_Boundary] = []
    for match in _SENTENCE_END.finditer(text):
        punctuation = match.group(1)
        end = match.start() + len(punctuation)
        if punctuation == "." and _is_abbreviation(text, end):
            continue
        boundaries.append(_Boundary(sentence_end=end, next_start=match.end()))
    return boundaries


def split_at_sentence_boundaries(
    text: str, min_length: int = DEFAULT_MIN_LENGTH
) -> SplitResult:
    """Split ``text`` into complete sentences and an unfinished remainder.

    Args:
        text: Accumulated text to split.
        min_length: Minimum length of the text since the last cut before any
            pending sentences are released.

    Returns:
        SplitResult whose ``complete`` list holds trimmed, non-empty sentences
        in order and whose ``remainder`` is the leftover text with leading
        whitespace removed.
    """
    complete: list[str] = []
    last_cut = 0
    pending: list[_Boundary] = []

    for boundary in _find_boundaries(text):
        pending.append(boundary)
        accumulated = text[last_cut : boundary.sentence_end].strip()
        if len(accumulated) < min_length:
            continue

        segment_start = last_cut
        for item in pending:
            sentence = text[segment_start : item.sentence_end].strip()
            if sentence:
                complete.append(sentence)
            segment_start = item.next_start
        last_cut = pending[-1].next_start
        pending = []

    return SplitResult(complete=complete, remainder=text[last_cut:].lstrip())


class SentenceChunker:
    """Stateful wrapper that feeds streamed tokens through the splitter."""

    def __init__(self, min_length: int = DEFAULT_MIN_LENGTH) -> None:
        self.min_length = min_length
        self._buffer = ""

    def consume(self, token: str) -> Iterator[str]:
        """Append ``token`` and yield any sentences it completes."""
        if not token:
            return
        self._buffer += token
        result = split_at_sentence_boundaries(self._buffer, self.min_length)
        self._buffer = result.remainder
        yield from result.complete

    def flush(self) -> Optional[str]:
        """Return the trimmed leftover text, if any, and clear the buffer."""
        leftover = self._buffer.strip()
        self._buffer = ""
        return leftover or None

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)


async def chunk_by_sentence(
    tokens: AsyncIterable[str], min_length: int = DEFAULT_MIN_LENGTH
) -> AsyncIterator[str]:
    """Yield sentences from an async token stream, flushing the tail at the end."""
    chunker = SentenceChunker(min_length)
    async for token in tokens:
        for sentence in chunker.consume(token):
            yield sentence
    final = chunker.flush()
    if final:
        yield final


__all__ = [
    "ABBREVIATIONS",
    "DEFAULT_MIN_LENGTH",
    "SentenceChunker",
    "SplitResult",
    "chunk_by_sentence",
    "split_at_sentence_boundaries",
]
