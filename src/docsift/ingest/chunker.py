"""Word-based text chunking with sliding-window overlap."""

import re
from collections.abc import Iterator

from ..models import TextChunk

_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")
_WHITESPACE = re.compile(r"\s+")

# A segment longer than this multiple of the target is force-split into windows
LONG_SEGMENT_FACTOR = 1.5


def count_words(text: str) -> int:
    """Number of whitespace-separated words in text."""
    if not text:
        return 0
    return len(text.split())


def chunk_text(
    text: str,
    target_words: int = 500,
    overlap_words: int = 50,
    min_words: int = 20,
) -> list[TextChunk]:
    """Split text into overlapping chunks of roughly target_words words.

    Segments are paragraphs (blank-line separated) or, for single-paragraph
    text, sentences. Segments are accumulated greedily; every new chunk is
    seeded with the last ``overlap_words`` words of the previous one so a
    passage cut by a boundary can be found from either side.

    Args:
        text: The text to chunk.
        target_words: Word budget per chunk.
        overlap_words: Words repeated from the end of one chunk at the start of the next.
        min_words: Chunks shorter than this are dropped, unless only one chunk exists.

    Returns:
        Chunks in original text order.

    Raises:
        ValueError: if the sizes could never make progress.
    """
    if target_words <= 0:
        raise ValueError("target_words must be positive")
    if overlap_words < 0:
        raise ValueError("overlap_words may not be negative")
    if overlap_words >= target_words:
        raise ValueError(
            f"overlap_words ({overlap_words}) must be smaller than target_words ({target_words})"
        )

    if not text or not text.strip():
        return []

    chunks = list(_assemble(_segments(text), target_words, overlap_words))

    if len(chunks) > 1:
        return [c for c in chunks if c.word_count >= min_words]
    return chunks


def _segments(text: str) -> list[str]:
    """Paragraphs when there are several, otherwise sentences; whitespace collapsed."""
    paragraphs = [p for p in _PARAGRAPH_BREAK.split(text) if p.strip()]
    if len(paragraphs) <= 1:
        normalized = _WHITESPACE.sub(" ", text).strip()
        paragraphs = _SENTENCE_BREAK.split(normalized)
    return [_WHITESPACE.sub(" ", p).strip() for p in paragraphs if p.strip()]


def _assemble(segments: list[str], target_words: int, overlap_words: int) -> Iterator[TextChunk]:
    current: list[str] = []
    current_count = 0

    for segment in segments:
        segment_count = count_words(segment)

        if current_count + segment_count > target_words and current_count > 0:
            content = " ".join(current)
            yield TextChunk(content=content, word_count=current_count)

            seed = _tail_words(content, overlap_words)
            current = [seed] if seed else []
            current_count = count_words(seed)

        if segment_count > target_words * LONG_SEGMENT_FACTOR:
            yield from _split_long_segment(segment, target_words, overlap_words)
            current = []
            current_count = 0
            continue

        current.append(segment)
        current_count += segment_count

    if current_count > 0:
        yield TextChunk(content=" ".join(current), word_count=current_count)


def _tail_words(text: str, overlap_words: int) -> str:
    """Last overlap_words words of text; empty when the text is not longer than that."""
    words = text.split()
    if overlap_words == 0 or len(words) <= overlap_words:
        return ""
    return " ".join(words[-overlap_words:])


def _split_long_segment(segment: str, target_words: int, overlap_words: int) -> Iterator[TextChunk]:
    """Fixed windows of target_words with overlap_words repeated between neighbours."""
    words = segment.split()
    start = 0
    while start < len(words):
        end = min(start + target_words, len(words))
        window = words[start:end]
        yield TextChunk(content=" ".join(window), word_count=len(window))
        if end == len(words):
            break
        start = end - overlap_words
