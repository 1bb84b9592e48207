"""Token-budgeted, sentence-aware document chunking."""

from __future__ import annotations

import hashlib
import math
import re
from dataclasses import dataclass

from hybrid_rag.config import CHUNK_MAX_TOKENS, CHUNK_OVERLAP_TOKENS, CHUNK_PRESERVE_SENTENCES
from hybrid_rag.models import Chunk

TOKENS_PER_WORD = 1.3

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


@dataclass(frozen=True)
class ChunkOptions:
    max_tokens: int = CHUNK_MAX_TOKENS
    overlap_tokens: int = CHUNK_OVERLAP_TOKENS
    preserve_sentences: bool = CHUNK_PRESERVE_SENTENCES


def estimate_tokens(text: str) -> int:
    """Rough token count: 1.3 tokens per whitespace-separated word."""
    return math.ceil(len(text.split()) * TOKENS_PER_WORD)


def should_chunk(text: str, max_tokens: int = CHUNK_MAX_TOKENS) -> bool:
    # Only documents well above one chunk's budget get split.
    return estimate_tokens(text) > max_tokens * 1.5


def split_sentences(text: str) -> list[str]:
    return [s for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def chunk_id(document_id: str, chunk_index: int, text: str) -> str:
    digest = hashlib.sha256(f"{document_id}-{chunk_index}-{text[:100]}".encode("utf-8"))
    return digest.hexdigest()[:16]


def _make_chunk(
    document_id: str,
    index: int,
    raw_text: str,
    text: str,
    start: int,
    end: int,
) -> Chunk:
    return Chunk(
        id=chunk_id(document_id, index, raw_text),
        document_id=document_id,
        text=text,
        start_offset=start,
        end_offset=end,
        chunk_index=index,
        total_chunks=0,
    )


def _overlap_suffix(consumed: list[str], overlap_tokens: int) -> tuple[list[str], int]:
    kept: list[str] = []
    total = 0
    for sentence in reversed(consumed):
        if total >= overlap_tokens:
            break
        tokens = estimate_tokens(sentence)
        if total + tokens > overlap_tokens:
            break
        kept.insert(0, sentence)
        total += tokens
    return kept, total


def _chunk_by_sentences(document_id: str, text: str, opts: ChunkOptions) -> list[Chunk]:
    sentences = split_sentences(text)
    chunks: list[Chunk] = []
    current = ""
    current_tokens = 0
    start = 0

    for i, sentence in enumerate(sentences):
        tokens = estimate_tokens(sentence)
        if current_tokens + tokens > opts.max_tokens and current:
            end = start + len(current)
            chunks.append(
                _make_chunk(document_id, len(chunks), current, current.strip(), start, end)
            )
            overlap, current_tokens = _overlap_suffix(sentences[:i], opts.overlap_tokens)
            current = " ".join(overlap)
            start = end - len(current)

        current = f"{current} {sentence}" if current else sentence
        current_tokens += tokens

    if current.strip():
        chunks.append(
            _make_chunk(document_id, len(chunks), current, current.strip(), start, len(text))
        )
    return chunks


def _chunk_by_words(document_id: str, text: str, opts: ChunkOptions) -> list[Chunk]:
    overlap_words = math.floor(opts.overlap_tokens / TOKENS_PER_WORD)
    chunks: list[Chunk] = []
    current: list[str] = []
    current_tokens = 0
    start = 0
    offset = 0

    for word in text.split():
        tokens = estimate_tokens(word)
        if current_tokens + tokens > opts.max_tokens and current:
            joined = " ".join(current)
            chunks.append(_make_chunk(document_id, len(chunks), joined, joined, start, offset))
            current = current[max(0, len(current) - overlap_words):]
            carried = " ".join(current)
            current_tokens = estimate_tokens(carried)
            start = offset - len(carried)

        current.append(word)
        current_tokens += tokens
        offset += len(word) + 1

    if current:
        joined = " ".join(current)
        chunks.append(_make_chunk(document_id, len(chunks), joined, joined, start, len(text)))
    return chunks


def chunk_document(
    document_id: str,
    text: str,
    options: ChunkOptions | None = None,
) -> list[Chunk]:
    """
    Split one document into overlapping chunks of roughly ``max_tokens`` tokens.

    In sentence mode, each new chunk is seeded with the longest run of trailing
    sentences that fits in ``overlap_tokens``. Word mode does the same per word.
    Offsets are approximate locators, not exact slices of ``text``.
    """
    opts = options or ChunkOptions()
    if not text.strip():
        return []

    if opts.preserve_sentences:
        chunks = _chunk_by_sentences(document_id, text, opts)
    else:
        chunks = _chunk_by_words(document_id, text, opts)

    for chunk in chunks:
        chunk.total_chunks = len(chunks)
    return chunks
