"""Hybrid (embedding + keyword) scoring and result diversification."""

from __future__ import annotations

import math
import re
from collections.abc import Sequence

from pydantic import BaseModel, Field

from hybrid_rag.config import (
    CHUNK_MAX_TOKENS,
    CHUNK_OVERLAP_TOKENS,
    CHUNK_PRESERVE_SENTENCES,
    EMBEDDING_WEIGHT,
    ENABLE_HYBRID_SEARCH,
    SEARCH_MAX_RESULTS,
)
from hybrid_rag.models import Chunk, Document, ScoredUnit

EXACT_PHRASE_SCORE = 10.0

_NON_WORD = re.compile(r"\W+")


class VectorShapeError(ValueError):
    """Raised when two embedding vectors have different lengths."""


class SearchConfig(BaseModel):
    max_results: int = Field(SEARCH_MAX_RESULTS, ge=1)
    max_tokens_per_chunk: int = Field(CHUNK_MAX_TOKENS, ge=1)
    overlap_tokens: int = Field(CHUNK_OVERLAP_TOKENS, ge=0)
    preserve_sentences: bool = CHUNK_PRESERVE_SENTENCES
    enable_hybrid_search: bool = ENABLE_HYBRID_SEARCH
    embedding_weight: float = Field(EMBEDDING_WEIGHT, ge=0.0, le=1.0)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise VectorShapeError(
            f"Embedding vectors must have the same length. Got {len(a)} and {len(b)} dimensions."
        )
    dot = norm_a = norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def tokenize(text: str) -> list[str]:
    return [token for token in _NON_WORD.split(text.lower()) if token]


def keyword_score(query: str, text: str) -> float:
    """
    Exact phrase bonus, else length-normalized term frequency of query tokens.

    There is no IDF term, so scores are only comparable within one small corpus.
    """
    if query.lower() in text.lower():
        return EXACT_PHRASE_SCORE

    text_tokens = tokenize(text)
    counts: dict[str, int] = {}
    for token in text_tokens:
        counts[token] = counts.get(token, 0) + 1

    score = 0.0
    for token in tokenize(query):
        if token in counts:
            score += counts[token] / math.log(len(text_tokens) + 1)
    return score


def _excerpt(text: str, index: int, length: int, context: int) -> str:
    start = max(0, index - context)
    end = min(len(text), index + length + context)
    excerpt = text[start:end]
    if start > 0:
        excerpt = "..." + excerpt
    if end < len(text):
        excerpt = excerpt + "..."
    return excerpt


def highlight_keywords(query: str, text: str) -> list[str]:
    text_lower = text.lower()
    query_lower = query.lower()

    exact = text_lower.find(query_lower)
    if exact != -1:
        return [_excerpt(text, exact, len(query_lower), 50)]

    for token in tokenize(query):
        idx = text_lower.find(token)
        if idx != -1:
            # First hit only.
            return [_excerpt(text, idx, len(token), 30)]
    return []


def score_unit(
    query: str,
    unit: Document | Chunk,
    query_embedding: Sequence[float] | None,
    config: SearchConfig,
) -> ScoredUnit:
    embedding_score = 0.0
    if unit.embedding is not None and query_embedding is not None:
        embedding_score = cosine_similarity(unit.embedding, query_embedding)

    kw_score = 0.0
    highlights: list[str] = []
    if config.enable_hybrid_search:
        kw_score = keyword_score(query, unit.text)
        highlights = highlight_keywords(query, unit.text)
        weight = config.embedding_weight
        combined = embedding_score * weight + kw_score * (1 - weight)
    else:
        combined = embedding_score

    return ScoredUnit(
        unit=unit,
        score=combined,
        embedding_score=embedding_score,
        keyword_score=kw_score,
        highlights=highlights,
    )


def diversify(scored: list[ScoredUnit], max_results: int) -> list[ScoredUnit]:
    """
    Pick ``max_results`` items from a list sorted by descending score.

    No source document may contribute more than ``ceil(max_results / 2)`` items
    in the first pass. Leftover slots are then back-filled in score order,
    ignoring that cap.
    """
    per_source_cap = math.ceil(max_results / 2)
    results: list[ScoredUnit] = []
    admitted: set[int] = set()
    counts: dict[str, int] = {}

    for idx, item in enumerate(scored):
        if len(results) >= max_results:
            break
        count = counts.get(item.source_id, 0)
        if count < per_source_cap:
            results.append(item)
            admitted.add(idx)
            counts[item.source_id] = count + 1

    for idx, item in enumerate(scored):
        if len(results) >= max_results:
            break
        if idx not in admitted:
            results.append(item)
            admitted.add(idx)
    return results


def rank_units(
    query: str,
    units: Sequence[Document | Chunk],
    query_embedding: Sequence[float] | None,
    config: SearchConfig,
) -> list[ScoredUnit]:
    scored = [score_unit(query, unit, query_embedding, config) for unit in units]
    # sorted() is stable, so ties keep candidate order.
    ranked = sorted(scored, key=lambda item: item.score, reverse=True)
    return diversify(ranked, config.max_results)
