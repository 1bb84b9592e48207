"""End-to-end hybrid search and validated RAG."""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from hybrid_rag.chunker import ChunkOptions
from hybrid_rag.config import RAG_MAX_ATTEMPTS, RAG_MAX_RESULTS
from hybrid_rag.embedding_cache import EmbeddingCache
from hybrid_rag.grounding import (
    SAFE_REFUSAL,
    apply_policy,
    quick_validate,
    validate_with_attribution,
)
from hybrid_rag.ingest import build_units, load_dataset, load_documents, load_system_prompt
from hybrid_rag.llm_client import LLMClient
from hybrid_rag.models import (
    Chunk,
    Document,
    QuickValidation,
    ScoredUnit,
    SourceRef,
    ValidatedRAGResult,
    ValidationResult,
)
from hybrid_rag.prompts import DEFAULT_SYSTEM_PROMPT, build_rag_prompt
from hybrid_rag.retrieval import SearchConfig, rank_units

log = logging.getLogger(__name__)

NO_RESULTS_RESPONSE = "I cannot answer this question as no relevant documents were found."


@dataclass
class CorpusIndex:
    dataset: str
    units: list[Document | Chunk]
    provider: str
    model: str


class SearchMemo:
    """Per-process memo of search results, keyed by index namespace, query and config."""

    def __init__(self, max_entries: int | None = None) -> None:
        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str, str, str, str], list[ScoredUnit]] = OrderedDict()

    @staticmethod
    def key(index: CorpusIndex, query: str, config: SearchConfig) -> tuple[str, str, str, str, str]:
        return index.dataset, index.provider, index.model, query, config.model_dump_json()

    def get_or_compute(
        self,
        index: CorpusIndex,
        query: str,
        config: SearchConfig,
        compute: Callable[[], list[ScoredUnit]],
    ) -> list[ScoredUnit]:
        key = self.key(index, query, config)
        if key in self._entries:
            return self._entries[key]
        results = compute()
        self._entries[key] = results
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
        return results

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def index_units(
    dataset: str,
    units: list[Document | Chunk],
    embedder: LLMClient,
    cache: EmbeddingCache | None = None,
) -> CorpusIndex:
    provider, model = embedder.provider, embedder.embedding_model
    if cache is not None:
        cached = cache.load_into(units, provider, model)
        created = cache.embed_missing(units, provider, model, embedder.embed)
        log.info("Embeddings: %d loaded from cache, %d newly created", cached, created)
    else:
        for unit in units:
            if unit.embedding is None:
                unit.embedding = embedder.embed(unit.text)
    return CorpusIndex(dataset=dataset, units=units, provider=provider, model=model)


def build_index(
    dataset: str,
    embedder: LLMClient,
    config: SearchConfig | None = None,
    cache: EmbeddingCache | None = None,
) -> CorpusIndex:
    cfg = config or SearchConfig()
    documents = load_dataset(dataset)
    units = build_units(
        documents,
        ChunkOptions(
            max_tokens=cfg.max_tokens_per_chunk,
            overlap_tokens=cfg.overlap_tokens,
            preserve_sentences=cfg.preserve_sentences,
        ),
    )
    log.info("Loaded %d documents as %d units from %s", len(documents), len(units), dataset)
    return index_units(dataset, units, embedder, cache or EmbeddingCache.for_dataset(dataset))


def build_index_from_paths(
    document_paths: list[str],
    embedder: LLMClient,
    config: SearchConfig | None = None,
    cache: EmbeddingCache | None = None,
    dataset: str = "paths",
) -> CorpusIndex:
    """Index loose files (pdf/txt/md/rst). Embeddings stay in memory unless a cache is given."""
    cfg = config or SearchConfig()
    documents = load_documents(document_paths)
    units = build_units(
        [doc for doc in documents if doc.text],
        ChunkOptions(
            max_tokens=cfg.max_tokens_per_chunk,
            overlap_tokens=cfg.overlap_tokens,
            preserve_sentences=cfg.preserve_sentences,
        ),
    )
    if not units:
        raise ValueError("No text was extracted from the provided documents.")
    log.info("Loaded %d files as %d units", len(documents), len(units))
    return index_units(dataset, units, embedder, cache)


def search(
    index: CorpusIndex,
    query: str,
    embedder: LLMClient,
    config: SearchConfig | None = None,
    memo: SearchMemo | None = None,
) -> list[ScoredUnit]:
    cfg = config or SearchConfig()

    def compute() -> list[ScoredUnit]:
        return rank_units(query, index.units, embedder.embed(query), cfg)

    if memo is None:
        return compute()
    return memo.get_or_compute(index, query, cfg, compute)


def render_context(results: list[ScoredUnit]) -> str:
    return "\n\n".join(
        f"[Document {idx}]: {item.text}" for idx, item in enumerate(results, start=1)
    )


def _sources(results: list[ScoredUnit]) -> list[SourceRef]:
    return [SourceRef(id=item.unit.label, text=item.text, score=item.score) for item in results]


def validated_rag(
    index: CorpusIndex,
    query: str,
    llm: LLMClient,
    embedder: LLMClient,
    *,
    max_results: int = RAG_MAX_RESULTS,
    strict_mode: bool = False,
    require_attribution: bool = True,
    system_prompt: str | None = None,
    memo: SearchMemo | None = None,
) -> ValidatedRAGResult:
    results = search(index, query, embedder, SearchConfig(max_results=max_results), memo)
    if not results:
        return ValidatedRAGResult(
            response=NO_RESULTS_RESPONSE,
            sources=[],
            validation=ValidationResult(
                is_grounded=True,
                confidence=1.0,
                recommendation="accept",
            ),
            quick_validation=QuickValidation(suspicious_keywords=[], confidence=1.0),
            status="accepted",
        )

    if system_prompt is None:
        system_prompt = load_system_prompt(index.dataset) or DEFAULT_SYSTEM_PROMPT
    prompt = build_rag_prompt(system_prompt, render_context(results), query)
    response = llm.complete(prompt)

    quick = quick_validate(response)
    validation = validate_with_attribution(query, response, results, llm)
    status = apply_policy(
        validation,
        strict_mode=strict_mode,
        require_attribution=require_attribution,
    )
    if quick.suspicious_keywords:
        log.info("Answer uses hedge phrases: %s", ", ".join(quick.suspicious_keywords))

    return ValidatedRAGResult(
        response=SAFE_REFUSAL if status == "rejected" and strict_mode else response,
        sources=_sources(results),
        validation=validation,
        quick_validation=quick,
        status=status,
    )


def robust_validated_rag(
    index: CorpusIndex,
    query: str,
    llm: LLMClient,
    embedder: LLMClient,
    max_attempts: int = RAG_MAX_ATTEMPTS,
    system_prompt: str | None = None,
) -> ValidatedRAGResult:
    """Retry with more context on each attempt; only the last attempt is strict."""
    last: ValidatedRAGResult | None = None
    for attempt in range(1, max_attempts + 1):
        result = validated_rag(
            index,
            query,
            llm,
            embedder,
            max_results=min(3 + attempt, 10),
            strict_mode=attempt == max_attempts,
            require_attribution=True,
            system_prompt=system_prompt,
        )
        if result.status == "accepted":
            return result
        log.info("Attempt %d %s, trying with more context...", attempt, result.status)
        last = result

    if last is not None:
        return last
    return ValidatedRAGResult(
        response="Unable to generate a reliable response after multiple attempts.",
        sources=[],
        validation=ValidationResult(
            is_grounded=False,
            confidence=0.0,
            concerns=["Multiple validation failures"],
            recommendation="reject",
        ),
        quick_validation=QuickValidation(suspicious_keywords=[], confidence=0.0),
        status="rejected",
    )
