import math

from hybrid_rag.llm_client import MockOfflineClient
from hybrid_rag.models import Chunk, Document, ScoredUnit
from hybrid_rag.retrieval import (
    EXACT_PHRASE_SCORE,
    SearchConfig,
    VectorShapeError,
    cosine_similarity,
    diversify,
    highlight_keywords,
    keyword_score,
    rank_units,
    score_unit,
)


def _chunk(doc_id: str, index: int, text: str = "text") -> Chunk:
    return Chunk(
        id=f"{doc_id}{index:015d}",
        document_id=doc_id,
        text=text,
        start_offset=0,
        end_offset=len(text),
        chunk_index=index,
        total_chunks=3,
    )


def _scored(unit, score: float) -> ScoredUnit:
    return ScoredUnit(unit=unit, score=score)


def test_cosine_similarity_basics() -> None:
    a = [0.3, -1.2, 4.0]
    assert abs(cosine_similarity(a, a) - 1.0) < 1e-9
    assert cosine_similarity([0.0, 0.0, 0.0], a) == 0.0
    assert cosine_similarity(a, [0.0, 0.0, 0.0]) == 0.0
    assert abs(cosine_similarity([1.0, 0.0], [0.0, 1.0])) < 1e-12
    assert abs(cosine_similarity([1.0, 0.0], [-1.0, 0.0]) + 1.0) < 1e-12


def test_cosine_similarity_rejects_mismatched_lengths() -> None:
    try:
        cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])
        raise AssertionError("Expected VectorShapeError.")
    except VectorShapeError as exc:
        assert "same length" in str(exc)


def test_keyword_score_exact_phrase_bonus() -> None:
    assert keyword_score("API Timeout", "the api timeout is 30s") == EXACT_PHRASE_SCORE
    assert keyword_score("apple", "An APPLE a day") == 10.0


def test_keyword_score_term_frequency() -> None:
    score = keyword_score("apple banana", "apple pie with apple")
    assert abs(score - 2 / math.log(5)) < 1e-12
    assert keyword_score("kiwi", "apple pie") == 0.0
    assert keyword_score("kiwi", "") == 0.0


def test_highlight_exact_match_with_context() -> None:
    text = "x" * 80 + " the API timeout setting " + "y" * 80
    highlights = highlight_keywords("api timeout", text)
    assert len(highlights) == 1
    assert highlights[0].startswith("...")
    assert highlights[0].endswith("...")
    assert "API timeout" in highlights[0]
    assert len(highlights[0]) == 3 + 50 + len("api timeout") + 50 + 3


def test_highlight_first_token_only_and_none() -> None:
    text = "Bananas are yellow. Apples are red and crunchy and they grow on trees in orchards."
    idx = text.find("Apples")
    assert highlight_keywords("apples bananas", text) == [text[: idx + 6 + 30] + "..."]
    assert highlight_keywords("kiwi", text) == []


def test_hybrid_scenario_exact_phrase_ranks_first() -> None:
    embedder = MockOfflineClient()
    texts = [
        "The API timeout is configured in settings.",
        "Authentication requires a JWT token.",
        "Set timeout to 30s for API calls.",
    ]
    units = [Document(id=str(i), text=t, embedding=embedder.embed(t)) for i, t in enumerate(texts, 1)]
    config = SearchConfig(max_results=3, enable_hybrid_search=True, embedding_weight=0.5)
    results = rank_units("API timeout", units, embedder.embed("API timeout"), config)
    assert results[0].id == "1"
    assert results[0].keyword_score == 10.0
    assert results[0].highlights
    assert "API timeout" in results[0].highlights[0]


def test_pure_embedding_mode_ignores_keywords() -> None:
    unit = Document(id="1", text="api timeout", embedding=[1.0, 0.0])
    config = SearchConfig(enable_hybrid_search=False)
    scored = score_unit("api timeout", unit, [0.0, 1.0], config)
    assert scored.score == 0.0
    assert scored.keyword_score == 0.0
    assert scored.highlights == []


def test_missing_embedding_scores_zero_similarity() -> None:
    unit = Document(id="1", text="nothing relevant")
    scored = score_unit("query", unit, [1.0, 0.0], SearchConfig(embedding_weight=0.7))
    assert scored.embedding_score == 0.0
    assert scored.score == 0.0


def test_weight_one_is_pure_embedding() -> None:
    unit = Document(id="1", text="api timeout", embedding=[1.0, 0.0])
    scored = score_unit("api timeout", unit, [1.0, 0.0], SearchConfig(embedding_weight=1.0))
    assert abs(scored.score - 1.0) < 1e-12


def test_diversify_caps_one_document_and_keeps_other_sources() -> None:
    a = [_scored(_chunk("A", i), 0.9 - i * 0.01) for i in range(3)]
    b = _scored(_chunk("B", 0), 0.5)
    c = _scored(Document(id="C", text="whole"), 0.4)
    results = diversify(a + [b, c], 4)
    assert len(results) == 4
    assert sum(1 for r in results if r.source_id == "A") == 2
    assert b in results
    assert c in results


def test_diversify_backfills_when_sources_run_out() -> None:
    a = [_scored(_chunk("A", i), 0.9 - i * 0.01) for i in range(3)]
    b = _scored(_chunk("B", 0), 0.5)
    results = diversify(a + [b], 4)
    assert [r.id for r in results] == [a[0].id, a[1].id, b.id, a[2].id]


def test_diversify_does_not_mutate_input() -> None:
    items = [_scored(_chunk("A", i), 1.0) for i in range(3)]
    before = list(items)
    diversify(items, 2)
    assert items == before


def test_rank_units_breaks_ties_by_candidate_order() -> None:
    units = [Document(id=str(i), text="same text") for i in range(5)]
    config = SearchConfig(max_results=5)
    first = [r.id for r in rank_units("other", units, None, config)]
    second = [r.id for r in rank_units("other", units, None, config)]
    assert first == ["0", "1", "2", "3", "4"]
    assert first == second
