import json

from hybrid_rag.embedding_cache import EmbeddingCache, content_hash, safe_model_name
from hybrid_rag.llm_client import ConfigurationError
from hybrid_rag.models import Document


def test_safe_model_name_replaces_and_collapses() -> None:
    assert safe_model_name("text-embedding-3-small") == "text-embedding-3-small"
    assert safe_model_name("org/model:v1") == "org-model-v1"
    assert safe_model_name("a//b::c") == "a-b-c"
    assert safe_model_name("nomic embed_v1.5") == "nomic-embed_v1.5"


def test_store_then_load_round_trip(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    vector = [0.1, -0.2, 0.3]
    cache.store("hello world", vector, "openai", "text-embedding-3-small")
    loaded = cache.load_cached(["hello world"], "openai", "text-embedding-3-small")
    assert loaded == {"hello world": vector}


def test_entry_layout_and_file_format(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    path = cache.store("some text", [1.0, 2.0], "lmstudio", "org/model:v1")
    assert path == tmp_path / "lmstudio" / "org-model-v1" / f"{content_hash('some text')}.json"

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["contentHash"] == content_hash("some text")
    assert payload["text"] == "some text"
    assert payload["embedding"] == [1.0, 2.0]
    assert payload["model"] == "org/model:v1"
    assert payload["provider"] == "lmstudio"
    assert payload["cacheKey"] == {
        "contentHash": content_hash("some text"),
        "model": "org/model:v1",
        "provider": "lmstudio",
    }
    assert "createdAt" in payload
    assert list(path.parent.glob("*.tmp")) == []


def test_changed_text_never_returns_old_vector(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    cache.store("version one", [1.0, 0.0], "openai", "m")
    assert cache.load_cached(["version two"], "openai", "m") == {}


def test_provider_and_model_are_isolated(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    cache.store("text", [1.0], "openai", "model-a")
    assert cache.load_cached(["text"], "openai", "model-b") == {}
    assert cache.load_cached(["text"], "lmstudio", "model-a") == {}


def test_models_sharing_a_safe_name_do_not_cross_load(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    cache.store("text", [1.0], "openai", "org/model")
    assert cache.load_cached(["text"], "openai", "org:model") == {}
    assert cache.load_cached(["text"], "openai", "org/model") == {"text": [1.0]}


def test_integrity_mismatch_is_a_miss(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    path = cache.store("text", [1.0], "openai", "m")
    payload = json.loads(path.read_text(encoding="utf-8"))
    payload["cacheKey"]["provider"] = "lmstudio"
    path.write_text(json.dumps(payload), encoding="utf-8")
    assert cache.load_cached(["text"], "openai", "m") == {}


def test_corrupt_entry_is_a_miss(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    path = cache.store("text", [1.0], "openai", "m")
    path.write_text('{"contentHash": "abc", "text": ', encoding="utf-8")
    assert cache.load_cached(["text"], "openai", "m") == {}


def test_store_refuses_empty_vector(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    try:
        cache.store("text", [], "openai", "m")
        raise AssertionError("Expected ValueError for empty vector.")
    except ValueError as exc:
        assert "empty" in str(exc)
    assert not (tmp_path / "openai").exists()


def test_invalid_provider_is_configuration_error(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    for provider in ("", "../escape", "a/b"):
        try:
            cache.store("text", [1.0], provider, "m")
            raise AssertionError("Expected ConfigurationError.")
        except ConfigurationError as exc:
            assert "AI_EMBEDDING_PROVIDER" in str(exc)
    try:
        cache.load_cached(["text"], "openai", "")
        raise AssertionError("Expected ConfigurationError.")
    except ConfigurationError as exc:
        assert "AI_EMBEDDING_MODEL" in str(exc)


def test_clear_scopes(tmp_path) -> None:
    root = tmp_path / "embeddings"
    cache = EmbeddingCache(root)
    cache.store("a", [1.0], "openai", "m1")
    cache.store("b", [1.0], "openai", "m2")
    cache.store("c", [1.0], "lmstudio", "m1")

    assert cache.clear("openai", "m1") == 1
    assert cache.load_cached(["a"], "openai", "m1") == {}
    assert cache.load_cached(["b"], "openai", "m2") == {"b": [1.0]}

    assert cache.clear("openai") == 1
    assert cache.load_cached(["c"], "lmstudio", "m1") == {"c": [1.0]}

    assert cache.clear() == 1
    assert not root.exists()
    assert cache.clear() == 0


def test_clear_model_without_provider_is_rejected(tmp_path) -> None:
    try:
        EmbeddingCache(tmp_path).clear(model="m1")
        raise AssertionError("Expected ValueError.")
    except ValueError as exc:
        assert "provider" in str(exc)


def test_list_namespaces_counts_entries(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    cache.store("a", [1.0], "openai", "m1")
    cache.store("b", [1.0], "openai", "m1")
    cache.store("c", [1.0], "lmstudio", "org/x")
    inventory = [(ns.provider, ns.model_dir, ns.entries) for ns in cache.list_namespaces()]
    assert inventory == [("lmstudio", "org-x", 1), ("openai", "m1", 2)]
    assert EmbeddingCache(tmp_path / "missing").list_namespaces() == []


def test_embed_missing_stores_each_vector_and_skips_cached(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)
    calls: list[str] = []

    def embed(text: str) -> list[float]:
        calls.append(text)
        return [float(len(text)), 1.0]

    units = [Document(id="1", text="alpha"), Document(id="2", text="beta gamma")]
    assert cache.embed_missing(units, "mock", "hash", embed) == 2
    assert calls == ["alpha", "beta gamma"]
    assert units[0].embedding == [5.0, 1.0]

    fresh = [Document(id="1", text="alpha"), Document(id="2", text="beta gamma")]
    assert cache.load_into(fresh, "mock", "hash") == 2
    assert cache.embed_missing(fresh, "mock", "hash", embed) == 0
    assert len(calls) == 2
    assert fresh[1].embedding == [10.0, 1.0]


def test_failed_embed_leaves_no_entry(tmp_path) -> None:
    cache = EmbeddingCache(tmp_path)

    def embed(text: str) -> list[float]:
        if text == "boom":
            raise RuntimeError("provider timeout")
        return [1.0, 2.0]

    units = [Document(id="1", text="ok"), Document(id="2", text="boom")]
    try:
        cache.embed_missing(units, "mock", "hash", embed)
        raise AssertionError("Expected RuntimeError from embed function.")
    except RuntimeError as exc:
        assert "timeout" in str(exc)

    assert cache.load_cached(["ok", "boom"], "mock", "hash") == {"ok": [1.0, 2.0]}
    assert units[1].embedding is None
