"""Content-addressable embedding cache, isolated per provider and model.

Entries live at ``{root}/{provider}/{safe_model}/{sha256}.json``. The content hash
makes edits invalidate automatically, and the stored cache key guards against a
vector from another provider or model ever being loaded for the current lookup.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import shutil
import tempfile
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from pydantic import ValidationError

from hybrid_rag.config import embeddings_dir
from hybrid_rag.llm_client import ConfigurationError
from hybrid_rag.models import CachedEmbedding, CacheKey, Chunk, Document

log = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def safe_model_name(model: str) -> str:
    """Map a model id such as ``org/model:v1`` to a single path component."""
    return _HYPHEN_RUNS.sub("-", _UNSAFE_CHARS.sub("-", model))


def _check_provider(provider: str) -> str:
    if not provider or _UNSAFE_CHARS.search(provider) or provider in {".", ".."}:
        raise ConfigurationError(
            f"Invalid embedding provider identifier: {provider!r}",
            "AI_EMBEDDING_PROVIDER",
            "openai",
        )
    return provider


def _check_model(model: str) -> str:
    if not model or safe_model_name(model) in {".", ".."}:
        raise ConfigurationError(
            f"Invalid embedding model identifier: {model!r}",
            "AI_EMBEDDING_MODEL",
            "text-embedding-3-small",
        )
    return model


@dataclass(frozen=True)
class CacheNamespace:
    provider: str
    model_dir: str
    entries: int


class EmbeddingCache:
    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    @classmethod
    def for_dataset(cls, dataset: str) -> EmbeddingCache:
        return cls(embeddings_dir(dataset))

    def namespace_dir(self, provider: str, model: str) -> Path:
        return self.root / _check_provider(provider) / safe_model_name(_check_model(model))

    def entry_path(self, text: str, provider: str, model: str) -> Path:
        return self.namespace_dir(provider, model) / f"{content_hash(text)}.json"

    def _read_entry(self, path: Path) -> CachedEmbedding | None:
        try:
            return CachedEmbedding.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as exc:
            # Half-written or corrupt files are ordinary misses.
            log.debug("Ignoring unreadable cache entry %s: %s", path, exc)
            return None

    def load_cached(
        self,
        texts: Iterable[str],
        provider: str,
        model: str,
    ) -> dict[str, list[float]]:
        namespace = self.namespace_dir(provider, model)
        found: dict[str, list[float]] = {}
        for text in texts:
            if text in found:
                continue
            digest = content_hash(text)
            entry = self._read_entry(namespace / f"{digest}.json")
            if entry is None:
                continue
            expected = CacheKey(content_hash=digest, model=model, provider=provider)
            if entry.cache_key != expected or entry.content_hash != digest or entry.text != text:
                log.debug("Cache key mismatch for %s under %s/%s", digest, provider, model)
                continue
            found[text] = entry.embedding
        return found

    def store(self, text: str, vector: list[float], provider: str, model: str) -> Path:
        if not vector:
            raise ValueError("Refusing to cache an empty embedding vector.")
        namespace = self.namespace_dir(provider, model)
        namespace.mkdir(parents=True, exist_ok=True)

        digest = content_hash(text)
        entry = CachedEmbedding(
            content_hash=digest,
            text=text,
            embedding=[float(value) for value in vector],
            created_at=datetime.now(UTC),
            model=model,
            provider=provider,
            cache_key=CacheKey(content_hash=digest, model=model, provider=provider),
        )
        payload = json.dumps(entry.model_dump(mode="json", by_alias=True), indent=2)

        path = namespace / f"{digest}.json"
        fd, tmp_name = tempfile.mkstemp(dir=namespace, prefix=f".{digest}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return path

    def clear(self, provider: str | None = None, model: str | None = None) -> int:
        """Delete the whole cache, one provider, or one provider/model pair."""
        if model is not None and provider is None:
            raise ValueError("A model can only be cleared together with its provider.")
        if provider is None:
            target = self.root
        elif model is None:
            target = self.root / _check_provider(provider)
        else:
            target = self.namespace_dir(provider, model)

        if not target.exists():
            return 0
        removed = sum(1 for _ in target.rglob("*.json"))
        shutil.rmtree(target)
        log.info("Cleared %d cached embeddings under %s", removed, target)
        return removed

    def list_namespaces(self) -> list[CacheNamespace]:
        if not self.root.is_dir():
            return []
        namespaces: list[CacheNamespace] = []
        for provider_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for model_dir in sorted(p for p in provider_dir.iterdir() if p.is_dir()):
                namespaces.append(
                    CacheNamespace(
                        provider=provider_dir.name,
                        model_dir=model_dir.name,
                        entries=sum(1 for _ in model_dir.glob("*.json")),
                    )
                )
        return namespaces

    def load_into(self, units: list[Document | Chunk], provider: str, model: str) -> int:
        pending = [unit for unit in units if unit.embedding is None]
        cached = self.load_cached((unit.text for unit in pending), provider, model)
        loaded = 0
        for unit in pending:
            vector = cached.get(unit.text)
            if vector is not None:
                unit.embedding = list(vector)
                loaded += 1
        return loaded

    def embed_missing(
        self,
        units: list[Document | Chunk],
        provider: str,
        model: str,
        embed_fn: Callable[[str], list[float]],
    ) -> int:
        """
        Embed units that still lack a vector, one call at a time.

        Each vector is persisted before the next call, so a failure loses at most
        the in-flight item. Exceptions from ``embed_fn`` propagate unchanged.
        """
        pending = [unit for unit in units if unit.embedding is None]
        for unit in pending:
            vector = embed_fn(unit.text)
            self.store(unit.text, vector, provider, model)
            unit.embedding = list(vector)
        return len(pending)
