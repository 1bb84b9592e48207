"""Provider-agnostic language model clients for embeddings and completions."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, Protocol

log = logging.getLogger(__name__)

KNOWN_PROVIDERS = ("openai", "lmstudio", "sentence_transformer", "mock")


class LLMServiceError(RuntimeError):
    """Raised when an LLM call fails after retries."""


class ConfigurationError(ValueError):
    """Missing or invalid provider configuration. Never retried."""

    def __init__(self, message: str, variable: str, example: str | None = None) -> None:
        full = f"Configuration Error: {message}\nMissing or invalid environment variable: {variable}\n"
        if example:
            full += f"Example: {variable}={example}\n"
        full += "Please check your .env file or environment variables."
        super().__init__(full)
        self.variable = variable


class LanguageModel(Protocol):
    provider: str

    def embed(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]: ...

    def complete(
        self,
        prompt: str,
        *,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str: ...


@dataclass(frozen=True)
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int


def _is_offline() -> bool:
    from hybrid_rag.config import OFFLINE_MODE

    return os.getenv("OFFLINE_MODE", "1" if OFFLINE_MODE else "0").strip().lower() in {
        "1",
        "true",
        "yes",
    }


class HashEmbedder:
    """Deterministic offline embedder that requires no network or model downloads."""

    def __init__(self, dim: int | None = None) -> None:
        from hybrid_rag.config import HASH_EMBED_DIM

        self._dim = max(64, dim or HASH_EMBED_DIM)

    def encode(self, texts: list[str]) -> list[list[float]]:
        matrix = [[0.0 for _ in range(self._dim)] for _ in texts]
        for row, text in enumerate(texts):
            for token in re.findall(r"\w+", text.lower()):
                digest = hashlib.sha256(token.encode("utf-8")).digest()
                idx = int.from_bytes(digest[:2], "big") % self._dim
                sign = 1.0 if digest[2] % 2 == 0 else -1.0
                matrix[row][idx] += sign
        return matrix


class LLMClient:
    """Base class for providers. Subclasses implement ``generate`` and/or ``embed``."""

    provider: str = "base"
    model: str = ""
    embedding_model: str = ""
    _last_call_ts: float = 0.0

    def _throttle(self) -> None:
        from hybrid_rag.config import LLM_MIN_CALL_INTERVAL_S

        if LLM_MIN_CALL_INTERVAL_S <= 0:
            return
        elapsed = time.time() - self._last_call_ts
        if elapsed < LLM_MIN_CALL_INTERVAL_S:
            time.sleep(LLM_MIN_CALL_INTERVAL_S - elapsed)

    def _sleep_backoff(self, attempt: int) -> None:
        from hybrid_rag.config import LLM_BACKOFF_BASE_S, LLM_BACKOFF_MAX_S

        base = max(0.1, LLM_BACKOFF_BASE_S)
        max_wait = max(base, LLM_BACKOFF_MAX_S)
        wait = min(max_wait, base * (2**attempt))
        jitter = random.uniform(0.0, base)  # nosec B311
        time.sleep(wait + jitter)

    def _is_retryable_error(self, exc: Exception) -> tuple[bool, str]:
        name = exc.__class__.__name__
        status_code = getattr(exc, "status_code", None)
        body = str(exc).lower()
        retryable_status = {408, 409, 429, 500, 502, 503, 504}
        retryable_name_markers = (
            "RateLimitError",
            "APITimeoutError",
            "APIConnectionError",
            "InternalServerError",
        )

        if status_code in retryable_status:
            return True, f"status={status_code}"
        if any(marker in name for marker in retryable_name_markers):
            return True, name
        if "rate limit" in body or "too many requests" in body or "timeout" in body:
            return True, name
        return False, name

    def _call_with_retry(self, create: Callable, kwargs: dict):
        from hybrid_rag.config import LLM_MAX_RETRIES

        attempts = max(1, LLM_MAX_RETRIES + 1)
        for attempt in range(attempts):
            try:
                self._throttle()
                resp = create(**kwargs)
                self._last_call_ts = time.time()
                return resp
            except Exception as exc:
                retryable, reason = self._is_retryable_error(exc)
                if not retryable or attempt == attempts - 1:
                    raise LLMServiceError(
                        f"{self.__class__.__name__} failed after "
                        f"{attempt + 1}/{attempts} attempts: {exc}"
                    ) from exc
                log.warning(
                    "%s transient error (attempt %d/%d, reason=%s). Retrying...",
                    self.__class__.__name__,
                    attempt + 1,
                    attempts,
                    reason,
                )
                self._sleep_backoff(attempt)

        raise LLMServiceError(f"{self.__class__.__name__} failed unexpectedly.")

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        raise LLMServiceError(f"{self.provider} does not support completions.")

    def generate_json(
        self,
        prompt: str,
        *,
        system: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> dict:
        response = self.generate(
            prompt=prompt,
            system=system,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        text = response.text.strip()
        # Handles JSON wrapped in markdown fences.
        if text.startswith("```"):
            text = text.strip("`")
            text = re.sub(r"^json\s*", "", text).strip()
        return json.loads(text)

    def complete(
        self,
        prompt: str,
        *,
        system_prompt: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> str:
        return self.generate(
            prompt=prompt,
            system=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        ).text

    def embed(self, text: str) -> list[float]:
        raise LLMServiceError(f"{self.provider} does not support embeddings.")

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]


class OpenAIClient(LLMClient):
    provider = "openai"

    def __init__(
        self,
        model: str | None = None,
        embedding_model: str | None = None,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
    ) -> None:
        from openai import OpenAI

        from hybrid_rag.config import COMPLETION_MODEL, EMBEDDING_MODEL, OPENAI_API_KEY

        key = api_key or os.getenv("OPENAI_API_KEY", OPENAI_API_KEY)
        if not key:
            raise ConfigurationError(
                "OpenAI API key is required when using OpenAI provider",
                "OPENAI_API_KEY",
                "sk-your-openai-api-key-here",
            )
        self.model = model or COMPLETION_MODEL
        self.embedding_model = embedding_model or EMBEDDING_MODEL
        self._client = OpenAI(base_url=base_url, api_key=key)

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        from hybrid_rag.config import GENERATION_MAX_TOKENS, GENERATION_TEMPERATURE

        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature if temperature is not None else GENERATION_TEMPERATURE,
            "max_tokens": max_tokens or GENERATION_MAX_TOKENS,
        }
        resp = self._call_with_retry(self._client.chat.completions.create, kwargs)
        usage = resp.usage
        return LLMResponse(
            text=resp.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
        )

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        kwargs = {"model": self.embedding_model, "input": texts}
        resp = self._call_with_retry(self._client.embeddings.create, kwargs)
        rows = sorted(resp.data, key=lambda item: item.index)
        return [list(row.embedding) for row in rows]


class LMStudioClient(OpenAIClient):
    """OpenAI-compatible local server. The API key is ignored by LM Studio."""

    provider = "lmstudio"

    def __init__(self, model: str | None = None, embedding_model: str | None = None) -> None:
        from hybrid_rag.config import LMSTUDIO_BASE_URL

        base_url = os.getenv("LMSTUDIO_BASE_URL", LMSTUDIO_BASE_URL)
        if not base_url:
            raise ConfigurationError(
                "LMStudio base URL is required when using LMStudio provider",
                "LMSTUDIO_BASE_URL",
                "http://localhost:1234/v1",
            )
        super().__init__(model, embedding_model, base_url=base_url, api_key="lm-studio")


class SentenceTransformerClient(LLMClient):
    """Local embeddings only; completions are not available from this provider."""

    provider = "sentence_transformer"

    def __init__(self, embedding_model: str | None = None) -> None:
        from hybrid_rag.config import EMBEDDING_MODEL

        self.embedding_model = embedding_model or EMBEDDING_MODEL
        try:
            from sentence_transformers import SentenceTransformer

            self._encoder = SentenceTransformer(self.embedding_model)
        except Exception as exc:
            # Falls back to deterministic hash embeddings when local binary deps are broken.
            log.warning(
                "Falling back to hash embedder because sentence-transformers failed: %s",
                exc,
            )
            self.embedding_model = "hash"
            self._encoder = HashEmbedder()

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        matrix = self._encoder.encode(texts)
        if hasattr(matrix, "tolist"):
            matrix = matrix.tolist()
        return [list(row) for row in matrix]


class MockOfflineClient(LLMClient):
    provider = "mock"

    _CONTEXT_ROW = re.compile(
        r"\[Document (?P<n>\d+)\]:\s*(?P<text>.*?)"
        r"(?=\n\n\[Document \d+\]:|\n\n[A-Z ]+:|\Z)",
        re.DOTALL,
    )

    def __init__(self, model: str = "mock-chat", embedding_model: str = "hash") -> None:
        self.model = model
        self.embedding_model = embedding_model
        self._embedder = HashEmbedder()

    def _judgment(self) -> dict:
        return {
            "isGrounded": True,
            "confidence": 0.9,
            "concerns": [],
            "recommendation": "accept",
            "reasoning": "Offline deterministic judgment.",
        }

    def _answer(self, prompt: str) -> str:
        match = self._CONTEXT_ROW.search(prompt)
        if not match:
            return "The documents do not contain enough information to answer this question."
        words = " ".join(match.group("text").split()).split()
        return f"According to Document {match.group('n')}: " + " ".join(words[:24])

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        del system, temperature, max_tokens
        if '"isGrounded"' in prompt:
            text = json.dumps(self._judgment())
        else:
            text = self._answer(prompt)
        return LLMResponse(text=text, input_tokens=0, output_tokens=0)

    def embed(self, text: str) -> list[float]:
        return self._embedder.encode([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self._embedder.encode(texts)


def _build_client(provider: str, *, model: str | None, embedding_model: str | None) -> LLMClient:
    if provider == "openai":
        return OpenAIClient(model, embedding_model)
    if provider == "lmstudio":
        return LMStudioClient(model, embedding_model)
    if provider == "sentence_transformer":
        return SentenceTransformerClient(embedding_model)
    if provider == "mock":
        return MockOfflineClient()
    raise ConfigurationError(
        f"Invalid provider: {provider!r}. Must be one of: {', '.join(KNOWN_PROVIDERS)}",
        "AI_COMPLETION_PROVIDER / AI_EMBEDDING_PROVIDER",
        "openai",
    )


def get_llm_client() -> LLMClient:
    """Client used for completions (answer generation and grounding judgments)."""
    from hybrid_rag.config import COMPLETION_MODEL, COMPLETION_PROVIDER

    if _is_offline():
        return MockOfflineClient()
    provider = os.getenv("AI_COMPLETION_PROVIDER", COMPLETION_PROVIDER).strip().lower()
    model = os.getenv("AI_COMPLETION_MODEL", COMPLETION_MODEL).strip()
    if not model:
        raise ConfigurationError(
            "Completion model must be specified", "AI_COMPLETION_MODEL", "gpt-4o-mini"
        )
    if provider == "sentence_transformer":
        raise ConfigurationError(
            "sentence_transformer cannot generate completions",
            "AI_COMPLETION_PROVIDER",
            "openai",
        )
    return _build_client(provider, model=model, embedding_model=None)


def get_embedding_client() -> LLMClient:
    """Client used for document and query embeddings."""
    from hybrid_rag.config import EMBEDDING_MODEL, EMBEDDING_PROVIDER

    if _is_offline():
        return MockOfflineClient()
    provider = os.getenv("AI_EMBEDDING_PROVIDER", EMBEDDING_PROVIDER).strip().lower()
    model = os.getenv("AI_EMBEDDING_MODEL", EMBEDDING_MODEL).strip()
    if not model:
        raise ConfigurationError(
            "Embedding model must be specified",
            "AI_EMBEDDING_MODEL",
            "text-embedding-3-small",
        )
    return _build_client(provider, model=None, embedding_model=model)
