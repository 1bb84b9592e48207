"""Centralized configuration for the hybrid retrieval pipeline."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")

DATA_DIR = Path(os.getenv("DATA_DIR", str(PROJECT_ROOT / "data")))


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


def dataset_dir(dataset: str) -> Path:
    return DATA_DIR / dataset


def embeddings_dir(dataset: str) -> Path:
    return DATA_DIR / dataset / "embeddings"

# Provider configuration
COMPLETION_PROVIDER = os.getenv("AI_COMPLETION_PROVIDER", "openai")
COMPLETION_MODEL = os.getenv("AI_COMPLETION_MODEL", "gpt-4o-mini")
EMBEDDING_PROVIDER = os.getenv("AI_EMBEDDING_PROVIDER", "openai")
EMBEDDING_MODEL = os.getenv("AI_EMBEDDING_MODEL", "text-embedding-3-small")
OFFLINE_MODE = _flag("OFFLINE_MODE", "0")

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
LMSTUDIO_BASE_URL = os.getenv("LMSTUDIO_BASE_URL", "http://localhost:1234/v1")

# Generation and reliability
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.3"))
VALIDATION_TEMPERATURE = float(os.getenv("VALIDATION_TEMPERATURE", "0.0"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "1000"))
LLM_MAX_RETRIES = int(os.getenv("LLM_MAX_RETRIES", "4"))
LLM_BACKOFF_BASE_S = float(os.getenv("LLM_BACKOFF_BASE_S", "1.0"))
LLM_BACKOFF_MAX_S = float(os.getenv("LLM_BACKOFF_MAX_S", "15.0"))
LLM_MIN_CALL_INTERVAL_S = float(os.getenv("LLM_MIN_CALL_INTERVAL_S", "0.0"))

# Chunking
HASH_EMBED_DIM = int(os.getenv("HASH_EMBED_DIM", "384"))
CHUNK_MAX_TOKENS = int(os.getenv("CHUNK_MAX_TOKENS", "500"))
CHUNK_OVERLAP_TOKENS = int(os.getenv("CHUNK_OVERLAP_TOKENS", "100"))
CHUNK_PRESERVE_SENTENCES = _flag("CHUNK_PRESERVE_SENTENCES", "1")

# Search and validation
SEARCH_MAX_RESULTS = int(os.getenv("SEARCH_MAX_RESULTS", "2"))
EMBEDDING_WEIGHT = float(os.getenv("EMBEDDING_WEIGHT", "0.7"))
ENABLE_HYBRID_SEARCH = _flag("ENABLE_HYBRID_SEARCH", "1")
RAG_MAX_RESULTS = int(os.getenv("RAG_MAX_RESULTS", "3"))
RAG_MAX_ATTEMPTS = int(os.getenv("RAG_MAX_ATTEMPTS", "3"))
