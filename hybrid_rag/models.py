"""Shared data models for the hybrid retrieval pipeline."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Recommendation = Literal["accept", "flag", "reject"]
Status = Literal["accepted", "flagged", "rejected"]


class Document(BaseModel):
    kind: Literal["document"] = "document"
    id: str
    text: str
    embedding: list[float] | None = None

    @property
    def source_id(self) -> str:
        return self.id

    @property
    def label(self) -> str:
        return self.id


class Chunk(BaseModel):
    kind: Literal["chunk"] = "chunk"
    id: str = Field(..., description="Content-derived id, 16 hex chars.")
    document_id: str
    text: str
    start_offset: int = Field(..., description="Best-effort offset into the source text.")
    end_offset: int
    chunk_index: int
    total_chunks: int
    embedding: list[float] | None = None

    @property
    def source_id(self) -> str:
        return self.document_id

    @property
    def label(self) -> str:
        return f"{self.document_id}-chunk-{self.chunk_index}"


Unit = Annotated[Union[Document, Chunk], Field(discriminator="kind")]


class ScoredUnit(BaseModel):
    unit: Unit
    score: float
    embedding_score: float = 0.0
    keyword_score: float = 0.0
    highlights: list[str] = Field(default_factory=list)

    @property
    def id(self) -> str:
        return self.unit.id

    @property
    def text(self) -> str:
        return self.unit.text

    @property
    def source_id(self) -> str:
        return self.unit.source_id

    @property
    def embedding(self) -> list[float] | None:
        return self.unit.embedding


class CacheKey(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    content_hash: str
    model: str
    provider: str


class CachedEmbedding(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    content_hash: str
    text: str
    embedding: list[float]
    created_at: datetime
    model: str
    provider: str
    cache_key: CacheKey


class QuickValidation(BaseModel):
    suspicious_keywords: list[str]
    confidence: float


class ValidationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_grounded: bool
    confidence: float = Field(..., ge=0.0, le=1.0)
    concerns: list[str] = Field(default_factory=list)
    recommendation: Recommendation
    has_source_attribution: bool = False


class SourceRef(BaseModel):
    id: str
    text: str
    score: float


class ValidatedRAGResult(BaseModel):
    response: str
    sources: list[SourceRef]
    validation: ValidationResult
    quick_validation: QuickValidation
    status: Status
