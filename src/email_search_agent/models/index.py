"""Index-side models: what the pipeline persists and returns."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FilterReason(str, Enum):
    """Why a message was excluded from embedding and search."""

    NONE = "none"
    MARKETING = "marketing"
    AUTOMATED = "automated"
    PROCESSING_ERROR = "processing_error"


class TextChunk(BaseModel):
    """A bounded segment of normalized text sized for embedding."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    content: str
    is_complete: bool = Field(description="True only for the final chunk of a text")


class SizeCheck(BaseModel):
    """Outcome of validating a text against the embedding size ceiling."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    reason: str | None = None


class Decision(BaseModel):
    """Dedup and filter decision for one fetched message."""

    model_config = ConfigDict(frozen=True)

    is_duplicate: bool = False
    is_filtered: bool = False
    filter_reason: FilterReason = FilterReason.NONE
    detail: str | None = Field(default=None, description="Human-readable explanation")


def email_row_id(user_id: str, external_id: str) -> str:
    """Deterministic internal id for a user's message."""

    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"email:{user_id}:{external_id}"))


class IndexedEmail(BaseModel):
    """A message plus its filtering and vectorization state."""

    id: str
    user_id: str
    external_id: str
    thread_id: str | None = None
    sender: str = ""
    recipients: list[str] = Field(default_factory=list)
    subject: str = ""
    sent_at: datetime
    folder_labels: list[str] = Field(default_factory=list)
    content: str = Field(default="", description="Normalized text that is (or will be) embedded")

    is_filtered: bool = False
    filter_reason: FilterReason = FilterReason.NONE
    filter_detail: str | None = None

    text_chunks: list[TextChunk] = Field(default_factory=list)
    embedding: list[float] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    vectorized_at: datetime | None = None

    embedding_attempts: int = 0
    last_error: str | None = None
    deleted_at: datetime | None = None

    @property
    def is_searchable(self) -> bool:
        return self.vectorized_at is not None and not self.is_filtered and self.deleted_at is None


class EmbeddingRecord(BaseModel):
    """One item of a batch embedding upsert."""

    id: str
    embedding: list[float]
    chunks: list[TextChunk] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PendingItem(BaseModel):
    """A row that passed filtering but has no embedding yet."""

    id: str
    external_id: str
    subject: str = ""
    content: str = ""
    sent_at: datetime
    embedding_attempts: int = 0


class SearchResult(BaseModel):
    """A single ranked search hit."""

    id: str
    similarity: float
    sent_at: datetime | None = None
    chunks: list[TextChunk] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class VectorStats(BaseModel):
    """Vectorization progress over unfiltered, non-deleted rows."""

    total: int = 0
    vectorized: int = 0
    pending: int = 0
