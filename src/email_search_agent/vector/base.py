"""Abstract base class for vector store backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog

from email_search_agent.exceptions import EmailSearchError, VectorStoreBatchError
from email_search_agent.models import (
    EmbeddingRecord,
    PendingItem,
    SearchResult,
    TextChunk,
    VectorStats,
)

logger = structlog.get_logger()


def rank_results(results: Iterable[SearchResult], limit: int) -> list[SearchResult]:
    """Similarity descending; equal scores put the most recent message first."""

    def key(r: SearchResult) -> tuple[float, float]:
        ts = r.sent_at.timestamp() if r.sent_at else float("-inf")
        return (-r.similarity, -ts)

    return sorted(results, key=key)[:limit]


class VectorStore(ABC):
    """Abstract interface for embedding storage and similarity search.

    Implementations raise :class:`~email_search_agent.exceptions.VectorStoreError`
    (or :class:`~email_search_agent.exceptions.PersistenceError`) when the
    backend fails.
    """

    @abstractmethod
    def save_embedding(
        self,
        email_id: str,
        embedding: list[float],
        chunks: list[TextChunk],
        metadata: dict[str, Any] | None = None,
    ) -> datetime:
        """Upsert the embedding of one email; returns its ``vectorized_at``."""
        ...

    def batch_save_embeddings(self, items: list[EmbeddingRecord]) -> list[str]:
        """Upsert each item independently.

        Every item is attempted even after a failure.

        Returns:
            Ids saved, in input order.

        Raises:
            VectorStoreBatchError: If any item failed; carries failed and saved
                ids, and which failures are worth retrying.
        """
        saved: list[str] = []
        failed: list[str] = []
        transient: list[str] = []
        first_error: EmailSearchError | None = None

        for item in items:
            try:
                self.save_embedding(item.id, item.embedding, item.chunks, item.metadata)
            except EmailSearchError as e:
                logger.warning("embedding_save_failed", email_id=item.id, error=str(e))
                failed.append(item.id)
                if e.is_transient:
                    transient.append(item.id)
                first_error = first_error or e
            else:
                saved.append(item.id)

        if failed:
            raise VectorStoreBatchError(failed, saved, str(first_error), transient)
        return saved

    @abstractmethod
    def search(
        self,
        query_embedding: list[float],
        limit: int,
        threshold: float,
        user_id: str,
    ) -> list[SearchResult]:
        """Nearest neighbours for ``user_id`` with similarity >= ``threshold``."""
        ...

    @abstractmethod
    def get_pending_vectorization(
        self,
        user_id: str,
        limit: int = 100,
        exclude_ids: Iterable[str] = (),
    ) -> list[PendingItem]:
        """Unfiltered, non-deleted rows without an embedding, oldest first."""
        ...

    @abstractmethod
    def stats(self, user_id: str) -> VectorStats:
        """Vectorization progress for ``user_id``."""
        ...

    @abstractmethod
    def clear_embedding(self, email_id: str) -> bool:
        """Drop an email's embedding so it is re-vectorized later."""
        ...
