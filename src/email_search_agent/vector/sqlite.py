"""Vector store keeping vectors on the repository rows.

Search is a linear cosine scan over one user's searchable rows, which is fine
for a personal mailbox. Use the Qdrant backend for larger archives.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog

from email_search_agent.embeddings.base import cosine_similarity
from email_search_agent.exceptions import VectorStoreError
from email_search_agent.index import EmailRepository
from email_search_agent.models import PendingItem, SearchResult, TextChunk, VectorStats
from email_search_agent.vector.base import VectorStore, rank_results

logger = structlog.get_logger()


class SQLiteVectorStore(VectorStore):
    def __init__(self, repository: EmailRepository) -> None:
        self._repository = repository

    def save_embedding(
        self,
        email_id: str,
        embedding: list[float],
        chunks: list[TextChunk],
        metadata: dict[str, Any] | None = None,
    ) -> datetime:
        if not embedding:
            raise VectorStoreError(f"Refusing to store an empty embedding for {email_id}")

        vectorized_at = self._repository.save_embedding(email_id, list(embedding), chunks, metadata)
        if vectorized_at is None:
            raise VectorStoreError(f"Unknown email id {email_id}")
        return vectorized_at

    def search(
        self,
        query_embedding: list[float],
        limit: int,
        threshold: float,
        user_id: str,
    ) -> list[SearchResult]:
        if limit <= 0:
            return []

        hits: list[SearchResult] = []
        skipped = 0
        for email in self._repository.iter_vectorized(user_id):
            if not email.embedding or len(email.embedding) != len(query_embedding):
                skipped += 1
                continue
            similarity = cosine_similarity(query_embedding, email.embedding)
            if similarity < threshold:
                continue
            hits.append(
                SearchResult(
                    id=email.id,
                    similarity=similarity,
                    sent_at=email.sent_at,
                    chunks=email.text_chunks,
                    metadata={
                        "external_id": email.external_id,
                        "thread_id": email.thread_id,
                        "subject": email.subject,
                        "sender": email.sender,
                        **email.metadata,
                    },
                )
            )

        if skipped:
            logger.warning("vector_search_dimension_mismatch", user_id=user_id, skipped=skipped)

        return rank_results(hits, limit)

    def get_pending_vectorization(
        self,
        user_id: str,
        limit: int = 100,
        exclude_ids: Iterable[str] = (),
    ) -> list[PendingItem]:
        return self._repository.pending_vectorization(user_id, limit, exclude_ids)

    def stats(self, user_id: str) -> VectorStats:
        return self._repository.vectorization_stats(user_id)

    def clear_embedding(self, email_id: str) -> bool:
        return self._repository.clear_embedding(email_id)
