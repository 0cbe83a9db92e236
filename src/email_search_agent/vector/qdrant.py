"""Qdrant-backed vector store.

Vectors live in a Qdrant collection (one point per email, cosine distance);
row state such as ``vectorized_at`` and the chunk texts stays in the SQLite
repository so deduplication and pending lookups do not depend on Qdrant.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Any

import httpx
import structlog
from qdrant_client import QdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointIdsList,
    PointStruct,
    VectorParams,
)

from email_search_agent.exceptions import VectorStoreError, VectorStoreTransientError
from email_search_agent.index import EmailRepository
from email_search_agent.models import PendingItem, SearchResult, TextChunk, VectorStats
from email_search_agent.vector.base import VectorStore, rank_results

logger = structlog.get_logger()

# Extra candidates fetched so rows deleted or re-filtered since indexing can be dropped.
_OVERFETCH = 4

_TRANSPORT_ERRORS = (ResponseHandlingException, httpx.TransportError, TimeoutError, ConnectionError)


def _backend_error(action: str, e: Exception) -> VectorStoreError:
    """Map a client exception to a retryable or fatal store error."""
    message = f"Qdrant {action} failed: {e}"
    if isinstance(e, _TRANSPORT_ERRORS):
        return VectorStoreTransientError(message)
    if isinstance(e, UnexpectedResponse) and e.status_code is not None:
        if e.status_code == 429 or e.status_code >= 500:
            return VectorStoreTransientError(message)
    return VectorStoreError(message)


class QdrantVectorStore(VectorStore):
    def __init__(
        self,
        repository: EmailRepository,
        client: QdrantClient,
        collection_name: str,
        vector_size: int,
        vector_version: str | None = None,
    ) -> None:
        self._repository = repository
        self._client = client
        self.collection_name = collection_name
        self.vector_size = vector_size
        self.vector_version = vector_version

    @classmethod
    def from_url(
        cls,
        repository: EmailRepository,
        url: str,
        collection_name: str,
        vector_size: int,
        vector_version: str | None = None,
    ) -> QdrantVectorStore:
        try:
            client = QdrantClient(url=url)
        except Exception as e:
            raise VectorStoreError(f"Failed to connect to Qdrant at {url}: {e}") from e
        return cls(repository, client, collection_name, vector_size, vector_version)

    def ensure_collection(self) -> None:
        """Create the collection, or check that its vector size matches ours."""
        try:
            names = [c.name for c in self._client.get_collections().collections]
            if self.collection_name not in names:
                self._client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config=VectorParams(size=self.vector_size, distance=Distance.COSINE),
                )
                logger.info(
                    "qdrant_collection_created",
                    collection=self.collection_name,
                    size=self.vector_size,
                )
                return
            info = self._client.get_collection(self.collection_name)
        except Exception as e:
            raise VectorStoreError(f"Failed to initialize Qdrant: {e}") from e

        # Single unnamed vector config exposes .size; named vectors do not.
        size = getattr(info.config.params.vectors, "size", None)
        if size is not None and int(size) != int(self.vector_size):
            raise VectorStoreError(
                f"Qdrant collection '{self.collection_name}' has vector size {size}, but the "
                f"embedding provider produces {self.vector_size}. Recreate the collection or "
                "use an embedding model with matching dimensions."
            )

    def save_embedding(
        self,
        email_id: str,
        embedding: list[float],
        chunks: list[TextChunk],
        metadata: dict[str, Any] | None = None,
    ) -> datetime:
        if len(embedding) != self.vector_size:
            raise VectorStoreError(
                f"Embedding for {email_id} has size {len(embedding)}, expected {self.vector_size}"
            )

        email = self._repository.get_email(email_id)
        if email is None:
            raise VectorStoreError(f"Unknown email id {email_id}")

        payload: dict[str, Any] = {
            **(metadata or {}),
            "email_id": email.id,
            "user_id": email.user_id,
            "external_id": email.external_id,
            "sent_at_ts": email.sent_at.timestamp(),
        }
        if self.vector_version:
            payload["vector_version"] = self.vector_version

        try:
            self._client.upsert(
                collection_name=self.collection_name,
                points=[PointStruct(id=email.id, vector=list(embedding), payload=payload)],
            )
        except Exception as e:
            raise _backend_error("upsert", e) from e

        vectorized_at = self._repository.save_embedding(email_id, None, chunks, metadata)
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

        must = [FieldCondition(key="user_id", match=MatchValue(value=user_id))]
        if self.vector_version:
            must.append(
                FieldCondition(key="vector_version", match=MatchValue(value=self.vector_version))
            )

        try:
            response = self._client.query_points(
                collection_name=self.collection_name,
                query=list(query_embedding),
                query_filter=Filter(must=must),
                limit=limit * _OVERFETCH,
                score_threshold=threshold,
                with_payload=True,
            )
        except Exception as e:
            raise _backend_error("search", e) from e

        scores = {str(p.id): float(p.score) for p in response.points}
        rows = self._repository.get_emails(scores)

        hits: list[SearchResult] = []
        for email_id, score in scores.items():
            email = rows.get(email_id)
            if email is None or not email.is_searchable or score < threshold:
                continue
            hits.append(
                SearchResult(
                    id=email.id,
                    similarity=score,
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
        try:
            self._client.delete(
                collection_name=self.collection_name,
                points_selector=PointIdsList(points=[email_id]),
            )
        except Exception as e:
            raise _backend_error("delete", e) from e
        return self._repository.clear_embedding(email_id)
