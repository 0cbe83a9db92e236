"""Vector stores: embedding persistence and similarity search."""

from __future__ import annotations

from email_search_agent.config import Settings
from email_search_agent.index import EmailRepository
from email_search_agent.vector.base import VectorStore, rank_results
from email_search_agent.vector.qdrant import QdrantVectorStore
from email_search_agent.vector.sqlite import SQLiteVectorStore


def create_vector_store(
    settings: Settings,
    repository: EmailRepository,
    vector_size: int,
    vector_version: str | None = None,
) -> VectorStore:
    """Build the backend selected by ``settings.vector_backend``."""

    if settings.vector_backend == "qdrant":
        store = QdrantVectorStore.from_url(
            repository,
            settings.qdrant_url,
            settings.qdrant_collection,
            vector_size,
            vector_version,
        )
        store.ensure_collection()
        return store
    return SQLiteVectorStore(repository)


__all__ = [
    "QdrantVectorStore",
    "SQLiteVectorStore",
    "VectorStore",
    "create_vector_store",
    "rank_results",
]
