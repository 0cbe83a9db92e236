"""Semantic search over a user's indexed mail."""

from __future__ import annotations

import asyncio

import structlog

from email_search_agent.config import Settings
from email_search_agent.embeddings.base import EmbeddingProvider
from email_search_agent.exceptions import ValidationError
from email_search_agent.models import SearchResult
from email_search_agent.vector.base import VectorStore

logger = structlog.get_logger()


class SemanticSearch:
    """Embeds a question and returns the closest emails with their chunks."""

    def __init__(
        self,
        embedder: EmbeddingProvider,
        vector_store: VectorStore,
        *,
        default_limit: int = 10,
        default_threshold: float = 0.7,
    ) -> None:
        self._embedder = embedder
        self._vector_store = vector_store
        self.default_limit = default_limit
        self.default_threshold = default_threshold

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        embedder: EmbeddingProvider,
        vector_store: VectorStore,
    ) -> SemanticSearch:
        return cls(
            embedder,
            vector_store,
            default_limit=settings.search_limit,
            default_threshold=settings.search_threshold,
        )

    async def search(
        self,
        user_id: str,
        question: str,
        limit: int | None = None,
        threshold: float | None = None,
    ) -> list[SearchResult]:
        """Rank the user's searchable emails against ``question``.

        Args:
            user_id: Whose mail to search.
            question: Free-text query.
            limit: Maximum results (defaults to ``default_limit``).
            threshold: Minimum cosine similarity (defaults to ``default_threshold``).

        Returns:
            Results by descending similarity, newer first on ties.

        Raises:
            ValidationError: If the question is blank or ``limit`` is not positive.
        """
        question = question.strip()
        if not question:
            raise ValidationError("Search question must not be empty")

        limit = self.default_limit if limit is None else limit
        threshold = self.default_threshold if threshold is None else threshold
        if limit < 1:
            raise ValidationError(f"Search limit must be positive, got {limit}")

        query_embedding = await asyncio.to_thread(self._embedder.embed_query, question)
        results = await asyncio.to_thread(
            self._vector_store.search, query_embedding, limit, threshold, user_id
        )
        logger.info(
            "semantic_search_completed",
            user_id=user_id,
            results=len(results),
            limit=limit,
            threshold=threshold,
        )
        return results
