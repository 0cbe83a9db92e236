"""Embedding providers with an abstract base."""

from __future__ import annotations

from email_search_agent.config import Settings
from email_search_agent.embeddings.base import (
    EmbeddingProvider,
    cosine_similarity,
    mean_vector,
    normalize_vector,
)
from email_search_agent.embeddings.deterministic import DeterministicEmbeddingProvider
from email_search_agent.embeddings.ollama import OllamaEmbeddingProvider
from email_search_agent.embeddings.openai import DEFAULT_DIMENSION as OPENAI_DIMENSION
from email_search_agent.embeddings.openai import OpenAIEmbeddingProvider


def create_embedding_provider(settings: Settings) -> EmbeddingProvider:
    """Build the provider selected by ``settings.embedding_provider``."""

    if settings.embedding_provider == "openai":
        dimension = (
            settings.embedding_dimension
            if "embedding_dimension" in settings.model_fields_set
            else OPENAI_DIMENSION
        )
        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.openai_embedding_model,
            dimension=dimension,
            timeout=settings.embedding_timeout_seconds,
        )
    if settings.embedding_provider == "deterministic":
        return DeterministicEmbeddingProvider(dimension=settings.embedding_dimension)
    return OllamaEmbeddingProvider(
        host=settings.ollama_host,
        model=settings.ollama_embedding_model,
        dimension=settings.embedding_dimension,
        timeout=settings.embedding_timeout_seconds,
    )


__all__ = [
    "DeterministicEmbeddingProvider",
    "EmbeddingProvider",
    "OllamaEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "cosine_similarity",
    "create_embedding_provider",
    "mean_vector",
    "normalize_vector",
]
