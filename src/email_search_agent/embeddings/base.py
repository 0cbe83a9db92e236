"""Abstract base class for embedding providers."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from collections.abc import Sequence

from email_search_agent.exceptions import EmbeddingError


def normalize_vector(vec: Sequence[float]) -> list[float]:
    """Scale ``vec`` to unit length; a zero vector is returned unchanged."""
    norm = math.sqrt(sum(v * v for v in vec))
    if norm == 0.0:
        return list(vec)
    return [v / norm for v in vec]


def mean_vector(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Unit-normalized element-wise mean of equally sized vectors."""
    if not vectors:
        raise ValueError("mean_vector() needs at least one vector")
    size = len(vectors[0])
    if any(len(v) != size for v in vectors):
        raise ValueError("mean_vector() needs vectors of equal length")
    totals = [0.0] * size
    for vec in vectors:
        for i, value in enumerate(vec):
            totals[i] += value
    return normalize_vector([t / len(vectors) for t in totals])


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector size mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class EmbeddingProvider(ABC):
    """Abstract interface for text embedding.

    Implementations are blocking; async callers run them in a worker thread.
    Errors are raised as :class:`~email_search_agent.exceptions.EmbeddingError`
    or one of its subclasses.
    """

    #: False when ``embed_batch`` sends one request per text.
    native_batching: bool = True

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this provider returns."""
        ...

    @property
    def version_tag(self) -> str:
        """Describes what produced the vectors (stored alongside them)."""
        return type(self).__name__

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed a single document text."""
        ...

    def embed_query(self, text: str) -> list[float]:
        """Embed a search query."""
        return self.embed(text)

    @abstractmethod
    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed multiple texts, preserving order."""
        ...

    def _check_dimension(self, vec: list[float]) -> list[float]:
        if len(vec) != self.dimension:
            raise EmbeddingError(
                f"Embedding size mismatch: got {len(vec)}, expected {self.dimension}"
            )
        return vec
