"""Hash-seeded pseudo-random vectors.

Not semantically meaningful. Only for development and tests, selected
explicitly with ``embedding_provider=deterministic``.
"""

from __future__ import annotations

import hashlib
import random

from email_search_agent.embeddings.base import EmbeddingProvider, normalize_vector


def vectorize_text_deterministic(text: str, size: int) -> list[float]:
    """Generate a deterministic unit-length vector from text."""

    digest = hashlib.sha256(text.encode("utf-8")).digest()
    seed = int.from_bytes(digest[:8], "big", signed=False)

    rng = random.Random(seed)
    vec = [rng.random() - 0.5 for _ in range(size)]
    return normalize_vector(vec)


class DeterministicEmbeddingProvider(EmbeddingProvider):
    def __init__(self, dimension: int = 384) -> None:
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def version_tag(self) -> str:
        return "deterministic"

    def embed(self, text: str) -> list[float]:
        return vectorize_text_deterministic(text, self._dimension)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(t) for t in texts]
