"""OpenAI embedding provider."""

from __future__ import annotations

import httpx
import structlog

from email_search_agent.embeddings.base import EmbeddingProvider
from email_search_agent.exceptions import (
    ConfigurationError,
    EmbeddingAuthError,
    EmbeddingError,
    EmbeddingTransientError,
)

logger = structlog.get_logger()

DEFAULT_MODEL = "text-embedding-3-small"
DEFAULT_DIMENSION = 1536
# The API accepts up to 2048 inputs; 100 keeps request bodies small.
MAX_BATCH = 100


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI ``/v1/embeddings``. Retrying is left to the caller."""

    def __init__(
        self,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        dimension: int = DEFAULT_DIMENSION,
        timeout: float = 30.0,
        base_url: str = "https://api.openai.com/v1",
        client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ConfigurationError(
                "OpenAI API key is required. Set EMAIL_SEARCH_OPENAI_API_KEY in your environment."
            )
        self.model = model
        self._dimension = dimension
        self._client = client or httpx.Client(base_url=base_url, timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def version_tag(self) -> str:
        return f"openai:{self.model}"

    def close(self) -> None:
        self._client.close()

    def embed(self, text: str) -> list[float]:
        return self._call_api([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        all_embeddings: list[list[float]] = []
        for i in range(0, len(texts), MAX_BATCH):
            all_embeddings.extend(self._call_api(texts[i : i + MAX_BATCH]))
        return all_embeddings

    def _call_api(self, texts: list[str]) -> list[list[float]]:
        try:
            response = self._client.post(
                "/embeddings",
                json={"input": texts, "model": self.model},
                headers=self._headers,
            )
        except httpx.TimeoutException as e:
            raise EmbeddingTransientError(f"OpenAI request timed out: {e}") from e
        except httpx.TransportError as e:
            raise EmbeddingTransientError(f"OpenAI connection issue: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise EmbeddingAuthError(f"OpenAI rejected the API key: HTTP {status}")
        if status == 429 or status >= 500:
            logger.warning("openai_embedding_unavailable", status=status)
            raise EmbeddingTransientError(f"OpenAI unavailable: HTTP {status}")
        if status >= 400:
            raise EmbeddingError(f"OpenAI embedding failed: HTTP {status}: {response.text[:200]}")

        try:
            data = response.json()
            # Sort by index to maintain order
            items = sorted(data["data"], key=lambda x: x["index"])
            vectors = [[float(v) for v in item["embedding"]] for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"OpenAI returned an unexpected response: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(f"OpenAI returned {len(vectors)} embeddings for {len(texts)} inputs")
        return [self._check_dimension(v) for v in vectors]
