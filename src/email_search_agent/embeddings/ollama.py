"""Ollama embeddings over its HTTP API.

Older Ollama servers expose ``/api/embeddings`` with ``{model, prompt}``;
newer ones use ``/api/embed`` with ``{model, input}``. We try the former and
fall back on 404.
"""

from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from typing import Any

import structlog

from email_search_agent.embeddings.base import EmbeddingProvider, normalize_vector
from email_search_agent.exceptions import (
    EmbeddingAuthError,
    EmbeddingError,
    EmbeddingTransientError,
)

logger = structlog.get_logger()


def _map_http_error(e: urllib.error.HTTPError) -> EmbeddingError:
    if e.code in (401, 403):
        return EmbeddingAuthError(f"Ollama rejected the request: HTTP {e.code}")
    if e.code == 429 or e.code >= 500:
        return EmbeddingTransientError(f"Ollama unavailable: HTTP {e.code}")
    return EmbeddingError(f"Ollama embedding failed: HTTP {e.code}")


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Embeddings from a local or remote Ollama server."""

    native_batching = False

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout: float = 60.0,
    ) -> None:
        self.host = host.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def version_tag(self) -> str:
        return f"ollama:{self.model}"

    def embed(self, text: str) -> list[float]:
        return normalize_vector(self._check_dimension(self._embeddings(text)))

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [self.embed(text) for text in texts]

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        req = urllib.request.Request(
            url=f"{self.host}{path}",
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                return json.loads(resp.read().decode("utf-8"))
        except urllib.error.HTTPError:
            raise
        except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
            raise EmbeddingTransientError(f"Ollama connection issue: {e}") from e
        except json.JSONDecodeError as e:
            raise EmbeddingError(f"Ollama returned invalid JSON: {e}") from e

    def _embeddings(self, text: str) -> list[float]:
        try:
            data = self._post("/api/embeddings", {"model": self.model, "prompt": text})
            emb = data.get("embedding")
            if not isinstance(emb, list) or not emb:
                raise EmbeddingError("Ollama embeddings response missing 'embedding'")
            return [float(x) for x in emb]
        except urllib.error.HTTPError as e:
            if e.code != 404:
                raise _map_http_error(e) from e
            logger.debug("ollama_embeddings_endpoint_missing", host=self.host)

        try:
            data = self._post("/api/embed", {"model": self.model, "input": text})
        except urllib.error.HTTPError as e:
            raise _map_http_error(e) from e

        embs = data.get("embeddings")
        if isinstance(embs, list) and embs and isinstance(embs[0], list):
            return [float(x) for x in embs[0]]

        raise EmbeddingError("Ollama embed response missing 'embeddings'")
