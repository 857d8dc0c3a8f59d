"""
Embedding provider for vector-based semantic search.

Wraps the Google GenAI embedding API for batch and single-query embedding
with configurable model, dimensions, and batch size. The client is created
lazily on first use so that a process can start without credentials and
only fail when an embedding is actually needed.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from google.genai import Client as GenAIClient

from .errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)

_DEFAULT_MODEL = "gemini-embedding-001"
_DEFAULT_DIM = 384
_DEFAULT_BATCH_SIZE = 50
_MEMO_SIZE = 1000


class EmbeddingProvider:
    """Generate text embeddings via Google GenAI."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        dim: int | None = None,
        batch_size: int | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model or os.getenv("CAMPUS_KB_EMBEDDING_MODEL", _DEFAULT_MODEL)
        self.dim = dim or int(os.getenv("CAMPUS_KB_EMBEDDING_DIM", str(_DEFAULT_DIM)))
        self.batch_size = batch_size or int(
            os.getenv("CAMPUS_KB_EMBEDDING_BATCH_SIZE", str(_DEFAULT_BATCH_SIZE))
        )
        self._api_key = api_key
        self._client = client
        self._memo: dict[str, list[float]] = {}

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    def _get_client(self) -> Any:
        if self._client is None:
            resolved_key = self._api_key or os.getenv("GOOGLE_API_KEY")
            if resolved_key is None:
                raise EmbeddingUnavailable(
                    "GOOGLE_API_KEY not found. "
                    "Provide api_key or set the environment variable."
                )
            self._client = GenAIClient(api_key=resolved_key)
            logger.info("Embedding model %s ready (dim=%d)", self.model, self.dim)
        return self._client

    def _embed_batch(self, texts: list[str], *, task_type: str) -> list[list[float]]:
        client = self._get_client()
        try:
            result = client.models.embed_content(
                model=self.model,
                contents=texts,
                config={
                    "task_type": task_type,
                    "output_dimensionality": self.dim,
                },
            )
        except Exception as exc:
            raise EmbeddingUnavailable(f"Embedding request failed: {exc}") from exc
        return [list(emb.values) for emb in result.embeddings]

    def embed_texts(
        self,
        texts: list[str],
        *,
        task_type: str = "RETRIEVAL_DOCUMENT",
    ) -> list[list[float]]:
        """Embed a list of texts in batches.

        Returns a list of embedding vectors in the same order as *texts*.
        """
        all_embeddings: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start : start + self.batch_size]
            all_embeddings.extend(self._embed_batch(batch, task_type=task_type))
            logger.debug("Embedded %d/%d texts", len(all_embeddings), len(texts))
        return all_embeddings

    def embed_query(self, query: str) -> list[float]:
        """Embed a single query text for retrieval.

        Identical inputs return the memoized vector.
        """
        cached = self._memo.get(query)
        if cached is not None:
            return cached
        vector = self._embed_batch([query], task_type="RETRIEVAL_QUERY")[0]
        if len(self._memo) < _MEMO_SIZE:
            self._memo[query] = vector
        return vector

    def embed(self, text: str) -> list[float]:
        return self.embed_query(text)

    def clear_memo(self) -> None:
        self._memo.clear()

    def close(self) -> None:
        self._memo.clear()
        self._client = None
