"""
Vector-based semantic search engine.

Embeds a query and searches stored embeddings through a similarity
searcher, which itself falls back from the ANN index to exact cosine
similarity when the index is unavailable.
"""

from __future__ import annotations

from typing import Any

from ..embeddings import EmbeddingProvider
from ..storage import StorageBackend
from .searchers import SimilaritySearcher, build_searcher


class SemanticSearchEngine:
    """Embed a query and search chunk or schedule embeddings."""

    def __init__(
        self,
        storage: StorageBackend,
        embedding_provider: EmbeddingProvider,
        searcher: SimilaritySearcher | None = None,
    ) -> None:
        self.storage = storage
        self.embedding_provider = embedding_provider
        self.searcher = searcher or build_searcher(storage)

    def search(self, query_vector: list[float], limit: int = 5) -> list[dict[str, Any]]:
        """Return knowledge chunks ranked by similarity to *query_vector*."""
        return self.searcher.search("chunks", query_vector, limit)

    def search_schedule(
        self, query_vector: list[float], limit: int = 5
    ) -> list[dict[str, Any]]:
        """Return schedule events ranked by similarity to *query_vector*."""
        return self.searcher.search("schedule", query_vector, limit)

    def search_text(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        """Embed *query* and return ranked knowledge chunks."""
        return self.search(self.embedding_provider.embed_query(query), limit)

    def search_schedule_text(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        """Embed *query* and return ranked schedule events."""
        return self.search_schedule(self.embedding_provider.embed_query(query), limit)
