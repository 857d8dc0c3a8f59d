"""
Similarity search strategies.

``IndexedSimilaritySearcher`` asks the store's ANN index, while
``ExactSimilaritySearcher`` scores a bounded sample in-process.
``FallbackSimilaritySearcher`` composes the two: it tries the indexed path
and switches to the exact one only when the index raises
``VectorIndexUnavailable``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from ..errors import VectorIndexUnavailable
from ..models import Namespace
from ..storage import StorageBackend
from .similarity import cosine_similarities

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverFetch:
    """Candidate-pool sizing for an ANN query."""

    factor: int
    floor: int

    def candidates(self, limit: int) -> int:
        return max(limit * self.factor, self.floor)


OVERFETCH: dict[str, OverFetch] = {
    "chunks": OverFetch(factor=15, floor=150),
    "schedule": OverFetch(factor=10, floor=100),
}

# Rows loaded by the exact path, as a multiple of the requested limit.
EXACT_SAMPLE_FACTOR = 5


class SimilaritySearcher(Protocol):
    """Return the records closest to a query vector, best first."""

    def search(
        self, namespace: Namespace, query_vector: list[float], limit: int
    ) -> list[dict[str, Any]]:
        ...


class IndexedSimilaritySearcher:
    """Delegate to the store's managed ANN index."""

    def __init__(
        self,
        storage: StorageBackend,
        overfetch: dict[str, OverFetch] | None = None,
    ) -> None:
        self.storage = storage
        self.overfetch = overfetch or OVERFETCH

    def search(
        self, namespace: Namespace, query_vector: list[float], limit: int
    ) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        return self.storage.vector_search(
            namespace,
            query_embedding=query_vector,
            candidates=self.overfetch[namespace].candidates(limit),
            limit=limit,
        )


class ExactSimilaritySearcher:
    """Brute-force cosine similarity over a bounded sample of embedded records."""

    def __init__(
        self,
        storage: StorageBackend,
        sample_factor: int = EXACT_SAMPLE_FACTOR,
    ) -> None:
        self.storage = storage
        self.sample_factor = sample_factor

    def search(
        self, namespace: Namespace, query_vector: list[float], limit: int
    ) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        records = self.storage.sample_embedded(
            namespace, limit=limit * self.sample_factor
        )
        scores = cosine_similarities(
            query_vector, [record.get("embedding") for record in records]
        )
        results: list[dict[str, Any]] = []
        for record, similarity in zip(records, scores):
            hit = {key: value for key, value in record.items() if key != "embedding"}
            hit["similarity"] = similarity
            hit["score"] = similarity * 100
            results.append(hit)
        results.sort(key=lambda hit: hit["similarity"], reverse=True)
        return results[:limit]


class FallbackSimilaritySearcher:
    """Try *primary*; on ``VectorIndexUnavailable`` answer from *fallback*.

    Empty primary results are returned as-is. If the fallback fails too, the
    primary error is raised so its identity is preserved.
    """

    def __init__(
        self,
        primary: SimilaritySearcher,
        fallback: SimilaritySearcher,
    ) -> None:
        self.primary = primary
        self.fallback = fallback

    def search(
        self, namespace: Namespace, query_vector: list[float], limit: int
    ) -> list[dict[str, Any]]:
        try:
            return self.primary.search(namespace, query_vector, limit)
        except VectorIndexUnavailable as primary_error:
            logger.warning(
                "Vector index search failed for %s, falling back to exact cosine similarity: %s",
                namespace,
                primary_error,
            )
            try:
                return self.fallback.search(namespace, query_vector, limit)
            except Exception as fallback_error:
                logger.error(
                    "Exact search fallback also failed for %s: %s",
                    namespace,
                    fallback_error,
                )
                raise primary_error from fallback_error


def build_searcher(storage: StorageBackend) -> FallbackSimilaritySearcher:
    """The default ANN-then-exact searcher for a store."""
    return FallbackSimilaritySearcher(
        IndexedSimilaritySearcher(storage),
        ExactSimilaritySearcher(storage),
    )
