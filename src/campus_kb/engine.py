"""
Knowledge retrieval engine.

A thin façade that wires the store, the embedding provider, similarity
search, the response cache and the query ledger together. One engine is
shared per process through ``get_engine()``.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from .cache import ResponseCache
from .config import EngineSettings
from .embeddings import EmbeddingProvider
from .ledger import QueryLedger
from .models import KnowledgeChunk, ScheduleEvent
from .search import SemanticSearchEngine, SimilaritySearcher
from .storage import DuckDBStorage, StorageBackend, UpsertResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetrievalResult:
    """What the answer generator receives for one question."""

    query: str
    cached_response: str | None = None
    chunks: list[dict[str, Any]] = field(default_factory=list)
    schedule: list[dict[str, Any]] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @property
    def from_cache(self) -> bool:
        return self.cached_response is not None


class KnowledgeEngine:
    """Retrieval and caching primitives used by the answer generator."""

    def __init__(
        self,
        storage: StorageBackend,
        embedding_provider: EmbeddingProvider,
        *,
        cache_ttl: int = 3600,
        searcher: SimilaritySearcher | None = None,
    ) -> None:
        self.storage = storage
        self.embedding_provider = embedding_provider
        self.semantic = SemanticSearchEngine(storage, embedding_provider, searcher)
        self.cache = ResponseCache(storage, default_ttl=cache_ttl)
        self.ledger = QueryLedger(storage)

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        *,
        embedding_provider: EmbeddingProvider | None = None,
    ) -> KnowledgeEngine:
        storage = DuckDBStorage(
            settings.db_path,
            embedding_dim=settings.embedding_dim,
            connect_retries=settings.connect_retries,
            retry_delay=settings.connect_retry_delay,
        )
        storage.provision_indexes()
        provider = embedding_provider or EmbeddingProvider(dim=settings.embedding_dim)
        return cls(storage, provider, cache_ttl=settings.cache_ttl)

    def ingest_chunks(self, chunks: list[KnowledgeChunk]) -> UpsertResult:
        return self.storage.upsert_chunks(chunks)

    def ingest_schedule(self, events: list[ScheduleEvent]) -> UpsertResult:
        return self.storage.upsert_schedule_events(events)

    def search_chunks(self, query_vector: list[float], limit: int = 5) -> list[dict[str, Any]]:
        return self.semantic.search(query_vector, limit)

    def search_schedule(
        self, query_vector: list[float], limit: int = 5
    ) -> list[dict[str, Any]]:
        return self.semantic.search_schedule(query_vector, limit)

    def search_text(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        return self.storage.search_text(query, limit=limit)

    def retrieve(
        self,
        query: str,
        *,
        limit: int = 5,
        user_id: str | None = None,
        user_type: str | None = None,
        include_schedule: bool = False,
    ) -> RetrievalResult:
        """Probe the cache, then search on a miss, then record the query.

        Ledger and analytics failures are logged by the ledger and never
        affect the returned result.
        """
        start = time.perf_counter()
        cached = self.cache.get(query)
        chunks: list[dict[str, Any]] = []
        schedule: list[dict[str, Any]] = []
        if cached is None:
            query_vector = self.embedding_provider.embed_query(query)
            chunks = self.semantic.search(query_vector, limit)
            if include_schedule:
                schedule = self.semantic.search_schedule(query_vector, limit)

        if user_id:
            self.ledger.record_user_query(user_id, query, user_type)
        elapsed_ms = (time.perf_counter() - start) * 1000
        self.ledger.log_query(query, None, elapsed_ms, cached=cached is not None)

        return RetrievalResult(
            query=query,
            cached_response=cached,
            chunks=chunks,
            schedule=schedule,
            elapsed_ms=elapsed_ms,
        )

    def cache_answer(
        self,
        query: str,
        response: str,
        complexity: str | None = None,
        ttl_seconds: int | None = None,
    ) -> bool:
        return self.cache.put(query, response, complexity, ttl_seconds)

    def top_queries(self, user_id: str, limit: int = 5) -> list[str]:
        return self.ledger.top_queries(user_id, limit)

    def global_faqs(self, user_type: str | None = None, limit: int = 5) -> list[str]:
        return self.ledger.global_faqs(user_type, limit)

    def health(self) -> dict[str, Any]:
        status = self.storage.health_check()
        status["embedding_model"] = self.embedding_provider.model
        status["embedding_ready"] = self.embedding_provider.is_initialized
        return status

    def close(self) -> None:
        self.embedding_provider.close()
        self.storage.close()


_ENGINE: KnowledgeEngine | None = None
_ENGINE_LOCK = threading.Lock()


def get_engine(settings: EngineSettings | None = None) -> KnowledgeEngine:
    """Return the process-wide engine, creating it on first use."""
    global _ENGINE
    if _ENGINE is None:
        with _ENGINE_LOCK:
            if _ENGINE is None:
                _ENGINE = KnowledgeEngine.from_settings(
                    settings or EngineSettings.from_env()
                )
                logger.info("Knowledge engine started")
    return _ENGINE


def shutdown_engine() -> None:
    """Close the process-wide engine if one was started."""
    global _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is not None:
            _ENGINE.close()
            _ENGINE = None
            logger.info("Knowledge engine stopped")
