"""
Storage interfaces and data models for knowledge persistence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from ..models import KnowledgeChunk, Namespace, ScheduleEvent


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of a batched upsert."""

    requested: int
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed_ids: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.inserted + self.updated + self.unchanged

    @property
    def is_partial(self) -> bool:
        return self.processed < self.requested


@dataclass(frozen=True)
class CacheEntry:
    """A cached answer keyed by its normalized query."""

    query: str
    response: str
    complexity: str | None
    created_at: datetime
    updated_at: datetime
    expires_at: datetime | None = None

    def is_live(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class QueryFrequency:
    """How often one user (or everyone, for global entries) asked a query."""

    query: str
    count: int
    user_type: str | None


class StorageBackend(Protocol):
    """Protocol for persistence operations used by search, cache and ledger."""

    embedding_dim: int

    def initialize(self) -> None:
        """Initialize required tables."""

    def provision_indexes(self) -> list[str]:
        """Create secondary indexes. Return the names created."""

    def rebuild_text_index(self) -> bool:
        """Refresh the full-text index after writes."""

    def close(self) -> None:
        """Release the underlying connection."""

    def health_check(self) -> dict[str, Any]:
        """Return connection status and table sizes."""

    def upsert_chunks(self, chunks: list[KnowledgeChunk]) -> UpsertResult:
        """Insert or update knowledge chunks by id."""

    def upsert_schedule_events(self, events: list[ScheduleEvent]) -> UpsertResult:
        """Insert or update schedule events by id."""

    def get_chunk(self, chunk_id: str) -> dict[str, Any] | None:
        """Get a chunk by id."""

    def list_chunks(
        self,
        *,
        section: str | None = None,
        type: str | None = None,
        category: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """List chunks matching exact-field filters."""

    def count_records(self, namespace: Namespace) -> int:
        """Count stored records in a namespace."""

    def embedding_stats(self) -> dict[str, dict[str, int]]:
        """Per-namespace totals of embedded and missing records."""

    def update_embedding(
        self, namespace: Namespace, record_id: str, embedding: list[float]
    ) -> bool:
        """Set one record's embedding. Return False if the id is unknown."""

    def batch_update_embeddings(
        self,
        namespace: Namespace,
        pairs: list[tuple[str, list[float]]],
    ) -> int:
        """Bulk-store (id, embedding) pairs. Return count written."""

    def list_missing_embeddings(
        self, namespace: Namespace, *, limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Return records that have no embedding yet."""

    def vector_search(
        self,
        namespace: Namespace,
        *,
        query_embedding: list[float],
        candidates: int,
        limit: int,
    ) -> list[dict[str, Any]]:
        """Search the ANN index. Raise VectorIndexUnavailable if it cannot serve."""

    def sample_embedded(self, namespace: Namespace, *, limit: int) -> list[dict[str, Any]]:
        """Load up to *limit* records that carry an embedding."""

    def search_text(self, query: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Weighted full-text search over chunk content and keywords."""

    def get_cache_entry(self, query: str) -> CacheEntry | None:
        """Fetch the cache entry for an already-normalized query."""

    def put_cache_entry(
        self,
        *,
        query: str,
        response: str,
        complexity: str | None,
        expires_at: datetime | None,
    ) -> None:
        """Create or replace the cache entry for an already-normalized query."""

    def delete_cache_entries(
        self, *, query: str | None = None, expired_before: datetime | None = None
    ) -> int:
        """Delete one entry, all expired entries, or everything."""

    def record_query_frequency(
        self, *, user_id: str, query: str, user_type: str | None
    ) -> None:
        """Atomically increment the user entry and, if typed, the global entry."""

    def list_user_queries(self, user_id: str) -> list[QueryFrequency]:
        """Return a user's frequency entries in first-asked order."""

    def list_global_queries(
        self, *, user_type: str | None = None, limit: int = 5
    ) -> list[QueryFrequency]:
        """Return global FAQ entries sorted by count descending."""

    def insert_query_log(
        self,
        *,
        query: str,
        complexity: str | None,
        response_time_ms: float,
        cached: bool,
    ) -> None:
        """Append one query analytics row."""

    def summarize_query_log(
        self, *, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, Any]:
        """Aggregate query analytics rows."""
