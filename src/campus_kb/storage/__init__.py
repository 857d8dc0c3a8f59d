"""Storage backends for the knowledge retrieval engine."""

from .base import CacheEntry, QueryFrequency, StorageBackend, UpsertResult
from .duckdb import DuckDBStorage

__all__ = [
    "CacheEntry",
    "QueryFrequency",
    "StorageBackend",
    "UpsertResult",
    "DuckDBStorage",
]
