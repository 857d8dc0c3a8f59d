"""
Response cache keyed by normalized query text.

Reads treat every failure as a miss and writes are best-effort: a caller
that already has an answer never loses it because the cache misbehaved.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

import duckdb

from .errors import CampusKBError
from .storage import StorageBackend

logger = logging.getLogger(__name__)


def normalize_cache_key(query: str) -> str:
    return query.strip().lower()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ResponseCache:
    """Get/put previously generated answers with optional expiry."""

    def __init__(
        self,
        storage: StorageBackend,
        *,
        default_ttl: int = 3600,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.storage = storage
        self.default_ttl = default_ttl
        self._clock = clock or _utcnow

    def get(self, query: str) -> str | None:
        key = normalize_cache_key(query)
        if not key:
            return None
        try:
            entry = self.storage.get_cache_entry(key)
        except (duckdb.Error, CampusKBError) as exc:
            logger.error("Failed to read cached response: %s", exc)
            return None
        if entry is None or not entry.is_live(self._clock()):
            return None
        return entry.response

    def put(
        self,
        query: str,
        response: str,
        complexity: str | None = None,
        ttl_seconds: int | None = None,
    ) -> bool:
        """Store *response* for *query*. ``ttl_seconds=0`` never expires.

        Returns False when the write failed; the failure is only logged.
        """
        key = normalize_cache_key(query)
        if not key:
            return False
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        expires_at = self._clock() + timedelta(seconds=ttl) if ttl > 0 else None
        try:
            self.storage.put_cache_entry(
                query=key,
                response=response,
                complexity=complexity,
                expires_at=expires_at,
            )
        except (duckdb.Error, CampusKBError) as exc:
            logger.error("Failed to cache response: %s", exc)
            return False
        logger.debug("Cached response for %r", key[:30])
        return True

    def invalidate(self, query: str) -> bool:
        return self.storage.delete_cache_entries(query=normalize_cache_key(query)) > 0

    def purge_expired(self) -> int:
        removed = self.storage.delete_cache_entries(expired_before=self._clock())
        if removed:
            logger.info("Purged %d expired cache entries", removed)
        return removed

    def clear(self) -> int:
        removed = self.storage.delete_cache_entries()
        logger.info("Cleared %d cache entries", removed)
        return removed
