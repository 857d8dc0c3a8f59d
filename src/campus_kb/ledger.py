"""
Query ledger: per-user query frequencies, the cross-user FAQ aggregate and
query analytics.

Ledger writes are analytics; a failing write is logged and never breaks
the retrieval that triggered it.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

import duckdb

from .errors import CampusKBError
from .storage import StorageBackend

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Case-fold, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", query.strip().lower())


def display_query(query: str) -> str:
    """Capitalize only the first character."""
    return query[:1].upper() + query[1:]


class QueryLedger:
    """Record who asked what and derive the most frequent questions."""

    def __init__(self, storage: StorageBackend) -> None:
        self.storage = storage

    def record_user_query(
        self, user_id: str, query: str, user_type: str | None = None
    ) -> bool:
        """Count one occurrence of *query* for *user_id*.

        A supplied *user_type* also bumps the global FAQ entry for that type;
        both counts are committed together or not at all.
        """
        if not user_id or not query or not query.strip():
            return False
        normalized = normalize_query(query)
        user_type = user_type or None
        try:
            self.storage.record_query_frequency(
                user_id=user_id, query=normalized, user_type=user_type
            )
        except (duckdb.Error, CampusKBError) as exc:
            logger.error("Failed to log user query: %s", exc)
            return False
        logger.info("Logged user query for %s (user type: %s)", user_id, user_type or "none")
        return True

    def top_queries(self, user_id: str, limit: int = 5) -> list[str]:
        if not user_id:
            return []
        try:
            entries = self.storage.list_user_queries(user_id)
        except (duckdb.Error, CampusKBError) as exc:
            logger.error("Failed to get top queries: %s", exc)
            return []
        # sorted() is stable, so equal counts keep first-asked order.
        ranked = sorted(entries, key=lambda entry: entry.count, reverse=True)
        return [display_query(entry.query) for entry in ranked[:limit]]

    def global_faqs(self, user_type: str | None = None, limit: int = 5) -> list[str]:
        try:
            entries = self.storage.list_global_queries(user_type=user_type, limit=limit)
        except (duckdb.Error, CampusKBError) as exc:
            logger.error("Failed to get global FAQs: %s", exc)
            return []
        return [display_query(entry.query) for entry in entries]

    def log_query(
        self,
        query: str,
        complexity: str | None,
        response_time_ms: float,
        cached: bool = False,
    ) -> None:
        try:
            self.storage.insert_query_log(
                query=query,
                complexity=complexity,
                response_time_ms=response_time_ms,
                cached=cached,
            )
        except (duckdb.Error, CampusKBError) as exc:
            logger.error("Failed to log analytics: %s", exc)

    def analytics(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, Any]:
        try:
            return self.storage.summarize_query_log(start=start, end=end)
        except (duckdb.Error, CampusKBError) as exc:
            logger.error("Failed to get analytics: %s", exc)
            return {}
