"""Tests for the response cache."""

from __future__ import annotations

import duckdb
import pytest

from campus_kb.cache import ResponseCache, normalize_cache_key
from campus_kb.storage import DuckDBStorage

from conftest import FakeClock


class _BrokenStorage:
    """Every cache call fails the way a dropped connection would."""

    def get_cache_entry(self, query):
        raise duckdb.ConnectionException("connection lost")

    def put_cache_entry(self, **kwargs):
        raise duckdb.ConnectionException("connection lost")


@pytest.fixture
def cache(storage: DuckDBStorage, clock: FakeClock) -> ResponseCache:
    return ResponseCache(storage, default_ttl=3600, clock=clock)


def test_normalize_cache_key() -> None:
    assert normalize_cache_key("  Who is the President?  ") == "who is the president?"


def test_put_then_get_is_case_and_whitespace_insensitive(cache: ResponseCache) -> None:
    assert cache.put("Who is the university president?", "Dr. Reyes.", "simple") is True

    assert cache.get("  WHO IS THE UNIVERSITY PRESIDENT?") == "Dr. Reyes."


def test_missing_entry_is_a_miss(cache: ResponseCache) -> None:
    assert cache.get("never asked") is None
    assert cache.get("   ") is None


def test_zero_ttl_never_expires(cache: ResponseCache, clock: FakeClock) -> None:
    cache.put("library hours", "8 AM to 10 PM", ttl_seconds=0)

    clock.advance(10 * 365 * 24 * 3600)

    assert cache.get("library hours") == "8 AM to 10 PM"


def test_positive_ttl_expires(cache: ResponseCache, clock: FakeClock) -> None:
    cache.put("gym hours", "6 AM", ttl_seconds=1)
    assert cache.get("gym hours") == "6 AM"

    clock.advance(2)

    assert cache.get("gym hours") is None


def test_default_ttl_applies(cache: ResponseCache, clock: FakeClock) -> None:
    cache.put("parking", "Lot B")

    clock.advance(3599)
    assert cache.get("parking") == "Lot B"
    clock.advance(2)
    assert cache.get("parking") is None


def test_put_replaces_previous_answer(cache: ResponseCache, storage: DuckDBStorage) -> None:
    cache.put("tuition deadline", "March 1", "simple", ttl_seconds=5)
    cache.put("Tuition deadline", "March 15", "complex", ttl_seconds=0)

    assert cache.get("tuition deadline") == "March 15"
    entry = storage.get_cache_entry("tuition deadline")
    assert entry is not None
    assert entry.complexity == "complex"
    assert entry.expires_at is None
    assert storage.health_check()["tables"]["response_cache"] == 1


def test_invalidate_purge_and_clear(cache: ResponseCache, clock: FakeClock) -> None:
    cache.put("a", "1", ttl_seconds=1)
    cache.put("b", "2", ttl_seconds=0)
    cache.put("c", "3", ttl_seconds=100)

    assert cache.invalidate("C") is True
    assert cache.invalidate("c") is False

    clock.advance(5)
    assert cache.purge_expired() == 1
    assert cache.get("b") == "2"

    assert cache.clear() == 1
    assert cache.get("b") is None


def test_read_failure_is_a_miss() -> None:
    cache = ResponseCache(_BrokenStorage())

    assert cache.get("anything") is None


def test_write_failure_is_reported_not_raised() -> None:
    cache = ResponseCache(_BrokenStorage())

    assert cache.put("anything", "answer") is False
