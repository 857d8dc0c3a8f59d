"""Tests for the DuckDB knowledge store."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

import campus_kb.storage.indexes as indexes_module
from campus_kb.errors import StoreUnavailable, VectorIndexUnavailable
from campus_kb.models import KnowledgeChunk, ScheduleEvent
from campus_kb.search import build_searcher
from campus_kb.storage import DuckDBStorage

from conftest import FakeClock, make_chunk


@pytest.fixture
def no_extensions(monkeypatch) -> None:
    """Keep provisioning offline: fts and vss are reported as unavailable."""
    monkeypatch.setattr(indexes_module, "load_extension", lambda conn, name: False)


# ---------------------------------------------------------------------------
# Upsert
# ---------------------------------------------------------------------------


def test_upsert_inserts_new_chunks(storage: DuckDBStorage) -> None:
    result = storage.upsert_chunks(
        [
            make_chunk("president", "The university president is Dr. Reyes.", section="about"),
            make_chunk("tuition", "Tuition is due before enrollment.", section="finance"),
        ]
    )

    assert result.requested == 2
    assert result.inserted == 2
    assert result.failed_ids == []
    assert storage.count_records("chunks") == 2

    chunk = storage.get_chunk("president")
    assert chunk is not None
    assert chunk["text"] == "The university president is Dr. Reyes."
    assert chunk["section"] == "about"


def test_reupsert_keeps_created_at_and_advances_updated_at(
    storage: DuckDBStorage, clock: FakeClock
) -> None:
    chunk = make_chunk("library", "The library opens at 8 AM.", embedding=[1.0, 0.0, 0.0, 0.0])
    created = clock()
    storage.upsert_chunks([chunk])

    clock.advance(60)
    result = storage.upsert_chunks([chunk])

    assert result.unchanged == 1
    assert result.inserted == 0
    assert storage.count_records("chunks") == 1

    stored = storage.get_chunk("library")
    assert stored is not None
    assert stored["metadata"]["created_at"] == created
    assert stored["metadata"]["updated_at"] == clock()
    assert stored["metadata"]["updated_at"] > stored["metadata"]["created_at"]


def test_changed_content_counts_as_update(
    storage: DuckDBStorage, clock: FakeClock
) -> None:
    created = clock()
    storage.upsert_chunks([make_chunk("dorm", "Dorm check-in is at noon.")])

    clock.advance(120)
    result = storage.upsert_chunks([make_chunk("dorm", "Dorm check-in is at 2 PM.")])

    assert result.updated == 1
    assert storage.count_records("chunks") == 1
    stored = storage.get_chunk("dorm")
    assert stored is not None
    assert stored["content"] == "Dorm check-in is at 2 PM."
    assert stored["metadata"]["created_at"] == created
    assert stored["metadata"]["updated_at"] == clock()


def test_metadata_subset_reupsert_is_unchanged(storage: DuckDBStorage) -> None:
    storage.upsert_chunks(
        [make_chunk("cs", "Computer Science.", metadata={"acronym": "CS", "year": "2024"})]
    )

    result = storage.upsert_chunks(
        [make_chunk("cs", "Computer Science.", metadata={"acronym": "CS"})]
    )

    assert result.unchanged == 1
    assert result.updated == 0


def test_metadata_keys_are_merged_not_replaced(storage: DuckDBStorage) -> None:
    storage.upsert_chunks(
        [make_chunk("cs", "Computer Science program.", metadata={"acronym": "CS", "year": "2024"})]
    )

    storage.upsert_chunks(
        [make_chunk("cs", "Computer Science program.", metadata={"year": "2025"})]
    )

    stored = storage.get_chunk("cs")
    assert stored is not None
    assert stored["metadata"]["acronym"] == "CS"
    assert stored["metadata"]["year"] == "2025"


def test_partial_batch_keeps_valid_records(storage: DuckDBStorage) -> None:
    chunks = [
        make_chunk(f"chunk-{i}", f"Content {i}", embedding=[float(i), 1.0, 0.0, 0.0])
        for i in range(9)
    ]
    chunks.insert(4, make_chunk("bad-dim", "Wrong size", embedding=[1.0, 0.0, 0.0]))

    result = storage.upsert_chunks(chunks)

    assert result.requested == 10
    assert result.inserted == 9
    assert result.failed_ids == ["bad-dim"]
    assert result.is_partial
    assert storage.count_records("chunks") == 9
    assert storage.get_chunk("bad-dim") is None


def test_empty_batch_is_a_no_op(storage: DuckDBStorage) -> None:
    result = storage.upsert_chunks([])

    assert result.requested == 0
    assert result.processed == 0
    assert not result.is_partial


def test_upsert_after_index_provisioning(storage: DuckDBStorage, no_extensions) -> None:
    storage.provision_indexes()
    storage.upsert_chunks([make_chunk("gym", "Gym hours.", section="sports", type="faq")])

    result = storage.upsert_chunks(
        [make_chunk("gym", "Gym hours.", section="athletics", type="faq", keywords=["gym"])]
    )

    assert result.updated == 1
    assert [row["id"] for row in storage.list_chunks(section="athletics")] == ["gym"]
    assert storage.list_chunks(section="sports") == []


def test_schedule_events_accept_camel_case_fields(storage: DuckDBStorage) -> None:
    event = ScheduleEvent.model_validate(
        {
            "id": "enrollment-2025",
            "title": "Enrollment period",
            "isoDate": "2025-01-10",
            "startDate": "2025-01-10",
            "endDate": "2025-01-20",
            "userType": "student",
            "date": "January 10",
            "time": "8:00 AM",
        }
    )

    result = storage.upsert_schedule_events([event])

    assert result.inserted == 1
    pending = storage.list_missing_embeddings("schedule")
    assert len(pending) == 1
    assert pending[0]["iso_date"] == "2025-01-10"
    assert pending[0]["user_type"] == "student"
    assert pending[0]["time"] == "8:00 AM"


def test_concurrent_upserts_of_one_id_all_land(storage: DuckDBStorage) -> None:
    def write(i: int):
        return storage.upsert_chunks([make_chunk("shared", f"Version {i}")])

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(write, range(64)))

    assert all(result.failed_ids == [] for result in results)
    assert sum(result.processed for result in results) == 64
    assert sum(result.inserted for result in results) == 1
    assert storage.count_records("chunks") == 1


def test_concurrent_upserts_of_distinct_ids(storage: DuckDBStorage) -> None:
    def write(i: int):
        return storage.upsert_chunks(
            [make_chunk(f"chunk-{i}-{j}", f"Content {i}/{j}") for j in range(4)]
        )

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(write, range(16)))

    assert sum(result.inserted for result in results) == 64
    assert storage.count_records("chunks") == 64


# ---------------------------------------------------------------------------
# Lookups and embeddings
# ---------------------------------------------------------------------------


def test_list_chunks_filters_by_exact_fields(storage: DuckDBStorage) -> None:
    storage.upsert_chunks(
        [
            make_chunk("a", "A", section="admissions", type="faq"),
            make_chunk("b", "B", section="admissions", type="policy"),
            make_chunk("c", "C", section="finance", type="faq"),
        ]
    )

    assert [row["id"] for row in storage.list_chunks(section="admissions")] == ["a", "b"]
    assert [row["id"] for row in storage.list_chunks(type="faq")] == ["a", "c"]
    assert [row["id"] for row in storage.list_chunks(limit=1)] == ["a"]


def test_embedding_updates_and_stats(storage: DuckDBStorage) -> None:
    storage.upsert_chunks([make_chunk("a", "A"), make_chunk("b", "B")])

    assert storage.embedding_stats()["chunks"] == {"total": 2, "embedded": 0, "missing": 2}
    assert storage.update_embedding("chunks", "a", [0.0, 1.0, 0.0, 0.0]) is True
    assert storage.update_embedding("chunks", "missing-id", [0.0, 1.0, 0.0, 0.0]) is False
    assert storage.update_embedding("chunks", "b", [1.0]) is False

    assert storage.embedding_stats()["chunks"] == {"total": 2, "embedded": 1, "missing": 1}
    assert [row["id"] for row in storage.list_missing_embeddings("chunks")] == ["b"]
    stored = storage.get_chunk("a")
    assert stored is not None
    assert stored["embedding"] == [0.0, 1.0, 0.0, 0.0]


def test_batch_update_embeddings_counts_written_rows(storage: DuckDBStorage) -> None:
    storage.upsert_chunks([make_chunk("a", "A"), make_chunk("b", "B")])

    written = storage.batch_update_embeddings(
        "chunks",
        [("a", [1.0, 0.0, 0.0, 0.0]), ("b", [0.0, 1.0, 0.0, 0.0]), ("zzz", [0.0, 0.0, 1.0, 0.0])],
    )

    assert written == 2
    assert storage.list_missing_embeddings("chunks") == []


def test_sample_embedded_skips_rows_without_vectors(storage: DuckDBStorage) -> None:
    storage.upsert_chunks(
        [
            make_chunk("with", "With vector", embedding=[1.0, 0.0, 0.0, 0.0]),
            make_chunk("without", "No vector"),
        ]
    )

    sample = storage.sample_embedded("chunks", limit=10)

    assert [row["id"] for row in sample] == ["with"]
    assert sample[0]["embedding"] == [1.0, 0.0, 0.0, 0.0]


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


def test_vector_search_without_index_is_unavailable(storage: DuckDBStorage) -> None:
    storage.upsert_chunks([make_chunk("a", "A", embedding=[1.0, 0.0, 0.0, 0.0])])

    with pytest.raises(VectorIndexUnavailable):
        storage.vector_search(
            "chunks", query_embedding=[1.0, 0.0, 0.0, 0.0], candidates=150, limit=5
        )


@pytest.fixture
def hnsw_storage(storage: DuckDBStorage) -> DuckDBStorage:
    """Storage with the HNSW indexes built; skipped where vss cannot load."""
    with storage._cursor() as cur:
        if not indexes_module.load_extension(cur, "vss"):
            pytest.skip("DuckDB vss extension not available")
    created = storage.provision_indexes()
    if "idx_chunks_embedding_hnsw" not in created:
        pytest.skip("HNSW index could not be built")
    return storage


def test_vector_search_uses_hnsw_index(hnsw_storage: DuckDBStorage) -> None:
    hnsw_storage.upsert_chunks(
        [
            make_chunk("president", "President", embedding=[1.0, 0.0, 0.0, 0.0]),
            make_chunk("library", "Library", embedding=[0.0, 1.0, 0.0, 0.0]),
            make_chunk("gym", "Gym", embedding=[0.6, 0.8, 0.0, 0.0]),
        ]
    )

    results = hnsw_storage.vector_search(
        "chunks", query_embedding=[1.0, 0.0, 0.0, 0.0], candidates=150, limit=2
    )

    assert [hit["id"] for hit in results] == ["president", "gym"]
    assert results[0]["similarity"] == 1.0
    assert results[0]["score"] == 100.0


def test_searcher_answers_from_index_without_fallback(
    hnsw_storage: DuckDBStorage, monkeypatch
) -> None:
    hnsw_storage.upsert_chunks(
        [make_chunk("registrar", "Registrar", embedding=[0.0, 0.0, 1.0, 0.0])]
    )

    def no_sampling(*args, **kwargs):
        raise AssertionError("exact path should not run")

    monkeypatch.setattr(hnsw_storage, "sample_embedded", no_sampling)

    results = build_searcher(hnsw_storage).search("chunks", [0.0, 0.0, 1.0, 0.0], 1)

    assert [hit["id"] for hit in results] == ["registrar"]
    assert results[0]["similarity"] == 1.0


def test_search_text_weights_content_over_keywords(storage: DuckDBStorage) -> None:
    storage.upsert_chunks(
        [
            make_chunk("keyword-only", "Payment options.", keywords=["tuition"]),
            make_chunk("content", "Tuition is due before enrollment."),
            make_chunk("unrelated", "The gym opens at 6 AM."),
        ]
    )

    results = storage.search_text("tuition", limit=5)

    assert [row["id"] for row in results] == ["content", "keyword-only"]
    assert results[0]["score"] > results[1]["score"]


def test_search_text_ignores_blank_queries(storage: DuckDBStorage) -> None:
    storage.upsert_chunks([make_chunk("a", "Anything")])

    assert storage.search_text("   ") == []


# ---------------------------------------------------------------------------
# Index provisioning
# ---------------------------------------------------------------------------


def test_provision_indexes_is_idempotent(storage: DuckDBStorage, no_extensions) -> None:
    first = storage.provision_indexes()
    second = storage.provision_indexes()

    assert "idx_chunks_section" in first
    assert "idx_chunks_section_type" in first
    assert second == []


def test_conflicting_index_is_skipped_with_warning(
    storage: DuckDBStorage, no_extensions, caplog
) -> None:
    with storage._cursor() as cur:
        cur.execute("CREATE INDEX idx_chunks_section ON knowledge_chunks (type)")

    with caplog.at_level(logging.WARNING, logger="campus_kb.storage.indexes"):
        created = storage.provision_indexes()

    assert "idx_chunks_section" not in created
    assert "idx_chunks_type" in created
    assert "different shape" in caplog.text


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


def test_health_check_reports_table_sizes(storage: DuckDBStorage) -> None:
    storage.upsert_chunks([make_chunk("a", "A")])

    status = storage.health_check()

    assert status["status"] == "connected"
    assert status["tables"]["knowledge_chunks"] == 1
    assert status["tables"]["response_cache"] == 0


def test_health_check_after_close(storage: DuckDBStorage) -> None:
    storage.close()

    assert storage.health_check()["status"] == "disconnected"
    with pytest.raises(StoreUnavailable):
        storage.count_records("chunks")


def test_connect_failure_raises_store_unavailable(tmp_path: Path) -> None:
    with pytest.raises(StoreUnavailable):
        DuckDBStorage(str(tmp_path), connect_retries=2, retry_delay=0)


def test_reopening_keeps_data(tmp_path: Path) -> None:
    db_path = str(tmp_path / "persist.duckdb")
    first = DuckDBStorage(db_path, embedding_dim=4)
    first.upsert_chunks([KnowledgeChunk(id="kept", content="Still here")])
    first.close()

    second = DuckDBStorage(db_path, embedding_dim=4)
    try:
        assert second.get_chunk("kept") is not None
    finally:
        second.close()
