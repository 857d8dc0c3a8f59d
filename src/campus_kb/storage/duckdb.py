"""
DuckDB storage backend for knowledge chunks, schedule events, cached
responses and the query ledger.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import random
import re
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

import duckdb

from ..errors import StoreUnavailable, VectorIndexUnavailable
from ..models import KnowledgeChunk, Namespace, ScheduleEvent
from .base import CacheEntry, QueryFrequency, UpsertResult
from .indexes import (
    CHUNKS_TABLE,
    SCHEDULE_TABLE,
    TEXT_FIELD_WEIGHTS,
    TEXT_INDEX_SCHEMA,
    VECTOR_INDEXES,
    build_text_index,
    has_index,
    has_text_index,
    provision_indexes,
)

logger = logging.getLogger(__name__)

_TABLES: dict[str, str] = {"chunks": CHUNKS_TABLE, "schedule": SCHEDULE_TABLE}

_CHUNK_COLUMNS = (
    "id, content, text, section, type, category, keywords_json, metadata_json, "
    "created_at, updated_at, embedding_updated_at"
)
_SCHEDULE_COLUMNS = (
    "id, title, description, category, type, \"date\", iso_date, start_date, end_date, "
    "date_type, semester, \"time\", user_type, source, created_at, updated_at, "
    "embedding_updated_at"
)
_COLUMNS: dict[str, str] = {"chunks": _CHUNK_COLUMNS, "schedule": _SCHEDULE_COLUMNS}

# Timestamp columns. Never taken from record metadata, never fingerprinted.
_TIMESTAMP_COLUMNS = frozenset({"created_at", "updated_at", "embedding_updated_at"})

# Errors raised when a concurrent transaction won the same row.
_CONFLICT_ERRORS = (duckdb.ConstraintException, duckdb.TransactionException)
_WRITE_ATTEMPTS = 50
_RETRY_BASE_DELAY = 0.002
_RETRY_MAX_DELAY = 0.1

_T = TypeVar("_T")


def _retry_delay(attempt: int) -> float:
    """Exponential backoff with full jitter."""
    return random.uniform(0, min(_RETRY_MAX_DELAY, _RETRY_BASE_DELAY * 2 ** attempt))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _fingerprint(payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _query_terms(query: str, max_terms: int = 8) -> list[str]:
    terms = re.findall(r"[a-zA-Z0-9_]{3,}", query.lower())
    unique_terms: list[str] = []
    for term in terms:
        if term not in unique_terms:
            unique_terms.append(term)
        if len(unique_terms) >= max_terms:
            break
    if unique_terms:
        return unique_terms
    fallback = query.strip().lower()
    return [fallback] if fallback else []


def _as_vector(value: Any) -> list[float] | None:
    if value is None:
        return None
    return [float(v) for v in value]


def _as_similarity(value: Any) -> float:
    if value is None:
        return 0.0
    similarity = float(value)
    return 0.0 if math.isnan(similarity) else similarity


class DuckDBStorage:
    """DuckDB-backed persistence for the retrieval engine.

    One connection is opened per storage instance; every operation runs on
    its own cursor so the instance can be shared across threads.
    """

    def __init__(
        self,
        db_path: str,
        *,
        embedding_dim: int = 384,
        read_only: bool = False,
        initialize: bool = True,
        connect_retries: int = 3,
        retry_delay: float = 3.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.db_path = (
            db_path if db_path == ":memory:" else str(Path(db_path).expanduser().resolve())
        )
        self.embedding_dim = embedding_dim
        self.read_only = read_only
        self._clock = clock or _utcnow
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn: duckdb.DuckDBPyConnection | None = self._connect(
            attempts=max(connect_retries, 1), delay=retry_delay
        )
        if initialize and not read_only:
            self.initialize()

    def _connect(self, *, attempts: int, delay: float) -> duckdb.DuckDBPyConnection:
        last_error: duckdb.Error | None = None
        for attempt in range(1, attempts + 1):
            logger.info(
                "Connecting to %s (attempt %d/%d)", self.db_path, attempt, attempts
            )
            try:
                conn = duckdb.connect(self.db_path, read_only=self.read_only)
                conn.execute("SELECT 1").fetchone()
                return conn
            except duckdb.Error as exc:
                last_error = exc
                logger.warning("Connection attempt %d failed: %s", attempt, exc)
                if attempt < attempts:
                    time.sleep(delay)
        raise StoreUnavailable(
            f"Could not open {self.db_path} after {attempts} attempts"
        ) from last_error

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        if self._conn is None:
            raise StoreUnavailable("Storage connection is closed")
        cursor = self._conn.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def close(self) -> None:
        """Close the underlying DuckDB connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.info("Closed %s", self.db_path)

    def initialize(self) -> None:
        dim = self.embedding_dim
        with self._cursor() as cur:
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {CHUNKS_TABLE} (
                    id VARCHAR PRIMARY KEY,
                    content VARCHAR NOT NULL,
                    text VARCHAR NOT NULL,
                    section VARCHAR,
                    type VARCHAR,
                    category VARCHAR,
                    keywords_json VARCHAR NOT NULL DEFAULT '[]',
                    keywords_text VARCHAR NOT NULL DEFAULT '',
                    embedding FLOAT[{dim}],
                    metadata_json VARCHAR NOT NULL DEFAULT '{{}}',
                    metadata_acronym VARCHAR,
                    metadata_year VARCHAR,
                    content_sha256 VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    embedding_updated_at TIMESTAMP
                );
                """
            )
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {SCHEDULE_TABLE} (
                    id VARCHAR PRIMARY KEY,
                    title VARCHAR NOT NULL,
                    description VARCHAR NOT NULL,
                    category VARCHAR,
                    type VARCHAR,
                    "date" VARCHAR,
                    iso_date VARCHAR,
                    start_date VARCHAR,
                    end_date VARCHAR,
                    date_type VARCHAR,
                    semester VARCHAR,
                    "time" VARCHAR,
                    user_type VARCHAR,
                    source VARCHAR,
                    embedding FLOAT[{dim}],
                    content_sha256 VARCHAR NOT NULL,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    embedding_updated_at TIMESTAMP
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS response_cache (
                    query VARCHAR PRIMARY KEY,
                    response VARCHAR NOT NULL,
                    complexity VARCHAR,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    expires_at TIMESTAMP
                );
                """
            )
            cur.execute("CREATE SEQUENCE IF NOT EXISTS query_frequency_seq START 1;")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS user_query_frequency (
                    user_id VARCHAR NOT NULL,
                    query VARCHAR NOT NULL,
                    query_count BIGINT NOT NULL,
                    user_type VARCHAR,
                    seq BIGINT NOT NULL DEFAULT nextval('query_frequency_seq'),
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (user_id, query)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS global_faqs (
                    query VARCHAR NOT NULL,
                    user_type VARCHAR NOT NULL,
                    query_count BIGINT NOT NULL,
                    seq BIGINT NOT NULL DEFAULT nextval('query_frequency_seq'),
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (query, user_type)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS query_analytics (
                    query VARCHAR NOT NULL,
                    complexity VARCHAR,
                    response_time_ms DOUBLE NOT NULL,
                    cached BOOLEAN NOT NULL DEFAULT FALSE,
                    logged_at TIMESTAMP NOT NULL
                );
                """
            )

    def provision_indexes(self) -> list[str]:
        with self._cursor() as cur:
            return provision_indexes(cur, persistent=self.db_path != ":memory:")

    def rebuild_text_index(self) -> bool:
        """Rebuild the full-text index so it reflects the latest writes."""
        with self._cursor() as cur:
            return build_text_index(cur, overwrite=True)

    def health_check(self) -> dict[str, Any]:
        if self._conn is None:
            return {"status": "disconnected", "message": "Storage connection is closed"}
        try:
            with self._cursor() as cur:
                cur.execute("SELECT 1").fetchone()
                tables: dict[str, int] = {}
                for table in (
                    CHUNKS_TABLE,
                    SCHEDULE_TABLE,
                    "response_cache",
                    "user_query_frequency",
                    "global_faqs",
                    "query_analytics",
                ):
                    row = cur.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
                    tables[table] = int(row[0]) if row else 0
        except duckdb.Error as exc:
            return {"status": "error", "message": str(exc)}
        return {"status": "connected", "db_path": self.db_path, "tables": tables}

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def upsert_chunks(self, chunks: list[KnowledgeChunk]) -> UpsertResult:
        return self._upsert_batch("chunks", chunks, self._chunk_field_groups)

    def upsert_schedule_events(self, events: list[ScheduleEvent]) -> UpsertResult:
        return self._upsert_batch("schedule", events, self._schedule_field_groups)

    def _upsert_batch(
        self,
        namespace: Namespace,
        records: list[Any],
        field_groups: Callable[[Any, datetime], tuple[dict[str, Any], dict[str, Any]]],
    ) -> UpsertResult:
        table = _TABLES[namespace]
        counts = {"inserted": 0, "updated": 0, "unchanged": 0}
        failed_ids: list[str] = []

        for record in records:
            try:
                self._check_dimension(record.embedding)
                always, on_insert = field_groups(record, self._clock())
                outcome = self._write_record(table, record.id, always, on_insert)
            except (duckdb.Error, ValueError) as exc:
                logger.warning("Failed to upsert %s %s: %s", namespace, record.id, exc)
                failed_ids.append(record.id)
                continue
            counts[outcome] += 1

        result = UpsertResult(requested=len(records), failed_ids=failed_ids, **counts)
        logger.info(
            "Processed %s: %d inserted, %d updated, %d unchanged (total: %d)",
            namespace,
            result.inserted,
            result.updated,
            result.unchanged,
            result.requested,
        )
        if result.is_partial:
            logger.warning(
                "Only %d of %d %s records were processed; failed ids: %s",
                result.processed,
                result.requested,
                namespace,
                ", ".join(failed_ids),
            )
        return result

    def _check_dimension(self, embedding: list[float] | None) -> None:
        if embedding is not None and len(embedding) != self.embedding_dim:
            raise ValueError(
                f"embedding has {len(embedding)} dimensions, expected {self.embedding_dim}"
            )

    def _chunk_field_groups(
        self, chunk: KnowledgeChunk, now: datetime
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split a chunk into (set-always, set-on-insert) column maps."""
        always: dict[str, Any] = {
            "content": chunk.content,
            "text": chunk.text or chunk.content,
            "section": chunk.section,
            "type": chunk.type,
            "category": chunk.category,
            "keywords_json": json.dumps(chunk.keywords),
            "keywords_text": " ".join(chunk.keywords).lower(),
            "embedding": chunk.embedding,
            "metadata_json": {
                key: value
                for key, value in chunk.metadata.items()
                if key not in _TIMESTAMP_COLUMNS
            },
            "updated_at": now,
        }
        if chunk.embedding is not None:
            always["embedding_updated_at"] = now
        return always, {"created_at": now}

    def _schedule_field_groups(
        self, event: ScheduleEvent, now: datetime
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        always: dict[str, Any] = event.model_dump(exclude={"id"}, by_alias=False)
        always["updated_at"] = now
        if event.embedding is not None:
            always["embedding_updated_at"] = now
        return always, {"created_at": now}

    def _write_record(
        self,
        table: str,
        record_id: str,
        always: dict[str, Any],
        on_insert: dict[str, Any],
    ) -> str:
        """Write one record atomically. Returns inserted, updated or unchanged."""
        overlap = always.keys() & on_insert.keys()
        if overlap:
            raise ValueError(f"Field groups overlap: {sorted(overlap)}")
        return self._transactional(
            f"{table} {record_id}",
            lambda cur: self._write_in_transaction(cur, table, record_id, always, on_insert),
        )

    def _transactional(
        self, label: str, work: Callable[[duckdb.DuckDBPyConnection], _T]
    ) -> _T:
        """Run *work* in its own transaction, retrying write conflicts.

        DuckDB resolves concurrent writes to the same row optimistically: the
        losing transaction fails with a conflict or a duplicate key and is
        replayed here from a fresh snapshot.
        """
        attempt = 1
        while True:
            with self._cursor() as cur:
                cur.begin()
                try:
                    result = work(cur)
                    cur.commit()
                    return result
                except _CONFLICT_ERRORS as exc:
                    self._rollback(cur)
                    if attempt >= _WRITE_ATTEMPTS:
                        logger.warning(
                            "Giving up on %s after %d conflicting attempts", label, attempt
                        )
                        raise
                    logger.debug("Write conflict on %s (attempt %d): %s", label, attempt, exc)
                except duckdb.Error:
                    self._rollback(cur)
                    raise
            time.sleep(_retry_delay(attempt))
            attempt += 1

    @staticmethod
    def _rollback(cur: duckdb.DuckDBPyConnection) -> None:
        try:
            cur.rollback()
        except duckdb.TransactionException as exc:
            # A failed commit has already ended the transaction.
            logger.debug("Rollback skipped: %s", exc)

    def _write_in_transaction(
        self,
        cur: duckdb.DuckDBPyConnection,
        table: str,
        record_id: str,
        always: dict[str, Any],
        on_insert: dict[str, Any],
    ) -> str:
        has_metadata = "metadata_json" in always
        select_metadata = ", metadata_json" if has_metadata else ""
        existing = cur.execute(
            f"SELECT content_sha256{select_metadata} FROM {table} WHERE id = ?",
            [record_id],
        ).fetchone()

        values = dict(always)
        if has_metadata:
            merged: dict[str, Any] = {}
            if existing is not None:
                merged.update(json.loads(str(existing[1])))
            # Metadata keys are written one by one; keys absent from the
            # incoming record keep their stored value.
            for key, value in always["metadata_json"].items():
                merged[key] = value
            values["metadata_json"] = json.dumps(merged, sort_keys=True, default=str)
            values["metadata_acronym"] = _optional_str(merged.get("acronym"))
            values["metadata_year"] = _optional_str(merged.get("year"))
        values["content_sha256"] = _fingerprint(
            {key: value for key, value in values.items() if key not in _TIMESTAMP_COLUMNS}
        )

        if existing is None:
            values.update(on_insert)
            columns = ["id", *(f'"{col}"' for col in values)]
            placeholders = ["?", *(self._placeholder(col) for col in values)]
            cur.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) "
                f"VALUES ({', '.join(placeholders)})",
                [record_id, *values.values()],
            )
            return "inserted"

        assignments = ", ".join(f'"{col}" = {self._placeholder(col)}' for col in values)
        cur.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ?",
            [*values.values(), record_id],
        )
        return "unchanged" if existing[0] == values["content_sha256"] else "updated"

    def _placeholder(self, column: str) -> str:
        if column == "embedding":
            return f"?::FLOAT[{self.embedding_dim}]"
        return "?"

    # ------------------------------------------------------------------
    # Lookups and embedding maintenance
    # ------------------------------------------------------------------

    def get_chunk(self, chunk_id: str) -> dict[str, Any] | None:
        with self._cursor() as cur:
            rows = self._fetch_dicts(
                cur,
                f"SELECT {_CHUNK_COLUMNS}, embedding FROM {CHUNKS_TABLE} WHERE id = ? LIMIT 1",
                [chunk_id],
            )
        if not rows:
            return None
        return self._format_row("chunks", rows[0])

    def list_chunks(
        self,
        *,
        section: str | None = None,
        type: str | None = None,
        category: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        sql = f"SELECT {_CHUNK_COLUMNS} FROM {CHUNKS_TABLE} WHERE 1 = 1"
        params: list[Any] = []
        for column, value in (("section", section), ("type", type), ("category", category)):
            if value is not None:
                sql += f" AND {column} = ?"
                params.append(value)
        sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._cursor() as cur:
            rows = self._fetch_dicts(cur, sql, params)
        return [self._format_row("chunks", row) for row in rows]

    def count_records(self, namespace: Namespace) -> int:
        with self._cursor() as cur:
            row = cur.execute(f"SELECT COUNT(*) FROM {_TABLES[namespace]}").fetchone()
        return int(row[0]) if row else 0

    def embedding_stats(self) -> dict[str, dict[str, int]]:
        stats: dict[str, dict[str, int]] = {}
        with self._cursor() as cur:
            for namespace, table in _TABLES.items():
                row = cur.execute(
                    f"SELECT COUNT(*), COUNT(embedding) FROM {table}"
                ).fetchone()
                total = int(row[0]) if row else 0
                embedded = int(row[1]) if row else 0
                stats[namespace] = {
                    "total": total,
                    "embedded": embedded,
                    "missing": total - embedded,
                }
        return stats

    def update_embedding(
        self, namespace: Namespace, record_id: str, embedding: list[float]
    ) -> bool:
        return self.batch_update_embeddings(namespace, [(record_id, embedding)]) == 1

    def batch_update_embeddings(
        self,
        namespace: Namespace,
        pairs: list[tuple[str, list[float]]],
    ) -> int:
        table = _TABLES[namespace]
        sql = f"""
            UPDATE {table}
            SET embedding = ?::FLOAT[{self.embedding_dim}],
                embedding_updated_at = ?
            WHERE id = ?
            RETURNING id
        """
        written = 0
        for record_id, embedding in pairs:
            try:
                self._check_dimension(embedding)
                row = self._transactional(
                    f"{table} {record_id}",
                    lambda cur: cur.execute(
                        sql, [embedding, self._clock(), record_id]
                    ).fetchone(),
                )
            except (duckdb.Error, ValueError) as exc:
                logger.warning("Failed to store embedding for %s: %s", record_id, exc)
                continue
            if row is not None:
                written += 1
        logger.info("Updated %d/%d %s embeddings", written, len(pairs), namespace)
        return written

    def list_missing_embeddings(
        self, namespace: Namespace, *, limit: int | None = None
    ) -> list[dict[str, Any]]:
        sql = (
            f"SELECT {_COLUMNS[namespace]} FROM {_TABLES[namespace]} "
            "WHERE embedding IS NULL ORDER BY id"
        )
        params: list[Any] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._cursor() as cur:
            rows = self._fetch_dicts(cur, sql, params)
        return [self._format_row(namespace, row) for row in rows]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def vector_search(
        self,
        namespace: Namespace,
        *,
        query_embedding: list[float],
        candidates: int,
        limit: int,
    ) -> list[dict[str, Any]]:
        index = VECTOR_INDEXES[namespace]
        try:
            # The HNSW rewrite only applies to a constant query vector and LIMIT.
            vector = self._vector_literal(query_embedding)
            with self._cursor() as cur:
                if not has_index(cur, index.name):
                    raise VectorIndexUnavailable(f"Vector index {index.name} is not built")
                try:
                    cur.execute(f"SET hnsw_ef_search = {int(candidates)}")
                except duckdb.Error as exc:
                    logger.debug("hnsw_ef_search not applied: %s", exc)
                rows = self._fetch_dicts(
                    cur,
                    f"""
                    SELECT {_COLUMNS[namespace]},
                        array_cosine_similarity(embedding, {vector}) AS similarity
                    FROM {index.table}
                    ORDER BY array_cosine_distance(embedding, {vector})
                    LIMIT {int(candidates)}
                    """,
                    [],
                )
        except (duckdb.Error, ValueError) as exc:
            raise VectorIndexUnavailable(f"Vector search failed: {exc}") from exc

        results: list[dict[str, Any]] = []
        for row in rows:
            raw = row.pop("similarity")
            if raw is None:
                continue
            record = self._format_row(namespace, row)
            similarity = _as_similarity(raw)
            record["similarity"] = similarity
            record["score"] = similarity * 100
            results.append(record)
        return results[:limit]

    def _vector_literal(self, vector: list[float]) -> str:
        self._check_dimension(vector)
        values = []
        for value in vector:
            number = float(value)
            if not math.isfinite(number):
                raise ValueError("query embedding must be finite")
            values.append(repr(number))
        return f"[{', '.join(values)}]::FLOAT[{self.embedding_dim}]"

    def sample_embedded(self, namespace: Namespace, *, limit: int) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            rows = self._fetch_dicts(
                cur,
                f"""
                SELECT {_COLUMNS[namespace]}, embedding
                FROM {_TABLES[namespace]}
                WHERE embedding IS NOT NULL
                LIMIT ?
                """,
                [limit],
            )
        return [self._format_row(namespace, row) for row in rows]

    def search_text(self, query: str, *, limit: int = 10) -> list[dict[str, Any]]:
        """Weighted full-text search over content, text and keywords."""
        terms = _query_terms(query)
        if not terms:
            return []
        with self._cursor() as cur:
            if has_text_index(cur):
                try:
                    return self._search_text_bm25(cur, query, limit)
                except duckdb.Error as exc:
                    logger.warning("Full-text index query failed, using term match: %s", exc)
            return self._search_text_terms(cur, terms, limit)

    def _search_text_bm25(
        self, cur: duckdb.DuckDBPyConnection, query: str, limit: int
    ) -> list[dict[str, Any]]:
        score_expr = " + ".join(
            f"{weight} * coalesce({TEXT_INDEX_SCHEMA}.match_bm25(id, ?, fields := '{column}'), 0)"
            for column, weight in TEXT_FIELD_WEIGHTS.items()
        )
        rows = self._fetch_dicts(
            cur,
            f"""
            SELECT * FROM (
                SELECT {_CHUNK_COLUMNS}, ({score_expr}) AS score
                FROM {CHUNKS_TABLE}
            ) ranked
            WHERE score > 0
            ORDER BY score DESC, id ASC
            LIMIT ?
            """,
            [*([query] * len(TEXT_FIELD_WEIGHTS)), limit],
        )
        return self._format_scored(rows)

    def _search_text_terms(
        self, cur: duckdb.DuckDBPyConnection, terms: list[str], limit: int
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, weight in TEXT_FIELD_WEIGHTS.items():
            for term in terms:
                clauses.append(
                    f"CASE WHEN lower({column}) LIKE '%' || ? || '%' THEN {weight} ELSE 0 END"
                )
                params.append(term)
        rows = self._fetch_dicts(
            cur,
            f"""
            SELECT * FROM (
                SELECT {_CHUNK_COLUMNS}, ({' + '.join(clauses)}) AS score
                FROM {CHUNKS_TABLE}
            ) ranked
            WHERE score > 0
            ORDER BY score DESC, id ASC
            LIMIT ?
            """,
            [*params, limit],
        )
        return self._format_scored(rows)

    def _format_scored(self, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        results: list[dict[str, Any]] = []
        for row in rows:
            score = float(row.pop("score"))
            record = self._format_row("chunks", row)
            record["score"] = score
            results.append(record)
        return results

    # ------------------------------------------------------------------
    # Response cache
    # ------------------------------------------------------------------

    def get_cache_entry(self, query: str) -> CacheEntry | None:
        with self._cursor() as cur:
            row = cur.execute(
                """
                SELECT query, response, complexity, created_at, updated_at, expires_at
                FROM response_cache
                WHERE query = ?
                """,
                [query],
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(
            query=str(row[0]),
            response=str(row[1]),
            complexity=row[2],
            created_at=row[3],
            updated_at=row[4],
            expires_at=row[5],
        )

    def put_cache_entry(
        self,
        *,
        query: str,
        response: str,
        complexity: str | None,
        expires_at: datetime | None,
    ) -> None:
        now = self._clock()
        self._transactional(
            "response_cache",
            lambda cur: cur.execute(
                """
                INSERT INTO response_cache (
                    query, response, complexity, created_at, updated_at, expires_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (query) DO UPDATE SET
                    response = excluded.response,
                    complexity = excluded.complexity,
                    created_at = excluded.created_at,
                    updated_at = excluded.updated_at,
                    expires_at = excluded.expires_at
                """,
                [query, response, complexity, now, now, expires_at],
            ),
        )

    def delete_cache_entries(
        self, *, query: str | None = None, expired_before: datetime | None = None
    ) -> int:
        sql = "DELETE FROM response_cache"
        params: list[Any] = []
        if query is not None:
            sql += " WHERE query = ?"
            params.append(query)
        elif expired_before is not None:
            sql += " WHERE expires_at IS NOT NULL AND expires_at <= ?"
            params.append(expired_before)
        sql += " RETURNING query"
        with self._cursor() as cur:
            rows = cur.execute(sql, params).fetchall()
        return len(rows)

    # ------------------------------------------------------------------
    # Query ledger and analytics
    # ------------------------------------------------------------------

    def record_query_frequency(
        self, *, user_id: str, query: str, user_type: str | None
    ) -> None:
        """Count one ask for the user and, when typed, for the global FAQs.

        Both counters move in the same transaction.
        """
        now = self._clock()

        def bump(cur: duckdb.DuckDBPyConnection) -> None:
            self._bump_user_query(cur, user_id, query, user_type, now)
            if user_type is not None:
                self._bump_global_query(cur, query, user_type, now)

        self._transactional("query ledger", bump)

    @staticmethod
    def _bump_user_query(
        cur: duckdb.DuckDBPyConnection,
        user_id: str,
        query: str,
        user_type: str | None,
        now: datetime,
    ) -> None:
        cur.execute(
            """
            INSERT INTO user_query_frequency (
                user_id, query, query_count, user_type, created_at, updated_at
            )
            VALUES (?, ?, 1, ?, ?, ?)
            ON CONFLICT (user_id, query) DO UPDATE SET
                query_count = query_count + 1,
                user_type = coalesce(excluded.user_type, user_type),
                updated_at = excluded.updated_at
            """,
            [user_id, query, user_type, now, now],
        )

    @staticmethod
    def _bump_global_query(
        cur: duckdb.DuckDBPyConnection, query: str, user_type: str, now: datetime
    ) -> None:
        cur.execute(
            """
            INSERT INTO global_faqs (query, user_type, query_count, created_at, updated_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT (query, user_type) DO UPDATE SET
                query_count = query_count + 1,
                updated_at = excluded.updated_at
            """,
            [query, user_type, now, now],
        )

    def list_user_queries(self, user_id: str) -> list[QueryFrequency]:
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT query, query_count, user_type
                FROM user_query_frequency
                WHERE user_id = ?
                ORDER BY seq ASC
                """,
                [user_id],
            ).fetchall()
        return [
            QueryFrequency(query=str(row[0]), count=int(row[1]), user_type=row[2])
            for row in rows
        ]

    def list_global_queries(
        self, *, user_type: str | None = None, limit: int = 5
    ) -> list[QueryFrequency]:
        sql = "SELECT query, query_count, user_type FROM global_faqs"
        params: list[Any] = []
        if user_type is not None:
            sql += " WHERE user_type = ?"
            params.append(user_type)
        sql += " ORDER BY query_count DESC, seq ASC LIMIT ?"
        params.append(limit)
        with self._cursor() as cur:
            rows = cur.execute(sql, params).fetchall()
        return [
            QueryFrequency(query=str(row[0]), count=int(row[1]), user_type=row[2])
            for row in rows
        ]

    def insert_query_log(
        self,
        *,
        query: str,
        complexity: str | None,
        response_time_ms: float,
        cached: bool,
    ) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO query_analytics (query, complexity, response_time_ms, cached, logged_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [query, complexity, float(response_time_ms), cached, self._clock()],
            )

    def summarize_query_log(
        self, *, start: datetime | None = None, end: datetime | None = None
    ) -> dict[str, Any]:
        where = ""
        params: list[Any] = []
        if start is not None and end is not None:
            where = "WHERE logged_at >= ? AND logged_at <= ?"
            params = [start, end]
        with self._cursor() as cur:
            totals = cur.execute(
                f"""
                SELECT
                    COUNT(*),
                    AVG(response_time_ms),
                    COUNT(*) FILTER (WHERE cached)
                FROM query_analytics
                {where}
                """,
                params,
            ).fetchone()
            by_complexity = cur.execute(
                f"""
                SELECT coalesce(complexity, 'unknown'), COUNT(*)
                FROM query_analytics
                {where}
                GROUP BY 1
                ORDER BY 1
                """,
                params,
            ).fetchall()
        total = int(totals[0]) if totals else 0
        if total == 0:
            return {}
        return {
            "total_queries": total,
            "avg_response_time_ms": float(totals[1]),
            "cached_queries": int(totals[2]),
            "by_complexity": {str(row[0]): int(row[1]) for row in by_complexity},
        }

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _fetch_dicts(
        cur: duckdb.DuckDBPyConnection, sql: str, params: list[Any]
    ) -> list[dict[str, Any]]:
        cur.execute(sql, params)
        columns = [desc[0] for desc in cur.description]
        return [dict(zip(columns, row)) for row in cur.fetchall()]

    @staticmethod
    def _format_row(namespace: Namespace, row: dict[str, Any]) -> dict[str, Any]:
        record = dict(row)
        if "embedding" in record:
            record["embedding"] = _as_vector(record["embedding"])
        timestamps = {
            "created_at": record.pop("created_at", None),
            "updated_at": record.pop("updated_at", None),
            "embedding_updated_at": record.pop("embedding_updated_at", None),
        }
        if namespace == "schedule":
            record.update(timestamps)
            return record

        record["keywords"] = json.loads(str(record.pop("keywords_json", "[]")))
        metadata = json.loads(str(record.pop("metadata_json", "{}")))
        metadata.update(
            {key: value for key, value in timestamps.items() if value is not None}
        )
        record["metadata"] = metadata
        return record


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
