"""
Secondary index definitions and idempotent provisioning for DuckDB.

Provisioning never fails startup: an index that already exists with a
different shape, or that DuckDB refuses to build, is logged and skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

import duckdb

logger = logging.getLogger(__name__)

CHUNKS_TABLE = "knowledge_chunks"
SCHEDULE_TABLE = "schedule_events"
TEXT_INDEX_SCHEMA = f"fts_main_{CHUNKS_TABLE}"

# Full-text weights per indexed column.
TEXT_FIELD_WEIGHTS: dict[str, int] = {
    "content": 10,
    "text": 10,
    "keywords_text": 5,
}


@dataclass(frozen=True)
class IndexSpec:
    """A named index over one or more columns of a table."""

    name: str
    table: str
    columns: tuple[str, ...]
    using: str | None = None
    options: str | None = None

    def create_sql(self) -> str:
        using = f" USING {self.using}" if self.using else ""
        options = f" WITH ({self.options})" if self.options else ""
        return (
            f"CREATE INDEX {self.name} ON {self.table}{using} "
            f"({', '.join(self.columns)}){options}"
        )

    @property
    def signature(self) -> str:
        return _normalize_columns(", ".join(self.columns))


# `id` uniqueness is enforced by the PRIMARY KEY of each table.
CHUNK_INDEXES: tuple[IndexSpec, ...] = (
    IndexSpec("idx_chunks_section", CHUNKS_TABLE, ("section",)),
    IndexSpec("idx_chunks_type", CHUNKS_TABLE, ("type",)),
    IndexSpec("idx_chunks_keywords", CHUNKS_TABLE, ("keywords_text",)),
    IndexSpec("idx_chunks_updated_at", CHUNKS_TABLE, ("updated_at",)),
    IndexSpec("idx_chunks_section_type", CHUNKS_TABLE, ("section", "type")),
    IndexSpec("idx_chunks_category_section", CHUNKS_TABLE, ("category", "section")),
    IndexSpec("idx_chunks_acronym_section", CHUNKS_TABLE, ("metadata_acronym", "section")),
    IndexSpec("idx_chunks_year_type", CHUNKS_TABLE, ("metadata_year", "type")),
    IndexSpec("idx_chunks_keywords_section", CHUNKS_TABLE, ("keywords_text", "section")),
)

VECTOR_INDEXES: dict[str, IndexSpec] = {
    "chunks": IndexSpec(
        "idx_chunks_embedding_hnsw",
        CHUNKS_TABLE,
        ("embedding",),
        using="HNSW",
        options="metric = 'cosine'",
    ),
    "schedule": IndexSpec(
        "idx_schedule_embedding_hnsw",
        SCHEDULE_TABLE,
        ("embedding",),
        using="HNSW",
        options="metric = 'cosine'",
    ),
}


def _normalize_columns(raw: str) -> str:
    return re.sub(r"[\s\"']", "", raw).lower()


def _existing_signature(conn: duckdb.DuckDBPyConnection, name: str) -> str | None:
    row = conn.execute(
        "SELECT table_name, sql FROM duckdb_indexes() WHERE index_name = ?",
        [name],
    ).fetchone()
    if row is None:
        return None
    match = re.search(r"\(([^)]*)\)", str(row[1] or ""))
    columns = match.group(1) if match else ""
    return f"{str(row[0]).lower()}:{_normalize_columns(columns)}"


def load_extension(conn: duckdb.DuckDBPyConnection, name: str) -> bool:
    """Load a DuckDB extension, installing it first if needed."""
    try:
        conn.execute(f"LOAD {name}")
        return True
    except duckdb.Error:
        pass
    try:
        conn.execute(f"INSTALL {name}")
        conn.execute(f"LOAD {name}")
        return True
    except duckdb.Error as exc:
        logger.warning("DuckDB extension %r unavailable: %s", name, exc)
        return False


def ensure_index(conn: duckdb.DuckDBPyConnection, spec: IndexSpec) -> bool:
    """Create *spec* unless an index with that name already exists.

    Returns True only when a new index was built.
    """
    try:
        existing = _existing_signature(conn, spec.name)
        if existing is not None:
            expected = f"{spec.table.lower()}:{spec.signature}"
            if existing != expected:
                logger.warning(
                    "Index %s exists with a different shape (%s), skipping",
                    spec.name,
                    existing,
                )
            else:
                logger.debug("Index %s already present", spec.name)
            return False
        conn.execute(spec.create_sql())
    except duckdb.Error as exc:
        logger.warning("Could not create index %s: %s", spec.name, exc)
        return False
    logger.debug("Created index %s", spec.name)
    return True


def has_index(conn: duckdb.DuckDBPyConnection, name: str) -> bool:
    row = conn.execute(
        "SELECT COUNT(*) FROM duckdb_indexes() WHERE index_name = ?",
        [name],
    ).fetchone()
    return bool(row and row[0])


def has_text_index(conn: duckdb.DuckDBPyConnection) -> bool:
    row = conn.execute(
        "SELECT COUNT(*) FROM duckdb_schemas() WHERE schema_name = ?",
        [TEXT_INDEX_SCHEMA],
    ).fetchone()
    return bool(row and row[0])


def build_text_index(conn: duckdb.DuckDBPyConnection, *, overwrite: bool) -> bool:
    """Build the full-text index over the weighted chunk columns."""
    if not overwrite and has_text_index(conn):
        logger.debug("Full-text index already present")
        return False
    if not load_extension(conn, "fts"):
        return False
    columns = ", ".join(f"'{column}'" for column in TEXT_FIELD_WEIGHTS)
    try:
        conn.execute(
            f"PRAGMA create_fts_index('{CHUNKS_TABLE}', 'id', {columns}, "
            f"stemmer = 'english', overwrite = {1 if overwrite else 0})"
        )
    except duckdb.Error as exc:
        logger.warning("Could not build full-text index: %s", exc)
        return False
    return True


def provision_indexes(
    conn: duckdb.DuckDBPyConnection, *, persistent: bool = True
) -> list[str]:
    """Create every secondary index. Safe to call on each startup."""
    created: list[str] = []
    for spec in CHUNK_INDEXES:
        if ensure_index(conn, spec):
            created.append(spec.name)

    if build_text_index(conn, overwrite=False):
        created.append(TEXT_INDEX_SCHEMA)

    if load_extension(conn, "vss"):
        try:
            if persistent:
                conn.execute("SET hnsw_enable_experimental_persistence = true")
        except duckdb.Error as exc:
            logger.warning("HNSW persistence could not be enabled: %s", exc)
        else:
            for spec in VECTOR_INDEXES.values():
                if ensure_index(conn, spec):
                    created.append(spec.name)

    if created:
        logger.info("Provisioned indexes: %s", ", ".join(created))
    return created
