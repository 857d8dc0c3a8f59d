import json
from pathlib import Path
from typing import Annotated, Optional, cast

from typer import Argument, Exit, Option, Typer
from rich.console import Console
from rich.table import Table

from .backfill import EmbeddingBackfill
from .config import EngineSettings
from .engine import KnowledgeEngine
from .logging_config import setup_logging
from .models import KnowledgeChunk, Namespace, ScheduleEvent
from .storage import UpsertResult

app = Typer(help="Maintenance commands for the campus knowledge store.")
console = Console()

DbPathOption = Annotated[
    Optional[str],
    Option("--db-path", help="DuckDB file to use (defaults to CAMPUS_KB_DB_PATH)."),
]


def open_engine(db_path: str | None) -> KnowledgeEngine:
    settings = EngineSettings.from_env(db_path)
    setup_logging(settings.log_level, console=Console(stderr=True))
    return KnowledgeEngine.from_settings(settings)


def _print_upsert(result: UpsertResult, label: str) -> None:
    table = Table(title=f"Ingested {label}")
    for column in ("requested", "inserted", "updated", "unchanged", "failed"):
        table.add_column(column, justify="right")
    table.add_row(
        str(result.requested),
        str(result.inserted),
        str(result.updated),
        str(result.unchanged),
        str(len(result.failed_ids)),
    )
    console.print(table)
    if result.failed_ids:
        console.print(f"[bold red]Failed ids:[/] {', '.join(result.failed_ids)}")


def _print_hits(hits: list[dict], title: str) -> None:
    table = Table(title=title)
    table.add_column("score", justify="right")
    table.add_column("id")
    table.add_column("text")
    for hit in hits:
        body = hit.get("text") or hit.get("content") or hit.get("title") or ""
        table.add_row(f"{hit.get('score', 0):.1f}", str(hit["id"]), body[:80])
    console.print(table)


@app.command()
def init(db_path: DbPathOption = None) -> None:
    """Create tables and provision indexes."""
    engine = open_engine(db_path)
    try:
        console.print(engine.health())
    finally:
        engine.close()


@app.command()
def ingest(
    file: Annotated[Path, Argument(help="JSON file holding a list of records.")],
    schedule: Annotated[
        bool, Option("--schedule", help="Records are schedule events.")
    ] = False,
    db_path: DbPathOption = None,
) -> None:
    """Upsert knowledge chunks (or schedule events) from a JSON file."""
    records = json.loads(file.read_text(encoding="utf-8"))
    if not isinstance(records, list):
        console.print("[bold red]Expected a JSON list of records[/]")
        raise Exit(code=1)

    engine = open_engine(db_path)
    try:
        if schedule:
            events = [ScheduleEvent.model_validate(record) for record in records]
            _print_upsert(engine.ingest_schedule(events), "schedule events")
        else:
            chunks = [KnowledgeChunk.model_validate(record) for record in records]
            result = engine.ingest_chunks(chunks)
            engine.storage.rebuild_text_index()
            _print_upsert(result, "knowledge chunks")
    finally:
        engine.close()


@app.command()
def backfill(
    namespace: Annotated[
        str, Option("--namespace", "-n", help="chunks or schedule")
    ] = "chunks",
    limit: Annotated[Optional[int], Option("--limit", help="Max records to embed.")] = None,
    db_path: DbPathOption = None,
) -> None:
    """Generate embeddings for records stored without one."""
    if namespace not in ("chunks", "schedule"):
        console.print(f"[bold red]Unknown namespace:[/] {namespace}")
        raise Exit(code=1)
    engine = open_engine(db_path)
    try:
        with console.status(f"Embedding {namespace}..."):
            result = EmbeddingBackfill(engine.storage, engine.embedding_provider).run(
                cast(Namespace, namespace), limit=limit
            )
        console.print(
            f"Embedded {result.embeddings_written} of {result.pending} pending {namespace}"
        )
    finally:
        engine.close()


@app.command("check-embeddings")
def check_embeddings(db_path: DbPathOption = None) -> None:
    """Show how many records still lack an embedding."""
    engine = open_engine(db_path)
    try:
        stats = engine.storage.embedding_stats()
    finally:
        engine.close()
    table = Table(title="Embeddings")
    for column in ("namespace", "total", "embedded", "missing"):
        table.add_column(column)
    for namespace, counts in stats.items():
        table.add_row(
            namespace,
            str(counts["total"]),
            str(counts["embedded"]),
            str(counts["missing"]),
        )
    console.print(table)


@app.command()
def search(
    query: Annotated[str, Argument(help="Question to search for.")],
    limit: Annotated[int, Option("--limit", "-l")] = 5,
    schedule: Annotated[bool, Option("--schedule", help="Search schedule events.")] = False,
    text: Annotated[bool, Option("--text", help="Use full-text search.")] = False,
    db_path: DbPathOption = None,
) -> None:
    """Search the knowledge base."""
    engine = open_engine(db_path)
    try:
        if text:
            hits = engine.search_text(query, limit)
        elif schedule:
            hits = engine.semantic.search_schedule_text(query, limit)
        else:
            hits = engine.semantic.search_text(query, limit)
    finally:
        engine.close()
    _print_hits(hits, f"Results for {query!r}")


@app.command()
def faqs(
    user_type: Annotated[Optional[str], Option("--user-type", "-u")] = None,
    limit: Annotated[int, Option("--limit", "-l")] = 5,
    db_path: DbPathOption = None,
) -> None:
    """List the most frequently asked questions."""
    engine = open_engine(db_path)
    try:
        questions = engine.global_faqs(user_type, limit)
    finally:
        engine.close()
    if not questions:
        console.print("No FAQs recorded yet.")
        return
    for position, question in enumerate(questions, start=1):
        console.print(f"{position}. {question}")


@app.command("cache-clear")
def cache_clear(
    expired_only: Annotated[
        bool, Option("--expired-only", help="Only drop expired entries.")
    ] = False,
    db_path: DbPathOption = None,
) -> None:
    """Remove cached responses."""
    engine = open_engine(db_path)
    try:
        removed = engine.cache.purge_expired() if expired_only else engine.cache.clear()
    finally:
        engine.close()
    console.print(f"Removed {removed} cached responses")


@app.command()
def health(db_path: DbPathOption = None) -> None:
    """Report store status and table sizes."""
    engine = open_engine(db_path)
    try:
        status = engine.health()
    finally:
        engine.close()
    console.print_json(json.dumps(status, default=str))
    if status.get("status") != "connected":
        raise Exit(code=1)
