"""
campus_kb - knowledge retrieval and caching engine for campus Q&A.

Stores university content as searchable chunks, finds the chunks most
relevant to a question (ANN index first, exact cosine similarity as the
fallback), caches generated answers and aggregates query frequency into a
ranked FAQ list.

Example usage:
    >>> from campus_kb import get_engine
    >>> engine = get_engine()
    >>> result = engine.retrieve("Who is the university president?", user_id="u1")
    >>> if not result.from_cache:
    ...     answer = generate(result.chunks)
    ...     engine.cache_answer(result.query, answer, "simple")
"""

from .cache import ResponseCache
from .config import EngineSettings, resolve_db_path
from .embeddings import EmbeddingProvider
from .engine import KnowledgeEngine, RetrievalResult, get_engine, shutdown_engine
from .errors import (
    CampusKBError,
    EmbeddingUnavailable,
    StoreUnavailable,
    VectorIndexUnavailable,
)
from .ledger import QueryLedger
from .models import KnowledgeChunk, ScheduleEvent
from .search import cosine_similarity
from .storage import DuckDBStorage, UpsertResult

__all__ = [
    # Engine
    "KnowledgeEngine",
    "RetrievalResult",
    "get_engine",
    "shutdown_engine",
    # Components
    "DuckDBStorage",
    "EmbeddingProvider",
    "QueryLedger",
    "ResponseCache",
    "UpsertResult",
    "cosine_similarity",
    # Models
    "KnowledgeChunk",
    "ScheduleEvent",
    # Configuration
    "EngineSettings",
    "resolve_db_path",
    # Errors
    "CampusKBError",
    "EmbeddingUnavailable",
    "StoreUnavailable",
    "VectorIndexUnavailable",
]
