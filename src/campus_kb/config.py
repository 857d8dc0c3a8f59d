"""
Configuration helpers for the knowledge store and engine.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_DB_PATH = "~/.campus_kb/knowledge.duckdb"
ENV_DB_PATH = "CAMPUS_KB_DB_PATH"
ENV_CACHE_TTL = "CAMPUS_KB_CACHE_TTL"
ENV_CONNECT_RETRIES = "CAMPUS_KB_CONNECT_RETRIES"
ENV_CONNECT_RETRY_DELAY = "CAMPUS_KB_CONNECT_RETRY_DELAY"
ENV_EMBEDDING_DIM = "CAMPUS_KB_EMBEDDING_DIM"
ENV_LOG_LEVEL = "CAMPUS_KB_LOG_LEVEL"

DEFAULT_EMBEDDING_DIM = 384
DEFAULT_CACHE_TTL = 3600
DEFAULT_CONNECT_RETRIES = 3
DEFAULT_CONNECT_RETRY_DELAY = 3.0


def resolve_db_path(override_path: str | None = None) -> str:
    """
    Resolve the DuckDB path from CLI override, env var, or default.

    Precedence:
    1) explicit override_path
    2) CAMPUS_KB_DB_PATH
    3) default path
    """
    raw_path = override_path or os.getenv(ENV_DB_PATH) or DEFAULT_DB_PATH
    resolved = Path(raw_path).expanduser().resolve()
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return str(resolved)


@dataclass(frozen=True)
class EngineSettings:
    """Runtime settings shared by the store, caches and search."""

    db_path: str
    embedding_dim: int = DEFAULT_EMBEDDING_DIM
    cache_ttl: int = DEFAULT_CACHE_TTL
    connect_retries: int = DEFAULT_CONNECT_RETRIES
    connect_retry_delay: float = DEFAULT_CONNECT_RETRY_DELAY
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, db_path: str | None = None) -> EngineSettings:
        return cls(
            db_path=resolve_db_path(db_path),
            embedding_dim=int(os.getenv(ENV_EMBEDDING_DIM, str(DEFAULT_EMBEDDING_DIM))),
            cache_ttl=int(os.getenv(ENV_CACHE_TTL, str(DEFAULT_CACHE_TTL))),
            connect_retries=int(
                os.getenv(ENV_CONNECT_RETRIES, str(DEFAULT_CONNECT_RETRIES))
            ),
            connect_retry_delay=float(
                os.getenv(ENV_CONNECT_RETRY_DELAY, str(DEFAULT_CONNECT_RETRY_DELAY))
            ),
            log_level=os.getenv(ENV_LOG_LEVEL, "INFO").upper(),
        )
