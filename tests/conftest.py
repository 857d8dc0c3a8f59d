from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from campus_kb.embeddings import EmbeddingProvider
from campus_kb.models import KnowledgeChunk
from campus_kb.storage import DuckDBStorage

DIM = 4


class FakeClock:
    """Manually advanced replacement for the storage/cache clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 6, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@dataclass
class FakeEmbedding:
    values: list[float]


@dataclass
class FakeEmbedResult:
    embeddings: list[FakeEmbedding]


class FakeModels:
    """Returns vectors from a lookup table, recording every call."""

    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.vectors = vectors or {}
        self.calls: list[dict[str, Any]] = []

    def embed_content(
        self, *, model: str, contents: list[str], config: dict
    ) -> FakeEmbedResult:
        self.calls.append({"model": model, "contents": contents, "config": config})
        dim = config.get("output_dimensionality", DIM)
        default = [0.0] * (dim - 1) + [1.0]
        return FakeEmbedResult(
            embeddings=[
                FakeEmbedding(values=list(self.vectors.get(text, default)))
                for text in contents
            ]
        )


class FakeGenAIClient:
    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.models = FakeModels(vectors)


def make_chunk(chunk_id: str, content: str, **kwargs: Any) -> KnowledgeChunk:
    return KnowledgeChunk(id=chunk_id, content=content, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage(tmp_path: Path, clock: FakeClock):
    store = DuckDBStorage(
        str(tmp_path / "kb.duckdb"),
        embedding_dim=DIM,
        connect_retries=1,
        retry_delay=0,
        clock=clock,
    )
    yield store
    store.close()


@pytest.fixture
def fake_client() -> FakeGenAIClient:
    return FakeGenAIClient()


@pytest.fixture
def embedder(fake_client: FakeGenAIClient) -> EmbeddingProvider:
    return EmbeddingProvider(client=fake_client, dim=DIM, batch_size=10)
