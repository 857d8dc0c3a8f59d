"""
Embedding backfill for records stored without a vector.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .embeddings import EmbeddingProvider
from .models import KnowledgeChunk, Namespace, ScheduleEvent
from .storage import StorageBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillResult:
    """Summary output for a backfill run."""

    namespace: str
    pending: int
    embeddings_written: int


def _embedding_text(namespace: Namespace, record: dict) -> str:
    if namespace == "chunks":
        return KnowledgeChunk.model_validate(record).embedding_text()
    return ScheduleEvent.model_validate(record).embedding_text()


class EmbeddingBackfill:
    """Embed every record that has no vector yet and store the result."""

    def __init__(
        self,
        storage: StorageBackend,
        embedding_provider: EmbeddingProvider,
        batch_size: int = 100,
    ) -> None:
        self.storage = storage
        self.embedding_provider = embedding_provider
        self.batch_size = batch_size

    def run(self, namespace: Namespace, *, limit: int | None = None) -> BackfillResult:
        pending = self.storage.list_missing_embeddings(namespace, limit=limit)
        if not pending:
            return BackfillResult(namespace=namespace, pending=0, embeddings_written=0)

        written = 0
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start : start + self.batch_size]
            texts = [_embedding_text(namespace, record) for record in batch]
            embeddings = self.embedding_provider.embed_texts(texts)
            pairs = [
                (str(record["id"]), embedding)
                for record, embedding in zip(batch, embeddings)
            ]
            written += self.storage.batch_update_embeddings(namespace, pairs)
            logger.info(
                "Backfilled %d/%d %s embeddings", written, len(pending), namespace
            )

        return BackfillResult(
            namespace=namespace,
            pending=len(pending),
            embeddings_written=written,
        )
