"""Checkpointed batch indexing of vault documents."""

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger

from ..config.defaults import (
    DEFAULT_BATCH_PAUSE,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_LIFECYCLE_PAUSE,
    DEFAULT_LIFECYCLE_RESET_INTERVAL,
    STORED_EXCERPT_LENGTH,
)
from .change_tracker import ChangeTracker, now_ms
from .documents import VaultDocumentSource
from .embeddings import EmbeddingGateway, prepare_text_for_embedding
from .models import Document, DocumentRef, FingerprintRecord, IndexRunStats
from .vector_store import VectorStore


def build_entry_metadata(document: Document) -> dict[str, Any]:
    """Metadata stored next to a document's vector."""
    return {
        "title": document.title,
        "path": document.path,
        "tags": ",".join(document.tags),
        "excerpt": document.content[:STORED_EXCERPT_LENGTH],
        "last_indexed": now_ms(),
    }


@dataclass
class _PreparedDocument:
    """Outcome of reading and embedding one document."""

    ref: DocumentRef
    document: Document | None = None
    vector: list[float] | None = None
    error: str | None = None


class BatchIndexer:
    """Indexes documents in batches inside one checkpointed transaction.

    Documents of a batch are read and embedded concurrently, then written
    sequentially in their original order. Every ``checkpoint_interval``
    indexed documents the transaction is committed and fingerprints flushed,
    so an interrupted run loses at most the writes since the last checkpoint.
    """

    def __init__(
        self,
        source: VaultDocumentSource,
        store: VectorStore,
        gateway: EmbeddingGateway,
        tracker: ChangeTracker,
        batch_size: int = DEFAULT_BATCH_SIZE,
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
        lifecycle_reset_interval: int = DEFAULT_LIFECYCLE_RESET_INTERVAL,
        batch_pause: float = DEFAULT_BATCH_PAUSE,
        lifecycle_pause: float = DEFAULT_LIFECYCLE_PAUSE,
    ) -> None:
        self.source = source
        self.store = store
        self.gateway = gateway
        self.tracker = tracker
        self.batch_size = batch_size
        self.checkpoint_interval = checkpoint_interval
        self.lifecycle_reset_interval = lifecycle_reset_interval
        self.batch_pause = batch_pause
        self.lifecycle_pause = lifecycle_pause

    async def _prepare(self, ref: DocumentRef) -> _PreparedDocument:
        """Read and embed one document; failures come back as values."""
        try:
            document = await self.source.read_document(ref.path)
            result = await self.gateway.try_embed(prepare_text_for_embedding(document))
        except Exception as e:
            return _PreparedDocument(ref=ref, error=str(e))
        if not result.ok:
            return _PreparedDocument(ref=ref, document=document, error=result.error)
        return _PreparedDocument(ref=ref, document=document, vector=result.vector)

    async def _write(self, prepared: _PreparedDocument) -> None:
        document = prepared.document
        await self.store.delete(document.path)
        await self.store.insert(
            document.path, prepared.vector, build_entry_metadata(document)
        )
        self.tracker.record_indexed(document.path, document.mtime)

    async def _checkpoint(self, uncommitted: dict[str, FingerprintRecord | None]) -> None:
        await self.store.end_transaction()
        uncommitted.clear()
        await self.tracker.flush()
        await self.store.begin_transaction()

    async def run(
        self, documents: list[DocumentRef], force_reindex: bool = False
    ) -> IndexRunStats:
        """Index ``documents``.

        Args:
            documents: Documents to consider, in indexing order
            force_reindex: Re-embed documents whose fingerprint is unchanged

        Returns:
            Counters for the run. Per-document failures are counted, not raised.
        """
        stats = IndexRunStats()
        start = time.perf_counter()
        total = len(documents)
        # Fingerprints written since the last checkpoint, with their prior value
        uncommitted: dict[str, FingerprintRecord | None] = {}

        logger.info(
            f"Indexing {total} documents "
            f"(batch size {self.batch_size}, force={force_reindex})"
        )

        await self.store.begin_transaction()
        try:
            for batch_start in range(0, total, self.batch_size):
                batch = documents[batch_start : batch_start + self.batch_size]

                pending: list[DocumentRef] = []
                for ref in batch:
                    if not force_reindex and self.tracker.is_unchanged(
                        ref.path, ref.mtime
                    ):
                        stats.skipped += 1
                    else:
                        pending.append(ref)

                prepared_batch = await asyncio.gather(
                    *(self._prepare(ref) for ref in pending)
                )

                for prepared in prepared_batch:
                    if prepared.error is not None:
                        stats.failed += 1
                        logger.warning(
                            f"Failed to index {prepared.ref.path}: {prepared.error}"
                        )
                        continue

                    path = prepared.document.path
                    previous = self.tracker.get(path)
                    try:
                        await self._write(prepared)
                    except Exception as e:
                        stats.failed += 1
                        logger.error(f"Failed to write {path} to vector index: {e}")
                        continue
                    uncommitted.setdefault(path, previous)
                    stats.indexed += 1

                    if stats.indexed % 10 == 0:
                        logger.info(
                            f"Progress: {stats.indexed} indexed, {stats.skipped} "
                            f"skipped, {stats.failed} failed of {total}"
                        )

                    if stats.indexed % self.checkpoint_interval == 0:
                        await self._checkpoint(uncommitted)
                        logger.info(f"Checkpoint saved at {stats.indexed} documents")

                    if stats.indexed % self.lifecycle_reset_interval == 0:
                        self.gateway.reset_lifecycle()
                        await asyncio.sleep(self.lifecycle_pause)

                if batch_start + self.batch_size < total:
                    await asyncio.sleep(self.batch_pause)

            await self.store.end_transaction()
        except BaseException:
            self.store.cancel_transaction()
            for path, previous in uncommitted.items():
                self.tracker.restore(path, previous)
            logger.warning(
                f"Indexing interrupted; discarded {len(uncommitted)} "
                f"uncommitted writes"
            )
            raise

        self.tracker.update_meta(self.gateway.model_name, self.gateway.provider_name)
        await self.tracker.flush()

        stats.duration_seconds = time.perf_counter() - start
        logger.info(
            f"Indexing complete: {stats.indexed} indexed, {stats.skipped} skipped, "
            f"{stats.failed} failed in {stats.duration_seconds:.1f}s"
        )
        return stats
