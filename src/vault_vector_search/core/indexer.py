"""Reconciliation of the vector index with the vault."""

import asyncio
from pathlib import Path, PurePosixPath

from loguru import logger

from ..config.defaults import (
    DEFAULT_SEARCH_LIMIT,
    HYBRID_KEYWORD_WEIGHT,
    HYBRID_SEMANTIC_WEIGHT,
    SEARCH_EXCERPT_LENGTH,
    SEARCH_OVERFETCH,
)
from .batch_indexer import BatchIndexer, build_entry_metadata
from .change_tracker import ChangeTracker
from .documents import VaultDocumentSource
from .embeddings import EmbeddingGateway, prepare_text_for_embedding
from .exceptions import DatabaseNotInitializedError, EmbeddingError, SearchError
from .models import (
    IndexRunStats,
    IndexStats,
    KeywordResult,
    ReindexDecision,
    SearchResult,
)
from .vector_store import VectorStore


def _parse_startup_mode(value: str | bool | None) -> str:
    if value is True:
        return "always"
    if value is False:
        return "never"
    if value is None:
        return "auto"
    mode = str(value).strip().lower()
    if mode in ("always", "true"):
        return "always"
    if mode in ("never", "false"):
        return "never"
    return "auto"


class VaultIndexer:
    """Keeps the vector index consistent with the vault.

    Decides when a full reindex is required, drives full and single-document
    indexing and answers searches. Full runs, single-document updates,
    removals and clears are serialized by one lock, so a live update never
    writes into an open full-reindex transaction.
    """

    def __init__(
        self,
        source: VaultDocumentSource,
        store: VectorStore,
        gateway: EmbeddingGateway,
        tracker: ChangeTracker,
        batch_indexer: BatchIndexer | None = None,
        index_on_startup: str | bool = "auto",
    ) -> None:
        self.source = source
        self.store = store
        self.gateway = gateway
        self.tracker = tracker
        self.batch_indexer = batch_indexer or BatchIndexer(
            source, store, gateway, tracker
        )
        self.index_on_startup = index_on_startup
        self._lock = asyncio.Lock()

    @property
    def is_busy(self) -> bool:
        """Whether an index mutation is running."""
        return self._lock.locked()

    def _to_vault_path(self, path: str | Path) -> str | None:
        if isinstance(path, Path) and path.is_absolute():
            return self.source.relative_path(path)
        if isinstance(path, str) and Path(path).is_absolute():
            return self.source.relative_path(Path(path))
        return PurePosixPath(str(path).replace("\\", "/")).as_posix()

    # ── reindex decision ────────────────────────────────────────────────

    async def should_reindex(self) -> ReindexDecision:
        """Decide whether the whole vault must be reindexed.

        Rules are checked in order and the first match wins. Any error while
        checking means a reindex.
        """
        try:
            if not await self.store.is_index_created():
                return ReindexDecision(True, "first-time setup")

            meta = self.tracker.meta
            if meta is None or not meta.model:
                return ReindexDecision(True, "legacy index, upgrading")

            if meta.model != self.gateway.model_name:
                return ReindexDecision(
                    True, f"model changed: {meta.model} → {self.gateway.model_name}"
                )

            if await self.store.count() == 0:
                return ReindexDecision(True, "index exists but is empty")

            return ReindexDecision(False, "index valid and up-to-date")
        except Exception as e:
            logger.warning(f"Could not evaluate index state: {e}")
            return ReindexDecision(True, f"error checking index: {e}")

    async def startup_decision(self) -> ReindexDecision:
        """Apply the ``index_on_startup`` override, then the index checks."""
        mode = _parse_startup_mode(self.index_on_startup)
        if mode == "always":
            return ReindexDecision(True, "index_on_startup is 'always'")
        if mode == "never":
            return ReindexDecision(False, "index_on_startup is 'never'")
        return await self.should_reindex()

    async def run_startup_index(self) -> IndexRunStats | None:
        """Run the startup reindex if one is required.

        Returns:
            Stats of the run, or None when no reindex was needed
        """
        decision = await self.startup_decision()
        if not decision.reindex:
            logger.info(f"Skipping startup indexing: {decision.reason}")
            return None
        logger.info(f"Reindexing vault: {decision.reason}")
        return await self.index_all(force_reindex=True)

    # ── full indexing ───────────────────────────────────────────────────

    async def index_all(self, force_reindex: bool = False) -> IndexRunStats:
        """Index every document of the vault and prune stale entries.

        Raises:
            DatabaseError: If the vector index cannot be opened or written
        """
        async with self._lock:
            meta = self.tracker.meta
            if meta is not None and meta.model != self.gateway.model_name:
                logger.warning(
                    f"Embedding model changed ({meta.model} → "
                    f"{self.gateway.model_name}); dropping incompatible index"
                )
                await self.store.delete_index()
                self.tracker.reset()
            elif (
                force_reindex
                and meta is None
                and await self.store.is_index_created()
            ):
                # rows may come from an unknown model or dimension
                logger.warning("Index metadata missing; dropping existing index")
                await self.store.delete_index()
                self.tracker.reset()

            if not await self.store.is_index_created():
                await self.store.create_index()

            refs = await self.source.list_documents()
            stats = await self.batch_indexer.run(refs, force_reindex=force_reindex)
            stats.removed = await self._prune({ref.path for ref in refs})
            return stats

    async def _prune(self, valid_paths: set[str]) -> int:
        stale_ids = [
            doc_id
            for doc_id in await self.store.list_all_ids()
            if doc_id not in valid_paths
        ]
        for doc_id in stale_ids:
            await self.store.delete(doc_id)

        stale_fingerprints = self.tracker.prune(valid_paths)
        removed = set(stale_ids) | set(stale_fingerprints)
        if removed:
            await self.tracker.flush()
            logger.info(f"Removed {len(removed)} documents no longer in the vault")
        return len(removed)

    # ── single-document updates ─────────────────────────────────────────

    async def index_one(self, path: str | Path) -> bool:
        """Index or re-index one document.

        Returns:
            True if the document was written; failures are logged, not raised
        """
        rel = self._to_vault_path(path)
        if rel is None or not self.source.is_indexable(rel):
            logger.debug(f"Skipping non-indexable path: {path}")
            return False
        if not self.source.exists(rel):
            logger.warning(f"Cannot index missing file: {rel}")
            return False

        async with self._lock:
            try:
                if not await self.store.is_index_created():
                    await self.store.create_index()
                document = await self.source.read_document(rel)
                vector = await self.gateway.embed(prepare_text_for_embedding(document))
                await self.store.delete(rel)
                await self.store.insert(rel, vector, build_entry_metadata(document))
                self.tracker.record_indexed(rel, document.mtime)
                await self.tracker.flush()
            except Exception as e:
                logger.error(f"Failed to index {rel}: {e}")
                return False

        logger.info(f"Indexed {rel}")
        return True

    async def remove_one(self, path: str | Path) -> bool:
        """Remove one document from the index.

        Returns:
            True if an entry or fingerprint existed
        """
        rel = self._to_vault_path(path)
        if rel is None:
            return False

        async with self._lock:
            try:
                existed = False
                if await self.store.is_index_created() and await self.store.contains(
                    rel
                ):
                    await self.store.delete(rel)
                    existed = True
                forgotten = self.tracker.forget(rel)
                await self.tracker.flush()
            except Exception as e:
                logger.error(f"Failed to remove {rel} from index: {e}")
                return False

        if existed or forgotten:
            logger.info(f"Removed {rel} from index")
        return existed or forgotten

    async def clear(self) -> None:
        """Delete the vector index and the fingerprint/metadata file."""
        async with self._lock:
            await self.store.delete_index()
            self.tracker.reset()
            self.tracker.store.delete()
        logger.info("Index cleared")

    # ── queries ─────────────────────────────────────────────────────────

    async def get_stats(self) -> IndexStats:
        total = 0
        if await self.store.is_index_created():
            total = await self.store.count()
        return IndexStats(
            total_documents=total, last_indexed=self.tracker.last_indexed_at()
        )

    async def search(
        self,
        query_vector: list[float],
        limit: int = DEFAULT_SEARCH_LIMIT,
        min_score: float = 0.0,
    ) -> list[SearchResult]:
        """Nearest documents to ``query_vector`` scoring at least ``min_score``.

        Raises:
            DatabaseNotInitializedError: If no index has been built
            SearchError: If the query fails
        """
        if not await self.store.is_index_created():
            raise DatabaseNotInitializedError(
                "Vector index not found. Run 'vault-vector-search index' first."
            )

        matches = await self.store.query_nearest(query_vector, limit + SEARCH_OVERFETCH)

        results: list[SearchResult] = []
        for match in matches:
            if match.score < min_score:
                continue
            metadata = match.metadata
            tags = metadata.get("tags") or ""
            results.append(
                SearchResult(
                    id=match.id,
                    path=metadata.get("path") or match.id,
                    title=metadata.get("title") or PurePosixPath(match.id).stem,
                    score=match.score,
                    excerpt=(metadata.get("excerpt") or "")[:SEARCH_EXCERPT_LENGTH]
                    + "...",
                    metadata={
                        "tags": [t for t in tags.split(",") if t],
                        "last_indexed": metadata.get("last_indexed"),
                    },
                )
            )
            if len(results) >= limit:
                break
        return results

    async def search_text(
        self, query: str, limit: int = DEFAULT_SEARCH_LIMIT, min_score: float = 0.0
    ) -> list[SearchResult]:
        """Embed ``query`` and search with it."""
        try:
            vector = await self.gateway.embed(query)
        except EmbeddingError as e:
            raise SearchError(f"Failed to embed query: {e}") from e
        return await self.search(vector, limit=limit, min_score=min_score)

    async def hybrid_search(
        self,
        query: str,
        keyword_results: list[KeywordResult],
        limit: int = DEFAULT_SEARCH_LIMIT,
        min_score: float = 0.0,
    ) -> list[SearchResult]:
        """Merge semantic results with externally scored keyword results.

        Semantic scores are weighted 0.6 and keyword scores 0.4, summed per
        path. A strong keyword hit (score above 0.5) supplies the excerpt.
        """
        semantic = await self.search_text(query, limit=limit, min_score=min_score)

        combined: dict[str, SearchResult] = {}
        for result in semantic:
            result.score *= HYBRID_SEMANTIC_WEIGHT
            combined[result.path] = result

        for keyword in keyword_results:
            existing = combined.get(keyword.path)
            if existing is not None:
                existing.score += keyword.score * HYBRID_KEYWORD_WEIGHT
                if keyword.score > 0.5:
                    existing.excerpt = keyword.excerpt
            else:
                combined[keyword.path] = SearchResult(
                    id=keyword.path,
                    path=keyword.path,
                    title=keyword.title or PurePosixPath(keyword.path).stem,
                    score=keyword.score * HYBRID_KEYWORD_WEIGHT,
                    excerpt=keyword.excerpt,
                )

        merged = sorted(combined.values(), key=lambda r: r.score, reverse=True)
        return merged[:limit]
