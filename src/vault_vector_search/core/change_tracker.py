"""Modification-time based dirty tracking for vault documents."""

import time
from collections.abc import Iterable

from loguru import logger

from .index_metadata import IndexMetadataStore
from .models import FingerprintRecord, IndexMeta


def now_ms() -> int:
    """Current wall clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ChangeTracker:
    """Keeps per-document fingerprints and decides whether indexing is needed.

    Fingerprints are loaded once at construction and held in memory; nothing is
    written until :meth:`flush`. A document is unchanged only when a fingerprint
    exists and its recorded mtime equals the current mtime exactly, so touching a
    file counts as a change.
    """

    def __init__(self, store: IndexMetadataStore) -> None:
        self._store = store
        self._records, self._meta = store.load()
        logger.debug(
            f"Loaded {len(self._records)} fingerprints "
            f"(model={self._meta.model if self._meta else None})"
        )

    @property
    def store(self) -> IndexMetadataStore:
        return self._store

    @property
    def meta(self) -> IndexMeta | None:
        return self._meta

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, path: str) -> bool:
        return path in self._records

    def get(self, path: str) -> FingerprintRecord | None:
        return self._records.get(path)

    def paths(self) -> set[str]:
        return set(self._records)

    def is_unchanged(self, path: str, current_mtime: float) -> bool:
        record = self._records.get(path)
        return record is not None and record.last_modified == current_mtime

    def record_indexed(self, path: str, mtime: float) -> None:
        self._records[path] = FingerprintRecord(
            path=path, last_modified=mtime, last_indexed=now_ms()
        )

    def forget(self, path: str) -> bool:
        return self._records.pop(path, None) is not None

    def restore(self, path: str, record: FingerprintRecord | None) -> None:
        """Put back a previously read fingerprint (None removes it)."""
        if record is None:
            self._records.pop(path, None)
        else:
            self._records[path] = record

    def prune(self, valid_paths: Iterable[str]) -> list[str]:
        """Drop fingerprints for paths not in ``valid_paths``.

        Returns:
            The removed paths
        """
        valid = set(valid_paths)
        stale = [p for p in self._records if p not in valid]
        for path in stale:
            del self._records[path]
        if stale:
            logger.debug(f"Pruned {len(stale)} stale fingerprints")
        return stale

    def last_indexed_at(self) -> int | None:
        if not self._records:
            return None
        return max(r.last_indexed for r in self._records.values())

    def update_meta(self, model: str, provider: str) -> IndexMeta:
        """Record the model identity of the index; ``created_at`` survives updates."""
        now = now_ms()
        created_at = now
        if self._meta is not None and self._meta.model == model:
            created_at = self._meta.created_at
        self._meta = IndexMeta(
            model=model,
            provider=provider,
            created_at=created_at,
            last_indexed_at=now,
        )
        return self._meta

    def reset(self) -> None:
        """Forget every fingerprint and the model identity."""
        self._records.clear()
        self._meta = None

    async def flush(self) -> None:
        """Persist fingerprints and metadata together."""
        await self._store.save(dict(self._records), self._meta)
