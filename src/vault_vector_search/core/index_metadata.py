"""Persistence of document fingerprints and index metadata.

Everything lives in a single JSON document::

    {
      "notes/a.md": {"lastModified": 1712345678901.25, "lastIndexed": 1712345680000},
      "__meta__": {"model": "...", "provider": "...", "createdAt": 0,
                   "lastIndexedAt": 0, "schemaVersion": 1}
    }

The file is loaded fully and rewritten wholesale on every save.
"""

import os
from pathlib import Path
from typing import Any

import aiofiles
import orjson
from loguru import logger

from .exceptions import IndexingError
from .models import FingerprintRecord, IndexMeta

META_KEY = "__meta__"


class IndexMetadataStore:
    """Reads and writes the fingerprint/metadata JSON file."""

    def __init__(self, metadata_file: Path) -> None:
        """Initialize metadata store.

        Args:
            metadata_file: Path of the JSON file (parent created on save)
        """
        self._metadata_file = metadata_file

    @property
    def path(self) -> Path:
        return self._metadata_file

    def exists(self) -> bool:
        return self._metadata_file.exists()

    def load(self) -> tuple[dict[str, FingerprintRecord], IndexMeta | None]:
        """Load fingerprints and metadata.

        A missing, unreadable or corrupt file loads as an empty store.

        Returns:
            Tuple of (fingerprints by path, index metadata or None)
        """
        raw = self._read_raw()
        records: dict[str, FingerprintRecord] = {}
        meta: IndexMeta | None = None

        for key, value in raw.items():
            if not isinstance(value, dict):
                continue
            if key == META_KEY:
                try:
                    meta = IndexMeta.from_dict(value)
                except (TypeError, ValueError) as e:
                    logger.warning(f"Ignoring malformed index metadata: {e}")
                continue
            try:
                records[key] = FingerprintRecord(
                    path=key,
                    last_modified=float(value["lastModified"]),
                    last_indexed=int(value.get("lastIndexed") or 0),
                )
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed fingerprint for {key}")

        return records, meta

    def _read_raw(self) -> dict[str, Any]:
        """Read the raw JSON dict (empty dict on any error)."""
        if not self._metadata_file.exists():
            return {}
        try:
            data = orjson.loads(self._metadata_file.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning(f"Failed to load index metadata, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning("Index metadata root is not an object, starting empty")
            return {}
        return data

    async def save(
        self, records: dict[str, FingerprintRecord], meta: IndexMeta | None
    ) -> None:
        """Rewrite the file with the given fingerprints and metadata.

        The content is written to a sibling temp file and renamed into place,
        so readers never observe a partially written document.

        Raises:
            IndexingError: If the file cannot be written
        """
        data: dict[str, Any] = {
            path: {
                "lastModified": record.last_modified,
                "lastIndexed": record.last_indexed,
            }
            for path, record in records.items()
        }
        if meta is not None:
            data[META_KEY] = meta.to_dict()

        tmp_file = self._metadata_file.with_name(self._metadata_file.name + ".tmp")
        try:
            self._metadata_file.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_file, "wb") as f:
                await f.write(orjson.dumps(data, option=orjson.OPT_INDENT_2))
            os.replace(tmp_file, self._metadata_file)
        except OSError as e:
            logger.error(f"Failed to save index metadata: {e}")
            raise IndexingError(
                f"Failed to save index metadata: {e}",
                context={"path": str(self._metadata_file)},
            ) from e

        logger.debug(f"Saved {len(records)} fingerprints to {self._metadata_file}")

    def delete(self) -> None:
        """Remove the metadata file (and any leftover temp file)."""
        self._metadata_file.unlink(missing_ok=True)
        self._metadata_file.with_name(self._metadata_file.name + ".tmp").unlink(
            missing_ok=True
        )
