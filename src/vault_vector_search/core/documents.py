"""Vault document discovery and markdown parsing."""

import asyncio
import fnmatch
import os
import re
from pathlib import Path, PurePosixPath
from typing import Any

import aiofiles
import yaml
from loguru import logger

from ..config.defaults import (
    DEFAULT_EXCLUDE_PATTERNS,
    DEFAULT_INCLUDE_PATTERNS,
    MARKDOWN_EXTENSIONS,
)
from .exceptions import DocumentReadError
from .models import Document, DocumentRef

FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n|$)", re.DOTALL)


def parse_markdown(text: str) -> tuple[dict[str, Any], str]:
    """Split a markdown document into front matter and body.

    Invalid YAML or a non-mapping front matter block yields an empty dict; the
    block is still removed from the body.
    """
    match = FRONTMATTER_PATTERN.match(text)
    if not match:
        return {}, text

    body = text[match.end() :]
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        logger.debug(f"Ignoring invalid front matter: {e}")
        return {}, body
    if not isinstance(data, dict):
        return {}, body
    return data, body


def strip_frontmatter(text: str) -> str:
    """Remove a leading front matter block, if any."""
    return FRONTMATTER_PATTERN.sub("", text, count=1)


def file_mtime_ms(path: Path) -> float:
    """Modification time of ``path`` in epoch milliseconds."""
    return path.stat().st_mtime_ns / 1e6


def matches_glob(path_str: str, pattern: str) -> bool:
    """Match a vault-relative posix path against a glob.

    ``**`` matches zero or more directories, so ``**/*.md`` matches both
    ``a.md`` and ``x/y/a.md`` and ``_archive/**`` matches everything below
    ``_archive``.
    """
    if "**" in pattern:
        regex = re.escape(pattern)
        regex = regex.replace(r"\*\*/", "(.*/)?")
        regex = regex.replace(r"/\*\*", "(/.*)?")
        regex = regex.replace(r"\*\*", ".*")
        regex = regex.replace(r"\*", "[^/]*")
        regex = regex.replace(r"\?", "[^/]")
        if re.match(f"^{regex}$", path_str):
            return True

    return fnmatch.fnmatchcase(path_str, pattern)


class VaultDocumentSource:
    """Enumerates and reads the markdown documents of a vault.

    Paths handed out are relative to the vault root with posix separators;
    they double as vector ids and fingerprint keys.
    """

    def __init__(
        self,
        vault_root: Path,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        index_path: Path | None = None,
    ) -> None:
        """Initialize document source.

        Args:
            vault_root: Root directory of the vault
            include_patterns: Globs a document must match (default ``**/*.md``)
            exclude_patterns: Globs that remove a document
            index_path: Index directory, never enumerated when inside the vault
        """
        self.vault_root = vault_root.resolve()
        self.include_patterns = list(
            include_patterns if include_patterns is not None else DEFAULT_INCLUDE_PATTERNS
        )
        self.exclude_patterns = list(
            exclude_patterns if exclude_patterns is not None else DEFAULT_EXCLUDE_PATTERNS
        )
        self._index_rel: str | None = None
        if index_path is not None:
            self._index_rel = self.relative_path(index_path)

    def relative_path(self, path: Path | str) -> str | None:
        """Vault-relative posix path, or None if ``path`` is outside the vault."""
        candidate = Path(path)
        if not candidate.is_absolute():
            return PurePosixPath(*candidate.parts).as_posix()
        try:
            rel = candidate.resolve().relative_to(self.vault_root)
        except ValueError:
            try:
                rel = candidate.relative_to(self.vault_root)
            except ValueError:
                return None
        return rel.as_posix()

    def absolute_path(self, path: str) -> Path:
        return self.vault_root / path

    def is_excluded(self, path: str) -> bool:
        parts = PurePosixPath(path).parts
        if any(part.startswith(".") for part in parts):
            return True
        if self._index_rel and (
            path == self._index_rel or path.startswith(self._index_rel + "/")
        ):
            return True
        return any(matches_glob(path, pattern) for pattern in self.exclude_patterns)

    def is_indexable(self, path: str) -> bool:
        """Whether a vault-relative path names an indexable markdown document."""
        if PurePosixPath(path).suffix.lower() not in MARKDOWN_EXTENSIONS:
            return False
        if self.is_excluded(path):
            return False
        return any(matches_glob(path, pattern) for pattern in self.include_patterns)

    def exists(self, path: str) -> bool:
        return self.absolute_path(path).is_file()

    def _is_excluded_dir(self, rel_dir: str) -> bool:
        # A directory is pruned when a file directly below it would be excluded
        return self.is_excluded(f"{rel_dir}/_")

    def scan_sync(self) -> list[DocumentRef]:
        """Walk the vault and return indexable documents, sorted by path."""
        refs: list[DocumentRef] = []
        dir_count = 0

        for root, dirs, files in os.walk(self.vault_root):
            root_path = Path(root)
            rel_root = root_path.relative_to(self.vault_root).as_posix()
            dir_count += 1

            # Filter ignored directories in place so os.walk skips them
            dirs[:] = [
                d
                for d in dirs
                if not self._is_excluded_dir(d if rel_root == "." else f"{rel_root}/{d}")
            ]

            for filename in files:
                rel = filename if rel_root == "." else f"{rel_root}/{filename}"
                if not self.is_indexable(rel):
                    continue
                try:
                    mtime = file_mtime_ms(root_path / filename)
                except OSError as e:
                    logger.warning(f"Cannot stat {rel}: {e}")
                    continue
                refs.append(DocumentRef(path=rel, mtime=mtime))

        logger.debug(
            f"Vault scan complete: {dir_count} directories, {len(refs)} documents"
        )
        return sorted(refs, key=lambda ref: ref.path)

    async def list_documents(self) -> list[DocumentRef]:
        """Enumerate the corpus without blocking the event loop."""
        return await asyncio.to_thread(self.scan_sync)

    async def read_document(self, path: str) -> Document:
        """Read and parse one document.

        The mtime is captured before reading, so a write racing the read is
        picked up by the next run.

        Raises:
            DocumentReadError: If the file is missing, unreadable or not UTF-8
        """
        file_path = self.absolute_path(path)
        try:
            mtime = file_mtime_ms(file_path)
            async with aiofiles.open(file_path, encoding="utf-8") as f:
                text = await f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise DocumentReadError(
                f"Failed to read {path}: {e}", context={"path": path}
            ) from e

        frontmatter, body = parse_markdown(text)
        return Document(path=path, content=body, frontmatter=frontmatter, mtime=mtime)
