"""Data models for vault-vector-search."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Any

from ..config.defaults import INDEX_SCHEMA_VERSION


@dataclass
class DocumentRef:
    """A document found while enumerating the vault."""

    path: str  # vault-relative, posix separators
    mtime: float  # epoch milliseconds


@dataclass
class Document:
    """A parsed markdown document.

    ``frontmatter`` is an open mapping; ``title``, ``tags``, ``description``
    and ``aliases`` are the keys the indexer understands.
    """

    path: str
    content: str
    frontmatter: dict[str, Any] = field(default_factory=dict)
    mtime: float = 0.0

    @property
    def title(self) -> str:
        """Front matter title, else the first alias, else the file stem."""
        title = self.frontmatter.get("title")
        if title:
            return str(title)
        aliases = self.frontmatter.get("aliases")
        if isinstance(aliases, list) and aliases:
            return str(aliases[0])
        if isinstance(aliases, str) and aliases:
            return aliases
        return PurePosixPath(self.path).stem

    @property
    def description(self) -> str | None:
        description = self.frontmatter.get("description")
        return str(description) if description else None

    @property
    def tags(self) -> list[str]:
        tags = self.frontmatter.get("tags")
        if not tags:
            return []
        if isinstance(tags, (list, tuple)):
            return [str(t) for t in tags if t is not None]
        return [str(tags)]


@dataclass
class FingerprintRecord:
    """Modification fingerprint of an indexed document."""

    path: str
    last_modified: float  # mtime at last successful index
    last_indexed: int  # epoch milliseconds


@dataclass
class IndexMeta:
    """Identity of the model that produced every vector in the index."""

    model: str
    provider: str
    created_at: int
    last_indexed_at: int
    schema_version: int = INDEX_SCHEMA_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "createdAt": self.created_at,
            "lastIndexedAt": self.last_indexed_at,
            "schemaVersion": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexMeta | None":
        """Build from persisted JSON; None when the model identity is missing."""
        model = data.get("model")
        if not model:
            return None
        return cls(
            model=str(model),
            provider=str(data.get("provider") or ""),
            created_at=int(data.get("createdAt") or 0),
            last_indexed_at=int(data.get("lastIndexedAt") or 0),
            schema_version=int(data.get("schemaVersion") or INDEX_SCHEMA_VERSION),
        )


@dataclass
class VectorMatch:
    """A nearest-neighbour hit returned by the vector store."""

    id: str
    score: float  # cosine similarity, higher is closer
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class EmbeddingResult:
    """Outcome of a non-raising embedding call."""

    vector: list[float] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.vector is not None and self.error is None

    @classmethod
    def success(cls, vector: list[float]) -> "EmbeddingResult":
        return cls(vector=vector)

    @classmethod
    def failure(cls, reason: str) -> "EmbeddingResult":
        return cls(error=reason)


@dataclass
class IndexRunStats:
    """Counters for one indexing run."""

    indexed: int = 0
    skipped: int = 0
    failed: int = 0
    removed: int = 0
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "indexed": self.indexed,
            "skipped": self.skipped,
            "failed": self.failed,
            "removed": self.removed,
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass
class ReindexDecision:
    """Whether a full reindex is required and why."""

    reindex: bool
    reason: str


@dataclass
class SearchResult:
    """A single search hit."""

    id: str
    path: str
    title: str
    score: float
    excerpt: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": self.path,
            "title": self.title,
            "score": self.score,
            "excerpt": self.excerpt,
            "metadata": self.metadata,
        }


@dataclass
class KeywordResult:
    """A result from an external keyword scorer, consumed by hybrid search."""

    path: str
    score: float
    excerpt: str = ""
    title: str | None = None


@dataclass
class IndexStats:
    """Summary of the current index."""

    total_documents: int
    last_indexed: int | None  # epoch milliseconds


class ChangeType(str, Enum):
    """Filesystem change kinds delivered to the live update coalescer."""

    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
