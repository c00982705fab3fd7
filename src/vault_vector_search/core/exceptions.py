"""Typed exception hierarchy for vault-vector-search.

Hierarchy
---------
VaultSearchError (base)
├── DatabaseError          – vector store / LanceDB errors
│   ├── DatabaseNotInitializedError
│   └── IndexCorruptionError
├── SearchError            – query-time failures
├── IndexingError          – indexing-time failures (named to avoid shadowing built-in IndexError)
│   └── DocumentReadError  – a document could not be read or parsed
├── EmbeddingError         – embedding generation errors
│   ├── EmbeddingTimeoutError
│   └── EmbeddingFailureError
├── ConfigError            – configuration / validation errors
│   └── ConfigurationError – (alias)
├── InitializationError    – engine / model startup errors
└── WorkerLockError        – PID-file guard errors

Per-document errors (``DocumentReadError``, ``EmbeddingError`` subclasses) are
absorbed by the indexers and surface only as counts and log lines.  Run-level
errors (``DatabaseError``, ``ConfigError``) propagate to the CLI driver.
"""

from typing import Any


class VaultSearchError(Exception):
    """Base exception for vault-vector-search."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# ── Database layer ──────────────────────────────────────────────────────


class DatabaseError(VaultSearchError):
    """Vector store errors (LanceDB / storage layer)."""

    pass


class DatabaseNotInitializedError(DatabaseError):
    """Operation attempted before the vector index was created."""

    pass


class IndexCorruptionError(DatabaseError):
    """Index corruption detected."""

    pass


# ── Search layer ────────────────────────────────────────────────────────


class SearchError(VaultSearchError):
    """Search operation failed."""

    pass


# ── Indexing layer ──────────────────────────────────────────────────────


class IndexingError(VaultSearchError):
    """Indexing operation failed.

    Named ``IndexingError`` (not ``IndexError``) to avoid shadowing
    the Python built-in ``IndexError``.
    """

    pass


class DocumentReadError(IndexingError):
    """A document could not be read from the vault."""

    pass


# ── Embedding layer ─────────────────────────────────────────────────────


class EmbeddingError(VaultSearchError):
    """Embedding generation errors."""

    pass


class EmbeddingTimeoutError(EmbeddingError):
    """Embedding generation exceeded the gateway timeout.

    The underlying provider call is not cancelled; the gateway only stops
    waiting for it.
    """

    def __init__(self, timeout: float, context: dict[str, Any] | None = None) -> None:
        super().__init__(
            f"Embedding generation timed out after {timeout:g}s", context=context
        )
        self.timeout = timeout


class EmbeddingFailureError(EmbeddingError):
    """The embedding provider raised while generating a vector."""

    pass


# ── Configuration layer ─────────────────────────────────────────────────


class ConfigError(VaultSearchError):
    """Configuration / validation errors."""

    pass


# Alias kept for call sites that read better with the long name
ConfigurationError = ConfigError


# ── Initialization layer ────────────────────────────────────────────────


class InitializationError(VaultSearchError):
    """Engine / model startup errors."""

    pass


# ── Worker layer ────────────────────────────────────────────────────────


class WorkerLockError(VaultSearchError):
    """The indexing worker PID file could not be read or written."""

    pass
