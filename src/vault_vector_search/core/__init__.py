"""Core functionality for vault-vector-search."""

from .exceptions import (
    ConfigError,
    ConfigurationError,
    DatabaseError,
    DatabaseNotInitializedError,
    DocumentReadError,
    EmbeddingError,
    EmbeddingFailureError,
    EmbeddingTimeoutError,
    IndexCorruptionError,
    IndexingError,
    InitializationError,
    SearchError,
    VaultSearchError,
    WorkerLockError,
)

__all__ = [
    "ConfigError",
    "ConfigurationError",
    "DatabaseError",
    "DatabaseNotInitializedError",
    "DocumentReadError",
    "EmbeddingError",
    "EmbeddingFailureError",
    "EmbeddingTimeoutError",
    "IndexCorruptionError",
    "IndexingError",
    "InitializationError",
    "SearchError",
    "VaultSearchError",
    "WorkerLockError",
]
