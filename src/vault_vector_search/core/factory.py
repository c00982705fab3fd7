"""Component factory wiring the indexing pipeline from configuration."""

import functools
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import typer
from loguru import logger

from ..cli.output import print_error
from ..config.settings import VaultConfig
from .batch_indexer import BatchIndexer
from .change_tracker import ChangeTracker
from .documents import VaultDocumentSource
from .embeddings import EmbeddingGateway, EmbeddingProvider, create_embedding_provider
from .exceptions import VaultSearchError
from .index_metadata import IndexMetadataStore
from .indexer import VaultIndexer
from .singleton import PidFileGuard
from .vector_store import LanceVectorStore, VectorStore
from .watcher import FileWatcher

F = TypeVar("F", bound=Callable[..., Any])


@dataclass
class ComponentBundle:
    """Bundle of the components a command needs."""

    config: VaultConfig
    source: VaultDocumentSource
    store: VectorStore
    gateway: EmbeddingGateway
    tracker: ChangeTracker
    indexer: VaultIndexer


class ComponentFactory:
    """Factory for pipeline components."""

    @staticmethod
    def create_document_source(config: VaultConfig) -> VaultDocumentSource:
        return VaultDocumentSource(
            config.vault_path,
            include_patterns=config.include_patterns,
            exclude_patterns=config.exclude_patterns,
            index_path=config.index_path,
        )

    @staticmethod
    def create_vector_store(config: VaultConfig) -> VectorStore:
        logger.debug(f"Using LanceDB vector store at {config.lance_path}")
        return LanceVectorStore(config.lance_path)

    @staticmethod
    def create_gateway(
        config: VaultConfig, provider: EmbeddingProvider | None = None
    ) -> EmbeddingGateway:
        """Create the embedding gateway (the model itself loads lazily)."""
        if provider is None:
            provider = create_embedding_provider(
                config.embedding_provider, config.embedding_model
            )
        return EmbeddingGateway(provider, timeout=config.embedding_timeout)

    @staticmethod
    def create_tracker(config: VaultConfig) -> ChangeTracker:
        return ChangeTracker(IndexMetadataStore(config.metadata_file))

    @staticmethod
    def create_worker_guard(config: VaultConfig) -> PidFileGuard:
        return PidFileGuard(config.pid_file)

    @staticmethod
    def create_watcher(bundle: ComponentBundle) -> FileWatcher:
        return FileWatcher(
            bundle.source, bundle.indexer, debounce_delay=bundle.config.debounce_delay
        )

    @staticmethod
    def create_components(
        config: VaultConfig, provider: EmbeddingProvider | None = None
    ) -> ComponentBundle:
        """Create the full pipeline for ``config``.

        Args:
            config: Validated configuration
            provider: Embedding provider override (defaults to the configured one)
        """
        source = ComponentFactory.create_document_source(config)
        store = ComponentFactory.create_vector_store(config)
        gateway = ComponentFactory.create_gateway(config, provider)
        tracker = ComponentFactory.create_tracker(config)
        batch_indexer = BatchIndexer(
            source,
            store,
            gateway,
            tracker,
            batch_size=config.batch_size,
            checkpoint_interval=config.checkpoint_interval,
            lifecycle_reset_interval=config.lifecycle_reset_interval,
            batch_pause=config.batch_pause,
            lifecycle_pause=config.lifecycle_pause,
        )
        indexer = VaultIndexer(
            source,
            store,
            gateway,
            tracker,
            batch_indexer=batch_indexer,
            index_on_startup=config.index_on_startup,
        )
        return ComponentBundle(
            config=config,
            source=source,
            store=store,
            gateway=gateway,
            tracker=tracker,
            indexer=indexer,
        )


def create_vault_indexer(
    config: VaultConfig, provider: EmbeddingProvider | None = None
) -> VaultIndexer:
    """Create a ``VaultIndexer`` wired from configuration."""
    return ComponentFactory.create_components(config, provider).indexer


def handle_cli_errors(operation_name: str) -> Callable[[F], F]:
    """Decorator turning package errors into a logged message and exit code 1.

    Args:
        operation_name: Name of the operation for error messages
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except VaultSearchError as e:
                logger.error(f"{operation_name} failed: {e}")
                print_error(f"{operation_name} failed: {e}")
                raise typer.Exit(1) from e

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except VaultSearchError as e:
                logger.error(f"{operation_name} failed: {e}")
                print_error(f"{operation_name} failed: {e}")
                raise typer.Exit(1) from e

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
