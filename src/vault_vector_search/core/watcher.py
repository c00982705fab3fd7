"""File system watcher for live index updates."""

import asyncio
import os
from collections.abc import Awaitable, Callable
from pathlib import Path, PurePosixPath
from typing import Protocol

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..config.defaults import DEFAULT_DEBOUNCE_DELAY, WATCHER_IGNORED_COMPONENTS
from .documents import VaultDocumentSource
from .models import ChangeType


class UpdateTarget(Protocol):
    """What the coalescer dispatches to (normally a ``VaultIndexer``)."""

    async def index_one(self, path: str) -> bool: ...

    async def remove_one(self, path: str) -> bool: ...


class LiveUpdateCoalescer:
    """Debounces change notifications per path into single-document updates.

    An add or modify (re)starts a timer for its path; when the timer fires the
    document is indexed. A delete cancels any pending timer and removes the
    document right away. There is at most one timer per path.

    All methods run on the event loop thread.
    """

    def __init__(
        self,
        target: UpdateTarget,
        debounce_delay: float = DEFAULT_DEBOUNCE_DELAY,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.target = target
        self.debounce_delay = debounce_delay
        self._loop = loop
        self._pending: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def pending_paths(self) -> list[str]:
        return sorted(self._pending)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def notify(self, change_type: ChangeType | str, path: str) -> None:
        """Record a change; never blocks."""
        if self._closed:
            return
        change_type = ChangeType(change_type)

        handle = self._pending.pop(path, None)
        if handle is not None:
            handle.cancel()

        if change_type is ChangeType.DELETED:
            logger.debug(f"Removing deleted document: {path}")
            self._dispatch(self.target.remove_one, path)
            return

        self._pending[path] = self._get_loop().call_later(
            self.debounce_delay, self._fire, path
        )
        logger.debug(f"Scheduled update for {path} in {self.debounce_delay}s")

    def _fire(self, path: str) -> None:
        self._pending.pop(path, None)
        self._dispatch(self.target.index_one, path)

    def _dispatch(self, action: Callable[[str], Awaitable[bool]], path: str) -> None:
        task = self._get_loop().create_task(self._run(action, path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, action: Callable[[str], Awaitable[bool]], path: str) -> None:
        try:
            await action(path)
        except Exception as e:
            logger.error(f"Error processing change for {path}: {e}")

    def close(self) -> None:
        """Cancel pending timers and ignore further notifications."""
        self._closed = True
        for handle in self._pending.values():
            handle.cancel()
        if self._pending:
            logger.debug(f"Dropped {len(self._pending)} pending updates")
        self._pending.clear()

    async def drain(self) -> None:
        """Wait for every dispatched update to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class VaultFileHandler(FileSystemEventHandler):
    """Filters watchdog events and posts vault changes to the event loop."""

    def __init__(
        self,
        source: VaultDocumentSource,
        coalescer: LiveUpdateCoalescer,
        loop: asyncio.AbstractEventLoop,
    ):
        """Initialize file handler.

        Args:
            source: Document source deciding which paths are indexable
            coalescer: Receives accepted changes on the loop thread
            loop: Event loop the coalescer runs on
        """
        super().__init__()
        self.source = source
        self.coalescer = coalescer
        self.loop = loop

    def vault_path_for(self, file_path: str | bytes) -> str | None:
        """Vault-relative path of an event path, or None if it is not watched."""
        rel = self.source.relative_path(Path(os.fsdecode(file_path)))
        if rel is None:
            return None
        parts = PurePosixPath(rel).parts
        if any(part.startswith(".") or part in WATCHER_IGNORED_COMPONENTS for part in parts):
            return None
        if not self.source.is_indexable(rel):
            return None
        return rel

    def _post(self, change_type: ChangeType, file_path: str | bytes) -> None:
        rel = self.vault_path_for(file_path)
        if rel is None:
            return
        try:
            self.loop.call_soon_threadsafe(self.coalescer.notify, change_type, rel)
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug(f"Dropped {change_type.value} event for {rel}")

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(ChangeType.MODIFIED, event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(ChangeType.ADDED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._post(ChangeType.DELETED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        """A rename is a delete of the source and an add of the destination."""
        if event.is_directory:
            return
        self._post(ChangeType.DELETED, event.src_path)
        dest_path = getattr(event, "dest_path", None)
        if dest_path:
            self._post(ChangeType.ADDED, dest_path)


class FileWatcher:
    """Watches the vault and keeps the index updated."""

    def __init__(
        self,
        source: VaultDocumentSource,
        target: UpdateTarget,
        debounce_delay: float = DEFAULT_DEBOUNCE_DELAY,
    ):
        self.source = source
        self.target = target
        self.debounce_delay = debounce_delay
        self.observer: Observer | None = None
        self.handler: VaultFileHandler | None = None
        self.coalescer: LiveUpdateCoalescer | None = None
        self.is_running = False

    async def start(self) -> None:
        """Start watching for file changes."""
        if self.is_running:
            logger.warning("File watcher is already running")
            return

        logger.info(f"Starting file watcher for {self.source.vault_root}")

        loop = asyncio.get_running_loop()
        self.coalescer = LiveUpdateCoalescer(
            self.target, debounce_delay=self.debounce_delay, loop=loop
        )
        self.handler = VaultFileHandler(self.source, self.coalescer, loop)

        self.observer = Observer()
        self.observer.schedule(
            self.handler, str(self.source.vault_root), recursive=True
        )
        self.observer.start()
        self.is_running = True

        logger.info("File watcher started successfully")

    async def stop(self) -> None:
        """Stop watching and wait for in-flight updates."""
        if not self.is_running:
            return

        logger.info("Stopping file watcher")

        if self.observer:
            self.observer.stop()
            await asyncio.to_thread(self.observer.join)
            self.observer = None

        if self.coalescer:
            self.coalescer.close()
            await self.coalescer.drain()

        self.handler = None
        self.is_running = False

        logger.info("File watcher stopped")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
