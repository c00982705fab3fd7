"""PID-file guard keeping a single indexing worker per index."""

import atexit
import os
import signal
import sys
from pathlib import Path

import psutil
from loguru import logger

from .exceptions import WorkerLockError


class PidFileGuard:
    """Advisory lock on an index directory, held through a PID file.

    A PID file whose process is gone (or whose content is not a PID) is
    stale and gets replaced. Nothing stops a process that ignores the file;
    the lock only works between cooperating workers.

    Example:
        guard = PidFileGuard(index_dir / "indexing-worker.pid")
        if not guard.acquire():
            return  # another worker is already running
        guard.install_signal_handlers()
        ...
        guard.release()
    """

    def __init__(self, pid_file: Path, pid: int | None = None) -> None:
        self.pid_file = pid_file
        self.pid = pid if pid is not None else os.getpid()
        self._acquired = False
        self._atexit_registered = False

    @property
    def acquired(self) -> bool:
        return self._acquired

    def read_pid(self) -> int | None:
        """PID recorded in the file, or None if missing or unparsable."""
        try:
            return int(self.pid_file.read_text().strip())
        except (OSError, ValueError):
            return None

    def holder_pid(self) -> int | None:
        """PID of a live process holding the lock, if any."""
        pid = self.read_pid()
        if pid is not None and pid != self.pid and psutil.pid_exists(pid):
            return pid
        return None

    def acquire(self) -> bool:
        """Take the lock.

        Returns:
            False if another live process holds it; the file is left untouched

        Raises:
            WorkerLockError: If the PID file cannot be written
        """
        if self.pid_file.exists():
            recorded = self.read_pid()
            if recorded is not None and recorded != self.pid and psutil.pid_exists(recorded):
                logger.info(
                    f"Another indexing worker is already running (PID {recorded})"
                )
                return False
            logger.info(f"Removing stale worker PID file ({recorded})")
            self.pid_file.unlink(missing_ok=True)

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(str(self.pid))
        except OSError as e:
            raise WorkerLockError(
                f"Failed to write PID file {self.pid_file}: {e}"
            ) from e

        self._acquired = True
        if not self._atexit_registered:
            atexit.register(self.release)
            self._atexit_registered = True
        logger.debug(f"Acquired worker lock {self.pid_file} (PID {self.pid})")
        return True

    def release(self) -> None:
        """Remove the PID file if it still records our PID."""
        if not self._acquired:
            return
        self._acquired = False
        if self.read_pid() == self.pid:
            try:
                self.pid_file.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Failed to remove PID file {self.pid_file}: {e}")
                return
            logger.debug(f"Released worker lock {self.pid_file}")

    def install_signal_handlers(self) -> None:
        """Release the lock and exit with status 0 on SIGINT/SIGTERM."""

        def _handle(signum, frame) -> None:
            logger.info(f"Received {signal.Signals(signum).name}, shutting down")
            self.release()
            sys.exit(0)

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)

    def __enter__(self) -> "PidFileGuard":
        if not self.acquire():
            raise WorkerLockError(
                f"Another indexing worker is already running (PID {self.read_pid()})"
            )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
