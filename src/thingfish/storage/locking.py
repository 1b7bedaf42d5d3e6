"""
File Locking
============

A cross-process lock backed by a lock file, used by file-backed stores to
serialize mutations.

The lock file is created atomically with ``O_CREAT | O_EXCL``; whoever
creates it holds the lock until it is unlinked. Waiters poll every
``retry_interval`` seconds and give up after ``timeout`` seconds with a
:class:`~thingfish.error_handling.LockTimeoutError`.

The lock file holds the PID of its creator. A waiter that finds a lock
file whose process no longer exists removes it and tries again, so a
writer killed while holding the lock doesn't block the store forever.

The lock is re-entrant within a thread, so a store can take it for a whole
transaction and again for each operation inside it.

Usage:
    lock = FileLock(datadir / "metadata.lock", timeout=5.0)
    with lock:
        ...  # exclusive across threads and processes
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional, Union

from ..error_handling import ConfigurationError, LockTimeoutError

logger = logging.getLogger(__name__)


def _process_exists(pid: int) -> bool:
    """Check whether a process with ``pid`` is running on this host."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True
    return True


class FileLock:
    """Re-entrant, cross-process lock file with a bounded wait."""

    def __init__(
        self,
        path: Union[str, Path],
        timeout: Optional[float] = 30.0,
        retry_interval: float = 0.1,
    ):
        """
        Args:
            path: Lock file to create while the lock is held
            timeout: Seconds to wait before giving up (None waits forever)
            retry_interval: Seconds between attempts
        """
        if timeout is not None and timeout < 0:
            raise ConfigurationError(f"Lock timeout must be non-negative, got {timeout}")
        if retry_interval <= 0:
            raise ConfigurationError(
                f"Lock retry interval must be positive, got {retry_interval}"
            )

        self.path = Path(path)
        self.timeout = timeout
        self.retry_interval = retry_interval
        self._thread_lock = threading.RLock()
        self._depth = 0

    @property
    def is_locked(self) -> bool:
        """True while some thread in this process holds the lock."""
        return self._depth > 0

    def acquire(self) -> None:
        """
        Acquire the lock, waiting up to ``timeout`` seconds.

        Raises:
            LockTimeoutError: If the lock could not be acquired in time
        """
        deadline = None if self.timeout is None else time.monotonic() + self.timeout

        if not self._thread_lock.acquire(timeout=-1 if self.timeout is None else self.timeout):
            raise self._timeout_error()

        if self._depth > 0:
            self._depth += 1
            return

        try:
            self._create_lock_file(deadline)
        except BaseException:
            self._thread_lock.release()
            raise

        self._depth = 1

    def release(self) -> None:
        """Release one level of the lock, removing the lock file at the last."""
        if self._depth == 0:
            raise RuntimeError(f"Lock {self.path} released while not held")

        self._depth -= 1
        if self._depth == 0:
            try:
                self.path.unlink()
            except FileNotFoundError:
                logger.warning(f"Lock file {self.path} vanished while held")
        self._thread_lock.release()

    def _create_lock_file(self, deadline: Optional[float]) -> None:
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._break_stale_lock():
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    raise self._timeout_error()
                time.sleep(self.retry_interval)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            logger.debug(f"Acquired lock {self.path}")
            return

    def _holder_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text().strip())
        except (FileNotFoundError, ValueError):
            # Gone, or its creator hasn't written the PID yet
            return None

    def _break_stale_lock(self) -> bool:
        """
        Remove the lock file if the process that created it has exited.

        Returns:
            True if a stale lock file was removed
        """
        pid = self._holder_pid()
        if pid is None or pid <= 0 or _process_exists(pid):
            return False

        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        logger.warning(f"Removed stale lock {self.path} left by exited process {pid}")
        return True

    def _timeout_error(self) -> LockTimeoutError:
        return LockTimeoutError(
            f"Timed out after {self.timeout}s waiting for lock {self.path}",
            {"path": str(self.path), "timeout": self.timeout},
        )

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
