"""Advisory inter-process file locks.

The claim store serializes the few read-modify-write steps that exclusive
file creation alone cannot make atomic (owner-checked deletes, agent index
rewrites) with ``flock`` on a dedicated lock file. Lock files are never the
data files themselves, so data can be replaced atomically while the lock is
held.

Example:
    with FileLock(store / "locks" / "abc.lock", timeout=5.0):
        ...  # read, compare and delete the lease record
"""

from __future__ import annotations

import os
import stat
import time
from pathlib import Path

from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "FileLock",
    "FileLockError",
    "FileLockTimeout",
    "FileLockUnsupported",
    "LOCK_RETRY_INTERVAL",
]

LOCK_RETRY_INTERVAL = 0.05  # 50ms between lock attempts

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None


class FileLockError(Exception):
    """Base exception for file locking errors."""

    pass


class FileLockTimeout(FileLockError):
    """Raised when file lock acquisition times out."""

    pass


class FileLockUnsupported(FileLockError):
    """Raised when file locking is not supported on this platform."""

    pass


class FileLock:
    """Exclusive or shared ``flock`` held for the duration of a ``with`` block.

    Args:
        file_path: Lock file path (created with mode 0600 if missing)
        timeout: Maximum seconds to wait (None = wait forever)
        shared: Take a shared lock instead of an exclusive one

    Raises:
        FileLockTimeout: If the lock cannot be acquired within timeout
        FileLockUnsupported: If the platform has no fcntl
        FileLockError: On reentrant use or when the lock file cannot be created
    """

    def __init__(self, file_path: Path | str, timeout: float | None = 10.0, shared: bool = False):
        if fcntl is None:
            raise FileLockUnsupported("File locking requires fcntl (POSIX platforms only)")

        self.file_path = Path(file_path)
        self.timeout = timeout
        self.shared = shared
        self._fd: int | None = None

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> FileLock:
        if self._fd is not None:
            raise FileLockError(
                f"Lock on {self.file_path} is already acquired. Reentrancy is not supported."
            )
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False

    def _open(self) -> int:
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            return os.open(self.file_path, os.O_RDWR | os.O_CREAT, stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            raise FileLockError(f"Cannot open lock file {self.file_path}: {e}") from e

    def _still_linked(self, fd: int) -> bool:
        """Whether fd still refers to the file at file_path."""
        try:
            on_disk = os.stat(self.file_path)
        except FileNotFoundError:
            return False
        held = os.fstat(fd)
        return (held.st_dev, held.st_ino) == (on_disk.st_dev, on_disk.st_ino)

    def acquire(self) -> None:
        """Block (up to timeout) until the lock is held.

        A lock file unlinked by its previous holder is re-opened, so a lock
        taken on a file that no longer exists at file_path never counts.
        """
        operation = fcntl.LOCK_SH if self.shared else fcntl.LOCK_EX
        start_time = time.monotonic()
        fd = self._open()

        while True:
            try:
                fcntl.flock(fd, operation | fcntl.LOCK_NB)
            except BlockingIOError as e:
                if self.timeout is not None and time.monotonic() - start_time >= self.timeout:
                    os.close(fd)
                    raise FileLockTimeout(
                        f"Could not acquire lock on {self.file_path} within {self.timeout}s"
                    ) from e
                time.sleep(LOCK_RETRY_INTERVAL)
                continue
            except OSError as e:
                os.close(fd)
                raise FileLockError(f"Failed to lock {self.file_path}: {e}") from e

            try:
                linked = self._still_linked(fd)
            except OSError as e:
                os.close(fd)
                raise FileLockError(f"Failed to lock {self.file_path}: {e}") from e
            if linked:
                break
            logger.debug(f"Lock file {self.file_path} was replaced while waiting, reopening")
            os.close(fd)
            fd = self._open()

        self._fd = fd
        logger.debug(f"Acquired {'shared' if self.shared else 'exclusive'} lock on {self.file_path}")

    def release(self) -> None:
        """Release the lock; a no-op when not held."""
        if self._fd is None:
            return

        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.warning(f"Error releasing lock on {self.file_path}: {e}")
        finally:
            os.close(fd)
        logger.debug(f"Released lock on {self.file_path}")
