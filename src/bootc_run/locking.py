"""Host-wide file locks.

ImageLock guards one image id across every bootc-run process on the host
using flock(2) on a persistent lock file. The kernel drops the lock when the
holding process dies, so a crashed run never leaves a stale lock behind.

Lock files are never deleted: unlinking after close lets another process lock
the old inode while a third creates a new file, and both would then hold an
"exclusive" lock.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import os
from typing import IO, TYPE_CHECKING

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.exceptions import CleanupWarning, VmLockedError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
    from pathlib import Path

logger = get_logger(__name__)


class ImageLock:
    """Exclusive, non-blocking lock scoped to one image id."""

    def __init__(self, locks_dir: Path, image_id: str) -> None:
        self.image_id = image_id
        self.path = locks_dir / f"{image_id}{constants.IMAGE_LOCK_SUFFIX}"
        self._fd: IO[str] | None = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            VmLockedError: The lock is held by another process, or by this
                handle already.
        """
        if self._fd is not None:
            raise VmLockedError(
                f"VM {self.image_id} is already locked by this run",
                context={"image_id": self.image_id},
            )
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = self.path.open("a")
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            raise VmLockedError(
                f"VM {self.image_id} is in use by another bootc-run process",
                context={"image_id": self.image_id, "lock_path": str(self.path)},
            ) from None
        except BaseException:
            fd.close()
            raise
        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        self._fd = fd
        logger.debug("Image lock acquired", extra={"image_id": self.image_id, "path": str(self.path)})

    def release(self) -> None:
        """Release the lock.

        Raises:
            CleanupWarning: The lock was not held, or unlocking failed. The
                file descriptor is closed either way, which also drops the lock.
        """
        fd = self._fd
        if fd is None:
            raise CleanupWarning(
                f"VM {self.image_id} is not locked",
                context={"image_id": self.image_id},
            )
        self._fd = None
        try:
            fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
        except OSError as e:
            raise CleanupWarning(
                f"unable to unlock VM {self.image_id}: {e}",
                context={"image_id": self.image_id, "error": str(e)},
            ) from e
        finally:
            fd.close()
        logger.debug("Image lock released", extra={"image_id": self.image_id})


@contextlib.contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Blocking exclusive flock held for the duration of the block."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a") as fd:
        fcntl.flock(fd.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd.fileno(), fcntl.LOCK_UN)


@contextlib.asynccontextmanager
async def async_file_lock(path: Path) -> AsyncIterator[None]:
    """Like file_lock(), waiting for the lock in a worker thread.

    For locks that may be held for minutes (disk image builds).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = path.open("a")
    try:
        await asyncio.to_thread(fcntl.flock, fd.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd.fileno(), fcntl.LOCK_UN)
    finally:
        fd.close()
