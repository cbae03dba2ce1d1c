"""Tests for host-wide image locks.

Uses real flock(2) on files in tmp_path. Two ImageLock instances open the
lock file separately, so they contend exactly like two processes would.
"""

import asyncio
import os
from pathlib import Path

import pytest

from bootc_run.exceptions import CleanupWarning, VmInitError, VmLockedError
from bootc_run.locking import ImageLock, async_file_lock, file_lock

IMAGE_ID = "4f1c3b9a2d7e"


class TestImageLock:
    """Exclusive, non-blocking per-image lock."""

    def test_acquire_release(self, tmp_path: Path) -> None:
        lock = ImageLock(tmp_path / "locks", IMAGE_ID)

        lock.acquire()
        assert lock.locked
        assert lock.path.read_text() == f"{os.getpid()}\n"

        lock.release()
        assert not lock.locked

    def test_contention(self, tmp_path: Path) -> None:
        """A second holder fails immediately instead of waiting."""
        first = ImageLock(tmp_path, IMAGE_ID)
        second = ImageLock(tmp_path, IMAGE_ID)
        first.acquire()

        with pytest.raises(VmLockedError) as exc_info:
            second.acquire()

        assert isinstance(exc_info.value, VmInitError)
        assert exc_info.value.context["image_id"] == IMAGE_ID
        assert not second.locked
        first.release()

    def test_reacquire_after_release(self, tmp_path: Path) -> None:
        first = ImageLock(tmp_path, IMAGE_ID)
        second = ImageLock(tmp_path, IMAGE_ID)

        first.acquire()
        first.release()
        second.acquire()

        assert second.locked
        second.release()

    def test_different_images_independent(self, tmp_path: Path) -> None:
        first = ImageLock(tmp_path, IMAGE_ID)
        other = ImageLock(tmp_path, "9e8d7c6b5a4f")

        first.acquire()
        other.acquire()

        assert first.locked and other.locked
        first.release()
        other.release()

    def test_double_acquire_rejected(self, tmp_path: Path) -> None:
        lock = ImageLock(tmp_path, IMAGE_ID)
        lock.acquire()

        with pytest.raises(VmLockedError, match="already locked by this run"):
            lock.acquire()

        lock.release()

    def test_release_unlocked_warns(self, tmp_path: Path) -> None:
        lock = ImageLock(tmp_path, IMAGE_ID)

        with pytest.raises(CleanupWarning, match="not locked"):
            lock.release()

    def test_double_release_warns(self, tmp_path: Path) -> None:
        lock = ImageLock(tmp_path, IMAGE_ID)
        lock.acquire()
        lock.release()

        with pytest.raises(CleanupWarning):
            lock.release()

    def test_lock_file_kept(self, tmp_path: Path) -> None:
        """The lock file outlives the lock."""
        lock = ImageLock(tmp_path, IMAGE_ID)
        lock.acquire()
        lock.release()

        assert lock.path.exists()


class TestFileLocks:
    """Blocking locks used for the port registry and disk builds."""

    def test_file_lock_creates_parent(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "ports.json.lock"

        with file_lock(path):
            assert path.exists()

    async def test_async_file_lock_serializes(self, tmp_path: Path) -> None:
        """A second holder waits for the first to leave."""
        path = tmp_path / "image.lock"
        order: list[str] = []

        async def holder(name: str, delay: float) -> None:
            async with async_file_lock(path):
                order.append(f"{name}-in")
                await asyncio.sleep(delay)
                order.append(f"{name}-out")

        first = asyncio.create_task(holder("first", 0.2))
        await asyncio.sleep(0.05)
        await holder("second", 0)
        await first

        assert order == ["first-in", "first-out", "second-in", "second-out"]
