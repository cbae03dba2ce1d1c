"""Cross-platform host detection and directory helpers.

Uses psutil's OS detection constants for platform identification and
provides an async psutil wrapper for the QEMU process.
"""

import asyncio
import contextlib
import os
import platform
from enum import Enum, auto
from functools import cache
from pathlib import Path

import psutil


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM acceleration)."""

    MACOS = auto()
    """macOS (HVF acceleration)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


class HostArch(Enum):
    """Supported host CPU architectures."""

    X86_64 = auto()
    AARCH64 = auto()
    UNKNOWN = auto()


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect current host CPU architecture."""
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return HostArch.X86_64
    if machine in ("aarch64", "arm64"):
        return HostArch.AARCH64
    return HostArch.UNKNOWN


def get_cache_dir() -> Path:
    """Get the cache directory holding installed disk images.

    Detection order:
    1. BOOTC_RUN_CACHE_DIR environment variable
    2. XDG_CACHE_HOME/bootc-run
    3. Platform default:
       - Linux: ~/.cache/bootc-run
       - macOS: ~/Library/Caches/bootc-run
    """
    if env_path := os.environ.get("BOOTC_RUN_CACHE_DIR"):
        return Path(env_path)
    if xdg := os.environ.get("XDG_CACHE_HOME"):
        return Path(xdg) / "bootc-run"
    if detect_host_os() == HostOS.MACOS:
        return Path.home() / "Library" / "Caches" / "bootc-run"
    return Path.home() / ".cache" / "bootc-run"


def get_runtime_dir() -> Path:
    """Get the runtime directory holding locks and the port registry.

    Uses XDG_RUNTIME_DIR when set (tmpfs, per-user), otherwise a
    subdirectory of the cache dir.
    """
    if env_path := os.environ.get("BOOTC_RUN_RUN_DIR"):
        return Path(env_path)
    if xdg := os.environ.get("XDG_RUNTIME_DIR"):
        return Path(xdg) / "bootc-run"
    return get_cache_dir() / "run"


class ProcessWrapper:
    """Async handle on a QEMU process found through its pid file.

    QEMU daemonizes, so the process is not our child; psutil is the only way
    to watch and signal it. The psutil.Process is bound when the wrapper is
    built, so signals never reach a process that takes the pid later. Use
    from_pid_file() to make sure the pid belongs to the expected QEMU in the
    first place.
    """

    def __init__(self, pid: int) -> None:
        self.pid = pid
        self.psutil_proc: psutil.Process | None = None
        with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
            self.psutil_proc = psutil.Process(pid)

    @classmethod
    async def from_pid_file(cls, pid_file: Path) -> "ProcessWrapper | None":
        """Process that wrote *pid_file*, or None when it is gone.

        A pid file can outlive its process (host reboot, crash) and the pid
        can be reused by anything. The process is only accepted while its
        command line names *pid_file*, as QEMU's ``-pidfile`` argument does.
        """
        try:
            pid = int(pid_file.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None
        proc = cls(pid)
        if not await proc.is_running():
            return None
        if str(pid_file) not in await proc.cmdline():
            return None
        return proc

    async def cmdline(self) -> list[str]:
        """Command line of the process; empty when it cannot be read."""
        if not self.psutil_proc:
            return []
        try:
            return await asyncio.to_thread(self.psutil_proc.cmdline)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return []

    async def is_running(self) -> bool:
        """Whether the process bound at construction is still alive."""
        if not self.psutil_proc:
            return False
        try:
            running = await asyncio.to_thread(self.psutil_proc.is_running)
            if not running:
                return False
            status = await asyncio.to_thread(self.psutil_proc.status)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False
        return status != psutil.STATUS_ZOMBIE

    async def terminate(self) -> None:
        """Send SIGTERM."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.terminate)

    async def kill(self) -> None:
        """Send SIGKILL."""
        if self.psutil_proc and await self.is_running():
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                await asyncio.to_thread(self.psutil_proc.kill)

    async def wait_with_timeout(self, timeout: float) -> None:
        """Wait for the process to exit.

        Raises:
            TimeoutError: Process still running after *timeout* seconds
        """
        if self.psutil_proc is None:
            return
        try:
            await asyncio.to_thread(self.psutil_proc.wait, timeout)
        except psutil.TimeoutExpired as e:
            raise TimeoutError(f"Process {self.pid} still running after {timeout}s") from e
        except psutil.NoSuchProcess:
            return
