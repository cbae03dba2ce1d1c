"""Resource cleanup for the VM lifecycle.

vm_lease() is the scoped block that releases a VM handle on every exit path:
the backend connection is closed first, then the image lock is released.
Unlock failures are downgraded to warnings; everything else propagates.

The helpers below it are best-effort operations used when deleting a VM.
They log errors instead of raising.
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Protocol

import aiofiles.os

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.exceptions import CleanupWarning

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from bootc_run.platform_utils import ProcessWrapper

logger = get_logger(__name__)


class Lockable(Protocol):
    """The part of a VM handle the cleanup coordinator drives."""

    def close_connection(self) -> None: ...

    def unlock(self) -> None: ...


@contextlib.asynccontextmanager
async def vm_lease(vm: Lockable, *, context_id: str) -> AsyncIterator[Lockable]:
    """Hold a locked VM handle and release it when the block exits.

    Covers normal return, exceptions, and cancellation (KeyboardInterrupt
    reaches asyncio.run() as cancellation of the main task). The order is
    fixed: close_connection() never depends on the lock still being held.

    Args:
        vm: Handle whose lock is already held
        context_id: Context for logging (the image id)
    """
    try:
        yield vm
    finally:
        vm.close_connection()
        try:
            vm.unlock()
        except CleanupWarning as e:
            logger.warning(
                f"unable to unlock VM {context_id}: {e.message}",
                extra={"context_id": context_id, **e.context},
            )


async def cleanup_process(
    proc: ProcessWrapper | None,
    name: str,
    context_id: str,
    term_timeout: float = constants.VM_STOP_TERM_TIMEOUT_SECONDS,
    kill_timeout: float = 2.0,
) -> bool:
    """Stop a process (SIGTERM, then SIGKILL).

    Args:
        proc: Process to stop (None safe - returns immediately)
        name: Process name for logging (e.g., "qemu")
        context_id: Context for logging (e.g., image id)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL before giving up

    Returns:
        True if the process is gone, False if issues occurred
    """
    if proc is None:
        return True

    try:
        if not await proc.is_running():
            logger.debug(f"{name} already terminated", extra={"context_id": context_id, "pid": proc.pid})
            return True

        logger.debug(f"Sending SIGTERM to {name}", extra={"context_id": context_id, "pid": proc.pid})
        await proc.terminate()
        try:
            await proc.wait_with_timeout(timeout=term_timeout)
            logger.debug(f"{name} stopped gracefully (SIGTERM)", extra={"context_id": context_id})
            return True
        except TimeoutError:
            logger.warning(
                f"{name} didn't respond to SIGTERM, force killing",
                extra={"context_id": context_id, "term_timeout": term_timeout},
            )

        await proc.kill()
        try:
            await proc.wait_with_timeout(timeout=kill_timeout)
            logger.warning(f"{name} force killed (SIGKILL)", extra={"context_id": context_id})
            return True
        except TimeoutError:
            logger.error(
                f"{name} didn't respond to SIGKILL within timeout",
                extra={"context_id": context_id, "kill_timeout": kill_timeout, "pid": proc.pid},
            )
            return False

    except ProcessLookupError:
        logger.debug(f"{name} already dead (ProcessLookupError)", extra={"context_id": context_id})
        return True

    except Exception as e:
        logger.error(
            f"{name} cleanup error",
            extra={"context_id": context_id, "error": str(e), "error_type": type(e).__name__},
            exc_info=True,
        )
        return False


async def cleanup_file(
    file_path: Path | None,
    context_id: str,
    description: str = "file",
) -> bool:
    """Delete a file. Succeeds if it doesn't exist.

    Args:
        file_path: Path to delete (None safe - returns immediately)
        context_id: Context for logging (e.g., image id)
        description: Description for logging (e.g., "pid file", "console log")

    Returns:
        True if the file is gone, False if issues occurred
    """
    if file_path is None:
        return True

    try:
        await aiofiles.os.remove(file_path)
        logger.debug(f"{description} deleted", extra={"context_id": context_id, "path": str(file_path)})
        return True

    except FileNotFoundError:
        return True

    except OSError as e:
        logger.error(
            f"{description} OS error during deletion",
            extra={"context_id": context_id, "path": str(file_path), "error": str(e), "error_type": type(e).__name__},
        )
        return False
