"""Serial console streaming.

ConsoleStreamer copies the VM's console to the user's terminal while the
orchestrator waits for SSH. It runs as a single asyncio task. Errors are
logged, never raised into the orchestrator.

The default source tails the QEMU serial log with aiofiles. Tailing never
sees an end of stream while the VM runs, so the task lives until it is
cancelled; the orchestrator cancels it once the session is over.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from typing import TYPE_CHECKING, BinaryIO

import aiofiles

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.subprocess_utils import log_task_exception

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

logger = get_logger(__name__)


async def tail_file(
    path: Path,
    *,
    chunk_size: int = constants.CONSOLE_READ_CHUNK_BYTES,
    poll_interval: float = constants.CONSOLE_POLL_INTERVAL_SECONDS,
) -> AsyncIterator[bytes]:
    """Yield bytes appended to *path*, from the beginning, forever.

    Waits for the file to appear. Ends only when the consumer stops
    iterating or the task is cancelled.
    """
    while not path.exists():
        await asyncio.sleep(poll_interval)
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if chunk:
                yield chunk
            else:
                await asyncio.sleep(poll_interval)


class ConsoleStreamer:
    """Relays a console byte stream to an output until it ends.

    Attributes:
        settle_delay: Seconds the orchestrator pauses after SSH readiness so
            buffered console output lands before the interactive prompt.
    """

    def __init__(
        self,
        output: BinaryIO | None = None,
        settle_delay: float = constants.SETTLE_DELAY_SECONDS,
    ) -> None:
        self._output = output
        self.settle_delay = settle_delay
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _out(self) -> BinaryIO:
        return self._output if self._output is not None else sys.stdout.buffer

    async def _pump(self, source: AsyncIterator[bytes]) -> None:
        out = self._out()
        try:
            async for chunk in source:
                out.write(chunk)
                out.flush()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"error printing VM console: {e}", extra={"error_type": type(e).__name__})
        else:
            logger.debug("Console stream ended")

    def start(self, source: AsyncIterator[bytes]) -> asyncio.Task[None]:
        """Start relaying *source* in a background task.

        Raises:
            RuntimeError: Already streaming
        """
        if self.running:
            raise RuntimeError("console streamer already running")
        self._task = asyncio.create_task(self._pump(source), name="vm-console")
        self._task.add_done_callback(log_task_exception)
        return self._task

    async def stop(self) -> None:
        """Cancel the relay task, if any, and wait for it to finish."""
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
