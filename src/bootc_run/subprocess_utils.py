"""Subprocess lifecycle utilities.

- run_command: run a tool to completion and capture its output
- drain_subprocess_output: concurrent stdout/stderr draining (prevents 64KB pipe deadlock)
- log_task_exception: done-callback for background tasks
- wait_for_file: poll for a file created by a daemonizing child
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING

from bootc_run._logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from pathlib import Path

logger = get_logger(__name__)


@dataclass(frozen=True)
class CommandResult:
    """Captured result of run_command()."""

    returncode: int
    stdout: str
    stderr: str


async def run_command(args: Sequence[str], *, timeout: float | None = None) -> CommandResult:
    """Run a command to completion, capturing stdout and stderr.

    Args:
        args: Program and arguments
        timeout: Optional timeout in seconds

    Returns:
        CommandResult with decoded output

    Raises:
        FileNotFoundError: Program not found
        TimeoutError: Command did not finish in time (the process is killed)
    """
    logger.debug("Running command", extra={"args": list(args)})
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return CommandResult(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


async def drain_subprocess_output(
    process: asyncio.subprocess.Process,
    *,
    process_name: str,
    context_id: str,
    stdout_handler: Callable[[str], None] | None = None,
    stderr_handler: Callable[[str], None] | None = None,
) -> None:
    """Drain subprocess stdout/stderr concurrently to prevent 64KB pipe deadlock.

    Args:
        process: Process with stdout/stderr pipes
        process_name: Process identifier for logging (e.g., "bootc install")
        context_id: Context identifier (e.g., image id) for log correlation
        stdout_handler: Optional callback for stdout lines (default: debug log)
        stderr_handler: Optional callback for stderr lines (default: debug log)
    """

    if stdout_handler is None:

        def default_stdout_handler(line: str) -> None:
            logger.debug(f"[{process_name} stdout] {line}", extra={"context_id": context_id, "output": line})

        stdout_handler = default_stdout_handler

    if stderr_handler is None:

        def default_stderr_handler(line: str) -> None:
            logger.debug(f"[{process_name} stderr] {line}", extra={"context_id": context_id, "output": line})

        stderr_handler = default_stderr_handler

    async with asyncio.TaskGroup() as tg:

        async def read_stream(stream: asyncio.StreamReader, handler: Callable[[str], None]) -> None:
            async for line in stream:
                try:
                    decoded = line.decode().rstrip()
                    if decoded:
                        handler(decoded)
                except (UnicodeDecodeError, ValueError):
                    pass  # non-UTF8 output is skipped

        if process.stdout:
            tg.create_task(read_stream(process.stdout, stdout_handler))
        if process.stderr:
            tg.create_task(read_stream(process.stderr, stderr_handler))


def log_task_exception(task: asyncio.Task[None]) -> None:
    """Log exceptions from background tasks.

    Callback for asyncio.Task.add_done_callback().
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Background task failed",
            extra={"task_name": task.get_name()},
            exc_info=exc,
        )


async def wait_for_file(
    path: Path,
    *,
    timeout: float,
    poll_interval: float = 0.05,
    abort_check: Callable[[], None] | None = None,
) -> None:
    """Wait for a non-empty file written by another process.

    Used after launching QEMU with -daemonize to wait for its pid file.

    Args:
        path: File to wait for.
        timeout: Maximum seconds to wait before raising TimeoutError.
        poll_interval: Seconds between checks.
        abort_check: Optional callable invoked each poll iteration. Should raise
            to abort the wait early (e.g. when the launcher exited with an error).

    Raises:
        TimeoutError: File did not appear within *timeout* seconds.
    """
    async with asyncio.timeout(timeout):
        while not (path.exists() and path.stat().st_size > 0):
            if abort_check is not None:
                abort_check()
            await asyncio.sleep(poll_interval)
