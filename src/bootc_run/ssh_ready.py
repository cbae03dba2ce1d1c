"""SSH readiness polling.

QEMU's user-mode network accepts TCP connections on the forwarded port as
soon as it starts, long before the guest's sshd is listening: the connection
is accepted on the host side and then dropped. A successful connect() proves
nothing, so readiness means reading the server identification line
("SSH-2.0-...", RFC 4253 section 4.2).
"""

from __future__ import annotations

import asyncio
import contextlib

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_fixed

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.exceptions import ReadinessTimeoutError

logger = get_logger(__name__)


class SSHNotReadyError(Exception):
    """One readiness probe failed; retried until the deadline."""


async def probe_ssh_banner(
    port: int,
    host: str = constants.PORT_BIND_HOST,
    read_timeout: float = constants.SSH_BANNER_READ_TIMEOUT_SECONDS,
) -> str:
    """Connect once and read the SSH identification line.

    Returns:
        The identification line, e.g. "SSH-2.0-OpenSSH_9.6"

    Raises:
        SSHNotReadyError: Connection refused/reset, no data, or not an SSH server
    """
    try:
        async with asyncio.timeout(read_timeout):
            reader, writer = await asyncio.open_connection(host, port)
            try:
                line = await reader.readline()
            finally:
                writer.close()
                with contextlib.suppress(OSError):
                    await writer.wait_closed()
    except (OSError, TimeoutError) as e:
        raise SSHNotReadyError(f"{host}:{port}: {e!r}") from e

    banner = line.decode(errors="replace").strip()
    if not banner.startswith("SSH-"):
        raise SSHNotReadyError(f"{host}:{port}: unexpected banner {banner!r}")
    return banner


async def wait_for_ssh_ready(
    port: int,
    timeout: float = constants.SSH_READY_TIMEOUT_SECONDS,
    *,
    host: str = constants.PORT_BIND_HOST,
    poll_interval: float = constants.SSH_READY_POLL_INTERVAL_SECONDS,
) -> str:
    """Block until the SSH endpoint answers, or time out.

    Stateless: callers in the quiet and the console-streaming branches get the
    same behavior.

    Args:
        port: Local forwarded SSH port
        timeout: Seconds before giving up
        host: Address the forward listens on
        poll_interval: Seconds between probes

    Returns:
        The server identification line

    Raises:
        ReadinessTimeoutError: No SSH banner within *timeout* seconds
    """
    logger.debug("Waiting for SSH", extra={"port": port, "timeout": timeout})
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(SSHNotReadyError),
            stop=stop_after_delay(timeout),
            wait=wait_fixed(poll_interval),
        ):
            with attempt:
                banner = await probe_ssh_banner(port, host)
    except RetryError as e:
        last = e.last_attempt.exception()
        raise ReadinessTimeoutError(
            f"SSH not ready on {host}:{port} after {timeout}s",
            context={"port": port, "host": host, "last_error": str(last)},
            timeout=timeout,
        ) from last

    logger.info("SSH ready", extra={"port": port, "banner": banner})
    return banner
