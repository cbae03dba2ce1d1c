"""Control-plane connection to the podman machine.

The connection is verified with the libpod ``_ping`` endpoint over the unix
socket and then kept open for the lifetime of the run, so the VM handle owns
something real to close during cleanup.
"""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.exceptions import ConnectivityError

logger = get_logger(__name__)

_PING_REQUEST = b"GET /_ping HTTP/1.1\r\nHost: d\r\nConnection: keep-alive\r\n\r\n"


class BackendConnection:
    """An open, verified control-plane connection."""

    def __init__(
        self,
        socket_path: Path,
        identity_path: Path,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self.socket_path = socket_path
        self.identity_path = identity_path
        self._reader = reader
        self._writer = writer

    @property
    def closed(self) -> bool:
        return self._writer.is_closing()

    def close(self) -> None:
        """Close the connection. Idempotent, never raises."""
        if not self._writer.is_closing():
            with contextlib.suppress(OSError, RuntimeError):
                self._writer.close()
            logger.debug("Backend connection closed", extra={"socket": str(self.socket_path)})


def _socket_path_from_uri(socket_uri: str) -> Path:
    if not socket_uri.startswith("unix://"):
        raise ConnectivityError(
            f"unsupported connection URI: {socket_uri}",
            context={"socket_uri": socket_uri},
        )
    return Path(socket_uri.removeprefix("unix://"))


class PodmanConnector:
    """Backend connection factory for the podman API socket."""

    def __init__(self, timeout: float = constants.BACKEND_CONNECT_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout

    async def connect(self, socket_uri: str, identity_path: Path, authenticated: bool) -> BackendConnection:
        """Open and verify a connection.

        Args:
            socket_uri: ``unix://`` URI of the API socket
            identity_path: SSH identity of the machine; must exist when
                *authenticated* is set
            authenticated: Require the identity file

        Raises:
            ConnectivityError: Socket unreachable, identity missing, or ping failed
        """
        socket_path = _socket_path_from_uri(socket_uri)
        if authenticated and not identity_path.exists():
            raise ConnectivityError(
                f"SSH identity not found: {identity_path}",
                context={"identity_path": str(identity_path)},
            )

        writer: asyncio.StreamWriter | None = None
        try:
            async with asyncio.timeout(self._timeout):
                reader, writer = await asyncio.open_unix_connection(str(socket_path))
                writer.write(_PING_REQUEST)
                await writer.drain()
                status_line = await reader.readline()
                # Drain headers; the body is "OK" and is left unread.
                while (await reader.readline()) not in (b"\r\n", b""):
                    pass
        except (OSError, TimeoutError) as e:
            if writer is not None:
                writer.close()
            raise ConnectivityError(
                f"failed to connect to the podman socket: {e}",
                context={"socket": str(socket_path), "error": str(e)},
            ) from e

        parts = status_line.decode(errors="replace").split()
        if len(parts) < 2 or parts[1] != "200":
            writer.close()
            raise ConnectivityError(
                f"podman API ping failed: {status_line.decode(errors='replace').strip() or 'no response'}",
                context={"socket": str(socket_path)},
            )

        logger.debug("Backend connection established", extra={"socket": str(socket_path)})
        return BackendConnection(socket_path, identity_path, reader, writer)
