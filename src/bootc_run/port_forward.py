"""Port allocation for the VM's SSH forward.

A bind-to-0 probe alone is racy across processes: two bootc-run invocations
can be handed the same port between releasing the probe socket and QEMU
binding it. Allocation therefore runs under a host-wide flock and records
each reservation, with the reserving pid, in a small JSON registry. Entries
whose owner has exited are pruned; by then QEMU holds the port itself.
"""

from __future__ import annotations

import json
import os
import socket
from pathlib import Path

import psutil

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.exceptions import ResourceAllocationError
from bootc_run.locking import file_lock

logger = get_logger(__name__)


def probe_free_port(host: str = constants.PORT_BIND_HOST) -> int:
    """Return a port the OS considers free by binding to port 0 and releasing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind((host, 0))
        return s.getsockname()[1]


class PortAllocator:
    """Host-wide allocator of local TCP ports for SSH forwarding.

    Attributes:
        registry_path: JSON file mapping reserved port -> owner pid
        host: Address the forward binds to
    """

    def __init__(
        self,
        run_dir: Path,
        host: str = constants.PORT_BIND_HOST,
        attempts: int = constants.PORT_ALLOCATION_ATTEMPTS,
    ) -> None:
        self.registry_path = run_dir / constants.PORT_REGISTRY_NAME
        self._lock_path = run_dir / f"{constants.PORT_REGISTRY_NAME}{constants.IMAGE_LOCK_SUFFIX}"
        self.host = host
        self._attempts = attempts

    def _load(self) -> dict[int, int]:
        try:
            raw = json.loads(self.registry_path.read_text())
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Port registry unreadable, starting empty", extra={"path": str(self.registry_path), "error": str(e)})
            return {}
        return {int(port): int(pid) for port, pid in raw.items()}

    def _save(self, registry: dict[int, int]) -> None:
        tmp = self.registry_path.with_suffix(".tmp")
        tmp.write_text(json.dumps({str(port): pid for port, pid in sorted(registry.items())}))
        tmp.replace(self.registry_path)

    def allocate(self) -> int:
        """Reserve one free local TCP port.

        Returns:
            Port number (>= 1024)

        Raises:
            ResourceAllocationError: No unreserved port found, or the
                registry could not be written.
        """
        try:
            with file_lock(self._lock_path):
                registry = {port: pid for port, pid in self._load().items() if psutil.pid_exists(pid)}
                for _ in range(self._attempts):
                    port = probe_free_port(self.host)
                    if port not in registry:
                        registry[port] = os.getpid()
                        self._save(registry)
                        logger.debug("Allocated SSH port", extra={"port": port, "host": self.host})
                        return port
        except OSError as e:
            raise ResourceAllocationError(
                f"unable to get free port for SSH: {e}",
                context={"registry": str(self.registry_path), "error": str(e)},
            ) from e

        raise ResourceAllocationError(
            f"unable to get free port for SSH: no unreserved port after {self._attempts} attempts",
            context={"registry": str(self.registry_path)},
        )
