"""Podman machine discovery.

Resolves the control-plane socket, SSH identity and rootful flag of the
default podman machine from ``podman machine inspect``.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bootc_run._logging import get_logger
from bootc_run.exceptions import HostConfigurationError
from bootc_run.models import HostConnection
from bootc_run.subprocess_utils import run_command

logger = get_logger(__name__)


class _SocketInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    path: Path = Field(alias="Path")


class _ConnectionInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    podman_socket: _SocketInfo | None = Field(default=None, alias="PodmanSocket")


class _SSHConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    identity_path: Path = Field(alias="IdentityPath")


class MachineInspect(BaseModel):
    """Subset of one ``podman machine inspect`` entry."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(default="", alias="Name")
    state: str = Field(default="", alias="State")
    rootful: bool = Field(default=False, alias="Rootful")
    connection_info: _ConnectionInfo = Field(default_factory=_ConnectionInfo, alias="ConnectionInfo")
    ssh_config: _SSHConfig = Field(alias="SSHConfig")


def parse_machine_inspect(raw: str) -> HostConnection | None:
    """Build a HostConnection from ``podman machine inspect`` JSON.

    Returns:
        HostConnection for the first machine, or None when the list is empty

    Raises:
        HostConfigurationError: Output is not valid inspect JSON, or the
            machine exposes no API socket
    """
    try:
        entries = json.loads(raw)
        if not entries:
            return None
        machine = MachineInspect.model_validate(entries[0])
    except (json.JSONDecodeError, ValidationError, TypeError, KeyError) as e:
        raise HostConfigurationError(
            f"unable to parse podman machine inspect output: {e}",
            context={"error": str(e)},
        ) from e

    socket = machine.connection_info.podman_socket
    if socket is None:
        raise HostConfigurationError(
            f"podman machine {machine.name} has no API socket",
            context={"machine": machine.name},
            remedy="podman machine start",
        )

    return HostConnection(
        socket_path=socket.path,
        ssh_identity_path=machine.ssh_config.identity_path,
        rootful=machine.rootful,
    )


class PodmanMachineProvider:
    """Host connectivity provider backed by the podman CLI."""

    def __init__(self, podman_bin: str = "podman") -> None:
        self._podman_bin = podman_bin

    async def get_machine_info(self) -> HostConnection | None:
        """Inspect the default podman machine.

        Returns:
            HostConnection, or None when no machine exists

        Raises:
            HostConfigurationError: podman missing or inspect output unusable
        """
        try:
            result = await run_command([self._podman_bin, "machine", "inspect"])
        except FileNotFoundError as e:
            raise HostConfigurationError(
                f"podman not found: {self._podman_bin}",
                context={"podman_bin": self._podman_bin},
                remedy="install podman",
            ) from e

        if result.returncode != 0:
            # podman exits non-zero when no machine is defined
            logger.debug("podman machine inspect failed", extra={"stderr": result.stderr.strip()})
            return None

        return parse_machine_inspect(result.stdout)
