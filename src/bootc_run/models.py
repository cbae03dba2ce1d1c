"""Data models for bootc-run."""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class HostConnection(BaseModel):
    """Control-plane endpoint of the podman machine."""

    model_config = ConfigDict(frozen=True)

    socket_path: Path = Field(description="Podman API unix socket on the host")
    ssh_identity_path: Path = Field(description="Private key used for the machine and the VM")
    rootful: bool = Field(description="Whether the machine runs rootful")

    @property
    def socket_uri(self) -> str:
        return f"unix://{self.socket_path}"


class DiskImage(BaseModel):
    """Result of installing an image reference as a VM disk."""

    model_config = ConfigDict(frozen=True)

    image_ref: str = Field(description="Image reference as given by the user")
    image_id: str = Field(min_length=1, description="Image digest; key of the VM lock and cache")
    path: Path = Field(description="Disk image file")
    created: bool = Field(default=True, description="False when an up-to-date cached disk was reused")


class RunParameters(BaseModel):
    """Per-run parameters handed to the VM backend."""

    model_config = ConfigDict(frozen=True)

    ssh_port: int = Field(ge=1, le=65535)
    ssh_identity: Path
    command: list[str] = Field(default_factory=list, description="Remote command argv; empty opens a shell")
    cloud_init_dir: Path | None = None
    cloud_init_data: bool = False
    no_credentials: bool = False
    remove_vm: bool = False
    background: bool = False
    vm_user: str


class VmRunConfig(BaseModel):
    """Persisted description of a running VM, for later inspection or resume."""

    image_ref: str
    image_id: str
    disk_path: Path
    ssh_port: int
    ssh_identity: Path
    vm_user: str
    pid_file: Path
    console_log: Path
    created: datetime = Field(default_factory=datetime.now)


class RunOutcome(BaseModel):
    """Outcome of one orchestrated run.

    Tool-level failures are raised as BootcRunError; this model only
    describes runs that got through every step.
    """

    exit_code: int = Field(default=0, description="Remote command exit status (0 for background runs)")
    image_id: str
    ssh_port: int
    background: bool = False
    vm_deleted: bool = False
