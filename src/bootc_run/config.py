"""Run configuration for bootc-run.

RunOptions is built once by the command-line layer and passed explicitly to
the Orchestrator. It is frozen: nothing in the run may change it.

Example:
    ```python
    from bootc_run import Orchestrator, RunOptions, DiskImageConfig

    options = RunOptions(
        user="core",
        quiet=True,
        disk_image=DiskImageConfig(filesystem="xfs", disk_size="20G"),
    )
    outcome = await orchestrator.run("quay.io/fedora/fedora-bootc:41", options, ["uname", "-a"])
    ```
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bootc_run import constants

_SIZE_RE = re.compile(r"^[1-9][0-9]*[MGT]?$")
_SIZE_UNITS = {"M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_size(value: str) -> int:
    """Convert a size string ("10G", "512M", "1073741824") to bytes.

    Raises:
        ValueError: Not a positive integer with an optional M, G or T suffix
    """
    value = value.strip().upper()
    if not _SIZE_RE.match(value):
        raise ValueError(f"invalid size {value!r}: expected bytes with an optional M, G or T suffix")
    if value[-1] in _SIZE_UNITS:
        return int(value[:-1]) * _SIZE_UNITS[value[-1]]
    return int(value)


class DiskImageConfig(BaseModel):
    """Overrides passed to the disk image builder.

    Attributes:
        filesystem: Root filesystem type (e.g. xfs, btrfs, ext4). None keeps
            the image's default.
        root_size_max: Maximum size of the root filesystem in bytes, with an
            optional M, G or T suffix.
        disk_size: Size of the disk image in bytes, with an optional M, G or
            T suffix.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    filesystem: str | None = Field(default=None, description="Override the root filesystem")
    root_size_max: str | None = Field(default=None, description="Maximum root filesystem size")
    disk_size: str | None = Field(default=None, description="Disk image size")

    @field_validator("filesystem")
    @classmethod
    def _check_filesystem(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        if not value.isalnum():
            raise ValueError(f"invalid filesystem name: {value!r}")
        return value

    @field_validator("root_size_max", "disk_size")
    @classmethod
    def _check_size(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        parse_size(value)
        return value.strip().upper()


class RunOptions(BaseModel):
    """Immutable options for one run.

    Attributes:
        user: User the SSH session logs in as.
        cloud_init_dir: Directory with cloud-init NoCloud data (user-data,
            meta-data). None disables cloud-init seeding.
        disk_image: Disk image builder overrides.
        background: Start the VM and return without SSH.
        no_credentials: Do not inject the SSH public key into the guest.
            Forces background, since no session could log in.
        remove_vm: Delete the VM (not its disk) once the SSH session ends.
            Cannot be combined with background.
        quiet: Suppress disk build output and the boot console.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
    )

    user: str = Field(default=constants.DEFAULT_VM_USER, min_length=1)
    cloud_init_dir: Path | None = None
    disk_image: DiskImageConfig = Field(default_factory=DiskImageConfig)
    background: bool = False
    no_credentials: bool = False
    remove_vm: bool = False
    quiet: bool = False

    @model_validator(mode="before")
    @classmethod
    def _no_credentials_implies_background(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("no_credentials"):
            data = {**data, "background": True}
        return data

    @model_validator(mode="after")
    def _check_exclusive(self) -> RunOptions:
        if self.remove_vm and self.background:
            if self.no_credentials:
                raise ValueError("--rm cannot be used with --no-creds, which implies --background")
            raise ValueError("--rm cannot be used with --background")
        return self

    @property
    def cloud_init_data(self) -> bool:
        """Whether the user supplied cloud-init data."""
        return self.cloud_init_dir is not None
