"""bootc-run: run bootc container images as local VMs.

Turns a bootable container image into a disk image inside a rootful podman
machine, boots it under QEMU with the user's SSH key injected, and opens an
SSH session (or runs one command) in it.

Quick Start:
    ```python
    from bootc_run import Orchestrator, RunOptions, Settings

    orchestrator = Orchestrator.from_settings(Settings())
    outcome = await orchestrator.run(
        "quay.io/centos-bootc/centos-bootc:stream10",
        RunOptions(quiet=True),
        ["systemctl", "is-system-running"],
    )
    print(outcome.exit_code)
    ```

Background VM:
    ```python
    outcome = await orchestrator.run(image, RunOptions(background=True))
    print(f"ssh -p {outcome.ssh_port} root@127.0.0.1")
    ```

Requirements:
    - podman with a rootful podman machine
    - QEMU (KVM on Linux, HVF on macOS; TCG otherwise)
    - xorriso for --cloudinit
    - Python 3.12+
"""

from bootc_run.config import DiskImageConfig, RunOptions
from bootc_run.exceptions import (
    BootcRunError,
    CleanupWarning,
    ConnectivityError,
    HostConfigurationError,
    ImageInstallError,
    ReadinessTimeoutError,
    ResourceAllocationError,
    SSHExecError,
    VmInitError,
    VmLockedError,
    VmRuntimeError,
)
from bootc_run.models import DiskImage, HostConnection, RunOutcome, RunParameters
from bootc_run.orchestrator import Orchestrator
from bootc_run.settings import Settings

__all__ = [
    "BootcRunError",
    "CleanupWarning",
    "ConnectivityError",
    "DiskImage",
    "DiskImageConfig",
    "HostConfigurationError",
    "HostConnection",
    "ImageInstallError",
    "Orchestrator",
    "ReadinessTimeoutError",
    "ResourceAllocationError",
    "RunOptions",
    "RunOutcome",
    "RunParameters",
    "SSHExecError",
    "Settings",
    "VmInitError",
    "VmLockedError",
    "VmRuntimeError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("bootc-run")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
