"""QEMU command line builder for bootc disk images.

Builds the arguments for a daemonized QEMU process booting a full disk image
through firmware (no direct kernel boot), with user-mode networking forwarding
the allocated host port to the guest's sshd and the serial console written to
a log file.
"""

from __future__ import annotations

import base64
import os
from enum import Enum
from typing import TYPE_CHECKING

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.platform_utils import HostArch, HostOS, detect_host_arch, detect_host_os

if TYPE_CHECKING:
    from pathlib import Path

    from bootc_run.settings import Settings

logger = get_logger(__name__)


class AccelType(Enum):
    """Hardware acceleration available to QEMU."""

    KVM = "kvm"
    HVF = "hvf"
    TCG = "tcg"


def detect_accel_type(force_emulation: bool = False) -> AccelType:
    """Pick the best accelerator for this host.

    KVM needs read/write access to /dev/kvm. HVF is assumed on macOS.
    """
    if force_emulation:
        return AccelType.TCG
    host_os = detect_host_os()
    if host_os == HostOS.LINUX and os.access("/dev/kvm", os.R_OK | os.W_OK):
        return AccelType.KVM
    if host_os == HostOS.MACOS:
        return AccelType.HVF
    return AccelType.TCG


def ssh_credential_arg(public_key: str, user: str) -> str:
    """Build the SMBIOS type 11 value injecting an authorized key via systemd credentials.

    systemd (v252+) in the guest picks up ``ssh.authorized_keys.<user>`` and
    installs it as the user's authorized_keys during early boot.
    """
    encoded = base64.b64encode(public_key.strip().encode()).decode()
    return f"type=11,value=io.systemd.credential.binary:ssh.authorized_keys.{user}={encoded}"


def build_qemu_cmd(
    settings: Settings,
    *,
    name: str,
    disk_path: Path,
    ssh_port: int,
    pid_file: Path,
    console_log: Path,
    arch: HostArch | None = None,
    ssh_public_key: str | None = None,
    vm_user: str = constants.DEFAULT_VM_USER,
    cloud_init_iso: Path | None = None,
) -> list[str]:
    """Build the QEMU command for one bootc VM.

    Args:
        settings: Binaries, memory and CPU count
        name: VM name (shown in ps output as guest=<name>)
        disk_path: Raw disk image to boot
        ssh_port: Host port forwarded to the guest's port 22
        pid_file: Where QEMU writes its pid after daemonizing
        console_log: Serial console output file
        arch: Host architecture (detected when None)
        ssh_public_key: Public key to inject via systemd credentials; None
            skips credential injection
        vm_user: User the key is installed for
        cloud_init_iso: NoCloud seed ISO to attach as a CD-ROM

    Returns:
        QEMU command as list of strings
    """
    arch = arch or detect_host_arch()
    accel_type = detect_accel_type(force_emulation=settings.force_emulation)
    if accel_type == AccelType.TCG:
        logger.warning("Using TCG software emulation (slow) - KVM/HVF not available", extra={"vm": name})

    if arch == HostArch.AARCH64:
        qemu_bin = settings.qemu_bin_arm
        machine = "virt"
        # virt has no legacy BIOS; UEFI firmware is required to boot a disk
        firmware = ["-bios", str(settings.firmware_arm)]
    else:
        qemu_bin = settings.qemu_bin_x86
        machine = "q35"
        firmware = []

    cpu = "host" if accel_type in (AccelType.KVM, AccelType.HVF) else "max"

    args = [
        qemu_bin,
        "-name",
        f"guest={name}",
        "-accel",
        accel_type.value,
        "-cpu",
        cpu,
        "-M",
        machine,
        "-m",
        f"{settings.memory_mb}M",
        "-smp",
        str(settings.cpus),
        *firmware,
        "-drive",
        f"if=virtio,format=raw,file={disk_path}",
        "-netdev",
        f"user,id=net0,hostfwd=tcp:{constants.PORT_BIND_HOST}:{ssh_port}-:{constants.GUEST_SSH_PORT}",
        "-device",
        "virtio-net-pci,netdev=net0",
        "-display",
        "none",
        "-serial",
        f"file:{console_log}",
        "-pidfile",
        str(pid_file),
        "-daemonize",
    ]

    if cloud_init_iso is not None:
        args.extend(["-drive", f"if=virtio,media=cdrom,format=raw,readonly=on,file={cloud_init_iso}"])

    if ssh_public_key is not None:
        args.extend(["-smbios", ssh_credential_arg(ssh_public_key, vm_user)])

    return args
