"""Constants for bootc-run configuration and limits."""

from typing import Final

# ============================================================================
# VM Defaults
# ============================================================================

DEFAULT_VM_USER: Final[str] = "root"
"""User the SSH session logs in as when --user is not given."""

DEFAULT_MEMORY_MB: Final[int] = 2048
"""Guest memory in MB. bootc images boot a full systemd userspace."""

DEFAULT_CPUS: Final[int] = 2
"""Number of vCPUs for the guest."""

GUEST_SSH_PORT: Final[int] = 22
"""sshd port inside the guest, forwarded from the allocated host port."""

# ============================================================================
# Timeouts
# ============================================================================

SSH_READY_TIMEOUT_SECONDS: Final[float] = 300.0
"""How long to wait for the guest sshd banner after QEMU starts."""

SSH_READY_POLL_INTERVAL_SECONDS: Final[float] = 1.0
"""Delay between SSH readiness probes."""

SSH_BANNER_READ_TIMEOUT_SECONDS: Final[float] = 2.0
"""Per-probe timeout for reading the server identification line."""

SETTLE_DELAY_SECONDS: Final[float] = 1.0
"""Pause between SSH readiness and the interactive session.

The console task may still be flushing boot output; the pause keeps most of
it from landing after the login prompt.
"""

BACKEND_CONNECT_TIMEOUT_SECONDS: Final[float] = 10.0
"""Timeout for the control-plane ping."""

VM_STOP_TERM_TIMEOUT_SECONDS: Final[float] = 10.0
"""Grace period after SIGTERM before QEMU is killed on delete."""

VM_START_TIMEOUT_SECONDS: Final[float] = 30.0
"""How long QEMU may take to daemonize and write its pid file."""

# ============================================================================
# Console
# ============================================================================

CONSOLE_READ_CHUNK_BYTES: Final[int] = 4096
"""Read size when tailing the serial console log."""

CONSOLE_POLL_INTERVAL_SECONDS: Final[float] = 0.1
"""Delay between reads once the console log reaches EOF."""

# ============================================================================
# Ports
# ============================================================================

PORT_BIND_HOST: Final[str] = "127.0.0.1"
"""Loopback address SSH is forwarded to."""

PORT_ALLOCATION_ATTEMPTS: Final[int] = 32
"""Bind-to-0 attempts before giving up on finding an unreserved port."""

# ============================================================================
# Files
# ============================================================================

DISK_IMAGE_NAME: Final[str] = "disk.raw"
"""File name of the installed disk image inside its cache directory."""

DISK_IMAGE_STAMP_NAME: Final[str] = "image.json"
"""Records which image id and overrides produced the cached disk."""

DEFAULT_DISK_SIZE: Final[str] = "10G"
"""Disk image size when --disk-size is not given."""

VM_CONFIG_NAME: Final[str] = "vm.json"
"""File name of the persisted run configuration."""

VM_PID_FILE_NAME: Final[str] = "qemu.pid"
"""File name of the QEMU pid file."""

VM_CONSOLE_LOG_NAME: Final[str] = "console.log"
"""File name of the serial console log."""

CLOUD_INIT_ISO_NAME: Final[str] = "cidata.iso"
"""File name of the NoCloud seed ISO built from --cloudinit."""

IMAGE_LOCK_SUFFIX: Final[str] = ".lock"
"""Suffix of the per-image lock files."""

PORT_REGISTRY_NAME: Final[str] = "ports.json"
"""Host-wide registry of reserved SSH ports."""

# ============================================================================
# Messages
# ============================================================================

HOST_SETUP_HINT: Final[str] = (
    "bootc-run needs a rootful podman machine that is running.\n"
    "  To set one up:\n"
    "    podman machine init --rootful --now\n"
    "  Or convert an existing machine:\n"
    "    podman machine stop && podman machine set --rootful && podman machine start"
)
"""Printed before host configuration and connectivity errors."""
