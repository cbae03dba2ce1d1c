"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from bootc_run import constants
from bootc_run.platform_utils import get_cache_dir, get_runtime_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with BOOTC_RUN_ prefix.
    Example: BOOTC_RUN_MEMORY_MB=4096
    """

    model_config = SettingsConfigDict(
        env_prefix="BOOTC_RUN_",
        extra="ignore",
    )

    # Tools
    podman_bin: str = "podman"
    qemu_bin_x86: str = "qemu-system-x86_64"
    qemu_bin_arm: str = "qemu-system-aarch64"
    ssh_bin: str = "ssh"
    iso_bin: str = "xorriso"
    firmware_arm: Path = Path("/usr/share/AAVMF/AAVMF_CODE.fd")

    # Directories
    cache_dir: Path = Field(default_factory=get_cache_dir)
    run_dir: Path = Field(default_factory=get_runtime_dir)

    # Guest resources
    memory_mb: int = Field(default=constants.DEFAULT_MEMORY_MB, ge=512)
    cpus: int = Field(default=constants.DEFAULT_CPUS, ge=1)

    # Readiness
    ssh_ready_timeout_seconds: float = Field(default=constants.SSH_READY_TIMEOUT_SECONDS, gt=0)
    ssh_ready_poll_interval_seconds: float = Field(default=constants.SSH_READY_POLL_INTERVAL_SECONDS, gt=0)

    # Testing/Debug
    force_emulation: bool = False
    """Use TCG instead of KVM/HVF even when acceleration is available."""

    @property
    def images_dir(self) -> Path:
        """Per-image disk cache, one subdirectory per image id."""
        return self.cache_dir / "images"

    @property
    def vms_dir(self) -> Path:
        """Per-VM run state (config, pid file, console log)."""
        return self.cache_dir / "vms"

    @property
    def locks_dir(self) -> Path:
        """Per-image lock files."""
        return self.run_dir / "locks"
