"""VM handle backed by a daemonized QEMU process.

A QemuVM is addressed by the image id of its disk. It owns:
- the host-wide image lock (lock/unlock)
- the control-plane connection opened for the run (close_connection)
- the QEMU process and its run directory (run/delete/write_config)

The QEMU process is not tied to this Python process: with -daemonize it
survives the invocation, which is what background runs rely on. It is found
again through its pid file.

Run directory layout (``<cache>/vms/<image id>/``):
    qemu.pid      pid written by QEMU after daemonizing
    console.log   serial console
    vm.json       persisted VmRunConfig
    cidata.iso    cloud-init seed (only with --cloudinit)
"""

from __future__ import annotations

import asyncio
import shlex
import shutil
from dataclasses import dataclass
from typing import TYPE_CHECKING

import aiofiles

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.console import tail_file
from bootc_run.exceptions import SSHExecError, VmInitError, VmRuntimeError
from bootc_run.locking import ImageLock
from bootc_run.models import VmRunConfig
from bootc_run.platform_utils import ProcessWrapper
from bootc_run.qemu_cmd import build_qemu_cmd
from bootc_run.resource_cleanup import cleanup_file, cleanup_process
from bootc_run.ssh_ready import wait_for_ssh_ready
from bootc_run.subprocess_utils import run_command, wait_for_file

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

    from bootc_run.backend import BackendConnection
    from bootc_run.models import DiskImage, RunParameters
    from bootc_run.settings import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class NewVmParameters:
    """Inputs for creating a VM handle."""

    image_id: str
    connection: BackendConnection | None = None


def ssh_args(
    ssh_bin: str,
    *,
    identity: Path,
    port: int,
    user: str,
    command: list[str],
    tty: bool,
) -> list[str]:
    """Build the ssh client command line for the VM.

    Host keys are regenerated on every fresh disk, so host key checking is off
    and nothing is recorded in known_hosts.
    """
    args = [
        ssh_bin,
        "-i",
        str(identity),
        "-p",
        str(port),
        "-o",
        "IdentitiesOnly=yes",
        "-o",
        "StrictHostKeyChecking=no",
        "-o",
        "UserKnownHostsFile=/dev/null",
        "-o",
        "LogLevel=ERROR",
    ]
    if tty:
        args.append("-t")
    args.append(f"{user}@{constants.PORT_BIND_HOST}")
    if command:
        args.extend(["--", shlex.join(command)])
    return args


class QemuVM:
    """Lockable, addressable VM resource for one image id."""

    def __init__(self, params: NewVmParameters, settings: Settings) -> None:
        if not params.image_id:
            raise VmInitError("image id is required to create a VM")
        self.image_id = params.image_id
        self._settings = settings
        self._connection = params.connection
        self._lock = ImageLock(settings.locks_dir, params.image_id)
        self._run_params: RunParameters | None = None

        self.vm_dir = settings.vms_dir / params.image_id
        self.disk_path = settings.images_dir / params.image_id / constants.DISK_IMAGE_NAME
        self.pid_file = self.vm_dir / constants.VM_PID_FILE_NAME
        self.console_log = self.vm_dir / constants.VM_CONSOLE_LOG_NAME
        self.config_file = self.vm_dir / constants.VM_CONFIG_NAME
        self.cloud_init_iso = self.vm_dir / constants.CLOUD_INIT_ISO_NAME

    # -------------------------------------------------------------------------
    # Lock and connection
    # -------------------------------------------------------------------------

    @property
    def locked(self) -> bool:
        return self._lock.locked

    def lock(self) -> None:
        """Acquire the host-wide lock for this image.

        Raises:
            VmLockedError: Held by another invocation
        """
        self._lock.acquire()

    def unlock(self) -> None:
        """Release the lock.

        Raises:
            CleanupWarning: Not locked, or unlocking failed
        """
        self._lock.release()

    def close_connection(self) -> None:
        """Close the control-plane connection, if any."""
        if self._connection is not None:
            self._connection.close()

    # -------------------------------------------------------------------------
    # Process
    # -------------------------------------------------------------------------

    async def _process(self) -> ProcessWrapper | None:
        proc = await ProcessWrapper.from_pid_file(self.pid_file)
        if proc is None and self.pid_file.exists():
            logger.debug("Ignoring stale pid file", extra={"image_id": self.image_id, "pid_file": str(self.pid_file)})
        return proc

    async def is_running(self) -> bool:
        """Whether this image's QEMU process is alive."""
        return await self._process() is not None

    async def _build_cloud_init_iso(self, source_dir: Path) -> Path:
        if not source_dir.is_dir():
            raise VmRuntimeError(
                f"cloud-init directory not found: {source_dir}",
                context={"cloud_init_dir": str(source_dir)},
            )
        cmd = [
            self._settings.iso_bin,
            "-as",
            "mkisofs",
            "-output",
            str(self.cloud_init_iso),
            "-volid",
            "cidata",
            "-joliet",
            "-rock",
            str(source_dir),
        ]
        try:
            result = await run_command(cmd)
        except FileNotFoundError as e:
            raise VmRuntimeError(
                f"{self._settings.iso_bin} not found, required for --cloudinit",
                context={"iso_bin": self._settings.iso_bin},
            ) from e
        if result.returncode != 0:
            raise VmRuntimeError(
                f"unable to create cloud-init ISO: {result.stderr.strip()}",
                context={"cloud_init_dir": str(source_dir), "returncode": result.returncode},
            )
        return self.cloud_init_iso

    def _read_public_key(self, identity: Path) -> str:
        pub = identity.with_name(identity.name + ".pub")
        try:
            return pub.read_text()
        except OSError as e:
            raise VmRuntimeError(
                f"unable to read SSH public key {pub}: {e}",
                context={"public_key": str(pub)},
            ) from e

    async def run(self, params: RunParameters) -> None:
        """Boot the VM.

        An earlier QEMU process for this image (left by a background run) is
        stopped first; the lock guarantees no other invocation is using it.

        Raises:
            VmRuntimeError: Disk missing, QEMU failed to start, or cloud-init
                seed could not be built
        """
        if not self.disk_path.exists():
            raise VmRuntimeError(f"disk image not found: {self.disk_path}", context={"image_id": self.image_id})

        if await self.is_running():
            logger.info("Replacing running VM", extra={"image_id": self.image_id})
            await self._stop()

        self.vm_dir.mkdir(parents=True, exist_ok=True)
        for stale in (self.pid_file, self.console_log, self.cloud_init_iso):
            await cleanup_file(stale, self.image_id, stale.name)

        iso = await self._build_cloud_init_iso(params.cloud_init_dir) if params.cloud_init_data and params.cloud_init_dir else None
        public_key = None if params.no_credentials else self._read_public_key(params.ssh_identity)

        cmd = build_qemu_cmd(
            self._settings,
            name=f"bootc-{self.image_id[:12]}",
            disk_path=self.disk_path,
            ssh_port=params.ssh_port,
            pid_file=self.pid_file,
            console_log=self.console_log,
            ssh_public_key=public_key,
            vm_user=params.vm_user,
            cloud_init_iso=iso,
        )
        logger.debug("Starting QEMU", extra={"image_id": self.image_id, "cmd": cmd})

        try:
            result = await run_command(cmd, timeout=constants.VM_START_TIMEOUT_SECONDS)
        except FileNotFoundError as e:
            raise VmRuntimeError(f"QEMU not found: {cmd[0]}", context={"qemu_bin": cmd[0]}) from e
        except TimeoutError as e:
            raise VmRuntimeError("QEMU did not daemonize in time", context={"image_id": self.image_id}) from e
        if result.returncode != 0:
            raise VmRuntimeError(
                f"QEMU exited with code {result.returncode}: {result.stderr.strip()}",
                context={"image_id": self.image_id, "returncode": result.returncode},
            )

        try:
            await wait_for_file(self.pid_file, timeout=constants.VM_START_TIMEOUT_SECONDS)
        except TimeoutError as e:
            raise VmRuntimeError("QEMU did not write its pid file", context={"pid_file": str(self.pid_file)}) from e

        self._run_params = params
        logger.info("VM started", extra={"image_id": self.image_id, "ssh_port": params.ssh_port})

    def _require_started(self) -> RunParameters:
        if self._run_params is None:
            raise VmRuntimeError("VM has not been started by this handle", context={"image_id": self.image_id})
        return self._run_params

    # -------------------------------------------------------------------------
    # Session
    # -------------------------------------------------------------------------

    def stream_console(self) -> AsyncIterator[bytes]:
        """Byte stream of the serial console, from boot onwards."""
        return tail_file(self.console_log)

    async def wait_for_ssh_ready(self) -> None:
        """Block until the guest sshd answers on the forwarded port.

        Raises:
            ReadinessTimeoutError: Not ready within the configured timeout
        """
        params = self._require_started()
        await wait_for_ssh_ready(
            params.ssh_port,
            self._settings.ssh_ready_timeout_seconds,
            poll_interval=self._settings.ssh_ready_poll_interval_seconds,
        )

    async def run_remote(self, command: list[str], *, tty: bool = True) -> int:
        """Run *command* over SSH (a login shell when empty), attached to this terminal.

        Returns:
            Exit status of the ssh client, which is the remote command's status
            (255 for ssh-level failures)

        Raises:
            SSHExecError: The ssh client could not be started
        """
        params = self._require_started()
        args = ssh_args(
            self._settings.ssh_bin,
            identity=params.ssh_identity,
            port=params.ssh_port,
            user=params.vm_user,
            command=command,
            tty=tty,
        )
        try:
            proc = await asyncio.create_subprocess_exec(*args)
        except OSError as e:
            raise SSHExecError(f"unable to run {args[0]}: {e}", context={"ssh_bin": args[0]}) from e
        returncode = await proc.wait()
        logger.debug("SSH session ended", extra={"image_id": self.image_id, "returncode": returncode})
        return returncode

    # -------------------------------------------------------------------------
    # Persistence and removal
    # -------------------------------------------------------------------------

    async def write_config(self, disk: DiskImage) -> None:
        """Persist the run configuration for later inspection or resume.

        Raises:
            VmRuntimeError: Config could not be written
        """
        params = self._require_started()
        config = VmRunConfig(
            image_ref=disk.image_ref,
            image_id=disk.image_id,
            disk_path=disk.path,
            ssh_port=params.ssh_port,
            ssh_identity=params.ssh_identity,
            vm_user=params.vm_user,
            pid_file=self.pid_file,
            console_log=self.console_log,
        )
        try:
            async with aiofiles.open(self.config_file, "w") as f:
                await f.write(config.model_dump_json(indent=2))
        except OSError as e:
            raise VmRuntimeError(
                f"unable to write VM config {self.config_file}: {e}",
                context={"config_file": str(self.config_file)},
            ) from e

    async def _stop(self) -> None:
        if not await cleanup_process(await self._process(), "qemu", self.image_id):
            raise VmRuntimeError("unable to stop the VM", context={"image_id": self.image_id})

    async def delete(self) -> None:
        """Stop the VM and remove its run directory. The disk image is kept.

        Raises:
            VmRuntimeError: QEMU could not be stopped or files not removed
        """
        await self._stop()
        try:
            await asyncio.to_thread(shutil.rmtree, self.vm_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise VmRuntimeError(
                f"unable to remove {self.vm_dir}: {e}",
                context={"vm_dir": str(self.vm_dir)},
            ) from e
        logger.info("VM deleted", extra={"image_id": self.image_id})
