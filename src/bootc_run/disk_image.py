"""Disk image installation.

Turns a bootc container image reference into a raw disk image by running
``bootc install to-disk`` from the image itself inside the podman machine.
Disks are cached per image id; a cached disk is reused when the image and the
requested overrides are unchanged. A disk is only rewritten while this process
holds the image lock and no QEMU process of that image is alive.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import TYPE_CHECKING

from bootc_run import constants
from bootc_run._logging import get_logger
from bootc_run.config import DiskImageConfig, parse_size
from bootc_run.exceptions import ImageInstallError, VmLockedError
from bootc_run.locking import ImageLock, async_file_lock
from bootc_run.models import DiskImage
from bootc_run.platform_utils import ProcessWrapper
from bootc_run.subprocess_utils import drain_subprocess_output, run_command

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

    from bootc_run.settings import Settings

logger = get_logger(__name__)

_STDERR_TAIL_LINES = 20


def build_install_cmd(podman_bin: str, image_ref: str, output_dir: Path, config: DiskImageConfig) -> list[str]:
    """Build the ``podman run ... bootc install to-disk`` command."""
    cmd = [
        podman_bin,
        "run",
        "--rm",
        "--privileged",
        "--pid=host",
        "--security-opt",
        "label=type:unconfined_t",
        "-v",
        "/var/lib/containers:/var/lib/containers",
        "-v",
        "/dev:/dev",
        "-v",
        f"{output_dir}:/output",
        image_ref,
        "bootc",
        "install",
        "to-disk",
        "--via-loopback",
        "--generic-image",
        "--skip-fetch-check",
        "--wipe",
    ]
    if config.filesystem:
        cmd.extend(["--filesystem", config.filesystem])
    if config.root_size_max:
        cmd.extend(["--root-size", config.root_size_max])
    cmd.append(f"/output/{constants.DISK_IMAGE_NAME}")
    return cmd


class PodmanDiskImageBuilder:
    """Disk image builder backed by podman and bootc."""

    def __init__(self, settings: Settings, echo: Callable[[str], None] | None = None) -> None:
        self._settings = settings
        self._echo = echo or (lambda _line: None)

    async def _resolve_image_id(self, image_ref: str, quiet: bool) -> str:
        podman = self._settings.podman_bin
        result = await run_command([podman, "image", "inspect", "--format", "{{.Id}}", image_ref])
        if result.returncode != 0:
            logger.info("Pulling image", extra={"image_ref": image_ref})
            if not quiet:
                self._echo(f"Pulling {image_ref}...")
            pull = await run_command([podman, "pull", image_ref])
            if pull.returncode != 0:
                raise ImageInstallError(
                    f"unable to pull {image_ref}",
                    context={"image_ref": image_ref},
                    stderr=pull.stderr,
                )
            result = await run_command([podman, "image", "inspect", "--format", "{{.Id}}", image_ref])
            if result.returncode != 0:
                raise ImageInstallError(
                    f"unable to inspect {image_ref}",
                    context={"image_ref": image_ref},
                    stderr=result.stderr,
                )
        image_id = result.stdout.strip()
        if not image_id:
            raise ImageInstallError(f"empty image id for {image_ref}", context={"image_ref": image_ref})
        return image_id

    @staticmethod
    def _stamp(image_id: str, config: DiskImageConfig) -> dict[str, object]:
        return {"image_id": image_id, **config.model_dump()}

    def _cached(self, disk_dir: Path, stamp: dict[str, object]) -> bool:
        disk = disk_dir / constants.DISK_IMAGE_NAME
        stamp_file = disk_dir / constants.DISK_IMAGE_STAMP_NAME
        if not disk.exists() or not stamp_file.exists():
            return False
        try:
            return json.loads(stamp_file.read_text()) == stamp
        except (json.JSONDecodeError, OSError):
            return False

    @contextlib.asynccontextmanager
    async def _claim_disk(self, image_id: str) -> AsyncIterator[None]:
        """Hold the image lock while the disk of *image_id* is rewritten.

        Raises:
            ImageInstallError: Another invocation holds the lock, or a VM
                left running in the background still uses the disk
        """
        lock = ImageLock(self._settings.locks_dir, image_id)
        try:
            lock.acquire()
        except VmLockedError as e:
            raise ImageInstallError(
                f"disk image {image_id} is in use by another bootc-run process",
                context={"image_id": image_id, **e.context},
            ) from e
        try:
            pid_file = self._settings.vms_dir / image_id / constants.VM_PID_FILE_NAME
            qemu = await ProcessWrapper.from_pid_file(pid_file)
            if qemu is not None:
                raise ImageInstallError(
                    f"disk image {image_id} is in use by a running VM (pid {qemu.pid}); "
                    "stop it before changing disk options",
                    context={"image_id": image_id, "pid": qemu.pid},
                )
            yield
        finally:
            lock.release()

    async def _run_install(self, image_ref: str, disk_dir: Path, config: DiskImageConfig, quiet: bool) -> None:
        disk = disk_dir / constants.DISK_IMAGE_NAME
        size = parse_size(config.disk_size or constants.DEFAULT_DISK_SIZE)
        # bootc --via-loopback writes into an existing file of the final size
        with disk.open("wb") as f:
            f.truncate(size)

        cmd = build_install_cmd(self._settings.podman_bin, image_ref, disk_dir, config)
        stderr_tail: list[str] = []

        def on_stdout(line: str) -> None:
            if not quiet:
                self._echo(line)

        def on_stderr(line: str) -> None:
            stderr_tail.append(line)
            del stderr_tail[:-_STDERR_TAIL_LINES]
            if not quiet:
                self._echo(line)

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ImageInstallError(f"podman not found: {cmd[0]}", context={"podman_bin": cmd[0]}) from e

        await drain_subprocess_output(
            proc,
            process_name="bootc install",
            context_id=image_ref,
            stdout_handler=on_stdout,
            stderr_handler=on_stderr,
        )
        returncode = await proc.wait()
        if returncode != 0:
            disk.unlink(missing_ok=True)
            raise ImageInstallError(
                f"bootc install to-disk failed with exit code {returncode}",
                context={"image_ref": image_ref, "returncode": returncode},
                stderr="\n".join(stderr_tail),
            )

    async def install(self, image_ref: str, config: DiskImageConfig, quiet: bool) -> DiskImage:
        """Install *image_ref* as a disk image, reusing the cache when possible.

        Concurrent installs of the same image on this host are serialized with
        a per-image flock. Rebuilding also takes the image lock, so the disk of
        a VM in use by another invocation is never touched.

        Raises:
            ImageInstallError: pull, inspect or bootc install failed, or the
                disk to rebuild is in use
        """
        image_id = await self._resolve_image_id(image_ref, quiet)
        disk_dir = self._settings.images_dir / image_id
        disk_dir.mkdir(parents=True, exist_ok=True)
        stamp = self._stamp(image_id, config)

        lock_path = self._settings.images_dir / f"{image_id}{constants.IMAGE_LOCK_SUFFIX}"
        async with async_file_lock(lock_path):
            if self._cached(disk_dir, stamp):
                logger.info("Reusing cached disk image", extra={"image_id": image_id})
                return DiskImage(
                    image_ref=image_ref,
                    image_id=image_id,
                    path=disk_dir / constants.DISK_IMAGE_NAME,
                    created=False,
                )

            async with self._claim_disk(image_id):
                logger.info("Installing disk image", extra={"image_ref": image_ref, "image_id": image_id})
                (disk_dir / constants.DISK_IMAGE_STAMP_NAME).unlink(missing_ok=True)
                await self._run_install(image_ref, disk_dir, config, quiet)
                (disk_dir / constants.DISK_IMAGE_STAMP_NAME).write_text(json.dumps(stamp))

        return DiskImage(
            image_ref=image_ref,
            image_id=image_id,
            path=disk_dir / constants.DISK_IMAGE_NAME,
            created=True,
        )
