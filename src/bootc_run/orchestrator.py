"""Run orchestration: from an image reference to a session in a booted VM.

The Orchestrator drives one run through a fixed sequence of steps. Each
step either succeeds or raises a BootcRunError tagged with the step name;
nothing is retried.

    ValidateHost → ConnectBackend → InstallDiskImage → AllocatePort
    → CreateAndLockVM → RunVM → PersistConfig
    → (foreground) console + WaitForSSH → RemoteCommand → DeleteVM

From CreateAndLockVM on, the VM handle lives inside vm_lease(), which closes
the backend connection and then releases the lock on every exit path.

Example:
    ```python
    orchestrator = Orchestrator.from_settings(Settings())
    outcome = await orchestrator.run("quay.io/centos-bootc/centos-bootc:stream10", RunOptions(), ["true"])
    sys.exit(outcome.exit_code)
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from functools import partial
from typing import TYPE_CHECKING, Protocol

from bootc_run._logging import get_logger
from bootc_run.backend import PodmanConnector
from bootc_run.console import ConsoleStreamer
from bootc_run.disk_image import PodmanDiskImageBuilder
from bootc_run.exceptions import (
    BootcRunError,
    ConnectivityError,
    HostConfigurationError,
    ImageInstallError,
    ResourceAllocationError,
    VmInitError,
    VmRuntimeError,
)
from bootc_run.host import PodmanMachineProvider
from bootc_run.models import RunOutcome, RunParameters
from bootc_run.port_forward import PortAllocator
from bootc_run.resource_cleanup import vm_lease
from bootc_run.vm import NewVmParameters, QemuVM

if TYPE_CHECKING:
    from pathlib import Path

    from bootc_run.config import DiskImageConfig, RunOptions
    from bootc_run.models import DiskImage, HostConnection
    from bootc_run.settings import Settings

logger = get_logger(__name__)


# =============================================================================
# Collaborator contracts
# =============================================================================


class HostProvider(Protocol):
    async def get_machine_info(self) -> HostConnection | None: ...


class Connection(Protocol):
    def close(self) -> None: ...


class BackendConnector(Protocol):
    async def connect(self, socket_uri: str, identity_path: Path, authenticated: bool) -> Connection: ...


class DiskImageBuilder(Protocol):
    async def install(self, image_ref: str, config: DiskImageConfig, quiet: bool) -> DiskImage: ...


class PortAllocatorProtocol(Protocol):
    def allocate(self) -> int: ...


class VmBackend(Protocol):
    """A VM handle: lock ownership plus the hypervisor operations."""

    image_id: str

    def lock(self) -> None: ...

    def unlock(self) -> None: ...

    def close_connection(self) -> None: ...

    async def run(self, params: RunParameters) -> None: ...

    async def write_config(self, disk: DiskImage) -> None: ...

    def stream_console(self) -> AsyncIterator[bytes]: ...

    async def wait_for_ssh_ready(self) -> None: ...

    async def run_remote(self, command: list[str]) -> int: ...

    async def delete(self) -> None: ...


VmFactory = Callable[[NewVmParameters], VmBackend]


# =============================================================================
# Step tagging
# =============================================================================


@contextlib.contextmanager
def _step(name: str, error_cls: type[BootcRunError]) -> Iterator[None]:
    """Tag errors raised inside the block with the step name.

    BootcRunErrors keep their type and gain the step prefix; anything else
    from a collaborator is wrapped in *error_cls*.
    """
    try:
        yield
    except BootcRunError as e:
        if "step" not in e.context:
            e.context["step"] = name
            e.message = f"{name}: {e.message}"
            e.args = (e.message,)
        raise
    except Exception as e:
        raise error_cls(
            f"{name}: {e}",
            context={"step": name, "error_type": type(e).__name__},
        ) from e


class Orchestrator:
    """Drives one run of a bootc image as a VM.

    All collaborators are injected; the orchestrator reads no global state.
    Use from_settings() for the podman + QEMU implementations.
    """

    def __init__(
        self,
        *,
        host_provider: HostProvider,
        connector: BackendConnector,
        disk_builder: DiskImageBuilder,
        port_allocator: PortAllocatorProtocol,
        vm_factory: VmFactory,
        console: ConsoleStreamer | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        self._host_provider = host_provider
        self._connector = connector
        self._disk_builder = disk_builder
        self._port_allocator = port_allocator
        self._vm_factory = vm_factory
        self._console = console or ConsoleStreamer()
        self._echo = echo or (lambda _line: None)

    @classmethod
    def from_settings(cls, settings: Settings, echo: Callable[[str], None] | None = None) -> Orchestrator:
        """Build an orchestrator wired to podman and QEMU.

        *echo* receives progress lines meant for the user (pull and install
        output, boot notice); they are dropped when it is None.
        """
        return cls(
            host_provider=PodmanMachineProvider(settings.podman_bin),
            connector=PodmanConnector(),
            disk_builder=PodmanDiskImageBuilder(settings, echo=echo),
            port_allocator=PortAllocator(settings.run_dir),
            vm_factory=partial(QemuVM, settings=settings),
            echo=echo,
        )

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _validate_host(self) -> HostConnection:
        host = await self._host_provider.get_machine_info()
        if host is None:
            raise HostConfigurationError(
                "rootful podman machine is required, please run 'podman machine init --rootful'",
                remedy="podman machine init --rootful",
            )
        if not host.rootful:
            raise HostConfigurationError(
                "rootful podman machine is required, please run 'podman machine set --rootful'",
                context={"socket": str(host.socket_path)},
                remedy="podman machine set --rootful",
            )
        try:
            host.socket_path.stat()
        except OSError as e:
            raise HostConfigurationError(
                f"podman machine socket is missing. Is podman machine running?\n{e}",
                context={"socket": str(host.socket_path)},
                remedy="podman machine start",
            ) from e
        return host

    def _create_and_lock(self, image_id: str, connection: Connection) -> VmBackend:
        vm = self._vm_factory(NewVmParameters(image_id=image_id, connection=connection))
        vm.lock()
        return vm

    async def _session(self, vm: VmBackend, options: RunOptions, command: list[str]) -> int:
        """Console, readiness, then the remote command. Returns its exit status."""
        streaming = not options.quiet
        try:
            if streaming:
                self._console.start(vm.stream_console())
            with _step("WaitForSSH", VmRuntimeError):
                await vm.wait_for_ssh_ready()
            if streaming:
                # Let buffered boot output land before the prompt
                await asyncio.sleep(self._console.settle_delay)
        finally:
            await self._console.stop()

        with _step("RemoteCommand", VmRuntimeError):
            return await vm.run_remote(command)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(self, image_ref: str, options: RunOptions, command: Sequence[str] = ()) -> RunOutcome:
        """Run *image_ref* as a VM.

        Args:
            image_ref: Container image reference of a bootc image
            options: Immutable run options
            command: Remote command; empty opens an interactive shell.
                Ignored for background runs.

        Returns:
            RunOutcome; exit_code is the remote command's status

        Raises:
            HostConfigurationError, ConnectivityError, ImageInstallError,
            ResourceAllocationError, VmInitError, VmRuntimeError,
            ReadinessTimeoutError, SSHExecError
        """
        cmd = list(command)

        with _step("ValidateHost", HostConfigurationError):
            host = await self._validate_host()

        with _step("ConnectBackend", ConnectivityError):
            connection = await self._connector.connect(host.socket_uri, host.ssh_identity_path, True)

        try:
            with _step("InstallDiskImage", ImageInstallError):
                disk = await self._disk_builder.install(image_ref, options.disk_image, options.quiet)

            with _step("AllocatePort", ResourceAllocationError):
                ssh_port = self._port_allocator.allocate()

            with _step("CreateAndLockVM", VmInitError):
                vm = self._create_and_lock(disk.image_id, connection)
        except BaseException:
            connection.close()
            raise

        params = RunParameters(
            ssh_port=ssh_port,
            ssh_identity=host.ssh_identity_path,
            command=cmd,
            cloud_init_dir=options.cloud_init_dir,
            cloud_init_data=options.cloud_init_data,
            no_credentials=options.no_credentials,
            remove_vm=options.remove_vm,
            background=options.background,
            vm_user=options.user,
        )

        async with vm_lease(vm, context_id=disk.image_id):
            with _step("RunVM", VmRuntimeError):
                self._echo("Booting the VM...")
                await vm.run(params)

            with _step("PersistConfig", VmRuntimeError):
                await vm.write_config(disk)

            if options.background:
                logger.info("VM running in background", extra={"image_id": disk.image_id, "ssh_port": ssh_port})
                return RunOutcome(exit_code=0, image_id=disk.image_id, ssh_port=ssh_port, background=True)

            exit_code = await self._session(vm, options, cmd)

            # A one-shot command always removes its VM; the disk is kept
            deleted = False
            if options.remove_vm or cmd:
                with _step("DeleteVM", VmRuntimeError):
                    await vm.delete()
                deleted = True

        return RunOutcome(exit_code=exit_code, image_id=disk.image_id, ssh_port=ssh_port, vm_deleted=deleted)
