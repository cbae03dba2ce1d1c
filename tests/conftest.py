"""Shared pytest fixtures for bootc-run tests.

The orchestrator only talks to its collaborators through small protocols, so
unit tests drive it with the in-memory fakes below. Every fake appends to a
shared event list; tests assert on the order of those events.
"""

import io
import os
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from bootc_run.config import RunOptions
from bootc_run.console import ConsoleStreamer
from bootc_run.exceptions import CleanupWarning
from bootc_run.models import DiskImage, HostConnection, RunParameters
from bootc_run.orchestrator import Orchestrator
from bootc_run.settings import Settings
from bootc_run.vm import NewVmParameters

IMAGE_REF = "quay.io/centos-bootc/centos-bootc:stream10"
IMAGE_ID = "4f1c3b9a2d7e"
SSH_PORT = 40022

# ============================================================================
# Fakes
# ============================================================================


class FakeHostProvider:
    def __init__(self, events: list[str], host: HostConnection | None, error: Exception | None = None) -> None:
        self.events = events
        self.host = host
        self.error = error

    async def get_machine_info(self) -> HostConnection | None:
        self.events.append("get_machine_info")
        if self.error is not None:
            raise self.error
        return self.host


class FakeConnection:
    def __init__(self, events: list[str]) -> None:
        self.events = events
        self.close_count = 0

    def close(self) -> None:
        self.close_count += 1
        self.events.append("connection.close")


class FakeConnector:
    def __init__(self, events: list[str], error: Exception | None = None) -> None:
        self.events = events
        self.error = error
        self.connection = FakeConnection(events)
        self.calls: list[tuple[str, Path, bool]] = []

    async def connect(self, socket_uri: str, identity_path: Path, authenticated: bool) -> FakeConnection:
        self.events.append("connect")
        self.calls.append((socket_uri, identity_path, authenticated))
        if self.error is not None:
            raise self.error
        return self.connection


class FakeDiskBuilder:
    def __init__(self, events: list[str], tmp_path: Path, error: Exception | None = None) -> None:
        self.events = events
        self.tmp_path = tmp_path
        self.error = error
        self.calls: list[tuple[str, Any, bool]] = []

    async def install(self, image_ref: str, config: Any, quiet: bool) -> DiskImage:
        self.events.append("install")
        self.calls.append((image_ref, config, quiet))
        if self.error is not None:
            raise self.error
        return DiskImage(image_ref=image_ref, image_id=IMAGE_ID, path=self.tmp_path / "disk.raw")


class FakePortAllocator:
    def __init__(self, events: list[str], error: Exception | None = None) -> None:
        self.events = events
        self.error = error

    def allocate(self) -> int:
        self.events.append("allocate")
        if self.error is not None:
            raise self.error
        return SSH_PORT


class FakeVM:
    """Records every call. Failures are injected per method name."""

    def __init__(
        self,
        params: NewVmParameters,
        events: list[str],
        fail: dict[str, Exception],
        console_chunks: list[bytes],
        remote_status: int,
    ) -> None:
        self.image_id = params.image_id
        self.connection = params.connection
        self.events = events
        self.fail = fail
        self.console_chunks = console_chunks
        self.remote_status = remote_status
        self.unlock_count = 0
        self.run_params: RunParameters | None = None
        self.remote_commands: list[list[str]] = []

    def _record(self, name: str) -> None:
        self.events.append(f"vm.{name}")
        if name in self.fail:
            raise self.fail[name]

    def lock(self) -> None:
        self._record("lock")

    def unlock(self) -> None:
        self.unlock_count += 1
        self._record("unlock")

    def close_connection(self) -> None:
        self.events.append("vm.close_connection")
        if self.connection is not None:
            self.connection.close()

    async def run(self, params: RunParameters) -> None:
        self.run_params = params
        self._record("run")

    async def write_config(self, disk: DiskImage) -> None:
        self._record("write_config")

    def stream_console(self) -> AsyncIterator[bytes]:
        self.events.append("vm.stream_console")
        return self._console()

    async def _console(self) -> AsyncIterator[bytes]:
        for chunk in self.console_chunks:
            yield chunk

    async def wait_for_ssh_ready(self) -> None:
        self._record("wait_for_ssh_ready")

    async def run_remote(self, command: list[str]) -> int:
        self.remote_commands.append(command)
        self._record("run_remote")
        return self.remote_status

    async def delete(self) -> None:
        self._record("delete")


class Harness:
    """An Orchestrator wired to fakes, with knobs for each collaborator."""

    def __init__(self, tmp_path: Path) -> None:
        self.tmp_path = tmp_path
        self.events: list[str] = []
        self.echoed: list[str] = []
        self.console_output = io.BytesIO()

        socket_path = tmp_path / "podman.sock"
        socket_path.touch()
        self.host: HostConnection | None = HostConnection(
            socket_path=socket_path,
            ssh_identity_path=tmp_path / "machine",
            rootful=True,
        )
        self.host_error: Exception | None = None
        self.connect_error: Exception | None = None
        self.install_error: Exception | None = None
        self.allocate_error: Exception | None = None
        self.factory_error: Exception | None = None
        self.vm_fail: dict[str, Exception] = {}
        self.console_chunks: list[bytes] = [b"booting\n"]
        self.remote_status = 0
        self.settle_delay = 0.0

        self.vm: FakeVM | None = None
        self.connector: FakeConnector | None = None
        self.disk_builder: FakeDiskBuilder | None = None
        self.console: ConsoleStreamer | None = None

    def _factory(self, params: NewVmParameters) -> FakeVM:
        self.events.append("vm_factory")
        if self.factory_error is not None:
            raise self.factory_error
        self.vm = FakeVM(params, self.events, self.vm_fail, self.console_chunks, self.remote_status)
        return self.vm

    def build(self) -> Orchestrator:
        self.connector = FakeConnector(self.events, self.connect_error)
        self.disk_builder = FakeDiskBuilder(self.events, self.tmp_path, self.install_error)
        self.console = ConsoleStreamer(output=self.console_output, settle_delay=self.settle_delay)
        return Orchestrator(
            host_provider=FakeHostProvider(self.events, self.host, self.host_error),
            connector=self.connector,
            disk_builder=self.disk_builder,
            port_allocator=FakePortAllocator(self.events, self.allocate_error),
            vm_factory=self._factory,
            console=self.console,
            echo=self.echoed.append,
        )

    async def run(self, options: RunOptions | None = None, command: list[str] | None = None):
        return await self.build().run(IMAGE_REF, options or RunOptions(), command or [])


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    """Orchestrator harness backed by fakes."""
    return Harness(tmp_path)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing every directory into tmp_path."""
    return Settings(cache_dir=tmp_path / "cache", run_dir=tmp_path / "run")


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's BOOTC_RUN_* variables out of tests."""
    for key in list(os.environ):
        if key.startswith("BOOTC_RUN_"):
            monkeypatch.delenv(key)


def unlock_warning() -> CleanupWarning:
    return CleanupWarning("unlock failed", context={"image_id": IMAGE_ID})
