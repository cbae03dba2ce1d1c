"""Tests for subprocess helpers, using real short-lived processes."""

import asyncio
from pathlib import Path

import pytest

from bootc_run.subprocess_utils import drain_subprocess_output, run_command, wait_for_file


class TestRunCommand:
    async def test_captures_output(self) -> None:
        result = await run_command(["sh", "-c", "echo out; echo err >&2; exit 3"])

        assert result.returncode == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"

    async def test_missing_program(self) -> None:
        with pytest.raises(FileNotFoundError):
            await run_command(["/nonexistent/podman"])

    async def test_timeout_kills(self) -> None:
        with pytest.raises(TimeoutError):
            await run_command(["sleep", "30"], timeout=0.2)


class TestDrainSubprocessOutput:
    async def test_lines_routed(self) -> None:
        proc = await asyncio.create_subprocess_exec(
            "sh",
            "-c",
            "echo one; echo two >&2; echo; echo three",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout: list[str] = []
        stderr: list[str] = []

        await drain_subprocess_output(
            proc,
            process_name="test",
            context_id="ctx",
            stdout_handler=stdout.append,
            stderr_handler=stderr.append,
        )
        await proc.wait()

        assert stdout == ["one", "three"]
        assert stderr == ["two"]


class TestWaitForFile:
    async def test_appears(self, tmp_path: Path) -> None:
        path = tmp_path / "qemu.pid"

        async def write_later() -> None:
            await asyncio.sleep(0.1)
            path.write_text("1234\n")

        writer = asyncio.create_task(write_later())
        await wait_for_file(path, timeout=2)
        await writer

        assert path.read_text() == "1234\n"

    async def test_empty_file_not_enough(self, tmp_path: Path) -> None:
        path = tmp_path / "qemu.pid"
        path.touch()

        with pytest.raises(TimeoutError):
            await wait_for_file(path, timeout=0.2)

    async def test_abort_check(self, tmp_path: Path) -> None:
        def abort() -> None:
            raise RuntimeError("launcher exited")

        with pytest.raises(RuntimeError, match="launcher exited"):
            await wait_for_file(tmp_path / "qemu.pid", timeout=2, abort_check=abort)
