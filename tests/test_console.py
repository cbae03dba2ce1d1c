"""Tests for console streaming and serial log tailing."""

import asyncio
import io
import logging
from collections.abc import AsyncIterator
from pathlib import Path

import aiofiles
import pytest

from bootc_run.console import ConsoleStreamer, tail_file


async def _chunks(*chunks: bytes) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


async def _endless() -> AsyncIterator[bytes]:
    yield b"first\n"
    while True:
        await asyncio.sleep(0.01)


async def _broken() -> AsyncIterator[bytes]:
    yield b"partial"
    raise OSError("console went away")


# ============================================================================
# ConsoleStreamer
# ============================================================================


class TestConsoleStreamer:
    async def test_relays_until_end(self) -> None:
        output = io.BytesIO()
        streamer = ConsoleStreamer(output=output)

        task = streamer.start(_chunks(b"UEFI ", b"boot\n"))
        await task

        assert output.getvalue() == b"UEFI boot\n"
        assert not streamer.running

    async def test_stop_cancels_endless_source(self) -> None:
        output = io.BytesIO()
        streamer = ConsoleStreamer(output=output)

        streamer.start(_endless())
        await asyncio.sleep(0.05)
        assert streamer.running

        await streamer.stop()

        assert not streamer.running
        assert output.getvalue() == b"first\n"

    async def test_stop_without_start(self) -> None:
        await ConsoleStreamer(output=io.BytesIO()).stop()

    async def test_stop_is_idempotent(self) -> None:
        streamer = ConsoleStreamer(output=io.BytesIO())
        streamer.start(_endless())

        await streamer.stop()
        await streamer.stop()

        assert not streamer.running

    async def test_source_error_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        """A failing console never fails the run."""
        caplog.set_level(logging.ERROR, logger="bootc_run")
        output = io.BytesIO()
        streamer = ConsoleStreamer(output=output)

        await streamer.start(_broken())

        assert output.getvalue() == b"partial"
        assert "error printing VM console: console went away" in caplog.text

    async def test_start_twice_rejected(self) -> None:
        streamer = ConsoleStreamer(output=io.BytesIO())
        streamer.start(_endless())

        with pytest.raises(RuntimeError, match="already running"):
            streamer.start(_endless())

        await streamer.stop()

    async def test_restart_after_stop(self) -> None:
        output = io.BytesIO()
        streamer = ConsoleStreamer(output=output)
        streamer.start(_endless())
        await streamer.stop()

        await streamer.start(_chunks(b"again"))

        assert output.getvalue().endswith(b"again")

    def test_default_settle_delay(self) -> None:
        assert ConsoleStreamer().settle_delay == 1.0


# ============================================================================
# tail_file
# ============================================================================


class TestTailFile:
    async def test_follows_appends(self, tmp_path: Path) -> None:
        log = tmp_path / "console.log"
        log.write_bytes(b"line 1\n")
        received = bytearray()

        async def consume() -> None:
            async for chunk in tail_file(log, poll_interval=0.01):
                received.extend(chunk)
                if b"line 2" in received:
                    return

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        async with aiofiles.open(log, "ab") as f:
            await f.write(b"line 2\n")
        await asyncio.wait_for(consumer, timeout=2)

        assert bytes(received) == b"line 1\nline 2\n"

    async def test_waits_for_file(self, tmp_path: Path) -> None:
        """QEMU creates the log after the tail starts."""
        log = tmp_path / "console.log"

        async def first_chunk() -> bytes:
            async for chunk in tail_file(log, poll_interval=0.01):
                return chunk
            return b""

        reader = asyncio.create_task(first_chunk())
        await asyncio.sleep(0.05)
        assert not reader.done()
        log.write_bytes(b"SeaBIOS\n")

        assert await asyncio.wait_for(reader, timeout=2) == b"SeaBIOS\n"

    async def test_cancellable(self, tmp_path: Path) -> None:
        log = tmp_path / "console.log"
        log.write_bytes(b"")
        streamer = ConsoleStreamer(output=io.BytesIO())

        streamer.start(tail_file(log, poll_interval=0.01))
        await asyncio.sleep(0.05)
        await streamer.stop()

        assert not streamer.running
