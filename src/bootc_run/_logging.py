"""Logging setup for bootc-run.

Modules log through ``get_logger(__name__)``, so every logger hangs off the
``bootc_run`` package logger. Imported as a library, the package only adds a
NullHandler. The command line calls configure_logging() to get records on
stderr:

    INFO [2026-02-25 10:02:54] bootc_run.vm - VM started

Records go through a bounded queue and a listener thread. Boot console bytes
are copied to stdout by a task on the event loop, and that task must not wait
on a slow stderr. When the queue fills up, new records are dropped.

BOOTC_RUN_LOG_LEVEL (for example "debug") sets the package level on import;
--log-level and --quiet override it.
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "bootc_run"

_LINE_FORMAT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
_MAX_PENDING_RECORDS = 1024

_package_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_package_logger.addHandler(logging.NullHandler())


def _level_from_env() -> int | None:
    name = os.environ.get("BOOTC_RUN_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelNamesMapping().get(name)
    # NOTSET would hand the decision back to the root logger
    return level or None


if (_initial_level := _level_from_env()) is not None:
    _package_logger.setLevel(_initial_level)


class _StderrEchoHandler(logging.Handler):
    """Formats a record and prints it dimmed on stderr with click."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(logging.Formatter(fmt=_LINE_FORMAT, datefmt=_TIME_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _CliHandler(logging.handlers.QueueHandler):
    """Handler installed by configure_logging().

    emit() only puts the record on the queue; the listener thread started
    here does the formatting and writing.
    """

    def __init__(self) -> None:
        pending: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_MAX_PENDING_RECORDS)
        super().__init__(pending)
        self._listener = logging.handlers.QueueListener(pending, _StderrEchoHandler())
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener formats the record itself, in this process
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger for a bootc_run module; pass ``__name__``."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Send package log records to stderr.

    Calling it again does not add a second handler.

    Args:
        level: Level name or number; replaces the BOOTC_RUN_LOG_LEVEL value.
        quiet: Only show errors. Wins over level.
    """
    if not any(isinstance(h, _CliHandler) for h in _package_logger.handlers):
        _package_logger.addHandler(_CliHandler())

    if quiet:
        _package_logger.setLevel(logging.ERROR)
    elif level is not None:
        _package_logger.setLevel(level)


def shutdown_logging() -> None:
    """Detach the stderr handler, writing out whatever is still queued."""
    for handler in list(_package_logger.handlers):
        if isinstance(handler, _CliHandler):
            _package_logger.removeHandler(handler)
            handler.close()
