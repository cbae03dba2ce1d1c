"""Command-line interface for bootc-run.

Usage:
    bootc-run quay.io/centos-bootc/centos-bootc:stream10          # interactive shell
    bootc-run -B quay.io/centos-bootc/centos-bootc:stream10       # leave it running
    bootc-run quay.io/centos-bootc/centos-bootc:stream10 -- uname -a
"""

from __future__ import annotations

import asyncio
import sys
from functools import partial
from pathlib import Path
from typing import NoReturn

import click
from pydantic import ValidationError

from bootc_run import (
    BootcRunError,
    ConnectivityError,
    DiskImageConfig,
    HostConfigurationError,
    Orchestrator,
    ReadinessTimeoutError,
    RunOptions,
    Settings,
    __version__,
)
from bootc_run import constants
from bootc_run._logging import configure_logging, shutdown_logging

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_TOOL_ERROR = 125


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern.

    Args:
        title: Short error title
        message: Detailed explanation
        suggestions: Optional list of suggestions to fix the issue

    Returns:
        Formatted error string
    """
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(err["msg"].removeprefix("Value error, ") for err in exc.errors())


def build_options(
    *,
    user: str,
    cloudinit: Path | None,
    filesystem: str | None,
    root_size_max: str | None,
    disk_size: str | None,
    no_creds: bool,
    background: bool,
    rm: bool,
    quiet: bool,
    command: tuple[str, ...],
) -> RunOptions:
    """Turn CLI flags into RunOptions.

    Raises:
        click.UsageError: Invalid or contradictory flags
    """
    try:
        options = RunOptions(
            user=user,
            cloud_init_dir=cloudinit,
            disk_image=DiskImageConfig(filesystem=filesystem, root_size_max=root_size_max, disk_size=disk_size),
            background=background,
            no_credentials=no_creds,
            remove_vm=rm,
            quiet=quiet,
        )
    except ValidationError as exc:
        raise click.UsageError(_validation_message(exc)) from exc

    if options.background and command:
        flag = "--no-creds (which implies --background)" if no_creds else "--background"
        raise click.UsageError(f"a command needs an SSH session and cannot be used with {flag}")
    return options


async def run_vm(settings: Settings, image: str, options: RunOptions, command: list[str]) -> int:
    """Run the orchestrator and map its outcome to an exit code.

    Returns:
        Exit code to return from CLI
    """
    orchestrator = Orchestrator.from_settings(settings, echo=partial(click.echo, err=True))
    try:
        outcome = await orchestrator.run(image, options, command)

    except (HostConfigurationError, ConnectivityError) as e:
        click.echo(constants.HOST_SETUP_HINT, err=True)
        suggestions = [e.remedy] if isinstance(e, HostConfigurationError) and e.remedy else None
        click.echo(format_error("Host not ready", e.message, suggestions), err=True)
        return EXIT_TOOL_ERROR

    except ReadinessTimeoutError as e:
        click.echo(
            format_error(
                "VM did not become reachable",
                e.message,
                [
                    "Run again without --quiet to watch the boot console",
                    "Increase BOOTC_RUN_SSH_READY_TIMEOUT_SECONDS for slow (emulated) hosts",
                ],
            ),
            err=True,
        )
        return EXIT_TIMEOUT

    except BootcRunError as e:
        click.echo(format_error("bootc-run failed", e.message), err=True)
        return EXIT_TOOL_ERROR

    if outcome.background:
        click.echo(f"VM running in background, SSH on {constants.PORT_BIND_HOST}:{outcome.ssh_port}", err=True)
    return outcome.exit_code


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("image")
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
@click.option("-u", "--user", default=constants.DEFAULT_VM_USER, show_default=True, help="User to log in as")
@click.option(
    "--cloudinit",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="cloud-init data directory",
)
@click.option("--filesystem", help="Override the root filesystem (e.g. xfs, btrfs, ext4)")
@click.option("--no-creds", is_flag=True, help="Do not inject default SSH key via credentials; also implies --background")
@click.option("-B", "--background", is_flag=True, help="Do not spawn SSH, run in background")
@click.option("--rm", is_flag=True, help="Remove the VM when the SSH session exits. Cannot be used with --background")
@click.option("--quiet", is_flag=True, help="Suppress output from bootc disk creation and VM boot console")
@click.option(
    "--root-size-max",
    help="Maximum size of root filesystem in bytes; optionally accepts M, G, T suffixes",
)
@click.option("--disk-size", help="Allocate a disk image of this size in bytes; optionally accepts M, G, T suffixes")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Log level (default: BOOTC_RUN_LOG_LEVEL or WARNING)",
)
@click.version_option(__version__, "-V", "--version", prog_name="bootc-run")
def main(
    image: str,
    command: tuple[str, ...],
    user: str,
    cloudinit: Path | None,
    filesystem: str | None,
    no_creds: bool,
    background: bool,
    rm: bool,
    quiet: bool,
    root_size_max: str | None,
    disk_size: str | None,
    log_level: str | None,
) -> NoReturn:
    """Run a bootc container image as a VM.

    With no COMMAND an interactive SSH shell is opened. With a COMMAND it runs
    over SSH, the VM is removed afterwards (the disk image is kept), and the
    command's exit status becomes bootc-run's exit status.

    \b
    Examples:
      bootc-run quay.io/centos-bootc/centos-bootc:stream10
      bootc-run --rm -u core quay.io/fedora/fedora-bootc:41
      bootc-run quay.io/fedora/fedora-bootc:41 -- systemctl is-system-running
      bootc-run -B --disk-size 20G quay.io/fedora/fedora-bootc:41
    """
    options = build_options(
        user=user,
        cloudinit=cloudinit,
        filesystem=filesystem,
        root_size_max=root_size_max,
        disk_size=disk_size,
        no_creds=no_creds,
        background=background,
        rm=rm,
        quiet=quiet,
        command=command,
    )

    configure_logging(level=log_level.upper() if log_level else None, quiet=quiet)
    try:
        exit_code = asyncio.run(run_vm(Settings(), image, options, list(command)))
    finally:
        shutdown_logging()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
