"""Command-line interface for qemu-driver.

Usage:
    qemu-driver create dev --boot2docker-url ~/isos/boot2docker.iso -m 2048
    qemu-driver status dev
    qemu-driver url dev
    qemu-driver stop dev
    qemu-driver rm dev
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any, TypeVar

import click

from qemu_driver import (
    DependencyError,
    DriverConfig,
    DriverError,
    QemuDriver,
    ReadinessTimeoutError,
    StateQueryError,
    __version__,
    constants,
)
from qemu_driver._logging import configure_logging

# Exit codes following Unix conventions
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_DRIVER_ERROR = 125

T = TypeVar("T")


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def run_driver_call(call: Callable[[], Coroutine[Any, Any, T]]) -> T:
    """Run one driver coroutine, turning driver errors into CLI exits."""
    try:
        return asyncio.run(call())
    except ReadinessTimeoutError as e:
        click.echo(
            format_error(
                "Machine did not become ready",
                e.message,
                ["Check that the boot media boots under QEMU", "Raise QEMU_DRIVER_READY_TIMEOUT_SECONDS"],
            ),
            err=True,
        )
        sys.exit(EXIT_TIMEOUT)
    except DependencyError as e:
        click.echo(
            format_error(
                "Missing dependency",
                e.message,
                ["Install QEMU (qemu-system-x86_64, qemu-img)", "Pass --boot2docker-url with a local ISO"],
            ),
            err=True,
        )
        sys.exit(EXIT_DRIVER_ERROR)
    except DriverError as e:
        click.echo(format_error("Driver error", e.message), err=True)
        sys.exit(EXIT_DRIVER_ERROR)


async def _load(ctx: click.Context, name: str) -> QemuDriver:
    return await QemuDriver.load(ctx.obj["store_path"], name)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option(
    "-s",
    "--store-path",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("~/.docker/machine").expanduser(),
    show_default=True,
    envvar="MACHINE_STORAGE_PATH",
    help="Machine store directory",
)
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="qemu-driver")
@click.pass_context
def main(ctx: click.Context, store_path: Path, log_level: str | None, quiet: bool) -> None:
    """Manage a boot2docker machine running under QEMU."""
    configure_logging(level=log_level.upper() if log_level else "INFO", quiet=quiet)
    ctx.ensure_object(dict)
    ctx.obj["store_path"] = store_path


@main.command()
@click.argument("name")
@click.option("-m", "--memory", default=constants.DEFAULT_MEMORY_MB, show_default=True, help="Memory in MB")
@click.option("-d", "--disk-size", default=constants.DEFAULT_DISK_SIZE_MB, show_default=True, help="Disk size in MB")
@click.option("-c", "--cpu-count", default=constants.DEFAULT_CPU_COUNT, show_default=True, help="Number of CPUs")
@click.option("--program", default=constants.DEFAULT_QEMU_PROGRAM, show_default=True, help="QEMU binary")
@click.option("--boot2docker-url", envvar="QEMU_BOOT2DOCKER_URL", default="", help="Boot ISO path or file:// URL")
@click.option(
    "--cache-mode",
    type=click.Choice(["default", "none", "writethrough", "writeback", "directsync", "unsafe"]),
    default="default",
    show_default=True,
)
@click.option("--io-mode", type=click.Choice(["threads", "native"]), default="threads", show_default=True)
@click.option("--ssh-user", envvar="QEMU_SSH_USER", default=constants.DEFAULT_SSH_USER, show_default=True)
@click.option("--userdata", type=click.Path(dir_okay=False, exists=True, path_type=Path), help="cloud-config file")
@click.pass_context
def create(
    ctx: click.Context,
    name: str,
    memory: int,
    disk_size: int,
    cpu_count: int,
    program: str,
    boot2docker_url: str,
    cache_mode: str,
    io_mode: str,
    ssh_user: str,
    userdata: Path | None,
) -> None:
    """Create and start machine NAME."""
    config = DriverConfig(
        memory_mb=memory,
        disk_size_mb=disk_size,
        cpu_count=cpu_count,
        program=program,
        boot2docker_url=boot2docker_url,
        cache_mode=cache_mode,  # type: ignore[arg-type]
        io_mode=io_mode,  # type: ignore[arg-type]
        ssh_user=ssh_user,
        userdata_file=userdata,
    )
    driver = QemuDriver(name, ctx.obj["store_path"], config)

    async def _create() -> None:
        await driver.pre_create_check()
        await driver.create()

    run_driver_call(_create)
    click.echo(driver.get_url())


def _lifecycle_command(name_: str, method: str, help_text: str) -> None:
    @main.command(name=name_, help=help_text)
    @click.argument("name")
    @click.pass_context
    def _command(ctx: click.Context, name: str) -> None:
        async def _run() -> None:
            driver = await _load(ctx, name)
            await getattr(driver, method)()

        run_driver_call(_run)


_lifecycle_command("start", "start", "Start machine NAME.")
_lifecycle_command("stop", "stop", "Gracefully stop machine NAME.")
_lifecycle_command("kill", "kill", "Force machine NAME down.")
_lifecycle_command("restart", "restart", "Restart machine NAME.")
_lifecycle_command("rm", "remove", "Shut down machine NAME's QEMU process (files are kept).")


@main.command()
@click.argument("name")
@click.pass_context
def status(ctx: click.Context, name: str) -> None:
    """Print the state of machine NAME."""

    async def _status() -> str:
        driver = await _load(ctx, name)
        try:
            return (await driver.get_state()).value
        except StateQueryError as e:
            return e.state.value

    state = run_driver_call(_status)
    click.echo(state)


@main.command()
@click.argument("name")
@click.pass_context
def ip(ctx: click.Context, name: str) -> None:
    """Print the address machine NAME is reachable on."""
    driver = run_driver_call(lambda: _load(ctx, name))
    click.echo(driver.get_ip())


@main.command()
@click.argument("name")
@click.pass_context
def url(ctx: click.Context, name: str) -> None:
    """Print the engine URL of machine NAME."""
    driver = run_driver_call(lambda: _load(ctx, name))
    click.echo(driver.get_url())


@main.command("ssh-port")
@click.argument("name")
@click.pass_context
def ssh_port(ctx: click.Context, name: str) -> None:
    """Print the host port forwarded to the guest SSH port."""
    driver = run_driver_call(lambda: _load(ctx, name))
    click.echo(driver.get_ssh_port())


if __name__ == "__main__":
    main()
