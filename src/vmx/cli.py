"""Command-line interface for vmx.

Usage:
    vmx pull ghcr.io/acme/freebsd:14.3       # Fetch an image
    vmx run -d -p 2222:22 ghcr.io/acme/freebsd:14.3
    vmx ps -a                                # List all instances
    vmx stop brisk-otter
"""

from __future__ import annotations

import asyncio
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import click
import pydantic

from vmx import __version__
from vmx._logging import configure_logging
from vmx.client import Vmx
from vmx.exceptions import (
    AlreadyPulledError,
    AlreadyRunningError,
    InvocationError,
    MigrationError,
    NotFoundError,
    RegistryError,
    RemoveRunningVmError,
    StopFailedError,
    ValidationError,
    VmxError,
)
from vmx.models import MachineParams, NewMachine, NewVolume

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from vmx.models import Image, Machine, Volume

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CLI_ERROR = 2


def exit_status(returncode: int | None) -> int:
    """Shell-style process status: a child killed by signal N exits 128 + N."""
    if returncode is None:
        return EXIT_SUCCESS
    if returncode < 0:
        return 128 - returncode
    return returncode


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


def format_ports(port_forward: str | None) -> str:
    """Render stored rules for display: 8080:80,2222:22 -> 8080->80, 2222->22."""
    if not port_forward:
        return ""
    return ", ".join(rule.replace(":", "->", 1) for rule in port_forward.split(","))


def format_size(num_bytes: int) -> str:
    """Human-readable byte count (1024-based)."""
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TiB"


def format_time(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")


def render_table(headers: list[str], rows: list[list[str]]) -> str:
    widths = [max(len(h), *(len(r[i]) for r in rows)) if rows else len(h) for i, h in enumerate(headers)]
    lines = ["  ".join(h.ljust(w) for h, w in zip(headers, widths, strict=True)).rstrip()]
    lines.extend("  ".join(c.ljust(w) for c, w in zip(row, widths, strict=True)).rstrip() for row in rows)
    return "\n".join(lines)


def machines_table(machines: list[Machine]) -> str:
    return render_table(
        ["NAME", "VCPUS", "MEMORY", "STATUS", "PID", "BRIDGE", "PORTS", "CREATED"],
        [
            [
                m.name,
                str(m.cpus),
                m.memory,
                m.status.value,
                str(m.pid or "") if m.is_running else "",
                m.bridge or "",
                format_ports(m.port_forward),
                format_time(m.created_at),
            ]
            for m in machines
        ],
    )


def images_table(images: list[Image]) -> str:
    return render_table(
        ["REPOSITORY", "TAG", "IMAGE ID", "FORMAT", "SIZE", "CREATED"],
        [[i.repository, i.tag, i.id[:12], i.format, format_size(i.size), format_time(i.created_at)] for i in images],
    )


def volumes_table(volumes: list[Volume]) -> str:
    return render_table(
        ["NAME", "VOLUME ID", "SIZE", "PATH", "CREATED"],
        [[v.name, v.id[:12], v.size or "", v.path, format_time(v.created_at)] for v in volumes],
    )


def report_error(error: VmxError) -> int:
    """Print a typed error and return the exit code for it."""
    match error:
        case ValidationError():
            click.echo(format_error("Invalid input", error.message), err=True)
            return EXIT_CLI_ERROR
        case NotFoundError():
            click.echo(format_error("Not found", error.message, ["List what exists with `vmx ps -a`, `vmx images` or `vmx volume ls`"]), err=True)
        case AlreadyRunningError():
            click.echo(format_error("Already running", error.message, ["Stop it first with `vmx stop`"]), err=True)
        case RemoveRunningVmError():
            click.echo(format_error("Cannot remove", error.message, ["Stop it first with `vmx stop`"]), err=True)
        case StopFailedError():
            click.echo(format_error("Stop failed", error.message, ["Bridged instances need sudo rights to be signalled"]), err=True)
        case RegistryError():
            cause = f" ({error.cause})" if error.cause else ""
            click.echo(format_error("Registry error", f"{error.message}{cause}", ["Check that oras is installed and you are logged in"]), err=True)
        case MigrationError():
            click.echo(format_error("State store migration failed", error.message, ["Back up and inspect ~/.vmx/state.sqlite"]), err=True)
        case InvocationError():
            click.echo(format_error("Command failed", error.message, ["Check that QEMU is installed: brew install qemu / apt install qemu-system"]), err=True)
        case _:
            click.echo(format_error("vmx error", error.message), err=True)
    return EXIT_ERROR


def run_action(action: Callable[[Vmx], Awaitable[int]]) -> int:
    """Open the façade, run one action and map typed errors to exit codes."""

    async def _main() -> int:
        try:
            async with Vmx() as vmx:
                return await action(vmx)
        except VmxError as e:
            return report_error(e)

    return asyncio.run(_main())


def build_params(**options: Any) -> MachineParams | None:
    values = {k: v for k, v in options.items() if v is not None}
    if not values:
        return None
    try:
        return MachineParams(**values)
    except pydantic.ValidationError as exc:
        raise click.UsageError(str(exc)) from exc


def override_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by start and restart that override stored settings for one launch."""
    options = [
        click.option("-c", "--cpu", help="CPU model (QEMU -cpu)"),
        click.option("-C", "--cpus", type=int, help="Number of vCPUs"),
        click.option("-m", "--memory", help="Memory, e.g. 2G or 512M"),
        click.option("-p", "--port-forward", help="HOST:GUEST[,HOST:GUEST...] (user networking)"),
        click.option("-i", "--image", "drive_path", help="Disk image path"),
        click.option("--disk-format", type=click.Choice(["raw", "qcow2"]), help="Disk image format"),
        click.option("-b", "--bridge", help="Host bridge to attach to (uses sudo)"),
        click.option("-s", "--size", "disk_size", help="Disk size, e.g. 20G"),
        click.option("-v", "--volume", help="Boot from this volume (created on first use)"),
        click.option("--volume-size", help="Size for a newly created volume"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--debug", is_flag=True, help="Verbose logging")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="vmx")
def main(debug: bool, quiet: bool) -> None:
    """Manage QEMU virtual machines, images and volumes."""
    configure_logging(level="DEBUG" if debug else None, quiet=quiet)


@main.command()
@click.option("-a", "--all", "show_all", is_flag=True, help="Show stopped instances too")
def ps(show_all: bool) -> None:
    """List virtual machines."""

    async def action(vmx: Vmx) -> int:
        click.echo(machines_table(await vmx.lifecycle.list(all=show_all)))
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("name")
@click.option("-d", "--detach", is_flag=True, help="Run in the background, logging to ~/.vmx/logs")
@override_options
def start(name: str, detach: bool, **overrides: Any) -> None:
    """Start a stopped virtual machine."""
    params = build_params(**overrides)

    async def action(vmx: Vmx) -> int:
        click.echo(f"Starting virtual machine {name}...", err=True)
        result = await vmx.lifecycle.start(name, params, detach=detach)
        if detach:
            click.echo(f"Virtual machine {result.machine.name} started in background (PID: {result.machine.pid})")
            click.echo(f"Logs will be written to: {result.log_path}")
            return EXIT_SUCCESS
        return exit_status(result.exit_code)

    sys.exit(run_action(action))


@main.command()
@click.argument("name")
def stop(name: str) -> None:
    """Stop a running virtual machine (SIGTERM, then SIGKILL)."""

    async def action(vmx: Vmx) -> int:
        machine = await vmx.lifecycle.stop(name)
        click.echo(f"Virtual machine {machine.name} stopped")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("name")
@override_options
def restart(name: str, **overrides: Any) -> None:
    """Stop a virtual machine and start it again in the background."""
    params = build_params(**overrides)

    async def action(vmx: Vmx) -> int:
        result = await vmx.lifecycle.restart(name, params)
        click.echo(f"Virtual machine {result.machine.name} restarted (PID: {result.machine.pid})")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("name")
def rm(name: str) -> None:
    """Remove a stopped virtual machine."""

    async def action(vmx: Vmx) -> int:
        machine = await vmx.lifecycle.remove(name)
        click.echo(f"Virtual machine {machine.name} removed")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("image")
@click.option("-d", "--detach", is_flag=True, help="Run in the background")
@click.option("-n", "--name", help="Instance name (generated when omitted)")
@click.option("-c", "--cpu", help="CPU model (QEMU -cpu)")
@click.option("-C", "--cpus", type=int, help="Number of vCPUs")
@click.option("-m", "--memory", help="Memory, e.g. 2G or 512M")
@click.option("-p", "--port-forward", help="HOST:GUEST[,HOST:GUEST...] (user networking)")
@click.option("-b", "--bridge", help="Host bridge to attach to (uses sudo)")
@click.option("-v", "--volume", help="Boot from this volume (created on first use)")
@click.option("--volume-size", help="Size for a newly created volume")
def run(image: str, detach: bool, **options: Any) -> None:
    """Create a virtual machine from IMAGE and start it, pulling the image if needed."""
    values = {k: v for k, v in options.items() if v is not None}
    try:
        request = NewMachine(image=image, **values)
    except pydantic.ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    async def action(vmx: Vmx) -> int:
        result = await vmx.lifecycle.run(request, detach=detach)
        if detach:
            click.echo(f"Virtual machine {result.machine.name} started in background (PID: {result.machine.pid})")
            click.echo(f"Logs will be written to: {result.log_path}")
            return EXIT_SUCCESS
        return exit_status(result.exit_code)

    sys.exit(run_action(action))


@main.command()
@click.argument("name")
def inspect(name: str) -> None:
    """Show a virtual machine's record as JSON."""

    async def action(vmx: Vmx) -> int:
        machine = await vmx.lifecycle.get(name)
        click.echo(machine.model_dump_json(indent=2))
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("name")
def logs(name: str) -> None:
    """Print the log of a virtual machine started with --detach."""

    async def action(vmx: Vmx) -> int:
        path: Path = await vmx.lifecycle.log_path(name)
        try:
            content = await asyncio.to_thread(path.read_text, errors="replace")
        except FileNotFoundError:
            click.echo(format_error("No logs", f"{path} does not exist", ["Logs are only written for detached starts"]), err=True)
            return EXIT_ERROR
        click.echo(content, nl=False)
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
def images() -> None:
    """List local images."""

    async def action(vmx: Vmx) -> int:
        click.echo(images_table(await vmx.images.list()))
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("vm")
@click.argument("image")
def tag(vm: str, image: str) -> None:
    """Save virtual machine VM's disk as IMAGE (repository[:tag])."""

    async def action(vmx: Vmx) -> int:
        saved = await vmx.images.tag(vm, image)
        click.echo(f"Tagged {vm} as {saved.repository}:{saved.tag}")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("image")
def push(image: str) -> None:
    """Push a local image to its registry."""

    async def action(vmx: Vmx) -> int:
        remote = await vmx.images.push(image)
        click.echo(f"Pushed {remote}")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("image")
def pull(image: str) -> None:
    """Pull an image for this host's architecture."""

    async def action(vmx: Vmx) -> int:
        try:
            pulled = await vmx.images.pull(image)
        except AlreadyPulledError as e:
            click.echo(e.message)
            return EXIT_SUCCESS
        click.echo(f"Pulled {pulled.repository}:{pulled.tag} ({pulled.digest})")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.command()
@click.argument("image")
def rmi(image: str) -> None:
    """Remove a local image (its volumes are removed with it)."""

    async def action(vmx: Vmx) -> int:
        removed = await vmx.images.remove(image)
        click.echo(f"Image {removed.repository}:{removed.tag} removed")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@main.group()
def volume() -> None:
    """Manage copy-on-write volumes."""


@volume.command("ls")
def volume_ls() -> None:
    """List volumes."""

    async def action(vmx: Vmx) -> int:
        click.echo(volumes_table(await vmx.volumes.list()))
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@volume.command("create")
@click.argument("name")
@click.option("-i", "--image", required=True, help="Base image")
@click.option("-s", "--size", help="Virtual size, e.g. 40G")
def volume_create(name: str, image: str, size: str | None) -> None:
    """Create a volume backed by a local image."""
    try:
        request = NewVolume(name=name, image=image, size=size)
    except pydantic.ValidationError as exc:
        raise click.UsageError(str(exc)) from exc

    async def action(vmx: Vmx) -> int:
        created = await vmx.volumes.create(request)
        click.echo(f"Volume {created.name} ready at {created.path}")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@volume.command("rm")
@click.argument("name")
def volume_rm(name: str) -> None:
    """Remove a volume and its overlay file."""

    async def action(vmx: Vmx) -> int:
        removed = await vmx.volumes.delete(name)
        click.echo(f"Volume {removed.name} removed")
        return EXIT_SUCCESS

    sys.exit(run_action(action))


@volume.command("inspect")
@click.argument("name")
def volume_inspect(name: str) -> None:
    """Show a volume's record as JSON."""

    async def action(vmx: Vmx) -> int:
        found = await vmx.volumes.get(name)
        click.echo(found.model_dump_json(indent=2))
        return EXIT_SUCCESS

    sys.exit(run_action(action))


if __name__ == "__main__":
    main()
