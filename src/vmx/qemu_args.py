"""QEMU invocation builder.

build_qemu_args() is a pure mapping from an instance's effective
configuration to an ordered argument list; the same input always yields
the same list. build_invocation() adds the binary and, for bridged
networking, the sudo prefix, which is the only place privilege escalation
enters an engine command line.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Self

from vmx import constants
from vmx._logging import get_logger
from vmx.exceptions import InvocationError
from vmx.models import DiskFormat, PortForward
from vmx.platform_utils import HostArch, HostOS

if TYPE_CHECKING:
    from vmx.models import Machine
    from vmx.settings import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class FirmwarePair:
    """UEFI code (read-only) and per-invocation vars (read-write) images."""

    code: Path
    vars: Path

    def args(self) -> list[str]:
        return [
            "-drive",
            f"if=pflash,format=raw,file={self.code},readonly=on",
            "-drive",
            f"if=pflash,format=raw,file={self.vars}",
        ]


@dataclass(frozen=True)
class InvocationConfig:
    """Effective configuration of one engine launch."""

    cpu: str
    cpus: int
    memory: str
    mac_address: str
    drive_path: str | None = None
    disk_format: str | None = None
    bridge: str | None = None
    port_forwards: tuple[PortForward, ...] = ()
    iso_path: str | None = None
    snapshot: bool = False
    """Discard guest writes (-snapshot); used when booting a shared image without a volume."""

    @classmethod
    def from_machine(cls, machine: Machine, *, snapshot: bool = False) -> Self:
        return cls(
            cpu=machine.cpu,
            cpus=machine.cpus,
            memory=machine.memory,
            mac_address=machine.mac_address,
            drive_path=machine.drive_path,
            disk_format=machine.disk_format,
            bridge=machine.bridge,
            port_forwards=tuple(machine.port_forwards),
            iso_path=machine.iso_path,
            snapshot=snapshot,
        )


def requires_firmware(arch: HostArch) -> bool:
    """aarch64 guests boot through UEFI pflash; x86_64 uses SeaBIOS."""
    return arch == HostArch.AARCH64


def qemu_binary(settings: Settings, arch: HostArch) -> str:
    return settings.qemu_bin_arm if arch == HostArch.AARCH64 else settings.qemu_bin_x86


def accelerator_args(host_os: HostOS) -> list[str]:
    """Exactly one accelerator: Hypervisor.framework on macOS, KVM elsewhere."""
    if host_os == HostOS.MACOS:
        return ["-accel", "hvf"]
    return ["-enable-kvm"]


def netdev_arg(bridge: str | None, port_forwards: tuple[PortForward, ...]) -> str:
    """Bridge netdev when a bridge is named, otherwise user-mode NAT with hostfwd clauses."""
    if bridge:
        return f"bridge,id=net0,br={bridge}"
    return ",".join(["user,id=net0", *(rule.hostfwd for rule in port_forwards)])


def build_qemu_args(
    config: InvocationConfig,
    *,
    host_os: HostOS,
    host_arch: HostArch,
    firmware: FirmwarePair | None = None,
) -> list[str]:
    """Map an invocation config to QEMU arguments (binary excluded).

    Order: accelerator, machine, cpu/memory/smp, cdrom, network, snapshot,
    headless serial console, firmware, drive.

    Raises:
        InvocationError: aarch64 launch without a firmware pair
    """
    if requires_firmware(host_arch) and firmware is None:
        raise InvocationError("aarch64 guests require UEFI firmware", context={"arch": host_arch.value})

    args: list[str] = [*accelerator_args(host_os)]

    if host_arch == HostArch.AARCH64:
        args += ["-machine", "virt,highmem=on"]

    args += ["-cpu", config.cpu, "-m", config.memory, "-smp", str(config.cpus)]

    if config.iso_path:
        args += ["-cdrom", config.iso_path]

    args += [
        "-netdev",
        netdev_arg(config.bridge, config.port_forwards),
        "-device",
        f"e1000,netdev=net0,mac={config.mac_address}",
    ]

    if config.snapshot:
        args.append("-snapshot")

    # Serial console on stdio; no graphical display, no monitor
    args += [
        "-nographic",
        "-monitor",
        "none",
        "-chardev",
        "stdio,id=con0,signal=off",
        "-serial",
        "chardev:con0",
    ]

    if firmware is not None:
        args += firmware.args()

    if config.drive_path:
        disk_format = config.disk_format or DiskFormat.RAW.value
        args += ["-drive", f"file={config.drive_path},format={disk_format},if=virtio"]

    return args


def build_invocation(
    settings: Settings,
    config: InvocationConfig,
    *,
    host_os: HostOS,
    host_arch: HostArch,
    firmware: FirmwarePair | None = None,
) -> list[str]:
    """Full argv: [sudo] qemu-system-<arch> <args>. sudo only for bridged networking."""
    argv = [qemu_binary(settings, host_arch), *build_qemu_args(config, host_os=host_os, host_arch=host_arch, firmware=firmware)]
    if config.bridge:
        argv.insert(0, settings.sudo_bin)
    return argv


def _find_firmware_file(settings: Settings, explicit: Path | None, filename: str) -> Path:
    if explicit is not None:
        candidates = [explicit]
    else:
        candidates = [share / filename for share in settings.qemu_share_dirs]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    raise InvocationError(
        f"UEFI firmware file {filename} not found",
        context={"searched": [str(c) for c in candidates]},
    )


async def prepare_firmware(settings: Settings, arch: HostArch, instance_name: str) -> FirmwarePair | None:
    """Locate the UEFI code image and copy a fresh vars image for this launch.

    Returns None on architectures that boot without pflash firmware.

    Raises:
        InvocationError: Firmware files missing or the vars copy failed
    """
    if not requires_firmware(arch):
        return None

    code = await asyncio.to_thread(_find_firmware_file, settings, settings.uefi_code_path, constants.UEFI_CODE_FILENAME)
    template = await asyncio.to_thread(
        _find_firmware_file, settings, settings.uefi_vars_template_path, constants.UEFI_VARS_TEMPLATE_FILENAME
    )
    vars_path = settings.firmware_dir / f"{instance_name}-vars.fd"

    try:
        await asyncio.to_thread(settings.firmware_dir.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, template, vars_path)
    except OSError as e:
        raise InvocationError(
            f"Cannot copy UEFI vars template: {e}",
            context={"template": str(template), "target": str(vars_path)},
        ) from e

    logger.debug("Prepared UEFI firmware", extra={"context_id": instance_name, "code": str(code), "vars": str(vars_path)})
    return FirmwarePair(code=code, vars=vars_path)
