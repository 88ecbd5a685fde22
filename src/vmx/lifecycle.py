"""Instance lifecycle: create, start, stop, restart and remove virtual machines.

States are STOPPED and RUNNING. The LifecycleManager is the only writer of
status and pid. A check-then-spawn on one instance is serialized by a
per-instance asyncio.Lock, so two starts racing inside one process cannot
both launch QEMU; starts from separate processes are not coordinated.

Spawn modes:
    foreground  stdio inherited; RUNNING is recorded with the child's pid,
                start() returns the engine's exit code after it exits and
                records STOPPED (pid kept for audit).
    detached    stdout/stderr appended to logs/<name>.log; the child is a
                plain Popen in its own session, owned by no event loop, so
                it outlives the caller. After a warm-up delay the boot-menu
                input is written to its stdin.

The recorded pid is always the engine's own: for bridged launches the QEMU
child is looked up under its sudo parent.

Stop is grace-then-force: SIGTERM, a fixed grace interval, a liveness
re-check, then at most one SIGKILL.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import random
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from vmx import constants
from vmx._logging import get_logger
from vmx.exceptions import (
    AlreadyPulledError,
    AlreadyRunningError,
    InvocationError,
    RemoveRunningVmError,
    StopFailedError,
    ValidationError,
)
from vmx.models import DiskFormat, VmStatus
from vmx.platform_utils import (
    HostArch,
    HostOS,
    ProcessWrapper,
    detect_host_arch,
    detect_host_os,
    find_engine_pid,
    pid_alive,
    spawn_detached,
)
from vmx.qemu_args import InvocationConfig, build_invocation, prepare_firmware
from vmx.resource_cleanup import cleanup_file
from vmx.subprocess_utils import log_task_exception, run_command

if TYPE_CHECKING:
    from collections.abc import Callable

    from vmx.images import ImageManager
    from vmx.models import Image, Machine, MachineParams, NewMachine
    from vmx.settings import Settings
    from vmx.store import StateStore
    from vmx.volumes import VolumeManager

logger = get_logger(__name__)

_ADJECTIVES = (
    "amber", "bold", "brisk", "calm", "crisp", "dusty", "eager", "fancy", "gentle", "hazy",
    "icy", "jolly", "keen", "lucky", "mellow", "nimble", "olive", "proud", "quiet", "rapid",
    "rusty", "shiny", "silent", "sunny", "tidy", "vivid", "witty", "young", "zesty", "brave",
)  # fmt: skip
_NOUNS = (
    "badger", "beacon", "brook", "cedar", "comet", "dune", "falcon", "fjord", "glacier", "harbor",
    "heron", "island", "lagoon", "lynx", "maple", "meadow", "otter", "pebble", "pine", "quartz",
    "raven", "reef", "ridge", "salmon", "summit", "thicket", "tundra", "valley", "walrus", "willow",
)  # fmt: skip


def generate_mac() -> str:
    """Random MAC in QEMU's 52:54:00 locally administered range."""
    suffix = ":".join(f"{random.randint(0, 255):02x}" for _ in range(3))
    return f"{constants.MAC_PREFIX}:{suffix}"


def generate_name() -> str:
    """Human-friendly instance name such as "brisk-otter"."""
    return f"{random.choice(_ADJECTIVES)}-{random.choice(_NOUNS)}"


@dataclass(frozen=True)
class StartResult:
    """Outcome of start()/restart()/run().

    Attributes:
        machine: Record as of return (RUNNING for detached, STOPPED after a foreground exit)
        exit_code: Engine exit code for foreground starts, None when detached
        log_path: Log file for detached starts, None for foreground
    """

    machine: Machine
    exit_code: int | None = None
    log_path: Path | None = None


class LifecycleManager:
    """Orchestrates instance transitions against the store, volumes and the QEMU process."""

    def __init__(
        self,
        store: StateStore,
        settings: Settings,
        volumes: VolumeManager,
        images: ImageManager,
        *,
        host_os: HostOS | None = None,
        host_arch: HostArch | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.volumes = volumes
        self.images = images
        self.host_os = host_os or detect_host_os()
        self.host_arch = host_arch or detect_host_arch()
        self._locks: dict[str, asyncio.Lock] = {}
        self._reapers: dict[asyncio.Task[None], str] = {}

    def _lock_for(self, machine_id: str) -> asyncio.Lock:
        return self._locks.setdefault(machine_id, asyncio.Lock())

    # =========================================================================
    # Queries
    # =========================================================================

    async def list(self, *, all: bool = False) -> list[Machine]:
        """RUNNING instances, or every instance when all=True."""
        if all:
            return await self.store.machines.list()
        return await self.store.machines.list_running()

    async def get(self, key: str) -> Machine:
        """Instance by name or id.

        Raises:
            VmNotFoundError: No such instance
        """
        return await self.store.machines.require(key)

    def log_path_for(self, name: str) -> Path:
        return self.settings.logs_dir / f"{name}.log"

    async def log_path(self, key: str) -> Path:
        """Detached-mode log file of an instance (may not exist yet)."""
        machine = await self.store.machines.require(key)
        return self.log_path_for(machine.name)

    # =========================================================================
    # Create / remove
    # =========================================================================

    async def _unique_name(self) -> str:
        for _ in range(16):
            name = generate_name()
            if await self.store.machines.get(name) is None:
                return name
        return f"{generate_name()}-{random.randint(1000, 9999)}"

    async def create(self, request: NewMachine) -> Machine:
        """Create a STOPPED instance from a local image.

        With request.volume the instance boots from that volume (created from
        the image on first use); otherwise it boots the image file directly.

        Raises:
            ImageNotFoundError: Image is not present locally
            VolumeError: Volume overlay could not be created
            StorageError: Name or MAC collision
        """
        image = await self.store.images.require(request.image)
        volume = None
        if request.volume:
            volume = await self.volumes.create_if_missing(request.volume, image, request.volume_size)

        machine = await self.store.machines.insert(
            name=request.name or await self._unique_name(),
            bridge=request.bridge,
            mac_address=generate_mac(),
            memory=request.memory,
            cpus=request.cpus,
            cpu=request.cpu,
            disk_size=request.disk_size,
            drive_path=volume.path if volume else image.path,
            version=image.tag,
            disk_format=DiskFormat.QCOW2.value if volume else image.format,
            status=VmStatus.STOPPED.value,
            pid=0,
            port_forward=request.port_forward,
            volume=volume.name if volume else None,
        )
        logger.info(
            f"Created virtual machine {machine.name}",
            extra={"context_id": machine.name, "vm_id": machine.id, "image": str(image.ref)},
        )
        return machine

    async def remove(self, key: str) -> Machine:
        """Delete a non-running instance's record. Disk files are never touched.

        Raises:
            VmNotFoundError: No such instance
            RemoveRunningVmError: Instance is RUNNING
        """
        machine = await self.store.machines.require(key)
        async with self._lock_for(machine.id):
            machine = await self.store.machines.require(machine.id)
            if machine.is_running:
                raise RemoveRunningVmError(
                    f"Virtual machine {machine.name} is running; stop it first",
                    context={"vm": machine.name, "pid": machine.pid},
                )
            await self.store.machines.delete(machine.id)
        await cleanup_file(self.settings.firmware_dir / f"{machine.name}-vars.fd", machine.name, "UEFI vars copy")
        self._locks.pop(machine.id, None)
        logger.info(f"Removed virtual machine {machine.name}", extra={"context_id": machine.name})
        return machine

    # =========================================================================
    # Start
    # =========================================================================

    async def _base_image_for(self, machine: Machine) -> Image:
        """Image a new volume for this instance should be layered on."""
        if machine.drive_path:
            image = await self.store.images.get_by_path(machine.drive_path)
            if image is not None:
                return image
            volume = await self.store.volumes.get(machine.drive_path)
            if volume is not None:
                return await self.store.images.require(volume.base_image_id)
        raise ValidationError(
            f"Cannot create a volume for {machine.name}: its drive is not a known image or volume",
            context={"vm": machine.name, "drive_path": machine.drive_path},
        )

    async def _resolve_volume(self, machine: Machine, overrides: MachineParams | None) -> Machine:
        name = overrides.volume if overrides and overrides.volume else machine.volume
        if not name:
            return machine
        volume = await self.store.volumes.get(name)
        if volume is None:
            base = await self._base_image_for(machine)
            volume = await self.volumes.create_if_missing(name, base, overrides.volume_size if overrides else None)
        return machine.model_copy(
            update={"drive_path": volume.path, "disk_format": DiskFormat.QCOW2.value, "volume": volume.name}
        )

    async def start(
        self,
        key: str,
        overrides: MachineParams | None = None,
        *,
        detach: bool = False,
        snapshot: bool = False,
    ) -> StartResult:
        """Launch an instance's engine process.

        Overrides apply to this launch only; the stored record keeps its values.

        Raises:
            VmNotFoundError: No such instance
            AlreadyRunningError: Instance is RUNNING (state unchanged)
            InvocationError: QEMU could not be spawned
        """
        machine = await self.store.machines.require(key)
        lock = self._lock_for(machine.id)

        async with lock:
            machine = await self.store.machines.require(machine.id)
            if machine.is_running:
                raise AlreadyRunningError(
                    f"Virtual machine {machine.name} is already running",
                    context={"vm": machine.name, "pid": machine.pid},
                )

            effective = overrides.apply(machine) if overrides else machine
            effective = await self._resolve_volume(effective, overrides)

            firmware = await prepare_firmware(self.settings, self.host_arch, machine.name)
            argv = build_invocation(
                self.settings,
                InvocationConfig.from_machine(effective, snapshot=snapshot),
                host_os=self.host_os,
                host_arch=self.host_arch,
                firmware=firmware,
            )
            logger.info(
                f"Starting virtual machine {machine.name}",
                extra={"context_id": machine.name, "vm_id": machine.id, "detach": detach, "argv": argv},
            )

            if detach:
                return await self._start_detached(machine, argv)
            proc = await self._spawn_foreground(machine, argv)

        # Lock released: stop() from this process must be able to run while the engine is up
        exit_code = await proc.wait()
        stopped = await self.store.machines.set_state(machine.id, VmStatus.STOPPED)
        log = logger.info if exit_code == 0 else logger.warning
        log(
            f"Virtual machine {machine.name} exited with code {exit_code}",
            extra={"context_id": machine.name, "exit_code": exit_code, "pid": stopped.pid},
        )
        return StartResult(machine=stopped, exit_code=exit_code)

    async def _engine_pid(self, machine: Machine, argv: list[str], launcher_pid: int) -> int:
        """OS pid of the engine itself; a bridged engine is a child of sudo."""
        if argv[0] != self.settings.sudo_bin:
            return launcher_pid
        name = Path(argv[1]).name
        pid = await find_engine_pid(
            launcher_pid,
            name,
            attempts=constants.ENGINE_PID_ATTEMPTS,
            delay=constants.ENGINE_PID_RETRY_SECONDS,
        )
        if pid is None:
            logger.warning(
                f"No {name} process found under sudo (pid {launcher_pid}); recording the sudo pid",
                extra={"context_id": machine.name, "pid": launcher_pid},
            )
            return launcher_pid
        return pid

    async def _spawn_foreground(self, machine: Machine, argv: list[str]) -> asyncio.subprocess.Process:
        try:
            proc = await asyncio.create_subprocess_exec(*argv)
        except OSError as e:
            raise InvocationError(
                f"Failed to launch QEMU for {machine.name}: {e}",
                context={"vm": machine.name, "argv": argv},
            ) from e

        def kill() -> None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

        await self._record_running(machine, await self._engine_pid(machine, argv, proc.pid), kill)
        return proc

    async def _start_detached(self, machine: Machine, argv: list[str]) -> StartResult:
        log_path = self.log_path_for(machine.name)
        await aiofiles.os.makedirs(log_path.parent, exist_ok=True)

        try:
            log_file = await asyncio.to_thread(log_path.open, "ab")
            try:
                proc = await asyncio.to_thread(spawn_detached, argv, log_file)
            finally:
                log_file.close()
        except OSError as e:
            raise InvocationError(
                f"Failed to launch QEMU for {machine.name}: {e}",
                context={"vm": machine.name, "argv": argv, "log_path": str(log_path)},
            ) from e

        pid = await self._engine_pid(machine, argv, proc.pid)
        running = await self._record_running(machine, pid, proc.kill)
        self._track_reaper(machine, proc, pid)
        await self._send_boot_input(machine, proc)

        logger.info(
            f"Virtual machine {machine.name} started in background (PID: {pid})",
            extra={"context_id": machine.name, "pid": pid, "log_path": str(log_path)},
        )
        return StartResult(machine=running, log_path=log_path)

    async def _record_running(self, machine: Machine, pid: int, kill: Callable[[], None]) -> Machine:
        """Persist RUNNING + pid; if that fails the just-spawned engine is killed."""
        try:
            return await self.store.machines.set_state(machine.id, VmStatus.RUNNING, pid)
        except BaseException:
            kill()
            raise

    async def _send_boot_input(self, machine: Machine, proc: ProcessWrapper) -> None:
        await asyncio.sleep(self.settings.detach_warmup_seconds)
        data = self.settings.boot_menu_input.encode() if self.settings.boot_menu_input else b""
        try:
            await proc.write_stdin(data)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Engine stdin closed before boot input", extra={"context_id": machine.name})

    def _track_reaper(self, machine: Machine, proc: ProcessWrapper, pid: int) -> None:
        """Poll the detached child so it is reaped; record STOPPED if it exits while we run."""

        async def reap() -> None:
            exit_code = await proc.wait(constants.DETACHED_POLL_SECONDS)
            current = await self.store.machines.get(machine.id)
            if current is not None and current.is_running and current.pid == pid:
                await self.store.machines.set_state(machine.id, VmStatus.STOPPED)
            logger.info(
                f"Virtual machine {machine.name} exited with code {exit_code}",
                extra={"context_id": machine.name, "exit_code": exit_code, "pid": pid},
            )

        task = asyncio.create_task(reap(), name=f"reap-{machine.name}")
        self._reapers[task] = machine.name
        task.add_done_callback(log_task_exception)
        task.add_done_callback(lambda t: self._reapers.pop(t, None))

    async def close(self) -> None:
        """Stop watching detached engines. The engines themselves keep running."""
        tasks = list(self._reapers)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._reapers.clear()

    # =========================================================================
    # Stop / restart
    # =========================================================================

    async def _send_signal(self, machine: Machine, pid: int, sig: signal.Signals) -> bool:
        """Deliver sig to pid; True when delivered or the process is already gone.

        Bridged engines run under sudo, so they are signalled through sudo kill.
        """
        if machine.bridge:
            result = await run_command(
                [self.settings.sudo_bin, self.settings.kill_bin, f"-{sig.name.removeprefix('SIG')}", str(pid)]
            )
            if not result.ok:
                logger.warning(
                    f"sudo kill -{sig.name} {pid} failed",
                    extra={"context_id": machine.name, "returncode": result.returncode, "stderr": result.stderr[:200]},
                )
            return result.ok

        try:
            await asyncio.to_thread(os.kill, pid, sig)
        except ProcessLookupError:
            return True
        except OSError as e:
            logger.warning(
                f"Sending {sig.name} to {pid} failed",
                extra={"context_id": machine.name, "error": str(e)},
            )
            return False
        return True

    async def stop(self, key: str) -> Machine:
        """Stop a running instance with grace-then-force termination.

        Stopping a STOPPED instance is a no-op. A RUNNING record whose process
        is already gone is corrected to STOPPED.

        Raises:
            VmNotFoundError: No such instance
            StopFailedError: The forceful signal could not be delivered
        """
        machine = await self.store.machines.require(key)

        async with self._lock_for(machine.id):
            machine = await self.store.machines.require(machine.id)
            if not machine.is_running:
                logger.debug(f"Virtual machine {machine.name} is not running", extra={"context_id": machine.name})
                return machine

            pid = machine.pid or 0
            if not await pid_alive(pid):
                logger.warning(
                    f"Virtual machine {machine.name} was recorded RUNNING but pid {pid} is gone",
                    extra={"context_id": machine.name, "pid": pid},
                )
                return await self.store.machines.set_state(machine.id, VmStatus.STOPPED)

            logger.info(f"Stopping virtual machine {machine.name}", extra={"context_id": machine.name, "pid": pid})
            if await self._send_signal(machine, pid, signal.SIGTERM):
                await asyncio.sleep(self.settings.stop_grace_seconds)
                if not await pid_alive(pid):
                    return await self.store.machines.set_state(machine.id, VmStatus.STOPPED)
                logger.warning(
                    f"{machine.name} didn't respond to SIGTERM, force killing",
                    extra={"context_id": machine.name, "pid": pid, "grace": self.settings.stop_grace_seconds},
                )

            if not await self._send_signal(machine, pid, signal.SIGKILL):
                raise StopFailedError(
                    f"Failed to stop virtual machine {machine.name} (pid {pid})",
                    context={"vm": machine.name, "pid": pid},
                )
            return await self.store.machines.set_state(machine.id, VmStatus.STOPPED)

    async def restart(self, key: str, overrides: MachineParams | None = None) -> StartResult:
        """Stop, settle, then start detached with the given overrides.

        A stop failure propagates and the start phase is not attempted.
        """
        machine = await self.stop(key)
        await asyncio.sleep(self.settings.restart_settle_seconds)
        return await self.start(machine.id, overrides, detach=True)

    # =========================================================================
    # Run
    # =========================================================================

    async def _ensure_image(self, ref: str) -> Image:
        image = await self.store.images.get(ref)
        if image is not None:
            return image
        logger.info(f"Image {ref} not found locally, pulling", extra={"context_id": ref})
        try:
            return await self.images.pull(ref)
        except AlreadyPulledError as e:
            return await self.store.images.require(e.context["image_id"])

    async def run(self, request: NewMachine, *, detach: bool = False) -> StartResult:
        """Create an instance from an image (pulling it if needed) and start it.

        Without a volume the engine runs with -snapshot so the shared image
        file is never written to.
        """
        image = await self._ensure_image(request.image)
        machine = await self.create(request.model_copy(update={"image": image.id}))
        return await self.start(machine.id, detach=detach, snapshot=request.volume is None)
