"""Cross-platform host detection and process utilities.

Uses psutil's built-in OS detection constants for platform identification,
psutil.Process for PID-reuse safe liveness checks and child lookup, and
subprocess.Popen for engines that must outlive the caller's event loop.
"""

import asyncio
import contextlib
import platform
import subprocess
from enum import Enum, auto
from functools import cache
from pathlib import Path
from typing import BinaryIO

import psutil
from tenacity import AsyncRetrying, RetryError, TryAgain, stop_after_attempt, wait_fixed


class HostOS(Enum):
    """Supported host operating systems."""

    LINUX = auto()
    """Linux (KVM acceleration)."""

    MACOS = auto()
    """macOS (Hypervisor.framework acceleration)."""

    UNKNOWN = auto()
    """Unsupported or unrecognized OS."""


class HostArch(Enum):
    """Host CPU architectures QEMU is launched for."""

    X86_64 = "x86_64"
    AARCH64 = "aarch64"
    UNKNOWN = "unknown"


# Architecture names used in registry tags and OCI annotations
_REGISTRY_ARCH: dict[HostArch, str] = {
    HostArch.X86_64: "amd64",
    HostArch.AARCH64: "arm64",
}


@cache
def detect_host_os() -> HostOS:
    """Detect current host operating system using psutil constants."""
    if psutil.LINUX:
        return HostOS.LINUX
    if psutil.MACOS:
        return HostOS.MACOS
    return HostOS.UNKNOWN


@cache
def detect_host_arch() -> HostArch:
    """Detect host CPU architecture.

    macOS reports "arm64" for Apple Silicon; normalized to AARCH64.
    """
    machine = platform.machine().lower()
    if machine in ("x86_64", "amd64"):
        return HostArch.X86_64
    if machine in ("aarch64", "arm64"):
        return HostArch.AARCH64
    return HostArch.UNKNOWN


def registry_arch(arch: HostArch) -> str:
    """Map a host architecture to its OCI name (amd64/arm64).

    Unknown architectures pass through as their raw value.
    """
    return _REGISTRY_ARCH.get(arch, arch.value)


def get_config_dir() -> Path:
    """Default state directory (~/.vmx)."""
    return Path.home() / ".vmx"


async def pid_alive(pid: int) -> bool:
    """Check whether a process with this pid exists and is not a zombie.

    Runs the psutil probe in a thread so a hung /proc read never blocks
    the event loop.
    """
    if pid <= 0:
        return False

    def _probe() -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False
        except psutil.AccessDenied:
            # Exists but owned by another user (e.g. sudo-launched bridged QEMU)
            return True

    return await asyncio.to_thread(_probe)


async def find_engine_pid(parent_pid: int, name: str, *, attempts: int, delay: float) -> int | None:
    """Pid of the descendant process called name, e.g. QEMU launched through sudo.

    The launcher may not have forked yet, so the lookup is retried.
    Returns None when no such descendant appears.
    """

    def _probe() -> int | None:
        try:
            children = psutil.Process(parent_pid).children(recursive=True)
        except psutil.NoSuchProcess:
            return None
        for child in children:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                if child.name() == name:
                    return child.pid
        return None

    try:
        async for attempt in AsyncRetrying(stop=stop_after_attempt(attempts), wait=wait_fixed(delay)):
            with attempt:
                pid = await asyncio.to_thread(_probe)
                if pid is None:
                    raise TryAgain
    except RetryError:
        return None
    return pid


class ProcessWrapper:
    """A detached child owned by no event loop; it survives the loop and interpreter that spawned it.

    Exit is observed by polling Popen, which also reaps it.
    """

    def __init__(self, popen: subprocess.Popen[bytes]) -> None:
        self.popen = popen

    @property
    def pid(self) -> int:
        """Process ID."""
        return self.popen.pid

    async def wait(self, interval: float) -> int:
        """Poll until the process exits (reaping it) and return its exit code."""
        while (code := self.popen.poll()) is None:
            await asyncio.sleep(interval)
        return code

    def kill(self) -> None:
        with contextlib.suppress(ProcessLookupError):
            self.popen.kill()

    async def write_stdin(self, data: bytes) -> None:
        """Write data to stdin if the process is still up, then close stdin.

        Raises:
            BrokenPipeError: The process closed its end first
        """
        stdin = self.popen.stdin
        if stdin is None:
            return

        def _write() -> None:
            try:
                if data and self.popen.poll() is None:
                    stdin.write(data)
                    stdin.flush()
            finally:
                with contextlib.suppress(BrokenPipeError):
                    stdin.close()

        await asyncio.to_thread(_write)


def spawn_detached(argv: list[str], log_file: BinaryIO) -> ProcessWrapper:
    """Start argv in a new session with stdout/stderr on log_file and a stdin pipe.

    Blocking (fork/exec); run it via asyncio.to_thread.

    Raises:
        OSError: The binary could not be executed
    """
    popen = subprocess.Popen(  # noqa: S603
        argv,
        stdin=subprocess.PIPE,
        stdout=log_file,
        stderr=subprocess.STDOUT,
        start_new_session=True,
    )
    return ProcessWrapper(popen)
