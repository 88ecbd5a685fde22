"""Shared pytest fixtures for vmx tests.

Every test gets its own config directory under tmp_path with a real SQLite
state file. QEMU, qemu-img, oras and tar are never executed; tests patch
the subprocess boundary instead.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from vmx.images import ImageManager
from vmx.lifecycle import LifecycleManager, generate_mac
from vmx.models import Image, Machine, VmStatus
from vmx.platform_utils import HostArch, HostOS
from vmx.registry import RegistryClient
from vmx.settings import Settings
from vmx.store import StateStore
from vmx.volumes import VolumeManager


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in tmp_path with all lifecycle delays disabled."""
    return Settings(
        config_dir=tmp_path / "vmx",
        stop_grace_seconds=0,
        restart_settle_seconds=0,
        detach_warmup_seconds=0,
    )


@pytest.fixture
async def store(settings: Settings) -> AsyncGenerator[StateStore, None]:
    """Open (migrated) state store, closed after the test."""
    async with StateStore.from_settings(settings) as s:
        yield s


@pytest.fixture
def registry(settings: Settings) -> RegistryClient:
    return RegistryClient(settings, HostArch.X86_64)


@pytest.fixture
def volumes(store: StateStore, settings: Settings) -> VolumeManager:
    return VolumeManager(store, settings)


@pytest.fixture
def images(store: StateStore, settings: Settings, registry: RegistryClient) -> ImageManager:
    return ImageManager(store, settings, registry)


@pytest.fixture
async def lifecycle(
    store: StateStore, settings: Settings, volumes: VolumeManager, images: ImageManager
) -> AsyncGenerator[LifecycleManager, None]:
    """LifecycleManager pinned to a Linux x86_64 host (no UEFI firmware needed)."""
    manager = LifecycleManager(store, settings, volumes, images, host_os=HostOS.LINUX, host_arch=HostArch.X86_64)
    yield manager
    await manager.close()


@pytest.fixture
def make_image(store: StateStore, tmp_path: Path) -> Callable[..., Awaitable[Image]]:
    """Factory: write a disk file and register it as an image."""

    async def _make(
        repository: str = "freebsd",
        tag: str = "14.3",
        *,
        format: str = "raw",
        digest: str | None = None,
        content: bytes = b"\x00" * 4096,
    ) -> Image:
        path = tmp_path / "disks" / f"{repository.replace('/', '_')}-{tag}.img"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return await store.images.upsert(
            repository=repository, tag=tag, size=len(content), path=str(path), format=format, digest=digest
        )

    return _make


@pytest.fixture
def make_machine(store: StateStore) -> Callable[..., Awaitable[Machine]]:
    """Factory: insert a machine row; keyword arguments override defaults."""

    async def _make(name: str = "web1", **overrides: Any) -> Machine:
        values: dict[str, Any] = {
            "name": name,
            "mac_address": generate_mac(),
            "memory": "2G",
            "cpus": 2,
            "cpu": "host",
            "disk_size": "20G",
            "drive_path": f"/var/lib/vmx/{name}.img",
            "disk_format": "raw",
            "version": "14.3-RELEASE",
            "status": VmStatus.STOPPED.value,
            "pid": 0,
        }
        values.update(overrides)
        return await store.machines.insert(**values)

    return _make


def make_process(pid: int = 4242, exit_code: int = 0, *, block: bool = False) -> MagicMock:
    """Fake engine process, usable as an asyncio child (foreground) or a ProcessWrapper (detached).

    With block=True, wait() does not return until ``proc.release.set()``.
    """
    proc = MagicMock()
    proc.pid = pid
    proc.returncode = None
    proc.write_stdin = AsyncMock()
    proc.release = asyncio.Event()

    async def wait(*_: Any) -> int:
        if block:
            await proc.release.wait()
        proc.returncode = exit_code
        return exit_code

    proc.wait = wait
    return proc


@pytest.fixture
def fake_process() -> Callable[..., MagicMock]:
    """Factory fixture around make_process."""
    return make_process
