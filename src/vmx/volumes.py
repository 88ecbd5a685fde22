"""Copy-on-write volumes backed by a base image.

A volume is a qcow2 overlay whose backing file is its base image's disk;
guest writes land in the overlay and unmodified reads fall through to
the base. The VolumeManager is the only writer of volume rows.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from vmx import constants
from vmx._logging import get_logger
from vmx.exceptions import StorageError, VolumeError
from vmx.models import DiskFormat
from vmx.resource_cleanup import cleanup_file
from vmx.subprocess_utils import run_command

if TYPE_CHECKING:
    from vmx.models import Image, NewVolume, Volume
    from vmx.settings import Settings
    from vmx.store import StateStore

logger = get_logger(__name__)


class VolumeManager:
    """Creates, lists and deletes copy-on-write volumes."""

    def __init__(self, store: StateStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._locks: dict[str, asyncio.Lock] = {}

    def volume_path(self, name: str) -> Path:
        return self.settings.volumes_dir / f"{name}{constants.VOLUME_SUFFIX}"

    async def list(self) -> list[Volume]:
        return await self.store.volumes.list()

    async def get(self, key: str) -> Volume:
        """Volume by name, id or path.

        Raises:
            VolumeNotFoundError: No such volume
        """
        return await self.store.volumes.require(key)

    async def create(self, request: NewVolume) -> Volume:
        """Create a named volume from an image reference.

        Raises:
            ImageNotFoundError: Base image is not present locally
            VolumeError: qemu-img failed
        """
        base = await self.store.images.require(request.image)
        return await self.create_if_missing(request.name, base, request.size)

    async def create_if_missing(self, name: str, base_image: Image, size: str | None = None) -> Volume:
        """Return the volume called name, materializing it from base_image on first use.

        Idempotent: when the overlay file already exists its row is returned
        unchanged and qemu-img is not run again. An overlay file left without
        a row (e.g. by an interrupted run) is adopted.

        Raises:
            VolumeError: qemu-img could not create the overlay
            StorageError: Row insert failed (the new overlay file is removed)
        """
        lock = self._locks.setdefault(name, asyncio.Lock())
        async with lock:
            path = self.volume_path(name)

            if await aiofiles.os.path.exists(path):
                existing = await self.store.volumes.get(name)
                if existing is not None:
                    return existing
                logger.warning(
                    "Adopting volume file without a state record",
                    extra={"context_id": name, "path": str(path)},
                )
                created_file = False
            else:
                await self._create_overlay(name, path, base_image, size)
                created_file = True

            try:
                volume = await self.store.volumes.insert(
                    name=name,
                    base_image_id=base_image.id,
                    path=str(path),
                    size=size,
                )
            except StorageError:
                if created_file:
                    await cleanup_file(path, name, "volume overlay")
                raise

        logger.info(
            f"Created volume {name}",
            extra={"context_id": name, "base_image": str(base_image.ref), "path": str(path), "size": size},
        )
        return volume

    async def _create_overlay(self, name: str, path: Path, base_image: Image, size: str | None) -> None:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)

        backing_format = base_image.format or DiskFormat.RAW.value
        argv = [
            self.settings.qemu_img_bin,
            "create",
            "-F",
            backing_format,
            "-f",
            DiskFormat.QCOW2.value,
            "-b",
            base_image.path,
            str(path),
        ]
        if size:
            argv.append(size)

        result = await run_command(argv)
        if not result.ok:
            raise VolumeError(
                f"qemu-img create failed for volume {name}: {result.stderr.strip()}",
                context={"name": name, "path": str(path), "returncode": result.returncode, "stderr": result.stderr[:500]},
            )

    async def delete(self, key: str) -> Volume:
        """Delete a volume row and, best-effort, its overlay file.

        Raises:
            VolumeNotFoundError: No such volume
        """
        volume = await self.store.volumes.require(key)
        await self.store.volumes.delete(volume.id)
        await cleanup_file(volume.path, volume.name, "volume overlay")
        logger.info(f"Deleted volume {volume.name}", extra={"context_id": volume.name})
        return volume
