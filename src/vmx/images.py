"""Local image catalog and the registry push/pull workflow.

Images are keyed by (repository, tag). A reference string may also be an
image id or a content digest. The ImageManager is the only writer of
image rows; every write goes through the store's upsert so saving the
same repository:tag twice leaves one row carrying the latest values.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles.os

from vmx._logging import get_logger
from vmx.exceptions import (
    AlreadyPulledError,
    PullImageError,
    PushImageError,
    RegistryError,
    ValidationError,
)
from vmx.models import DiskFormat, ImageRef
from vmx.registry import create_archive, extract_archive
from vmx.resource_cleanup import cleanup_file

if TYPE_CHECKING:
    from vmx.models import Image
    from vmx.registry import RegistryClient
    from vmx.settings import Settings
    from vmx.store import StateStore

logger = get_logger(__name__)


def parse_ref(ref: str) -> ImageRef:
    """ImageRef.parse with the error surfaced as a vmx ValidationError."""
    try:
        return ImageRef.parse(ref)
    except ValueError as e:
        raise ValidationError(str(e), context={"ref": ref}) from e


def format_for_path(path: Path | str) -> str:
    """qcow2 when the file says so by extension, raw otherwise."""
    return DiskFormat.QCOW2.value if str(path).endswith(".qcow2") else DiskFormat.RAW.value


async def disk_usage(path: Path | str) -> int:
    """Bytes actually allocated on disk (sparse files count only written blocks)."""
    stat = await aiofiles.os.stat(path)
    return stat.st_blocks * 512


class ImageManager:
    """Catalog of local images plus push/pull against an OCI registry."""

    def __init__(self, store: StateStore, settings: Settings, registry: RegistryClient) -> None:
        self.store = store
        self.settings = settings
        self.registry = registry

    async def list(self) -> list[Image]:
        return await self.store.images.list()

    async def get(self, key: str) -> Image:
        """Image by repository[:tag], id or digest.

        Raises:
            ImageNotFoundError: No such image
        """
        return await self.store.images.require(key)

    async def save(self, ref: ImageRef, path: Path | str, disk_format: str, digest: str | None = None) -> Image:
        """Upsert an image row for a disk file, measuring its on-disk size."""
        try:
            size = await disk_usage(path)
        except OSError as e:
            raise ValidationError(f"Image file {path} is not readable: {e}", context={"path": str(path)}) from e
        image = await self.store.images.upsert(
            repository=ref.repository,
            tag=ref.tag,
            size=size,
            path=str(path),
            format=disk_format,
            digest=digest,
        )
        logger.debug(f"Saved image {ref}", extra={"context_id": str(ref), "size": size, "path": str(path)})
        return image

    async def tag(self, vm_key: str, target: str) -> Image:
        """Record an instance's disk as repository[:tag].

        Raises:
            VmNotFoundError: No such instance
            ValidationError: Bad reference, or the instance has no disk
        """
        ref = parse_ref(target)
        machine = await self.store.machines.require(vm_key)
        if not machine.drive_path:
            raise ValidationError(
                f"Virtual machine {machine.name} has no drive to tag",
                context={"vm": machine.name},
            )
        disk_format = machine.disk_format or DiskFormat.RAW.value
        image = await self.save(ref, machine.drive_path, disk_format)
        logger.info(f"Tagged {machine.name} as {ref}", extra={"context_id": str(ref), "vm": machine.name})
        return image

    async def remove(self, key: str) -> Image:
        """Delete an image row by repository[:tag] or id.

        Dependent volume rows cascade with it; their overlay files are removed
        best-effort since they cannot boot without the base row. The image
        file itself is left in place because instances may still use it as
        their drive.

        Raises:
            ImageNotFoundError: No such image
        """
        image = await self.store.images.require(key)
        volumes = await self.store.volumes.list_by_image(image.id)
        await self.store.images.delete(image.id)
        for volume in volumes:
            await cleanup_file(volume.path, volume.name, "orphaned volume overlay")
        logger.info(
            f"Removed image {image.ref}",
            extra={"context_id": str(image.ref), "cascaded_volumes": [v.name for v in volumes]},
        )
        return image

    async def push(self, ref_str: str) -> str:
        """Archive a local image and upload it as <repository>:<tag>-<arch>.

        The archive is removed afterwards whether or not the upload succeeded.

        Returns:
            The remote reference pushed

        Raises:
            ImageNotFoundError: Image is not present locally
            PushImageError: Archiving or upload failed
        """
        image = await self.store.images.require(ref_str)
        remote = self.registry.remote_ref(image.ref)
        archive: Path | None = None

        try:
            logger.info(f"Pushing {image.ref} to {remote}", extra={"context_id": remote})
            archive = await create_archive(self.settings, Path(image.path))
            await self.registry.push(remote, archive)
        except RegistryError as e:
            raise PushImageError(f"Failed to push {image.ref}: {e.message}", context=e.context, cause=e.cause) from e
        finally:
            if archive is not None:
                await cleanup_file(archive, remote, "push archive")

        return remote

    async def pull(self, ref_str: str) -> Image:
        """Download an image unless a local image already has the remote layer digest.

        Raises:
            ValidationError: Bad reference
            AlreadyPulledError: Matching digest already present; nothing was downloaded
            PullImageError: Manifest, download or extraction failed
        """
        ref = parse_ref(ref_str)
        remote = self.registry.remote_ref(ref)
        images_dir = self.settings.images_dir
        await aiofiles.os.makedirs(images_dir, exist_ok=True)

        try:
            digest = await self.registry.fetch_digest(remote)
        except RegistryError as e:
            raise PullImageError(f"Failed to resolve {remote}: {e.message}", context=e.context, cause=e.cause) from e

        existing = await self.store.images.get(digest)
        if existing is not None:
            raise AlreadyPulledError(
                f"Image {ref} is already up to date ({digest})",
                context={"ref": str(ref), "digest": digest, "image_id": existing.id},
            )

        try:
            logger.info(f"Pulling {remote}", extra={"context_id": remote})
            await self.registry.pull(remote, images_dir)
            manifest = await self.registry.fetch_manifest(remote)
            archive = images_dir / self.registry.layer_title(manifest, remote)
            if not await aiofiles.os.path.exists(archive):
                raise RegistryError(
                    f"Pulled archive not found at {archive}",
                    context={"remote": remote, "path": str(archive)},
                )
            disk_path = await extract_archive(self.settings, archive)
        except RegistryError as e:
            raise PullImageError(f"Failed to pull {ref}: {e.message}", context=e.context, cause=e.cause) from e

        # Digest is re-read after the transfer so the row records what was downloaded
        try:
            digest = await self.registry.fetch_digest(remote)
        except RegistryError as e:
            logger.warning(
                "Digest re-check failed, keeping pre-download digest",
                extra={"context_id": remote, "error": e.message},
            )

        image = await self.save(ref, disk_path, format_for_path(disk_path), digest)
        await cleanup_file(archive, remote, "pull archive")
        logger.info(f"Pulled {ref}", extra={"context_id": remote, "digest": digest, "path": str(disk_path)})
        return image
