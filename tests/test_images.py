"""Tests for ImageManager: tag, remove, push and pull workflows."""

from collections.abc import Awaitable, Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from vmx import constants
from vmx.exceptions import (
    AlreadyPulledError,
    ImageNotFoundError,
    PullImageError,
    PushImageError,
    RegistryError,
    ValidationError,
    VmNotFoundError,
)
from vmx.images import ImageManager, format_for_path
from vmx.models import Image, Machine
from vmx.settings import Settings
from vmx.store import StateStore

ImageFactory = Callable[..., Awaitable[Image]]
MachineFactory = Callable[..., Awaitable[Machine]]

REMOTE = "docker.io/freebsd:14.3-amd64"


def _manifest(digest: str, title: str = "freebsd.img.tar.gz") -> dict[str, object]:
    return {"layers": [{"digest": digest, "annotations": {constants.ANNOTATION_TITLE: title}}]}


def test_format_for_path() -> None:
    assert format_for_path("/a/data.qcow2") == "qcow2"
    assert format_for_path("/a/freebsd.img") == "raw"


# ============================================================================
# Tag
# ============================================================================


class TestTag:
    async def test_tags_instance_disk(
        self, images: ImageManager, make_machine: MachineFactory, tmp_path: Path
    ) -> None:
        disk = tmp_path / "web1.qcow2"
        disk.write_bytes(b"\x01" * 8192)
        await make_machine("web1", drive_path=str(disk), disk_format="qcow2")

        image = await images.tag("web1", "acme/web:v1")

        assert (image.repository, image.tag) == ("acme/web", "v1")
        assert image.path == str(disk)
        assert image.format == "qcow2"
        assert image.size > 0

    async def test_retag_updates_in_place(
        self, images: ImageManager, make_machine: MachineFactory, tmp_path: Path
    ) -> None:
        for name in ("a", "b"):
            disk = tmp_path / f"{name}.img"
            disk.write_bytes(b"x")
            await make_machine(name, drive_path=str(disk))

        first = await images.tag("a", "acme/web")
        second = await images.tag("b", "acme/web")

        assert second.id == first.id
        assert second.path.endswith("b.img")
        assert len(await images.list()) == 1

    async def test_unknown_instance(self, images: ImageManager) -> None:
        with pytest.raises(VmNotFoundError):
            await images.tag("ghost", "acme/web")

    async def test_instance_without_drive(self, images: ImageManager, make_machine: MachineFactory) -> None:
        await make_machine("diskless", drive_path=None)
        with pytest.raises(ValidationError, match="no drive"):
            await images.tag("diskless", "acme/web")

    async def test_invalid_ref(self, images: ImageManager, make_machine: MachineFactory) -> None:
        await make_machine("web1")
        with pytest.raises(ValidationError):
            await images.tag("web1", "not a ref")


# ============================================================================
# Remove
# ============================================================================


class TestRemove:
    async def test_cascades_volumes(
        self, images: ImageManager, store: StateStore, make_image: ImageFactory, tmp_path: Path
    ) -> None:
        image = await make_image()
        overlay = tmp_path / "data.qcow2"
        overlay.touch()
        await store.volumes.insert(name="data", base_image_id=image.id, path=str(overlay))

        removed = await images.remove("freebsd:14.3")

        assert removed.id == image.id
        assert await store.volumes.list() == []
        assert not overlay.exists()
        # Image file itself is kept
        assert Path(image.path).exists()

    async def test_missing(self, images: ImageManager) -> None:
        with pytest.raises(ImageNotFoundError):
            await images.remove("nope:1")


# ============================================================================
# Push
# ============================================================================


class TestPush:
    async def test_push_cleans_up_archive(self, images: ImageManager, make_image: ImageFactory) -> None:
        image = await make_image()
        archive = Path(image.path + ".tar.gz")

        async def fake_create_archive(settings: Settings, path: Path) -> Path:
            archive.write_bytes(b"tar")
            return archive

        with (
            patch("vmx.images.create_archive", side_effect=fake_create_archive),
            patch.object(images.registry, "push", AsyncMock()) as push,
        ):
            remote = await images.push("freebsd:14.3")

        assert remote == REMOTE
        push.assert_awaited_once_with(REMOTE, archive)
        assert not archive.exists()

    async def test_push_failure_still_cleans_up(self, images: ImageManager, make_image: ImageFactory) -> None:
        image = await make_image()
        archive = Path(image.path + ".tar.gz")

        async def fake_create_archive(settings: Settings, path: Path) -> Path:
            archive.write_bytes(b"tar")
            return archive

        with (
            patch("vmx.images.create_archive", side_effect=fake_create_archive),
            patch.object(images.registry, "push", AsyncMock(side_effect=RegistryError("upload failed"))),
        ):
            with pytest.raises(PushImageError, match="upload failed"):
                await images.push("freebsd:14.3")

        assert not archive.exists()

    async def test_push_missing_image(self, images: ImageManager) -> None:
        with pytest.raises(ImageNotFoundError):
            await images.push("nope:1")


# ============================================================================
# Pull
# ============================================================================


class TestPull:
    async def test_already_pulled_downloads_nothing(self, images: ImageManager, make_image: ImageFactory) -> None:
        existing = await make_image(digest="sha256:same")

        with (
            patch.object(images.registry, "fetch_digest", AsyncMock(return_value="sha256:same")),
            patch.object(images.registry, "pull", AsyncMock()) as pull,
        ):
            with pytest.raises(AlreadyPulledError) as exc_info:
                await images.pull("freebsd:14.3")

        pull.assert_not_awaited()
        assert exc_info.value.context["image_id"] == existing.id

    async def test_pull_saves_extracted_image(
        self, images: ImageManager, store: StateStore, settings: Settings
    ) -> None:
        images_dir = settings.images_dir
        archive = images_dir / "freebsd.img.tar.gz"
        disk = images_dir / "freebsd.img"

        async def fake_pull(remote: str, dest_dir: Path) -> None:
            (dest_dir / archive.name).write_bytes(b"tar")

        async def fake_extract(settings: Settings, path: Path) -> Path:
            disk.write_bytes(b"\x00" * 4096)
            return disk

        with (
            patch.object(images.registry, "fetch_digest", AsyncMock(return_value="sha256:new")),
            patch.object(images.registry, "fetch_manifest", AsyncMock(return_value=_manifest("sha256:new"))),
            patch.object(images.registry, "pull", AsyncMock(side_effect=fake_pull)) as pull,
            patch("vmx.images.extract_archive", side_effect=fake_extract),
        ):
            image = await images.pull("freebsd:14.3")

        pull.assert_awaited_once_with(REMOTE, images_dir)
        assert (image.repository, image.tag) == ("freebsd", "14.3")
        assert image.path == str(disk)
        assert image.format == "raw"
        assert image.digest == "sha256:new"
        assert not archive.exists()
        assert (await store.images.require("sha256:new")).id == image.id

    async def test_manifest_failure(self, images: ImageManager) -> None:
        with patch.object(images.registry, "fetch_digest", AsyncMock(side_effect=RegistryError("no such tag"))):
            with pytest.raises(PullImageError, match="no such tag"):
                await images.pull("freebsd:99")

    async def test_missing_archive_after_pull(self, images: ImageManager) -> None:
        with (
            patch.object(images.registry, "fetch_digest", AsyncMock(return_value="sha256:new")),
            patch.object(images.registry, "fetch_manifest", AsyncMock(return_value=_manifest("sha256:new"))),
            patch.object(images.registry, "pull", AsyncMock()),
        ):
            with pytest.raises(PullImageError, match="not found"):
                await images.pull("freebsd:14.3")

    async def test_invalid_ref(self, images: ImageManager) -> None:
        with pytest.raises(ValidationError):
            await images.pull("bad ref")
