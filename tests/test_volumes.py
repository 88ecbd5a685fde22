"""Tests for VolumeManager (qemu-img is patched out)."""

from collections.abc import Awaitable, Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from vmx.exceptions import ImageNotFoundError, VolumeError, VolumeNotFoundError
from vmx.models import Image, NewVolume
from vmx.store import StateStore
from vmx.subprocess_utils import CommandResult
from vmx.volumes import VolumeManager

ImageFactory = Callable[..., Awaitable[Image]]


def _qemu_img(returncode: int = 0, stderr: str = "", *, touch: bool = True) -> AsyncMock:
    """Fake run_command for qemu-img create; writes the overlay file like the real tool."""

    async def run(argv: list[str]) -> CommandResult:
        if returncode == 0 and touch:
            Path(argv[argv.index("-b") + 2]).touch()
        return CommandResult(argv=tuple(argv), returncode=returncode, stdout="", stderr=stderr)

    return AsyncMock(side_effect=run)


class TestCreate:
    async def test_creates_overlay_on_base(self, volumes: VolumeManager, make_image: ImageFactory) -> None:
        base = await make_image(format="raw")
        fake = _qemu_img()

        with patch("vmx.volumes.run_command", fake):
            volume = await volumes.create(NewVolume(name="data", image="freebsd:14.3", size="40G"))

        path = volumes.volume_path("data")
        fake.assert_awaited_once_with(
            ["qemu-img", "create", "-F", "raw", "-f", "qcow2", "-b", base.path, str(path), "40G"]
        )
        assert volume.name == "data"
        assert volume.base_image_id == base.id
        assert volume.path == str(path)
        assert volume.size == "40G"

    async def test_without_size(self, volumes: VolumeManager, make_image: ImageFactory) -> None:
        base = await make_image(format="qcow2")
        fake = _qemu_img()

        with patch("vmx.volumes.run_command", fake):
            await volumes.create_if_missing("data", base)

        argv = fake.await_args.args[0]
        assert argv[2:4] == ["-F", "qcow2"]
        assert argv[-1].endswith("data.qcow2")

    async def test_idempotent(self, volumes: VolumeManager, store: StateStore, make_image: ImageFactory) -> None:
        base = await make_image()
        fake = _qemu_img()

        with patch("vmx.volumes.run_command", fake):
            first = await volumes.create_if_missing("data", base)
            second = await volumes.create_if_missing("data", base)

        assert first == second
        assert fake.await_count == 1
        assert len(await store.volumes.list()) == 1

    async def test_adopts_file_without_row(self, volumes: VolumeManager, make_image: ImageFactory) -> None:
        base = await make_image()
        path = volumes.volume_path("leftover")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.touch()
        fake = _qemu_img()

        with patch("vmx.volumes.run_command", fake):
            volume = await volumes.create_if_missing("leftover", base)

        fake.assert_not_awaited()
        assert volume.path == str(path)

    async def test_qemu_img_failure(self, volumes: VolumeManager, store: StateStore, make_image: ImageFactory) -> None:
        base = await make_image()

        with patch("vmx.volumes.run_command", _qemu_img(returncode=1, stderr="backing file missing")):
            with pytest.raises(VolumeError, match="backing file missing") as exc_info:
                await volumes.create_if_missing("data", base)

        assert exc_info.value.context["returncode"] == 1
        assert await store.volumes.list() == []

    async def test_missing_image(self, volumes: VolumeManager) -> None:
        with pytest.raises(ImageNotFoundError):
            await volumes.create(NewVolume(name="data", image="nope:1"))


class TestDelete:
    async def test_removes_row_and_file(self, volumes: VolumeManager, make_image: ImageFactory) -> None:
        base = await make_image()
        with patch("vmx.volumes.run_command", _qemu_img()):
            volume = await volumes.create_if_missing("data", base)
        assert Path(volume.path).exists()

        await volumes.delete("data")

        assert not Path(volume.path).exists()
        with pytest.raises(VolumeNotFoundError):
            await volumes.get("data")

    async def test_missing_volume(self, volumes: VolumeManager) -> None:
        with pytest.raises(VolumeNotFoundError):
            await volumes.delete("ghost")
