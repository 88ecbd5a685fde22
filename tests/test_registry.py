"""Tests for the oras-backed RegistryClient and tar archive helpers."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from vmx import constants
from vmx.exceptions import RegistryError
from vmx.models import ImageRef
from vmx.platform_utils import HostArch
from vmx.registry import (
    RegistryClient,
    archive_path_for,
    create_archive,
    extract_archive,
    extracted_path_for,
    format_repository,
)
from vmx.settings import Settings
from vmx.subprocess_utils import CommandResult

REMOTE = "docker.io/acme/freebsd:14.3-amd64"


def _result(returncode: int = 0, stdout: str = "", stderr: str = "") -> CommandResult:
    return CommandResult(argv=("oras",), returncode=returncode, stdout=stdout, stderr=stderr)


def _manifest(digest: str = "sha256:abc", title: str | None = "freebsd.img.tar.gz") -> str:
    layer: dict[str, object] = {"digest": digest, "mediaType": "application/vnd.oci.image.layer.v1.tar"}
    if title is not None:
        layer["annotations"] = {constants.ANNOTATION_TITLE: title}
    return json.dumps({"schemaVersion": 2, "layers": [layer]})


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(constants, "REGISTRY_RETRY_MIN_SECONDS", 0)
    monkeypatch.setattr(constants, "REGISTRY_RETRY_MAX_SECONDS", 0)


# ============================================================================
# References
# ============================================================================


class TestReferences:
    @pytest.mark.parametrize(
        ("repository", "expected"),
        [
            ("freebsd", "docker.io/freebsd"),
            ("acme/freebsd", "docker.io/acme/freebsd"),
            ("ghcr.io/acme/freebsd", "ghcr.io/acme/freebsd"),
            ("localhost:5000/freebsd", "localhost:5000/freebsd"),
            ("localhost/freebsd", "localhost/freebsd"),
        ],
    )
    def test_format_repository(self, repository: str, expected: str) -> None:
        assert format_repository(repository) == expected

    def test_remote_ref_carries_arch(self, settings: Settings) -> None:
        ref = ImageRef(repository="acme/freebsd", tag="14.3")
        assert RegistryClient(settings, HostArch.X86_64).remote_ref(ref) == REMOTE
        assert RegistryClient(settings, HostArch.AARCH64).remote_ref(ref) == "docker.io/acme/freebsd:14.3-arm64"

    def test_custom_default_registry(self, tmp_path: Path) -> None:
        settings = Settings(config_dir=tmp_path, default_registry="registry.example.com")
        client = RegistryClient(settings, HostArch.X86_64)
        assert client.remote_ref(ImageRef(repository="bsd")) == "registry.example.com/bsd:latest-amd64"


# ============================================================================
# Manifests
# ============================================================================


class TestFetchManifest:
    async def test_decodes_manifest(self, registry: RegistryClient) -> None:
        with patch("vmx.registry.run_command", AsyncMock(return_value=_result(stdout=_manifest()))) as run:
            manifest = await registry.fetch_manifest(REMOTE)

        run.assert_awaited_once_with(["oras", "manifest", "fetch", REMOTE])
        assert registry.layer_digest(manifest, REMOTE) == "sha256:abc"
        assert registry.layer_title(manifest, REMOTE) == "freebsd.img.tar.gz"

    async def test_retries_transient_failure(self, registry: RegistryClient) -> None:
        responses = [_result(returncode=1, stderr="timeout"), _result(stdout=_manifest(digest="sha256:ok"))]
        with patch("vmx.registry.run_command", AsyncMock(side_effect=responses)) as run:
            assert await registry.fetch_digest(REMOTE) == "sha256:ok"
        assert run.await_count == 2

    async def test_gives_up_after_attempts(self, registry: RegistryClient, settings: Settings) -> None:
        with patch("vmx.registry.run_command", AsyncMock(return_value=_result(returncode=1, stderr="denied"))) as run:
            with pytest.raises(RegistryError) as exc_info:
                await registry.fetch_manifest(REMOTE)

        assert run.await_count == settings.registry_manifest_attempts
        assert exc_info.value.cause == "denied"

    async def test_invalid_json(self, registry: RegistryClient) -> None:
        with patch("vmx.registry.run_command", AsyncMock(return_value=_result(stdout="not json"))):
            with pytest.raises(RegistryError, match="Invalid manifest"):
                await registry.fetch_manifest(REMOTE)

    def test_missing_title_is_error(self, registry: RegistryClient) -> None:
        manifest = json.loads(_manifest(title=None))
        with pytest.raises(RegistryError, match="annotation"):
            registry.layer_title(manifest, REMOTE)

    def test_title_cannot_escape_directory(self, registry: RegistryClient) -> None:
        manifest = json.loads(_manifest(title="../../etc/evil.tar.gz"))
        assert registry.layer_title(manifest, REMOTE) == "evil.tar.gz"

    def test_no_layers(self, registry: RegistryClient) -> None:
        with pytest.raises(RegistryError, match="no layers"):
            registry.layer_digest({"layers": []}, REMOTE)


# ============================================================================
# Push / pull
# ============================================================================


class TestTransfer:
    async def test_push_argv(self, registry: RegistryClient, tmp_path: Path) -> None:
        archive = tmp_path / "freebsd.img.tar.gz"
        with patch("vmx.registry.stream_command", AsyncMock(return_value=_result())) as stream:
            await registry.push(REMOTE, archive)

        argv = stream.await_args.args[0]
        assert argv[:3] == ["oras", "push", REMOTE]
        assert argv[argv.index("--artifact-type") + 1] == constants.ARTIFACT_TYPE
        assert f"{constants.ANNOTATION_ARCHITECTURE}=amd64" in argv
        assert f"{constants.ANNOTATION_OS}=freebsd" in argv
        assert argv[-1] == "freebsd.img.tar.gz"
        assert stream.await_args.kwargs["cwd"] == tmp_path

    async def test_push_failure(self, registry: RegistryClient, tmp_path: Path) -> None:
        with patch("vmx.registry.stream_command", AsyncMock(return_value=_result(returncode=1, stderr="401"))):
            with pytest.raises(RegistryError) as exc_info:
                await registry.push(REMOTE, tmp_path / "a.tar.gz")
        assert exc_info.value.context["returncode"] == 1

    async def test_pull_runs_in_dest_dir(self, registry: RegistryClient, tmp_path: Path) -> None:
        with patch("vmx.registry.stream_command", AsyncMock(return_value=_result())) as stream:
            await registry.pull(REMOTE, tmp_path)

        assert stream.await_args.args[0] == ["oras", "pull", REMOTE]
        assert stream.await_args.kwargs["cwd"] == tmp_path


# ============================================================================
# Archives
# ============================================================================


class TestArchives:
    def test_paths(self) -> None:
        disk = Path("/images/freebsd.img")
        archive = archive_path_for(disk)
        assert archive == Path("/images/freebsd.img.tar.gz")
        assert extracted_path_for(archive) == disk

    async def test_create_archive_argv(self, settings: Settings) -> None:
        with patch("vmx.registry.run_command", AsyncMock(return_value=_result())) as run:
            archive = await create_archive(settings, Path("/images/freebsd.img"))

        assert archive == Path("/images/freebsd.img.tar.gz")
        run.assert_awaited_once_with(["tar", "-cSzf", "/images/freebsd.img.tar.gz", "-C", "/images", "freebsd.img"])

    async def test_extract_archive(self, settings: Settings) -> None:
        with patch("vmx.registry.run_command", AsyncMock(return_value=_result())) as run:
            disk = await extract_archive(settings, Path("/images/freebsd.img.tar.gz"))

        assert disk == Path("/images/freebsd.img")
        run.assert_awaited_once_with(["tar", "-xSzf", "/images/freebsd.img.tar.gz", "-C", "/images"])

    async def test_extract_failure(self, settings: Settings) -> None:
        with patch("vmx.registry.run_command", AsyncMock(return_value=_result(returncode=2, stderr="corrupt"))):
            with pytest.raises(RegistryError, match="extract"):
                await extract_archive(settings, Path("/images/x.tar.gz"))
