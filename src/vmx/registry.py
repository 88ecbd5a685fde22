"""OCI registry access through the oras CLI, plus the tar archive format images travel in.

Disk images are pushed as a single gzip'd sparse tar layer tagged
``<repository>:<tag>-<arch>``. The manifest's first layer carries the
content digest and the archive's filename (title annotation); both are
required when pulling.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from vmx import constants
from vmx._logging import get_logger
from vmx.exceptions import RegistryError
from vmx.platform_utils import HostArch, registry_arch
from vmx.subprocess_utils import run_command, stream_command

if TYPE_CHECKING:
    from vmx.models import ImageRef
    from vmx.settings import Settings

logger = get_logger(__name__)

# "<host>/<path>" where host looks like a registry (has a dot or port, or is localhost)
_REGISTRY_HOST = re.compile(r"^(?:[^/]+\.[^/]+|[^/]+:\d+|localhost)/.+")


def format_repository(repository: str, default_registry: str = constants.DEFAULT_REGISTRY) -> str:
    """Prefix repositories that name no registry host with the default registry."""
    if _REGISTRY_HOST.match(repository):
        return repository
    return f"{default_registry}/{repository}"


class RegistryClient:
    """Thin async wrapper over ``oras`` for one host architecture."""

    def __init__(self, settings: Settings, arch: HostArch) -> None:
        self.settings = settings
        self.arch = arch

    @property
    def arch_name(self) -> str:
        return registry_arch(self.arch)

    def remote_ref(self, ref: ImageRef) -> str:
        """Architecture-qualified remote reference, e.g. docker.io/acme/bsd:14.3-arm64."""
        repository = format_repository(ref.repository, self.settings.default_registry)
        return f"{repository}:{ref.tag}-{self.arch_name}"

    async def fetch_manifest(self, remote: str) -> dict[str, Any]:
        """Fetch and decode an OCI manifest, retrying transient failures.

        Raises:
            RegistryError: oras failed on every attempt or returned invalid JSON
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.registry_manifest_attempts),
            wait=wait_random_exponential(
                min=constants.REGISTRY_RETRY_MIN_SECONDS,
                max=constants.REGISTRY_RETRY_MAX_SECONDS,
            ),
            retry=retry_if_exception_type(RegistryError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                result = await run_command([self.settings.oras_bin, "manifest", "fetch", remote])
                if not result.ok:
                    raise RegistryError(
                        f"Failed to fetch manifest for {remote}",
                        context={"remote": remote, "returncode": result.returncode},
                        cause=result.stderr.strip(),
                    )
        try:
            manifest = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise RegistryError(f"Invalid manifest for {remote}", context={"remote": remote}, cause=e) from e
        if not isinstance(manifest, dict):
            raise RegistryError(f"Invalid manifest for {remote}", context={"remote": remote})
        return manifest

    @staticmethod
    def first_layer(manifest: dict[str, Any], remote: str) -> dict[str, Any]:
        """The sole content layer of a manifest.

        Raises:
            RegistryError: Manifest has no layers
        """
        layers = manifest.get("layers")
        if not isinstance(layers, list) or not layers or not isinstance(layers[0], dict):
            raise RegistryError(f"Manifest for {remote} has no layers", context={"remote": remote})
        return layers[0]

    @classmethod
    def layer_digest(cls, manifest: dict[str, Any], remote: str) -> str:
        digest = cls.first_layer(manifest, remote).get("digest")
        if not digest:
            raise RegistryError(f"Manifest layer for {remote} has no digest", context={"remote": remote})
        return str(digest)

    @classmethod
    def layer_title(cls, manifest: dict[str, Any], remote: str) -> str:
        """Filename the layer is stored under; absent annotation is a hard failure."""
        annotations = cls.first_layer(manifest, remote).get("annotations") or {}
        title = annotations.get(constants.ANNOTATION_TITLE)
        if not title:
            raise RegistryError(
                f"Manifest layer for {remote} is missing the {constants.ANNOTATION_TITLE} annotation",
                context={"remote": remote},
            )
        return Path(str(title)).name  # never escape the download directory

    async def fetch_digest(self, remote: str) -> str:
        return self.layer_digest(await self.fetch_manifest(remote), remote)

    async def push(self, remote: str, archive: Path) -> None:
        """Upload archive as the single layer of remote.

        Raises:
            RegistryError: oras push exited non-zero
        """
        argv = [
            self.settings.oras_bin,
            "push",
            remote,
            "--artifact-type",
            constants.ARTIFACT_TYPE,
            "--annotation",
            f"{constants.ANNOTATION_ARCHITECTURE}={self.arch_name}",
            "--annotation",
            f"{constants.ANNOTATION_OS}={self.settings.image_os}",
            "--annotation",
            f"{constants.ANNOTATION_DESCRIPTION}={self.settings.image_description}",
            archive.name,
        ]
        result = await stream_command(argv, process_name="oras push", context_id=remote, cwd=archive.parent)
        if not result.ok:
            raise RegistryError(
                f"oras push to {remote} failed",
                context={"remote": remote, "returncode": result.returncode},
                cause=result.stderr.strip(),
            )

    async def pull(self, remote: str, dest_dir: Path) -> None:
        """Download remote's layer into dest_dir.

        Raises:
            RegistryError: oras pull exited non-zero
        """
        argv = [self.settings.oras_bin, "pull", remote]
        result = await stream_command(argv, process_name="oras pull", context_id=remote, cwd=dest_dir)
        if not result.ok:
            raise RegistryError(
                f"oras pull of {remote} failed",
                context={"remote": remote, "returncode": result.returncode},
                cause=result.stderr.strip(),
            )


def archive_path_for(path: Path) -> Path:
    return path.with_name(path.name + constants.ARCHIVE_SUFFIX)


def extracted_path_for(archive: Path) -> Path:
    name = archive.name
    if name.endswith(constants.ARCHIVE_SUFFIX):
        name = name[: -len(constants.ARCHIVE_SUFFIX)]
    return archive.with_name(name)


async def create_archive(settings: Settings, path: Path) -> Path:
    """Pack path into a sparse-aware gzip tar beside it (``<path>.tar.gz``).

    Raises:
        RegistryError: tar exited non-zero
    """
    archive = archive_path_for(path)
    result = await run_command([settings.tar_bin, "-cSzf", str(archive), "-C", str(path.parent), path.name])
    if not result.ok:
        raise RegistryError(
            f"Failed to archive {path}",
            context={"path": str(path), "returncode": result.returncode},
            cause=result.stderr.strip(),
        )
    return archive


async def extract_archive(settings: Settings, archive: Path) -> Path:
    """Unpack archive next to itself and return the extracted disk path.

    Raises:
        RegistryError: tar exited non-zero
    """
    result = await run_command([settings.tar_bin, "-xSzf", str(archive), "-C", str(archive.parent)])
    if not result.ok:
        raise RegistryError(
            f"Failed to extract {archive}",
            context={"archive": str(archive), "returncode": result.returncode},
            cause=result.stderr.strip(),
        )
    return extracted_path_for(archive)
