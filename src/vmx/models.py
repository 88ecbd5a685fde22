"""Data models for vmx.

Records (Machine, Image, Volume) are immutable snapshots read from the
state store. Request models (MachineParams, NewMachine, NewVolume) are
validated before any state is touched.
"""

import re
from datetime import datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

from vmx import constants

MEMORY_PATTERN = re.compile(r"^\d+(M|G)$")
DISK_SIZE_PATTERN = re.compile(r"^\d+(M|G|T)$")
PORT_FORWARD_PATTERN = re.compile(r"^(\d+):(\d+)$")
IMAGE_REF_PATTERN = re.compile(r"^([a-zA-Z0-9\-\.]+(:\d+)?/)?([a-zA-Z0-9\-\._]+/)*[a-zA-Z0-9\-\._]+(:[\w\.\-]+)?$")


class VmStatus(str, Enum):
    """Persisted instance status."""

    RUNNING = "RUNNING"
    STOPPED = "STOPPED"


class DiskFormat(str, Enum):
    """Disk formats QEMU is told about via -drive format=."""

    RAW = "raw"
    QCOW2 = "qcow2"


class PortForward(BaseModel):
    """A single host-to-guest TCP forward (user-mode networking only)."""

    model_config = ConfigDict(frozen=True)

    host: int = Field(ge=1, le=65535)
    guest: int = Field(ge=1, le=65535)

    @classmethod
    def parse(cls, rule: str) -> Self:
        """Parse "HOST:GUEST" (e.g. "8080:80")."""
        match = PORT_FORWARD_PATTERN.match(rule.strip())
        if not match:
            raise ValueError(f"Invalid port forward rule '{rule}', expected HOST:GUEST")
        return cls(host=int(match.group(1)), guest=int(match.group(2)))

    @property
    def hostfwd(self) -> str:
        """QEMU user-netdev clause."""
        return f"hostfwd=tcp::{self.host}-:{self.guest}"

    def __str__(self) -> str:
        return f"{self.host}:{self.guest}"


def parse_port_forwards(value: str | None) -> list[PortForward]:
    """Parse a comma-separated rule list ("8080:80,2222:22"). Empty input yields []."""
    if not value:
        return []
    return [PortForward.parse(rule) for rule in value.split(",") if rule.strip()]


def format_port_forwards(rules: list[PortForward]) -> str | None:
    """Inverse of parse_port_forwards; None for no rules (stored as NULL)."""
    return ",".join(str(rule) for rule in rules) or None


class ImageRef(BaseModel):
    """A local image key: repository plus tag (tag defaults to "latest")."""

    model_config = ConfigDict(frozen=True)

    repository: str
    tag: str = constants.DEFAULT_TAG

    @classmethod
    def parse(cls, ref: str) -> Self:
        """Split "repo[:tag]". A colon inside a registry host (host:5000/repo) is not a tag."""
        if not IMAGE_REF_PATTERN.match(ref):
            raise ValueError(f"Invalid image reference '{ref}'")
        repository, sep, tag = ref.rpartition(":")
        if not sep or "/" in tag:
            return cls(repository=ref)
        return cls(repository=repository, tag=tag)

    def __str__(self) -> str:
        return f"{self.repository}:{self.tag}"


# ============================================================================
# Records
# ============================================================================


class Machine(BaseModel):
    """Persisted VM instance."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str
    bridge: str | None = None
    mac_address: str
    memory: str
    cpus: int
    cpu: str
    disk_size: str
    drive_path: str | None = None
    version: str
    disk_format: str | None = None
    iso_path: str | None = None
    status: VmStatus
    pid: int | None = None
    port_forward: str | None = None
    volume: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def port_forwards(self) -> list[PortForward]:
        return parse_port_forwards(self.port_forward)

    @property
    def is_running(self) -> bool:
        return self.status is VmStatus.RUNNING


class Image(BaseModel):
    """Local disk image known to the catalog."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    repository: str
    tag: str
    size: int
    path: str
    format: str = DiskFormat.QCOW2.value
    digest: str | None = None
    created_at: datetime

    @property
    def ref(self) -> ImageRef:
        return ImageRef(repository=self.repository, tag=self.tag)


class Volume(BaseModel):
    """Copy-on-write disk chained to a base image's file."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: str
    name: str
    base_image_id: str
    path: str
    size: str | None = None
    created_at: datetime


# ============================================================================
# Requests
# ============================================================================


class MachineParams(BaseModel):
    """Caller-supplied overrides layered onto a stored instance at start.

    Every field is optional; None means "keep the stored value".

    Attributes:
        cpu: QEMU -cpu model.
        cpus: Core count, at least 1.
        memory: Guest memory such as "2G" or "512M".
        port_forward: Comma-separated HOST:GUEST rules for user-mode networking.
        drive_path: Disk image path.
        disk_format: Disk format for -drive (raw or qcow2).
        bridge: Host bridge name; enables bridged networking (requires sudo).
        disk_size: Nominal disk size recorded on the instance.
        volume: Volume name to boot from, created from the instance's base image if missing.
        volume_size: Size for a newly created volume such as "40G".
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    cpu: str | None = None
    cpus: int | None = Field(default=None, ge=1)
    memory: str | None = Field(default=None, pattern=MEMORY_PATTERN.pattern)
    port_forward: str | None = None
    drive_path: str | None = None
    disk_format: DiskFormat | None = None
    bridge: str | None = None
    disk_size: str | None = Field(default=None, pattern=DISK_SIZE_PATTERN.pattern)
    volume: str | None = None
    volume_size: str | None = Field(default=None, pattern=DISK_SIZE_PATTERN.pattern)

    @field_validator("port_forward")
    @classmethod
    def validate_port_forward(cls, v: str | None) -> str | None:
        """Normalize and validate each HOST:GUEST rule."""
        if v is None:
            return None
        return format_port_forwards(parse_port_forwards(v))

    def apply(self, machine: Machine) -> Machine:
        """Return the effective configuration: stored record with overrides on top."""
        updates = {
            field: value
            for field in ("cpu", "cpus", "memory", "port_forward", "drive_path", "bridge", "disk_size")
            if (value := getattr(self, field)) is not None
        }
        if self.disk_format is not None:
            updates["disk_format"] = self.disk_format.value
        return machine.model_copy(update=updates)


class NewMachine(BaseModel):
    """Request to create an instance from a local image."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    image: str = Field(description="Image reference (repo[:tag]), id or digest")
    name: str | None = Field(default=None, pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")
    cpu: str = constants.DEFAULT_CPU
    cpus: int = Field(default=constants.DEFAULT_CPUS, ge=1)
    memory: str = Field(default=constants.DEFAULT_MEMORY, pattern=MEMORY_PATTERN.pattern)
    disk_size: str = Field(default=constants.DEFAULT_DISK_SIZE, pattern=DISK_SIZE_PATTERN.pattern)
    port_forward: str | None = None
    bridge: str | None = None
    volume: str | None = None
    volume_size: str | None = Field(default=None, pattern=DISK_SIZE_PATTERN.pattern)

    @field_validator("port_forward")
    @classmethod
    def validate_port_forward(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return format_port_forwards(parse_port_forwards(v))


class NewVolume(BaseModel):
    """Request to create a volume from a local image."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(pattern=r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")
    image: str = Field(description="Base image reference, id or digest")
    size: str | None = Field(default=None, pattern=DISK_SIZE_PATTERN.pattern)
