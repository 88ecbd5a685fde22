"""vmx: container-style lifecycle management for QEMU virtual machines.

Tracks instances, disk images and copy-on-write volumes in a SQLite state
file, supervises the QEMU process, and moves images through an OCI
registry with oras.

Quick Start:
    ```python
    from vmx import NewMachine, Vmx

    async with Vmx() as vmx:
        result = await vmx.lifecycle.run(
            NewMachine(image="ghcr.io/acme/freebsd:14.3", memory="4G", port_forward="2222:22"),
            detach=True,
        )
        print(result.machine.name, result.log_path)
    ```

Requirements:
    - QEMU with KVM (Linux) or HVF (macOS)
    - oras for push/pull
    - Python 3.12+
"""

from vmx.client import Vmx
from vmx.exceptions import (
    AlreadyPulledError,
    AlreadyRunningError,
    ImageNotFoundError,
    InvocationError,
    MigrationError,
    NotFoundError,
    PullImageError,
    PushImageError,
    RegistryError,
    RemoveRunningVmError,
    StopFailedError,
    StorageError,
    ValidationError,
    VmNotFoundError,
    VmxError,
    VolumeError,
    VolumeNotFoundError,
)
from vmx.lifecycle import StartResult
from vmx.models import (
    DiskFormat,
    Image,
    ImageRef,
    Machine,
    MachineParams,
    NewMachine,
    NewVolume,
    PortForward,
    VmStatus,
    Volume,
)
from vmx.settings import Settings
from vmx.store import StateStore

__all__ = [
    "AlreadyPulledError",
    "AlreadyRunningError",
    "DiskFormat",
    "Image",
    "ImageNotFoundError",
    "ImageRef",
    "InvocationError",
    "Machine",
    "MachineParams",
    "MigrationError",
    "NewMachine",
    "NewVolume",
    "NotFoundError",
    "PortForward",
    "PullImageError",
    "PushImageError",
    "RegistryError",
    "RemoveRunningVmError",
    "Settings",
    "StartResult",
    "StateStore",
    "StopFailedError",
    "StorageError",
    "ValidationError",
    "VmNotFoundError",
    "VmStatus",
    "Vmx",
    "VmxError",
    "Volume",
    "VolumeError",
    "VolumeNotFoundError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("vmx")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
