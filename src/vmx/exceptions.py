"""Exception hierarchy for vmx.

Every operation either returns the affected record or raises exactly one
of the classes below; callers such as the CLI map them to messages and
status codes.

Hierarchy:
    VmxError (base)
    ├── NotFoundError
    │   ├── VmNotFoundError            ← no instance with that name/id
    │   ├── ImageNotFoundError         ← no image with that ref/id/digest
    │   └── VolumeNotFoundError        ← no volume with that name/id/path
    ├── AlreadyRunningError            ← start on a RUNNING instance
    ├── AlreadyPulledError             ← remote digest already present locally
    ├── RemoveRunningVmError           ← remove on a RUNNING instance
    ├── StopFailedError                ← neither TERM nor KILL could be delivered
    ├── RegistryError                  ← manifest fetch / push / pull failure
    │   ├── PushImageError
    │   └── PullImageError
    ├── StorageError                   ← state store failure
    │   └── MigrationError             ← schema migration failed (fatal at startup)
    ├── InvocationError                ← subprocess spawn/IO failure
    │   └── VolumeError                ← qemu-img failed to create an overlay
    └── ValidationError                ← rejected request/override values
"""

from __future__ import annotations

from typing import Any


class VmxError(Exception):
    """Base exception for all vmx errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Lookup failures
# =============================================================================


class NotFoundError(VmxError):
    """A referenced instance, image or volume does not exist."""


class VmNotFoundError(NotFoundError):
    """No virtual machine matches the given name or id."""


class ImageNotFoundError(NotFoundError):
    """No image matches the given repository:tag, id or digest."""


class VolumeNotFoundError(NotFoundError):
    """No volume matches the given name, id or path."""


# =============================================================================
# Lifecycle state conflicts
# =============================================================================


class AlreadyRunningError(VmxError):
    """Instance is already RUNNING; state is left unchanged."""


class RemoveRunningVmError(VmxError):
    """Refusing to remove an instance whose status is RUNNING."""


class StopFailedError(VmxError):
    """Grace-then-force termination could not deliver either signal.

    Refers to the signal-sending operation failing, not to the engine's
    own exit code.
    """


class AlreadyPulledError(VmxError):
    """An image with the remote layer digest is already present locally."""


# =============================================================================
# Collaborator failures
# =============================================================================


class RegistryError(VmxError):
    """Registry interaction failed.

    Attributes:
        cause: Underlying exception or tool output, when available
    """

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        cause: BaseException | str | None = None,
    ):
        super().__init__(message, context)
        self.cause = cause


class PushImageError(RegistryError):
    """Archiving or uploading an image failed."""


class PullImageError(RegistryError):
    """Downloading or extracting an image failed."""


class StorageError(VmxError):
    """The state store rejected or failed an operation (e.g. uniqueness violation)."""


class MigrationError(StorageError):
    """A schema migration step failed. Fatal at startup."""


class InvocationError(VmxError):
    """A subprocess could not be spawned or its streams could not be used.

    Distinct from a supervised process exiting non-zero, which is reported
    as an exit code.
    """


class VolumeError(InvocationError):
    """qemu-img failed to create a copy-on-write volume."""


class ValidationError(VmxError):
    """Request or override values were rejected before touching state."""
