"""Constants for vmx defaults, file layout and registry metadata."""

from typing import Final

# ============================================================================
# Machine Defaults
# ============================================================================

DEFAULT_CPU: Final[str] = "host"
"""QEMU -cpu model when none is requested."""

DEFAULT_CPUS: Final[int] = 2
"""Guest core count (-smp)."""

DEFAULT_MEMORY: Final[str] = "2G"
"""Guest memory (-m), QEMU size syntax."""

DEFAULT_DISK_SIZE: Final[str] = "20G"
"""Nominal disk size recorded for new instances."""

DEFAULT_TAG: Final[str] = "latest"
"""Tag assumed when an image reference omits one."""

MAC_PREFIX: Final[str] = "52:54:00"
"""QEMU's locally administered OUI; the remaining three octets are random."""

# ============================================================================
# State Directory Layout (relative to config_dir)
# ============================================================================

DB_FILENAME: Final[str] = "state.sqlite"
LOGS_DIRNAME: Final[str] = "logs"
IMAGES_DIRNAME: Final[str] = "images"
VOLUMES_DIRNAME: Final[str] = "volumes"
FIRMWARE_DIRNAME: Final[str] = "firmware"

VOLUME_SUFFIX: Final[str] = ".qcow2"
ARCHIVE_SUFFIX: Final[str] = ".tar.gz"

# ============================================================================
# Registry
# ============================================================================

DEFAULT_REGISTRY: Final[str] = "docker.io"
"""Registry host prepended to repositories that carry none."""

ARTIFACT_TYPE: Final[str] = "application/vnd.oci.image.layer.v1.tar"

ANNOTATION_ARCHITECTURE: Final[str] = "org.opencontainers.image.architecture"
ANNOTATION_OS: Final[str] = "org.opencontainers.image.os"
ANNOTATION_DESCRIPTION: Final[str] = "org.opencontainers.image.description"
ANNOTATION_TITLE: Final[str] = "org.opencontainers.image.title"
"""Filename of the layer inside the artifact; required on pull."""

DEFAULT_IMAGE_OS: Final[str] = "freebsd"
DEFAULT_IMAGE_DESCRIPTION: Final[str] = "QEMU raw disk image of FreeBSD"

REGISTRY_MANIFEST_ATTEMPTS: Final[int] = 3
REGISTRY_RETRY_MIN_SECONDS: Final[float] = 0.5
REGISTRY_RETRY_MAX_SECONDS: Final[float] = 5.0

# ============================================================================
# Lifecycle Timing (seconds)
# ============================================================================

STOP_GRACE_SECONDS: Final[float] = 3.0
"""Wait between SIGTERM and the liveness re-check in stop()."""

RESTART_SETTLE_SECONDS: Final[float] = 2.0
"""Pause between the stop and start phases of restart()."""

DETACH_WARMUP_SECONDS: Final[float] = 2.0
"""Delay after a detached spawn before boot-menu input is written."""

BOOT_MENU_INPUT: Final[str] = "1\n"
"""Selects the default entry of the FreeBSD loader menu."""

DETACHED_POLL_SECONDS: Final[float] = 0.5
"""Interval at which a detached engine is polled for exit."""

ENGINE_PID_ATTEMPTS: Final[int] = 20
ENGINE_PID_RETRY_SECONDS: Final[float] = 0.05
"""Bounds for locating a bridged engine under its sudo parent."""

# ============================================================================
# Firmware (aarch64 UEFI)
# ============================================================================

UEFI_CODE_FILENAME: Final[str] = "edk2-aarch64-code.fd"
UEFI_VARS_TEMPLATE_FILENAME: Final[str] = "edk2-arm-vars.fd"
