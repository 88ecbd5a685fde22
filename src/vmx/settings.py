"""Runtime configuration from environment variables."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmx import constants
from vmx.platform_utils import get_config_dir


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with VMX_ prefix.
    Example: VMX_CONFIG_DIR=/srv/vmx VMX_STOP_GRACE_SECONDS=5

    Settings are passed explicitly to every component; nothing reads them
    from module state.
    """

    model_config = SettingsConfigDict(
        env_prefix="VMX_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # State directory: state.sqlite, logs/, images/, volumes/, firmware/
    config_dir: Path = Field(default_factory=get_config_dir)
    database_url: str | None = None
    """SQLAlchemy URL override; defaults to sqlite under config_dir."""

    # Binaries
    qemu_bin_x86: str = "qemu-system-x86_64"
    qemu_bin_arm: str = "qemu-system-aarch64"
    qemu_img_bin: str = "qemu-img"
    oras_bin: str = "oras"
    tar_bin: str = "tar"
    sudo_bin: str = "sudo"
    kill_bin: str = "kill"

    # Registry
    default_registry: str = constants.DEFAULT_REGISTRY
    image_os: str = constants.DEFAULT_IMAGE_OS
    image_description: str = constants.DEFAULT_IMAGE_DESCRIPTION
    registry_manifest_attempts: int = Field(default=constants.REGISTRY_MANIFEST_ATTEMPTS, ge=1)

    # Lifecycle timing
    stop_grace_seconds: float = Field(default=constants.STOP_GRACE_SECONDS, ge=0)
    restart_settle_seconds: float = Field(default=constants.RESTART_SETTLE_SECONDS, ge=0)
    detach_warmup_seconds: float = Field(default=constants.DETACH_WARMUP_SECONDS, ge=0)
    boot_menu_input: str | None = constants.BOOT_MENU_INPUT
    """Written to a detached engine's stdin after warm-up. None disables."""

    # aarch64 UEFI firmware (None = search qemu_share_dirs)
    uefi_code_path: Path | None = None
    uefi_vars_template_path: Path | None = None
    qemu_share_dirs: list[Path] = Field(
        default_factory=lambda: [
            Path("/opt/homebrew/share/qemu"),
            Path("/usr/local/share/qemu"),
            Path("/usr/share/qemu"),
        ]
    )

    @property
    def db_path(self) -> Path:
        return self.config_dir / constants.DB_FILENAME

    @property
    def logs_dir(self) -> Path:
        return self.config_dir / constants.LOGS_DIRNAME

    @property
    def images_dir(self) -> Path:
        return self.config_dir / constants.IMAGES_DIRNAME

    @property
    def volumes_dir(self) -> Path:
        return self.config_dir / constants.VOLUMES_DIRNAME

    @property
    def firmware_dir(self) -> Path:
        return self.config_dir / constants.FIRMWARE_DIRNAME

    @property
    def resolved_database_url(self) -> str:
        """SQLAlchemy URL for the state store."""
        return self.database_url or f"sqlite:///{self.db_path}"
