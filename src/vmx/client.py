"""Vmx: the façade CLI and API layers talk to.

Owns the state store and wires the managers to it.

Example:
    ```python
    async with Vmx() as vmx:
        for machine in await vmx.lifecycle.list(all=True):
            print(machine.name, machine.status)
    ```
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Self

from vmx._logging import get_logger
from vmx.images import ImageManager
from vmx.lifecycle import LifecycleManager
from vmx.platform_utils import HostArch, HostOS, detect_host_arch, detect_host_os
from vmx.registry import RegistryClient
from vmx.settings import Settings
from vmx.store import StateStore
from vmx.volumes import VolumeManager

if TYPE_CHECKING:
    from types import TracebackType

logger = get_logger(__name__)


class Vmx:
    """Explicit init/teardown around one StateStore and the managers using it.

    Migrations run on entry; a MigrationError there is fatal and propagates.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: StateStore | None = None,
        host_os: HostOS | None = None,
        host_arch: HostArch | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.store = store or StateStore.from_settings(self.settings)
        host_arch = host_arch or detect_host_arch()

        self.registry = RegistryClient(self.settings, host_arch)
        self.images = ImageManager(self.store, self.settings, self.registry)
        self.volumes = VolumeManager(self.store, self.settings)
        self.lifecycle = LifecycleManager(
            self.store,
            self.settings,
            self.volumes,
            self.images,
            host_os=host_os or detect_host_os(),
            host_arch=host_arch,
        )

    async def open(self) -> None:
        await self.store.open()
        logger.debug("vmx ready", extra={"config_dir": str(self.settings.config_dir)})

    async def close(self) -> None:
        await self.lifecycle.close()
        await self.store.close()

    async def __aenter__(self) -> Self:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
