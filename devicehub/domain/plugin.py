"""
Device plugin contract.

Every device integration implements DevicePlugin. The registry only relies on
structural typing, so plugins do not need to inherit from anything.
"""

from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from devicehub.domain.models import (
    BulkSyncResult,
    ConfigValidationResult,
    DeviceConnection,
    DeviceConnectionConfig,
    HistoricalDataOptions,
    PluginConfig,
    PluginMetadata,
    ReadDataOptions,
    SyncResult,
    ValidationResult,
    VitalData,
)

# Methods the registry refuses to load a plugin without
REQUIRED_PLUGIN_METHODS = (
    "initialize",
    "destroy",
    "connect",
    "disconnect",
    "read_data",
    "transform_data",
    "get_default_config",
)


@runtime_checkable
class DevicePlugin(Protocol):
    """
    Protocol for medical device integrations.

    Any object with these attributes and coroutines can be loaded by the registry.
    """

    metadata: PluginMetadata

    # Lifecycle
    async def initialize(self, config: PluginConfig) -> None: ...

    async def destroy(self) -> None: ...

    # Device management
    async def discover_devices(self) -> list[DeviceConnection]: ...

    async def connect(self, config: DeviceConnectionConfig) -> DeviceConnection: ...

    async def disconnect(self, device_id: str) -> None: ...

    async def get_connection_status(self, device_id: str) -> DeviceConnection: ...

    # Data
    async def read_data(
        self, device_id: str, options: ReadDataOptions | None = None
    ) -> list[VitalData]: ...

    async def read_historical_data(
        self, device_id: str, options: HistoricalDataOptions
    ) -> list[VitalData]: ...

    def transform_data(self, raw_data: dict[str, Any], device_type: str) -> VitalData: ...

    def validate_data(self, data: VitalData) -> ValidationResult: ...

    # Sync
    async def sync_device(self, device_id: str) -> SyncResult: ...

    async def bulk_sync(self, device_ids: list[str]) -> BulkSyncResult: ...

    # Configuration
    def get_default_config(self) -> PluginConfig: ...

    def validate_config(self, config: PluginConfig) -> ConfigValidationResult: ...

    # Optional: plugins may also define register_routes() -> list[PluginRoute]


PluginFactory = Callable[[], DevicePlugin]
