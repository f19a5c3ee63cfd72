"""
Tests for the device plugin registry in `devicehub/services/plugin_registry.py`.

Covers:
- Loading, validation and idempotency
- Unloading, reloading and shutdown
- Event emission (sync and async handlers, failing handlers)
- Device dispatch (connect, read, sync) and health bookkeeping
- Queries by device type, region and routes
- Bootstrap helpers
"""

import asyncio
from typing import Any

import pytest

from devicehub.bootstrap import (
    create_device_management_service,
    create_plugin_registry,
    initialize_plugin_registry,
)
from devicehub.config import AppConfig, DeviceManagementConfig, RegistryConfig, ValidationConfig
from devicehub.domain.errors import (
    PluginError,
    PluginImportError,
    PluginNotLoadedError,
    PluginValidationError,
)
from devicehub.domain.models import (
    BulkSyncResult,
    ConfigValidationResult,
    ConnectionStatus,
    DeviceConnection,
    DeviceConnectionConfig,
    PluginConfig,
    PluginEvent,
    PluginMetadata,
    PluginRoute,
    PluginState,
    PluginStatus,
    SyncResult,
    ValidationResult,
    VitalData,
)
from devicehub.services.plugin_registry import PluginRegistry


class FakePlugin:
    """Minimal DevicePlugin double with switchable failures."""

    def __init__(
        self,
        plugin_id: str = "fake",
        *,
        supported_devices: list[str] | None = None,
        supported_regions: list[str] | None = None,
        fail_initialize: bool = False,
        fail_connect: Exception | None = None,
        fail_destroy: bool = False,
    ) -> None:
        self.metadata = PluginMetadata(
            id=plugin_id,
            name=f"{plugin_id} plugin",
            version="1.0.0",
            supported_devices=supported_devices or ["BLOOD_PRESSURE"],
            supported_regions=supported_regions or ["US"],
        )
        self.fail_initialize = fail_initialize
        self.fail_connect = fail_connect
        self.fail_destroy = fail_destroy
        self.initialized_with: PluginConfig | None = None
        self.destroyed = False
        self.sync_result: SyncResult | None = None

    async def initialize(self, config: PluginConfig) -> None:
        if self.fail_initialize:
            raise RuntimeError("hardware bridge unavailable")
        self.initialized_with = config

    async def destroy(self) -> None:
        if self.fail_destroy:
            raise RuntimeError("still busy")
        self.destroyed = True

    async def discover_devices(self) -> list[DeviceConnection]:
        return []

    async def connect(self, config: DeviceConnectionConfig) -> DeviceConnection:
        if self.fail_connect is not None:
            raise self.fail_connect
        return DeviceConnection(
            device_id=config.device_id, is_connected=True, status=ConnectionStatus.CONNECTED
        )

    async def disconnect(self, device_id: str) -> None:
        return None

    async def get_connection_status(self, device_id: str) -> DeviceConnection:
        return DeviceConnection(device_id=device_id)

    async def read_data(self, device_id: str, options: Any = None) -> list[VitalData]:
        return [VitalData(reading_type="heart_rate", primary_value=72, unit="bpm")]

    async def read_historical_data(self, device_id: str, options: Any) -> list[VitalData]:
        return []

    def transform_data(self, raw_data: dict[str, Any], device_type: str) -> VitalData:
        return VitalData(reading_type="unknown", primary_value=0)

    def validate_data(self, data: VitalData) -> ValidationResult:
        return ValidationResult(is_valid=True)

    async def sync_device(self, device_id: str) -> SyncResult:
        return self.sync_result or SyncResult(device_id=device_id, success=True, records_synced=2)

    async def bulk_sync(self, device_ids: list[str]) -> BulkSyncResult:
        return BulkSyncResult(
            total_devices=0,
            success_count=0,
            failed_count=0,
            results=[],
            total_records=0,
            duration_seconds=0.0,
        )

    def get_default_config(self) -> PluginConfig:
        return PluginConfig(features={"default": True})

    def validate_config(self, config: PluginConfig) -> ConfigValidationResult:
        return ConfigValidationResult(is_valid=True, sanitized_config=config)

    def register_routes(self) -> list[PluginRoute]:
        return [PluginRoute(method="GET", path="/fake/ping", handler="ping")]


class IncompletePlugin:
    metadata = PluginMetadata(id="broken", name="Broken")

    async def initialize(self, config: PluginConfig) -> None:
        return None


def make_registry(
    factories: dict[str, Any], threshold: int = 5, **config: Any
) -> PluginRegistry:
    registry_config = RegistryConfig(
        enabled_plugins=list(factories),
        health_check_interval_seconds=0,
        maintenance_error_threshold=threshold,
        **config,
    )
    return PluginRegistry(registry_config, factories)


@pytest.fixture
def fake() -> FakePlugin:
    return FakePlugin()


@pytest.fixture
def events() -> list[PluginEvent]:
    return []


class TestLoading:
    async def test_load_uses_default_config_without_preset(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake})

        await registry.load_plugin("fake")

        assert registry.get_plugin("fake") is fake
        assert registry.get_plugin_state("fake") is PluginState.LOADED
        assert fake.initialized_with == PluginConfig(features={"default": True})
        assert registry.get_plugin_health("fake").status is PluginStatus.HEALTHY

    async def test_preset_config_wins(self, fake: FakePlugin) -> None:
        preset = PluginConfig(features={"preset": True})
        registry = PluginRegistry(
            RegistryConfig(health_check_interval_seconds=0),
            {"fake": lambda: fake},
            {"fake": preset},
        )

        await registry.load_plugin("fake")

        assert fake.initialized_with is preset
        assert registry.get_plugin_config("fake") is preset

    async def test_loading_twice_is_a_noop(self) -> None:
        created: list[FakePlugin] = []

        def factory() -> FakePlugin:
            created.append(FakePlugin())
            return created[-1]

        registry = make_registry({"fake": factory})

        await registry.load_plugin("fake")
        await registry.load_plugin("fake")

        assert len(created) == 1
        assert len(registry.get_loaded_plugins()) == 1

    async def test_unknown_plugin_id(self, events: list[PluginEvent]) -> None:
        registry = make_registry({})
        registry.on("plugin:error", events.append)

        with pytest.raises(PluginImportError, match="Unknown plugin ID: nope"):
            await registry.load_plugin("nope")

        assert [e.plugin_id for e in events] == ["nope"]
        assert registry.get_plugin_state("nope") is PluginState.UNLOADED

    async def test_reserved_plugin_without_implementation(self) -> None:
        registry = make_registry({"fitbit": None})

        with pytest.raises(PluginImportError) as exc_info:
            await registry.load_plugin("fitbit")

        assert exc_info.value.error_code == "PLUGIN_IMPORT_FAILED"
        assert exc_info.value.severity == "high"

    async def test_plugin_missing_methods_is_rejected(self) -> None:
        registry = make_registry({"broken": IncompletePlugin})

        with pytest.raises(PluginValidationError, match="missing required method: destroy"):
            await registry.load_plugin("broken")

        assert registry.get_plugin("broken") is None

    async def test_initialize_failure_is_wrapped(self, events: list[PluginEvent]) -> None:
        registry = make_registry({"fake": lambda: FakePlugin(fail_initialize=True)})
        registry.on("plugin:error", events.append)

        with pytest.raises(PluginError, match="Failed to load plugin fake") as exc_info:
            await registry.load_plugin("fake")

        assert exc_info.value.error_code == "PLUGIN_LOAD_FAILED"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert len(events) == 1
        assert registry.get_plugin_state("fake") is PluginState.UNLOADED

    async def test_initialize_skips_plugins_that_fail(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake, "fitbit": None})
        ready: list[PluginEvent] = []
        registry.on("registry:ready", ready.append)

        await registry.initialize()

        assert registry.get_plugin("fake") is fake
        assert ready[0].data == {"loaded_plugins": ["fake"], "failed_plugins": ["fitbit"]}
        await registry.shutdown()


class TestUnloading:
    async def test_unload_clears_bookkeeping(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake})
        await registry.load_plugin("fake")

        await registry.unload_plugin("fake")

        assert fake.destroyed
        assert registry.get_plugin("fake") is None
        assert registry.get_plugin_health("fake") is None
        assert registry.get_plugin_routes("fake") == []

    async def test_unload_of_unloaded_plugin_raises(self) -> None:
        registry = make_registry({})

        with pytest.raises(PluginNotLoadedError, match="Plugin ghost is not loaded"):
            await registry.unload_plugin("ghost")

    async def test_failed_destroy_keeps_plugin_registered(self) -> None:
        registry = make_registry({"fake": lambda: FakePlugin(fail_destroy=True)})
        await registry.load_plugin("fake")

        with pytest.raises(PluginError, match="Failed to unload plugin fake"):
            await registry.unload_plugin("fake")

        assert registry.get_plugin_state("fake") is PluginState.LOADED

    async def test_reload_creates_a_fresh_instance(self) -> None:
        registry = make_registry({"fake": FakePlugin})
        await registry.load_plugin("fake")
        first = registry.get_plugin("fake")

        await registry.reload_plugin("fake")

        assert registry.get_plugin("fake") is not first

    async def test_shutdown_tolerates_destroy_failures(self) -> None:
        registry = make_registry(
            {"ok": lambda: FakePlugin("ok"), "bad": lambda: FakePlugin("bad", fail_destroy=True)}
        )
        await registry.initialize()

        await registry.shutdown()

        assert registry.get_loaded_plugins() == []


class TestEvents:
    async def test_sync_and_async_handlers_both_run(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake})
        seen: list[str] = []

        async def async_handler(event: PluginEvent) -> None:
            seen.append(f"async:{event.plugin_id}")

        registry.on("plugin:loaded", lambda event: seen.append(f"sync:{event.plugin_id}"))
        registry.on("plugin:loaded", async_handler)

        await registry.load_plugin("fake")

        assert seen == ["sync:fake", "async:fake"]

    async def test_failing_handler_does_not_stop_others(self) -> None:
        registry = make_registry({})
        seen: list[PluginEvent] = []

        def explode(event: PluginEvent) -> None:
            raise RuntimeError("listener bug")

        registry.on("registry:ready", explode)
        registry.on("registry:ready", seen.append)

        await registry.emit(PluginEvent(type="registry:ready"))

        assert len(seen) == 1

    async def test_off_removes_handler(self) -> None:
        registry = make_registry({})
        seen: list[PluginEvent] = []
        registry.on("registry:ready", seen.append)
        registry.off("registry:ready", seen.append)
        registry.off("registry:ready", seen.append)

        await registry.emit(PluginEvent(type="registry:ready"))

        assert seen == []


class TestDeviceDispatch:
    async def test_connect_tracks_connection_and_counts(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake})
        await registry.load_plugin("fake")
        connected: list[PluginEvent] = []
        registry.on("device:connected", connected.append)

        connection = await registry.connect_device("fake", DeviceConnectionConfig(device_id="d1"))

        assert connection.is_connected
        assert registry.get_device_connection("fake", "d1") == connection
        health = registry.get_plugin_health("fake")
        assert health.connected_devices == 1
        assert health.api_calls_today == 1
        assert connected[0].device_id == "d1"

    async def test_connect_failure_is_wrapped_and_recorded(self) -> None:
        registry = make_registry({"fake": lambda: FakePlugin(fail_connect=OSError("radio off"))})
        await registry.load_plugin("fake")
        device_errors: list[PluginEvent] = []
        registry.on("device:error", device_errors.append)

        with pytest.raises(PluginError) as exc_info:
            await registry.connect_device("fake", DeviceConnectionConfig(device_id="d1"))

        assert exc_info.value.error_code == "DEVICE_CONNECT_FAILED"
        assert exc_info.value.retryable
        assert registry.get_device_connection("fake", "d1").status is ConnectionStatus.ERROR
        health = registry.get_plugin_health("fake")
        assert health.status is PluginStatus.ERROR
        assert health.error_count == 1
        assert len(device_errors) == 1

    async def test_plugin_errors_pass_through_unchanged(self) -> None:
        original = PluginError("cuff not inflating", "fake", error_code="CUFF_FAULT")
        registry = make_registry({"fake": lambda: FakePlugin(fail_connect=original)})
        await registry.load_plugin("fake")

        with pytest.raises(PluginError) as exc_info:
            await registry.connect_device("fake", DeviceConnectionConfig(device_id="d1"))

        assert exc_info.value is original

    async def test_dispatch_to_unloaded_plugin_raises(self) -> None:
        registry = make_registry({})

        with pytest.raises(PluginNotLoadedError):
            await registry.read_device_data("ghost", "d1")

    async def test_read_emits_data_event(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake})
        await registry.load_plugin("fake")
        data_events: list[PluginEvent] = []
        registry.on("device:data", data_events.append)

        readings = await registry.read_device_data("fake", "d1")

        assert data_events[0].data == {"readings": readings}

    async def test_successful_sync_updates_connection_and_health(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake})
        await registry.load_plugin("fake")
        await registry.connect_device("fake", DeviceConnectionConfig(device_id="d1"))
        completed: list[PluginEvent] = []
        registry.on("sync:completed", completed.append)

        result = await registry.sync_device("fake", "d1")

        connection = registry.get_device_connection("fake", "d1")
        assert connection.status is ConnectionStatus.CONNECTED
        assert connection.last_sync == result.last_sync_time
        assert registry.get_plugin_health("fake").last_sync == result.last_sync_time
        assert completed[0].data["result"] is result

    async def test_unsuccessful_sync_emits_failure(self, fake: FakePlugin) -> None:
        fake.sync_result = SyncResult(device_id="d1", success=False, errors=["not connected"])
        registry = make_registry({"fake": lambda: fake})
        await registry.load_plugin("fake")
        failed: list[PluginEvent] = []
        registry.on("sync:failed", failed.append)

        result = await registry.sync_device("fake", "d1")

        assert not result.success
        assert len(failed) == 1
        assert registry.get_plugin_health("fake").error_count == 0

    async def test_timed_out_sync_restores_connection_status(
        self, fake: FakePlugin, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        registry = make_registry({"fake": lambda: fake})
        await registry.load_plugin("fake")
        await registry.connect_device("fake", DeviceConnectionConfig(device_id="d1"))

        async def hang(device_id: str) -> SyncResult:
            await asyncio.sleep(5)
            return SyncResult(device_id=device_id, success=True)

        monkeypatch.setattr(fake, "sync_device", hang)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(registry.sync_device("fake", "d1"), timeout=0.05)

        connection = registry.get_device_connection("fake", "d1")
        assert connection.status is ConnectionStatus.CONNECTED
        assert connection.is_connected


class TestQueries:
    async def test_device_type_and_region_filters(self) -> None:
        factories = {
            "bp": lambda: FakePlugin("bp", supported_devices=["BLOOD_PRESSURE"]),
            "any": lambda: FakePlugin("any", supported_devices=["*"], supported_regions=["global"]),
        }
        registry = make_registry(factories)
        for plugin_id in factories:
            await registry.load_plugin(plugin_id)

        bp_ids = [p.metadata.id for p in registry.get_plugins_for_device_type("BLOOD_PRESSURE")]
        scale_ids = [p.metadata.id for p in registry.get_plugins_for_device_type("SCALE")]
        eu_ids = [p.metadata.id for p in registry.get_plugins_for_region("EU")]

        assert bp_ids == ["bp", "any"]
        assert scale_ids == ["any"]
        assert eu_ids == ["any"]

    async def test_routes_are_prefixed(self, fake: FakePlugin) -> None:
        registry = make_registry({"fake": lambda: fake})
        await registry.load_plugin("fake")

        routes = registry.get_plugin_routes()

        assert [r.path for r in routes] == ["/plugins/fake/ping"]


class TestHealth:
    async def test_persistent_errors_enter_maintenance(self) -> None:
        registry = make_registry(
            {"fake": lambda: FakePlugin(fail_connect=OSError("radio off"))}, threshold=2
        )
        await registry.load_plugin("fake")

        for _ in range(3):
            with pytest.raises(PluginError):
                await registry.connect_device("fake", DeviceConnectionConfig(device_id="d1"))

        await registry.perform_health_check()

        health = registry.get_plugin_health("fake")
        assert health.status is PluginStatus.MAINTENANCE
        assert health.uptime >= 0.0

    async def test_errors_at_threshold_stay_in_error(self) -> None:
        registry = make_registry(
            {"fake": lambda: FakePlugin(fail_connect=OSError("radio off"))}, threshold=2
        )
        await registry.load_plugin("fake")

        for _ in range(2):
            with pytest.raises(PluginError):
                await registry.connect_device("fake", DeviceConnectionConfig(device_id="d1"))

        await registry.perform_health_check()

        assert registry.get_plugin_health("fake").status is PluginStatus.ERROR


class TestMockPluginsThroughRegistry:
    async def test_registry_fixture_loads_both_mocks(self, registry: PluginRegistry) -> None:
        assert {p.metadata.id for p in registry.get_loaded_plugins()} == {
            "mock-bp",
            "mock-glucose",
        }
        assert len(registry.get_plugin_routes()) == 5

    async def test_connect_read_sync_round(self, registry: PluginRegistry) -> None:
        await registry.connect_device("mock-bp", DeviceConnectionConfig(device_id="mock-bp-001"))

        readings = await registry.read_device_data("mock-bp", "mock-bp-001")
        result = await registry.sync_device("mock-bp", "mock-bp-001")

        assert readings[0].reading_type == "blood_pressure"
        assert result.success
        assert 1 <= result.records_synced <= 5


class TestBootstrap:
    async def test_initialize_plugin_registry_applies_overrides(self) -> None:
        config = AppConfig(
            registry=RegistryConfig(enabled_plugins=["mock-bp"], health_check_interval_seconds=0)
        )

        registry = await initialize_plugin_registry(config, enabled_plugins=["mock-glucose"])

        try:
            assert [p.metadata.id for p in registry.get_loaded_plugins()] == ["mock-glucose"]
        finally:
            await registry.shutdown()

    def test_create_plugin_registry_uses_environment_presets(self) -> None:
        config = AppConfig(registry=RegistryConfig(health_check_interval_seconds=0))

        registry = create_plugin_registry(config)

        assert registry.config is config.registry

    def test_create_device_management_service_uses_config_sections(self) -> None:
        config = AppConfig(
            registry=RegistryConfig(health_check_interval_seconds=0),
            validation=ValidationConfig(default_age_group="geriatric"),
            devices=DeviceManagementConfig(max_concurrent_syncs=3),
        )
        registry = create_plugin_registry(config)

        service = create_device_management_service(registry, config)

        assert service.registry is registry
        assert service.config.max_concurrent_syncs == 3
        assert service.validator.config.default_age_group == "geriatric"
