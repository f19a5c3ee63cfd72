"""
Shared behaviour for simulated device plugins.

Simulated plugins stand in for real hardware during development and testing.
They keep per-device state in memory, fake connection and read latency, and
run every generated payload through the same transformation rules a real
device integration would use.
"""

import asyncio
import math
import random
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from devicehub.domain.errors import PluginError
from devicehub.domain.models import (
    BulkSyncResult,
    ConfigValidationResult,
    ConnectionStatus,
    DeviceConnection,
    DeviceConnectionConfig,
    HistoricalDataOptions,
    PluginConfig,
    PluginMetadata,
    PluginRoute,
    ReadDataOptions,
    SyncResult,
    TransformationRule,
    ValidationResult,
    VitalData,
)
from devicehub.services.transformer import transform_to_vital_data
from devicehub.services.validator import validate_vital_data

logger = structlog.get_logger(__name__)

DelayRange = tuple[float, float]


@dataclass
class SimulatedDeviceState:
    """In-memory state of one simulated device."""

    device_id: str
    is_connected: bool = False
    battery_level: int = 100
    firmware_version: str = "1.0.0"
    last_reading: VitalData | None = None
    reading_history: list[VitalData] = field(default_factory=list)
    profile: dict[str, Any] = field(default_factory=dict)


class SimulatedDevicePlugin:
    """
    Base class for mock device plugins.

    Subclasses provide metadata, transformation rules and a payload generator.
    The ``fast_mode`` feature skips simulated delays; ``simulate_errors`` makes
    reads fail at ``error_rate``.
    """

    metadata: PluginMetadata
    device_type: str
    transformation_rules: tuple[TransformationRule, ...] = ()
    seeded_devices: tuple[str, ...] = ()
    firmware_version: str = "1.0.0"
    history_limit: int = 100
    default_history_limit: int = 100
    max_readings_per_day: int = 3
    sync_batch: tuple[int, int] = (1, 5)
    error_rate: float = 0.05

    connect_delay: DelayRange = (1.0, 3.0)
    read_delay: DelayRange = (0.5, 2.0)
    sync_delay: DelayRange = (1.0, 3.0)

    def __init__(self, rng: random.Random | None = None) -> None:
        self.config: PluginConfig | None = None
        self.devices: dict[str, SimulatedDeviceState] = {}
        self.rng = rng or random.Random()
        self.logger = logger.bind(plugin_id=self.metadata.id)
        self._initialized = False

    # Lifecycle

    async def initialize(self, config: PluginConfig) -> None:
        self.config = config
        self._initialized = True

        if config.feature("mock_data"):
            for device_id in self.seeded_devices:
                self.devices[device_id] = self._new_device_state(device_id)

        self.logger.info("simulated_plugin_initialized", seeded_devices=len(self.devices))

    async def destroy(self) -> None:
        self.devices.clear()
        self._initialized = False
        self.logger.info("simulated_plugin_destroyed")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise PluginError(
                "Plugin not initialized", self.metadata.id, error_code="PLUGIN_NOT_INITIALIZED"
            )

    # Device management

    async def discover_devices(self) -> list[DeviceConnection]:
        self._require_initialized()
        return [self._connection_for(state) for state in self.devices.values()] or [
            DeviceConnection(
                device_id=device_id,
                battery_level=self.rng.randint(40, 100),
                signal_strength=self.rng.randint(80, 100),
                firmware_version=self.firmware_version,
            )
            for device_id in self.seeded_devices
        ]

    async def connect(self, config: DeviceConnectionConfig) -> DeviceConnection:
        self._require_initialized()
        await self._simulate_delay(self.connect_delay)

        if config.connection_params.get("simulate_error"):
            raise PluginError(
                f"Failed to connect to device {config.device_id}: Simulated connection error",
                self.metadata.id,
                device_id=config.device_id,
                error_code="DEVICE_CONNECT_FAILED",
                retryable=True,
            )

        state = self.devices.get(config.device_id) or self._new_device_state(config.device_id)
        state.is_connected = True
        self.devices[config.device_id] = state

        self.logger.info("simulated_device_connected", device_id=config.device_id)
        return self._connection_for(state, last_sync=datetime.now(UTC))

    async def disconnect(self, device_id: str) -> None:
        state = self.devices.get(device_id)
        if state is not None:
            state.is_connected = False
            self.logger.info("simulated_device_disconnected", device_id=device_id)

    async def get_connection_status(self, device_id: str) -> DeviceConnection:
        return self._connection_for(self._get_state(device_id))

    def _get_state(self, device_id: str) -> SimulatedDeviceState:
        state = self.devices.get(device_id)
        if state is None:
            raise PluginError(
                f"Device {device_id} not found",
                self.metadata.id,
                device_id=device_id,
                error_code="DEVICE_NOT_FOUND",
            )
        return state

    def _connected_state(self, device_id: str) -> SimulatedDeviceState:
        state = self.devices.get(device_id)
        if state is None or not state.is_connected:
            raise PluginError(
                f"Device {device_id} not connected",
                self.metadata.id,
                device_id=device_id,
                error_code="DEVICE_NOT_CONNECTED",
                retryable=True,
            )
        return state

    def _connection_for(
        self, state: SimulatedDeviceState, last_sync: datetime | None = None
    ) -> DeviceConnection:
        if last_sync is None and state.last_reading is not None:
            last_sync = state.last_reading.timestamp
        return DeviceConnection(
            device_id=state.device_id,
            is_connected=state.is_connected,
            status=(
                ConnectionStatus.CONNECTED if state.is_connected else ConnectionStatus.DISCONNECTED
            ),
            last_sync=last_sync,
            battery_level=state.battery_level,
            signal_strength=self.rng.randint(80, 100),
            firmware_version=state.firmware_version,
        )

    # Data

    async def read_data(
        self, device_id: str, options: ReadDataOptions | None = None
    ) -> list[VitalData]:
        state = self._connected_state(device_id)
        if options is not None and options.reading_types is not None:
            if not set(options.reading_types) & set(self.metadata.capabilities.reading_types):
                return []

        self._before_read(state)
        await self._simulate_delay(self.read_delay)

        if self._feature("simulate_errors") and self.rng.random() < self.error_rate:
            raise PluginError(
                f"Simulated read failure on device {device_id}",
                self.metadata.id,
                device_id=device_id,
                error_code="DEVICE_READ_FAILED",
                retryable=True,
            )

        reading = self._generate_reading(state)
        self._after_read(state)
        self._remember(state, reading)
        return [reading]

    async def read_historical_data(
        self, device_id: str, options: HistoricalDataOptions
    ) -> list[VitalData]:
        state = self._get_state(device_id)
        limit = options.limit or self.default_history_limit

        span = options.end_date - options.start_date
        days = math.ceil(span / timedelta(days=1))
        if days <= 0:
            return []

        per_day = min(self.max_readings_per_day, limit // days or 1)
        readings: list[VitalData] = []
        for day in range(days):
            for timestamp, context in self._historical_slots(options.start_date, day, per_day):
                if len(readings) >= limit:
                    break
                readings.append(self._generate_reading(state, timestamp, context))

        return sorted(readings, key=lambda r: r.timestamp or options.start_date)

    def _historical_slots(
        self, start: datetime, day: int, per_day: int
    ) -> list[tuple[datetime, str | None]]:
        base = start + timedelta(days=day)
        return [(base + timedelta(hours=8 * slot), None) for slot in range(per_day)]

    def transform_data(self, raw_data: dict[str, Any], device_type: str) -> VitalData:
        return transform_to_vital_data(raw_data, device_type, self.transformation_rules)

    def validate_data(self, data: VitalData) -> ValidationResult:
        return validate_vital_data(data, "adult")

    # Sync

    async def sync_device(self, device_id: str) -> SyncResult:
        started = time.perf_counter()
        state = self.devices.get(device_id)

        if state is None or not state.is_connected:
            return SyncResult(
                device_id=device_id,
                success=False,
                errors=[f"Device {device_id} not connected"],
                sync_duration_seconds=time.perf_counter() - started,
            )

        await self._simulate_delay(self.sync_delay)

        synced = 0
        for _ in range(self.rng.randint(*self.sync_batch)):
            if not self._can_generate(state):
                break
            self._before_read(state)
            self._remember(state, self._generate_reading(state))
            self._after_read(state)
            synced += 1

        return SyncResult(
            device_id=device_id,
            success=True,
            records_synced=synced,
            sync_duration_seconds=time.perf_counter() - started,
        )

    async def bulk_sync(self, device_ids: list[str]) -> BulkSyncResult:
        started = time.perf_counter()
        results = [await self.sync_device(device_id) for device_id in device_ids]
        success_count = sum(1 for r in results if r.success)

        return BulkSyncResult(
            total_devices=len(device_ids),
            success_count=success_count,
            failed_count=len(device_ids) - success_count,
            results=results,
            total_records=sum(r.records_synced for r in results),
            duration_seconds=time.perf_counter() - started,
        )

    # Configuration

    def get_default_config(self) -> PluginConfig:
        return PluginConfig(
            environment="development",
            features={"mock_data": True, "real_time_sync": False, "simulate_errors": False},
        )

    def validate_config(self, config: PluginConfig) -> ConfigValidationResult:
        warnings: list[str] = []
        if not config.features:
            warnings.append("No features specified, using defaults")
            config = config.model_copy(update={"features": self.get_default_config().features})

        return ConfigValidationResult(
            is_valid=True, errors=[], warnings=warnings, sanitized_config=config
        )

    def register_routes(self) -> list[PluginRoute]:
        plugin_id = self.metadata.id
        return [
            PluginRoute(
                method="GET",
                path=f"/{plugin_id}/devices",
                handler="get_devices",
                allowed_roles=["DOCTOR", "HSP", "PATIENT"],
            ),
            PluginRoute(
                method="POST",
                path=f"/{plugin_id}/simulate-reading",
                handler="simulate_reading",
                allowed_roles=["DOCTOR", "HSP"],
            ),
        ]

    # Hooks for subclasses

    def _new_device_state(self, device_id: str) -> SimulatedDeviceState:
        return SimulatedDeviceState(
            device_id=device_id,
            battery_level=self.rng.randint(60, 100),
            firmware_version=self.firmware_version,
        )

    def _generate_payload(
        self, state: SimulatedDeviceState, timestamp: datetime, context: str | None
    ) -> dict[str, Any]:
        raise NotImplementedError

    def _can_generate(self, state: SimulatedDeviceState) -> bool:
        return True

    def _before_read(self, state: SimulatedDeviceState) -> None:
        """Raise if the device cannot take a measurement right now."""

    def _after_read(self, state: SimulatedDeviceState) -> None:
        """Account for consumables used by a measurement."""

    # Helpers

    def _generate_reading(
        self,
        state: SimulatedDeviceState,
        timestamp: datetime | None = None,
        context: str | None = None,
    ) -> VitalData:
        payload = self._generate_payload(state, timestamp or datetime.now(UTC), context)
        return self.transform_data(payload, self.device_type)

    def _remember(self, state: SimulatedDeviceState, reading: VitalData) -> None:
        state.reading_history.append(reading)
        state.last_reading = reading
        if len(state.reading_history) > self.history_limit:
            del state.reading_history[: -self.history_limit]

    def _feature(self, name: str) -> bool:
        return self.config is not None and self.config.feature(name)

    async def _simulate_delay(self, bounds: DelayRange) -> None:
        if self._feature("fast_mode"):
            await asyncio.sleep(0)
            return
        await asyncio.sleep(self.rng.uniform(*bounds))
