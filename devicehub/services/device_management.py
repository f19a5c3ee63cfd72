"""
Device management service.

Keeps an in-memory registry of patient devices, drives connections and syncs
through the plugin registry, and validates every reading collected on the way.

Key patterns:
- Structured concurrency with asyncio.TaskGroup for multi-device syncs
- Per-device timeouts and a concurrency cap (semaphore)
- Per-device outcomes so one failing device never aborts the others
- Alert handlers dispatched like any other event listener
"""

import asyncio
import inspect
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal
from uuid import uuid4

import structlog
from pydantic import BaseModel, Field

from devicehub.config import DeviceManagementConfig
from devicehub.domain.errors import (
    DeviceNotRegisteredError,
    ErrorSeverity,
    PluginError,
    PluginNotLoadedError,
)
from devicehub.domain.models import (
    AgeGroup,
    ConnectionStatus,
    DeviceConnection,
    DeviceConnectionConfig,
    HistoricalDataOptions,
    ReadDataOptions,
    ReadingType,
    SyncResult,
    ValidationResult,
    VitalData,
)
from devicehub.domain.ranges import (
    HYPERTENSIVE_CRISIS_DIASTOLIC,
    HYPERTENSIVE_CRISIS_SYSTOLIC,
    HYPOGLYCEMIA_BELOW,
    SEVERE_HYPERGLYCEMIA_ABOVE,
)
from devicehub.services.plugin_registry import PluginRegistry
from devicehub.services.validator import VitalDataValidator

logger = structlog.get_logger(__name__)

CONNECT_RETRY_ATTEMPTS = 3
HISTORICAL_BATCH_LIMIT = 500
READING_HISTORY_LIMIT = 500
ALERT_HISTORY_LIMIT = 1000


class DeviceRegistration(BaseModel):
    """A device a patient has added to their account."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    patient_id: str
    plugin_id: str
    device_name: str
    device_type: str
    device_identifier: str = Field(description="Id the plugin knows the device by")
    connection_type: str = "bluetooth"
    connection_config: dict[str, Any] = Field(default_factory=dict)
    age_group: AgeGroup | None = None
    is_active: bool = True
    added_by: str | None = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_sync: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class SyncError(BaseModel):
    device_id: str
    plugin_id: str
    error: str
    severity: ErrorSeverity


class SyncReport(BaseModel):
    """Outcome of one sync_devices() run."""

    start_time: datetime
    end_time: datetime
    devices_synced: int = 0
    records_processed: int = 0
    invalid_readings: int = 0
    errors: list[SyncError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.start_time).total_seconds()


AlertSeverity = Literal["high", "critical"]


@dataclass
class VitalAlert:
    """A reading that needs clinical attention."""

    device_id: str
    patient_id: str
    reading_type: str
    severity: AlertSeverity
    message: str
    values: dict[str, float | None]
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class ProcessedReading:
    reading: VitalData
    validation: ValidationResult
    alerts: list[VitalAlert] = field(default_factory=list)


@dataclass
class _DeviceSyncOutcome:
    """What one device's sync produced: a plugin result or the error that stopped it."""

    registration: DeviceRegistration
    sync_result: SyncResult | None = None
    error: PluginError | None = None
    readings: list[VitalData] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failed(cls, registration: DeviceRegistration, error: PluginError) -> "_DeviceSyncOutcome":
        return cls(registration=registration, error=error)

    def to_sync_error(self) -> SyncError | None:
        """Convert a failure into a report entry; ``None`` for a successful sync."""
        if self.error is not None:
            return SyncError(
                device_id=self.registration.id,
                plugin_id=self.registration.plugin_id,
                error=str(self.error),
                severity=self.error.severity,
            )
        if self.sync_result is not None and not self.sync_result.success:
            return SyncError(
                device_id=self.registration.id,
                plugin_id=self.registration.plugin_id,
                error=", ".join(self.sync_result.errors),
                severity="medium",
            )
        return None


AlertHandler = Callable[[VitalAlert], Awaitable[None] | None]


def check_alert_conditions(registration: DeviceRegistration, data: VitalData) -> list[VitalAlert]:
    """Return the alerts a reading triggers (empty for unremarkable readings)."""
    alerts: list[VitalAlert] = []

    if data.reading_type == ReadingType.BLOOD_PRESSURE:
        diastolic = data.secondary_value
        if data.primary_value > HYPERTENSIVE_CRISIS_SYSTOLIC or (
            diastolic is not None and diastolic > HYPERTENSIVE_CRISIS_DIASTOLIC
        ):
            alerts.append(
                VitalAlert(
                    device_id=registration.id,
                    patient_id=registration.patient_id,
                    reading_type=data.reading_type,
                    severity="critical",
                    message="Hypertensive crisis detected",
                    values={"systolic": data.primary_value, "diastolic": diastolic},
                )
            )

    elif data.reading_type == ReadingType.BLOOD_GLUCOSE:
        if data.primary_value < HYPOGLYCEMIA_BELOW:
            severity: AlertSeverity = "critical"
            message = "Hypoglycemia detected"
        elif data.primary_value > SEVERE_HYPERGLYCEMIA_ABOVE:
            severity = "high"
            message = "Severe hyperglycemia detected"
        else:
            return alerts
        alerts.append(
            VitalAlert(
                device_id=registration.id,
                patient_id=registration.patient_id,
                reading_type=data.reading_type,
                severity=severity,
                message=message,
                values={"glucose": data.primary_value},
            )
        )

    return alerts


class DeviceManagementService:
    """
    Registers patient devices and synchronises their data through plugins.

    Design principles:
    - Graceful degradation (a failing device is reported, never fatal)
    - Observable (structured logging for every device operation)
    - Resource-aware (timeouts, bounded concurrency, no overlapping syncs)
    """

    def __init__(
        self,
        registry: PluginRegistry,
        config: DeviceManagementConfig | None = None,
        validator: VitalDataValidator | None = None,
        alert_handlers: Iterable[AlertHandler] | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or DeviceManagementConfig()
        self.validator = validator or VitalDataValidator()
        self.alert_handlers: list[AlertHandler] = list(alert_handlers or [self._log_alert])

        self.devices: dict[str, DeviceRegistration] = {}
        self.readings: dict[str, deque[VitalData]] = {}
        self.alert_history: deque[VitalAlert] = deque(maxlen=ALERT_HISTORY_LIMIT)
        self._sync_in_progress: set[str] = set()
        self.logger = logger.bind(component="device_management")

    # Registration

    def register_device(
        self,
        *,
        patient_id: str,
        plugin_id: str,
        device_name: str,
        device_type: str,
        device_identifier: str,
        **extra: Any,
    ) -> DeviceRegistration:
        """
        Register a device for a patient.

        Raises:
            PluginNotLoadedError: If the plugin is not loaded.
            PluginError: If the plugin does not support the device type.
        """
        plugin = self.registry.get_plugin(plugin_id)
        if plugin is None:
            self.logger.warning(
                "device_registration_failed", patient_id=patient_id, plugin_id=plugin_id
            )
            raise PluginNotLoadedError(plugin_id)

        if device_type not in plugin.metadata.supported_devices:
            raise PluginError(
                f"Plugin {plugin_id} does not support device type {device_type}",
                plugin_id,
                error_code="DEVICE_TYPE_UNSUPPORTED",
            )

        registration = DeviceRegistration(
            patient_id=patient_id,
            plugin_id=plugin_id,
            device_name=device_name,
            device_type=device_type,
            device_identifier=device_identifier,
            **extra,
        )
        self.devices[registration.id] = registration
        self.readings[registration.id] = deque(maxlen=READING_HISTORY_LIMIT)

        self.logger.info(
            "device_registered",
            device_id=registration.id,
            patient_id=patient_id,
            plugin_id=plugin_id,
            device_type=device_type,
        )
        return registration

    def get_device(self, device_id: str) -> DeviceRegistration:
        registration = self.devices.get(device_id)
        if registration is None:
            raise DeviceNotRegisteredError(device_id)
        return registration

    def list_devices(self, patient_id: str | None = None) -> list[DeviceRegistration]:
        return [
            d for d in self.devices.values() if patient_id is None or d.patient_id == patient_id
        ]

    def deactivate_device(self, device_id: str) -> None:
        """Exclude a device from future syncs without forgetting it."""
        self._touch(self.get_device(device_id), is_active=False)

    def _touch(self, registration: DeviceRegistration, **changes: Any) -> None:
        for name, value in changes.items():
            setattr(registration, name, value)
        registration.updated_at = datetime.now(UTC)

    # Connections

    async def connect_device(
        self, device_id: str, connection_params: dict[str, Any] | None = None
    ) -> DeviceConnection:
        registration = self.get_device(device_id)
        log = self.logger.bind(device_id=device_id, plugin_id=registration.plugin_id)

        config = DeviceConnectionConfig(
            device_id=registration.device_identifier,
            connection_params={**registration.connection_config, **(connection_params or {})},
            timeout=self.config.sync_timeout_seconds,
            retry_attempts=CONNECT_RETRY_ATTEMPTS,
        )
        try:
            connection = await self.registry.connect_device(registration.plugin_id, config)
        except PluginError as e:
            self._touch(registration, status=ConnectionStatus.ERROR)
            log.warning("device_connection_failed", error=str(e))
            raise

        self._touch(registration, status=ConnectionStatus.CONNECTED, last_sync=connection.last_sync)
        log.info("device_connection_established")
        return connection

    async def disconnect_device(self, device_id: str) -> None:
        registration = self.get_device(device_id)
        await self.registry.disconnect_device(
            registration.plugin_id, registration.device_identifier
        )
        self._touch(registration, status=ConnectionStatus.DISCONNECTED)
        self.logger.info("device_connection_closed", device_id=device_id)

    def get_device_status(self, device_id: str) -> DeviceConnection | None:
        registration = self.get_device(device_id)
        return self.registry.get_device_connection(
            registration.plugin_id, registration.device_identifier
        )

    # Readings

    async def collect_readings(
        self, device_id: str, options: ReadDataOptions | None = None
    ) -> list[ProcessedReading]:
        """Read current data from a device and process every reading."""
        registration = self.get_device(device_id)
        readings = await self.registry.read_device_data(
            registration.plugin_id, registration.device_identifier, options
        )
        return [await self.process_vital_data(registration, reading) for reading in readings]

    async def process_vital_data(
        self, registration: DeviceRegistration, data: VitalData
    ) -> ProcessedReading:
        """Validate a reading, keep it, and raise alerts for critical values."""
        validation = self.validator.validate(data, registration.age_group)
        if not validation.is_valid:
            self.logger.warning(
                "invalid_vital_data",
                device_id=registration.id,
                reading_type=data.reading_type,
                errors=validation.errors,
            )

        self.readings.setdefault(registration.id, deque(maxlen=READING_HISTORY_LIMIT)).append(
            validation.normalized_data or data
        )

        alerts = check_alert_conditions(registration, data)
        await self.dispatch_alerts(alerts)
        return ProcessedReading(reading=data, validation=validation, alerts=alerts)

    def get_readings(self, device_id: str) -> list[VitalData]:
        self.get_device(device_id)
        return list(self.readings.get(device_id, ()))

    # Alerts

    async def dispatch_alerts(self, alerts: list[VitalAlert]) -> None:
        """Hand alerts to every handler; a failing handler never blocks the rest."""
        for alert in alerts:
            self.alert_history.append(alert)
            for handler in self.alert_handlers:
                try:
                    result = handler(alert)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    self.logger.error(
                        "alert_dispatch_failed", error=str(e), alert_message=alert.message
                    )

    def _log_alert(self, alert: VitalAlert) -> None:
        self.logger.warning(
            "vital_alert",
            severity=alert.severity,
            message=alert.message,
            device_id=alert.device_id,
            patient_id=alert.patient_id,
            values=alert.values,
        )

    # Sync

    def _devices_for_sync(
        self,
        device_ids: Iterable[str] | None,
        patient_id: str | None,
        plugin_ids: Iterable[str] | None,
    ) -> list[DeviceRegistration]:
        wanted = set(device_ids) if device_ids is not None else None
        plugins = set(plugin_ids) if plugin_ids is not None else None
        return [
            d
            for d in self.devices.values()
            if d.is_active
            and (wanted is None or d.id in wanted)
            and (patient_id is None or d.patient_id == patient_id)
            and (plugins is None or d.plugin_id in plugins)
        ]

    async def sync_devices(
        self,
        device_ids: Iterable[str] | None = None,
        patient_id: str | None = None,
        plugin_ids: Iterable[str] | None = None,
        include_historical: bool = False,
        historical_days: int = 7,
    ) -> SyncReport:
        """
        Sync matching active devices concurrently and process their readings.

        Devices already being synced are skipped with a warning. Failures are
        recorded per device in the report; this method does not raise for them.
        """
        start_time = datetime.now(UTC)
        started = time.perf_counter()
        report = SyncReport(start_time=start_time, end_time=start_time)

        candidates = self._devices_for_sync(device_ids, patient_id, plugin_ids)
        selected: list[DeviceRegistration] = []
        for registration in candidates:
            if registration.id in self._sync_in_progress:
                report.warnings.append(f"Sync already in progress for device {registration.id}")
                continue
            self._sync_in_progress.add(registration.id)
            selected.append(registration)

        self.logger.info(
            "device_sync_started", devices=len(selected), skipped=len(candidates) - len(selected)
        )

        semaphore = asyncio.Semaphore(self.config.max_concurrent_syncs)
        try:
            async with asyncio.TaskGroup() as task_group:
                tasks = [
                    task_group.create_task(
                        self._sync_one(
                            registration, semaphore, include_historical, historical_days
                        ),
                        name=f"sync-{registration.id}",
                    )
                    for registration in selected
                ]
        finally:
            self._sync_in_progress.difference_update(r.id for r in selected)

        for task in tasks:
            outcome = task.result()
            registration = outcome.registration
            report.warnings.extend(outcome.warnings)

            sync_error = outcome.to_sync_error()
            if sync_error is not None:
                report.errors.append(sync_error)
                continue

            result = outcome.sync_result
            assert result is not None
            report.devices_synced += 1
            report.records_processed += result.records_synced
            self._touch(registration, last_sync=result.last_sync_time)

            for reading in outcome.readings:
                processed = await self.process_vital_data(registration, reading)
                report.records_processed += 1
                if not processed.validation.is_valid:
                    report.invalid_readings += 1

        report.end_time = datetime.now(UTC)
        self.logger.info(
            "device_sync_completed",
            devices_synced=report.devices_synced,
            total_devices=len(selected),
            records_processed=report.records_processed,
            invalid_readings=report.invalid_readings,
            error_count=len(report.errors),
            duration_seconds=round(time.perf_counter() - started, 3),
        )
        return report

    async def _sync_one(
        self,
        registration: DeviceRegistration,
        semaphore: asyncio.Semaphore,
        include_historical: bool,
        historical_days: int,
    ) -> _DeviceSyncOutcome:
        plugin_id = registration.plugin_id
        timeout = self.config.sync_timeout_seconds
        log = self.logger.bind(device_id=registration.id, plugin_id=plugin_id)

        try:
            plugin = self.registry.get_plugin(plugin_id)
            if plugin is None:
                return _DeviceSyncOutcome.failed(
                    registration,
                    PluginNotLoadedError(plugin_id, device_id=registration.id, severity="high"),
                )

            async with semaphore:
                result = await asyncio.wait_for(
                    self.registry.sync_device(plugin_id, registration.device_identifier),
                    timeout=timeout,
                )
                outcome = _DeviceSyncOutcome(registration=registration, sync_result=result)

                if result.success and include_historical:
                    end_date = datetime.now(UTC)
                    options = HistoricalDataOptions(
                        start_date=end_date - timedelta(days=historical_days),
                        end_date=end_date,
                        limit=HISTORICAL_BATCH_LIMIT,
                    )
                    try:
                        outcome.readings = await asyncio.wait_for(
                            plugin.read_historical_data(registration.device_identifier, options),
                            timeout=timeout,
                        )
                    except Exception as e:
                        log.warning("historical_sync_failed", error=str(e))
                        outcome.warnings.append(
                            f"Historical sync failed for device {registration.id}: {e}"
                        )

            return outcome

        except TimeoutError:
            log.warning("device_sync_timeout", timeout_seconds=timeout)
            return _DeviceSyncOutcome.failed(
                registration,
                PluginError(
                    f"Sync timed out after {timeout:g}s",
                    plugin_id,
                    device_id=registration.id,
                    error_code="DEVICE_SYNC_TIMEOUT",
                    severity="high",
                    retryable=True,
                ),
            )
        except PluginError as e:
            return _DeviceSyncOutcome.failed(registration, e)
        except Exception as e:
            log.exception("unexpected_device_sync_error", error=str(e))
            return _DeviceSyncOutcome.failed(
                registration,
                PluginError(
                    str(e),
                    plugin_id,
                    device_id=registration.id,
                    error_code="DEVICE_SYNC_FAILED",
                    severity="high",
                ),
            )

    async def shutdown(self) -> None:
        """Disconnect every connected device; failures are logged."""
        for registration in list(self.devices.values()):
            if registration.status is not ConnectionStatus.CONNECTED:
                continue
            try:
                await self.disconnect_device(registration.id)
            except PluginError as e:
                self.logger.error(
                    "device_shutdown_disconnect_failed", device_id=registration.id, error=str(e)
                )
        self.logger.info("device_management_shutdown_complete")
