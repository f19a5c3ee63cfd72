"""
Domain models for device integration and vital-sign readings.

These models represent the core concepts shared by the transformer, the validator
and the plugin registry. They use Pydantic for validation and stay free of any
transport or storage concerns.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

AgeGroup = Literal["pediatric", "adult", "geriatric"]
Gender = Literal["male", "female"]
Environment = Literal["development", "staging", "production"]


class ReadingType(str, Enum):
    """Vital reading types understood by the range table."""

    BLOOD_PRESSURE = "blood_pressure"
    BLOOD_GLUCOSE = "blood_glucose"
    OXYGEN_SATURATION = "oxygen_saturation"
    BODY_TEMPERATURE = "body_temperature"
    WEIGHT = "weight"
    HEART_RATE = "heart_rate"
    UNKNOWN = "unknown"


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SYNCING = "syncing"
    ERROR = "error"


class PluginStatus(str, Enum):
    """Health status of a loaded plugin."""

    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    MAINTENANCE = "maintenance"


class PluginState(str, Enum):
    """Lifecycle state of a plugin id inside a registry."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


class VitalContext(BaseModel):
    """Circumstances of a reading reported by the device or the patient."""

    patient_condition: str | None = None
    medication_taken: bool | None = None
    symptoms: list[str] = Field(default_factory=list)
    location: str | None = None


class VitalQuality(BaseModel):
    score: float = Field(default=1.0, ge=0.0, le=1.0, description="Confidence in the reading")
    issues: list[str] = Field(default_factory=list)


class VitalData(BaseModel):
    """A single canonical vital reading produced from a raw device payload."""

    reading_type: str
    primary_value: float
    secondary_value: float | None = None
    unit: str = ""
    timestamp: datetime | None = None
    context: VitalContext = Field(default_factory=VitalContext)
    quality: VitalQuality = Field(default_factory=VitalQuality)
    raw_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("reading_type", mode="before")
    @classmethod
    def reading_type_as_plain_str(cls, v: Any) -> Any:
        # Enum members hash by name, so range lookups need the plain value
        if isinstance(v, Enum):
            return v.value
        return v

    @field_validator("timestamp")
    @classmethod
    def timestamp_as_utc(cls, v: datetime | None) -> datetime | None:
        """Naive timestamps are taken to be UTC, like parsed payload timestamps."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v


class MedicalRange(BaseModel):
    """Normal and critical band for one vital type and population."""

    model_config = ConfigDict(frozen=True)

    min: float
    max: float
    critical_min: float | None = None
    critical_max: float | None = None
    unit: str
    age_group: AgeGroup | None = None
    gender: Gender | None = None


class TransformationRule(BaseModel):
    """How one raw payload field becomes one canonical field."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    source_field: str = Field(min_length=1, description="Dotted path into the raw payload")
    target_field: str = Field(min_length=1)
    transform: Callable[[Any], Any] | None = None
    validate_value: Callable[[Any], bool] | None = Field(default=None, alias="validate")
    unit: str | None = None
    required: bool = False


class DeviceConnectionConfig(BaseModel):
    device_id: str
    connection_params: dict[str, Any] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0.0)
    retry_attempts: int | None = Field(default=None, ge=0)


class DeviceConnection(BaseModel):
    """Connection state of one device as seen by its plugin."""

    device_id: str
    is_connected: bool = False
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_sync: datetime | None = None
    battery_level: int | None = Field(default=None, ge=0, le=100)
    signal_strength: int | None = Field(default=None, ge=0, le=100)
    firmware_version: str | None = None
    error_message: str | None = None


class DeviceCapability(BaseModel):
    reading_types: list[str] = Field(default_factory=list)
    supports_realtime: bool = False
    supports_historical: bool = False
    supports_bulk_sync: bool = False
    max_history_days: int = Field(default=0, ge=0)
    min_sync_interval_seconds: float = Field(default=0.0, ge=0.0)


class PluginMetadata(BaseModel):
    """Static description of a device plugin."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    version: str = "0.0.0"
    description: str = ""
    author: str = ""
    homepage: str | None = None
    repository: str | None = None
    supported_devices: list[str] = Field(default_factory=list)
    supported_regions: list[str] = Field(default_factory=list)
    capabilities: DeviceCapability = Field(default_factory=DeviceCapability)
    dependencies: list[str] = Field(default_factory=list)
    min_platform_version: str = "1.0.0"


class RateLimit(BaseModel):
    requests: int = Field(gt=0)
    window_seconds: float = Field(gt=0.0)


class PluginConfig(BaseModel):
    """Runtime configuration handed to a plugin's initialize()."""

    model_config = ConfigDict(extra="allow")

    environment: Environment = "development"
    features: dict[str, bool] = Field(default_factory=dict)
    api_endpoint: str | None = None
    api_key: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    region: str | None = None
    rate_limits: RateLimit | None = None

    def feature(self, name: str) -> bool:
        return self.features.get(name, False)


class PluginRoute(BaseModel):
    """REST-style endpoint descriptor exposed by a plugin."""

    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"]
    path: str
    handler: str
    middleware: list[str] = Field(default_factory=list)
    requires_auth: bool = True
    allowed_roles: list[str] = Field(default_factory=list)


class PluginHealth(BaseModel):
    """Advisory health record kept by the registry for each loaded plugin."""

    plugin_id: str
    status: PluginStatus = PluginStatus.HEALTHY
    connected_devices: int = Field(default=0, ge=0)
    last_sync: datetime | None = None
    error_count: int = Field(default=0, ge=0)
    uptime: float = Field(default=0.0, ge=0.0, description="Seconds since the plugin was loaded")
    start_time: datetime = Field(default_factory=lambda: datetime.now(UTC))
    api_calls_today: int = Field(default=0, ge=0)


class ReadDataOptions(BaseModel):
    since: datetime | None = None
    limit: int | None = Field(default=None, gt=0)
    reading_types: list[str] | None = None
    include_raw: bool = False


class HistoricalDataOptions(BaseModel):
    start_date: datetime
    end_date: datetime
    reading_types: list[str] | None = None
    aggregation: Literal["none", "hourly", "daily", "weekly"] = "none"
    limit: int | None = Field(default=None, gt=0)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    normalized_data: VitalData | None = None


class ConfigValidationResult(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    sanitized_config: PluginConfig | None = None


class SyncResult(BaseModel):
    device_id: str
    success: bool
    records_synced: int = Field(default=0, ge=0)
    errors: list[str] = Field(default_factory=list)
    sync_duration_seconds: float = Field(default=0.0, ge=0.0)
    last_sync_time: datetime = Field(default_factory=lambda: datetime.now(UTC))


class BulkSyncResult(BaseModel):
    total_devices: int
    success_count: int
    failed_count: int
    results: list[SyncResult]
    total_records: int
    duration_seconds: float


PluginEventType = Literal[
    "plugin:loaded",
    "plugin:unloaded",
    "plugin:error",
    "device:connected",
    "device:disconnected",
    "device:data",
    "device:error",
    "sync:started",
    "sync:completed",
    "sync:failed",
    "registry:ready",
]


@dataclass
class PluginEvent:
    """Event emitted by the plugin registry to its listeners."""

    type: PluginEventType
    plugin_id: str | None = None
    device_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = field(default_factory=dict)
    error: BaseException | None = None
