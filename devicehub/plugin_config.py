"""
Plugin system presets.

Environment-specific plugin configurations, registry presets, and the static
device-type and regional availability tables used for compatibility checks.
"""

from pydantic import BaseModel, ConfigDict, Field

from devicehub.domain.models import Environment, PluginConfig, RateLimit

_FITBIT_RATE_LIMIT = RateLimit(requests=150, window_seconds=3600)

PLUGIN_CONFIGS: dict[str, dict[str, PluginConfig]] = {
    "development": {
        "mock-bp": PluginConfig(
            environment="development",
            features={
                "mock_data": True,
                "real_time_sync": False,
                "simulate_errors": False,
                "fast_mode": True,
            },
        ),
        "mock-glucose": PluginConfig(
            environment="development",
            features={
                "mock_data": True,
                "real_time_sync": False,
                "simulate_errors": False,
                "ketones_support": True,
                "fast_mode": True,
            },
        ),
        "fitbit": PluginConfig(
            environment="development",
            features={
                "oauth": True,
                "real_time_sync": False,
                "historical_data": True,
                "mock_mode": True,
            },
            rate_limits=_FITBIT_RATE_LIMIT,
        ),
    },
    "staging": {
        "mock-bp": PluginConfig(
            environment="staging",
            features={
                "mock_data": True,
                "real_time_sync": True,
                "simulate_errors": True,
                "fast_mode": False,
            },
        ),
        "mock-glucose": PluginConfig(
            environment="staging",
            features={
                "mock_data": True,
                "real_time_sync": True,
                "simulate_errors": True,
                "ketones_support": True,
                "fast_mode": False,
            },
        ),
        "fitbit": PluginConfig(
            environment="staging",
            api_endpoint="https://api.fitbit.com/1",
            features={
                "oauth": True,
                "real_time_sync": True,
                "historical_data": True,
                "mock_mode": False,
            },
            rate_limits=_FITBIT_RATE_LIMIT,
        ),
        "omron-bp": PluginConfig(
            environment="staging",
            features={"bluetooth": True, "real_time_sync": True, "device_discovery": True},
        ),
    },
    "production": {
        "fitbit": PluginConfig(
            environment="production",
            api_endpoint="https://api.fitbit.com/1",
            features={
                "oauth": True,
                "real_time_sync": True,
                "historical_data": True,
                "mock_mode": False,
            },
            rate_limits=_FITBIT_RATE_LIMIT,
        ),
        "omron-bp": PluginConfig(
            environment="production",
            features={
                "bluetooth": True,
                "real_time_sync": True,
                "device_discovery": True,
                "auto_reconnect": True,
            },
        ),
        "generic-bluetooth": PluginConfig(
            environment="production",
            features={
                "bluetooth": True,
                "device_discovery": True,
                "auto_reconnect": True,
                "multi_device": True,
            },
        ),
    },
}


class RegistryPreset(BaseModel):
    """Registry defaults for one environment."""

    model_config = ConfigDict(frozen=True)

    enabled_plugins: tuple[str, ...]
    max_retries: int = Field(ge=0)
    health_check_interval_seconds: float = Field(ge=0.0)
    enable_hot_reload: bool
    log_level: str


REGISTRY_PRESETS: dict[str, RegistryPreset] = {
    "development": RegistryPreset(
        enabled_plugins=("mock-bp", "mock-glucose"),
        max_retries=3,
        health_check_interval_seconds=30.0,
        enable_hot_reload=True,
        log_level="DEBUG",
    ),
    "staging": RegistryPreset(
        enabled_plugins=("mock-bp", "mock-glucose", "fitbit"),
        max_retries=5,
        health_check_interval_seconds=60.0,
        enable_hot_reload=False,
        log_level="INFO",
    ),
    "production": RegistryPreset(
        enabled_plugins=("fitbit", "omron-bp", "generic-bluetooth"),
        max_retries=5,
        health_check_interval_seconds=300.0,
        enable_hot_reload=False,
        log_level="ERROR",
    ),
}

DEVICE_TYPE_PLUGINS: dict[str, list[str]] = {
    "BLOOD_PRESSURE": ["mock-bp", "omron-bp", "generic-bluetooth"],
    "GLUCOSE_METER": ["mock-glucose", "generic-bluetooth"],
    "WEARABLE": ["fitbit"],
    "PULSE_OXIMETER": ["generic-bluetooth"],
    "THERMOMETER": ["generic-bluetooth"],
    "ECG_MONITOR": ["generic-bluetooth"],
    "SCALE": ["fitbit", "generic-bluetooth"],
    "SPIROMETER": ["generic-bluetooth"],
}

REGIONAL_PLUGINS: dict[str, list[str]] = {
    "US": ["fitbit", "omron-bp", "mock-bp", "mock-glucose", "generic-bluetooth"],
    "EU": ["omron-bp", "mock-bp", "mock-glucose", "generic-bluetooth"],
    "IN": ["mock-bp", "mock-glucose", "generic-bluetooth"],
    "global": ["mock-bp", "mock-glucose", "generic-bluetooth"],
}


def get_plugin_config(plugin_id: str, environment: str = "development") -> PluginConfig | None:
    """Get the preset configuration of a plugin for an environment, if any."""
    return PLUGIN_CONFIGS.get(environment, {}).get(plugin_id)


def get_registry_preset(environment: str = "development") -> RegistryPreset:
    """Get registry defaults for an environment (development if unknown)."""
    return REGISTRY_PRESETS.get(environment, REGISTRY_PRESETS["development"])


def plugin_ids_for_device_type(device_type: str) -> list[str]:
    return DEVICE_TYPE_PLUGINS.get(device_type, [])


def plugin_ids_for_region(region: str) -> list[str]:
    return REGIONAL_PLUGINS.get(region, REGIONAL_PLUGINS["global"])


def is_plugin_enabled(plugin_id: str, enabled_plugins: list[str] | tuple[str, ...]) -> bool:
    return plugin_id in enabled_plugins


def validate_plugin_compatibility(
    plugin_id: str,
    device_type: str,
    region: str,
    enabled_plugins: list[str] | tuple[str, ...] | None = None,
    environment: str = "development",
) -> tuple[bool, list[str]]:
    """
    Check whether a plugin can serve a device type in a region.

    Args:
        plugin_id: Plugin to check
        device_type: Device type such as "BLOOD_PRESSURE"
        region: Region code such as "US" or "global"
        enabled_plugins: Enabled plugin ids; defaults to the environment preset
        environment: Environment used when enabled_plugins is not given

    Returns:
        Tuple of (compatible, reasons) where reasons lists every failed check.
    """
    reasons: list[str] = []

    if plugin_id not in plugin_ids_for_device_type(device_type):
        reasons.append(f"Plugin {plugin_id} does not support device type {device_type}")

    if plugin_id not in plugin_ids_for_region(region):
        reasons.append(f"Plugin {plugin_id} is not available in region {region}")

    if enabled_plugins is None:
        enabled_plugins = get_registry_preset(environment).enabled_plugins
    if not is_plugin_enabled(plugin_id, enabled_plugins):
        reasons.append(f"Plugin {plugin_id} is not enabled in current environment")

    return not reasons, reasons
