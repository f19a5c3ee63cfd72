"""
Core services for the device hub.

This package contains the service implementations: payload transformation,
medical range validation, the plugin registry and device management.
"""

from .device_management import DeviceManagementService, DeviceRegistration, SyncReport
from .plugin_registry import PluginRegistry
from .transformer import convert_units, transform_payload, transform_to_vital_data
from .validator import VitalDataValidator, normalize_data, validate_vital_data

__all__ = [
    "transform_payload",
    "transform_to_vital_data",
    "convert_units",
    "validate_vital_data",
    "normalize_data",
    "VitalDataValidator",
    "PluginRegistry",
    "DeviceManagementService",
    "DeviceRegistration",
    "SyncReport",
]
