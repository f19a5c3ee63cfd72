"""
Device plugins known to the registry.

PLUGIN_FACTORIES maps every plugin id the platform knows about to a factory.
Ids mapped to None are reserved for integrations that are not shipped yet;
loading them fails with PluginImportError.
"""

from collections.abc import Mapping

from devicehub.domain.plugin import PluginFactory

from .blood_pressure import MockBloodPressurePlugin
from .glucose import MockGlucoseMeterPlugin
from .simulated import SimulatedDevicePlugin

PLUGIN_FACTORIES: Mapping[str, PluginFactory | None] = {
    "mock-bp": MockBloodPressurePlugin,
    "mock-glucose": MockGlucoseMeterPlugin,
    "fitbit": None,
    "omron-bp": None,
    "generic-bluetooth": None,
}

__all__ = [
    "PLUGIN_FACTORIES",
    "MockBloodPressurePlugin",
    "MockGlucoseMeterPlugin",
    "SimulatedDevicePlugin",
]
