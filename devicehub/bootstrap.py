"""
Composition root.

Builds a plugin registry from application configuration and the known plugin
factories. Callers own the registry they get back; there is no process-wide
instance.
"""

from collections.abc import Mapping
from typing import Any

import structlog

from adapters.devices import PLUGIN_FACTORIES
from devicehub.config import AppConfig, RegistryConfig, configure_logging, get_config
from devicehub.domain.plugin import PluginFactory
from devicehub.plugin_config import PLUGIN_CONFIGS
from devicehub.services.device_management import DeviceManagementService
from devicehub.services.plugin_registry import PluginRegistry
from devicehub.services.validator import VitalDataValidator

logger = structlog.get_logger(__name__)


def create_plugin_registry(
    config: AppConfig | None = None,
    factories: Mapping[str, PluginFactory | None] | None = None,
) -> PluginRegistry:
    """Create an uninitialized registry for the configured environment."""
    config = config or get_config()
    configure_logging(config.logging)

    registry = PluginRegistry(
        config.registry,
        factories if factories is not None else PLUGIN_FACTORIES,
        PLUGIN_CONFIGS.get(config.environment, {}),
    )
    logger.info(
        "plugin_registry_created",
        environment=config.environment,
        enabled_plugins=config.registry.enabled_plugins,
    )
    return registry


async def initialize_plugin_registry(
    config: AppConfig | None = None, **registry_overrides: Any
) -> PluginRegistry:
    """
    Create and initialize a registry.

    Keyword overrides replace fields of the registry configuration, e.g.
    ``enabled_plugins=["mock-bp"]`` or ``health_check_interval_seconds=0``.
    """
    config = config or get_config()
    if registry_overrides:
        registry_config = RegistryConfig.model_validate(
            {**config.registry.model_dump(), **registry_overrides}
        )
        config = config.model_copy(update={"registry": registry_config})

    registry = create_plugin_registry(config)
    await registry.initialize()
    return registry


def create_device_management_service(
    registry: PluginRegistry, config: AppConfig | None = None
) -> DeviceManagementService:
    config = config or get_config()
    return DeviceManagementService(
        registry, config.devices, validator=VitalDataValidator(config.validation)
    )
