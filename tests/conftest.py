"""Shared fixtures: a registry wired to the mock device plugins in fast mode."""

import random
from collections.abc import AsyncIterator

import pytest

from adapters.devices import MockBloodPressurePlugin, MockGlucoseMeterPlugin
from devicehub.config import RegistryConfig
from devicehub.domain.plugin import PluginFactory
from devicehub.plugin_config import PLUGIN_CONFIGS
from devicehub.services.plugin_registry import PluginRegistry


@pytest.fixture
def registry_config() -> RegistryConfig:
    return RegistryConfig(
        environment="development",
        enabled_plugins=["mock-bp", "mock-glucose"],
        health_check_interval_seconds=0,
    )


@pytest.fixture
def plugin_factories() -> dict[str, PluginFactory | None]:
    """Mock plugins with seeded randomness so readings are reproducible."""
    return {
        "mock-bp": lambda: MockBloodPressurePlugin(rng=random.Random(7)),
        "mock-glucose": lambda: MockGlucoseMeterPlugin(rng=random.Random(11)),
        "fitbit": None,
        "omron-bp": None,
        "generic-bluetooth": None,
    }


@pytest.fixture
async def registry(
    registry_config: RegistryConfig, plugin_factories: dict[str, PluginFactory | None]
) -> AsyncIterator[PluginRegistry]:
    """Initialized registry; development presets enable fast_mode on both mocks."""
    registry = PluginRegistry(registry_config, plugin_factories, PLUGIN_CONFIGS["development"])
    async with registry.session():
        yield registry
