"""
Configuration management with environment variable support and validation.

Design principles:
- Environment-specific presets (development, staging, production)
- Validation at startup (fail fast)
- Type safety with Pydantic
"""

import logging
import os
from functools import lru_cache
from typing import Literal, cast

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator

from devicehub.domain.models import AgeGroup, Environment, Gender
from devicehub.plugin_config import get_registry_preset

# Load environment variables from .env file
load_dotenv()

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class RegistryConfig(BaseModel):
    """Plugin registry configuration."""

    environment: Environment = Field(default="development", description="Deployment environment")
    enabled_plugins: list[str] = Field(
        default_factory=lambda: ["mock-bp", "mock-glucose"],
        description="Plugin ids loaded by initialize()",
    )
    max_retries: int = Field(default=3, ge=0, description="Retry budget advertised to callers")
    health_check_interval_seconds: float = Field(
        default=30.0, ge=0.0, description="Interval between plugin health checks (0 disables)"
    )
    enable_hot_reload: bool = Field(default=False, description="Allow reload_plugin() at runtime")
    maintenance_error_threshold: int = Field(
        default=5, gt=0, description="Error count above which an erroring plugin enters maintenance"
    )

    @field_validator("enabled_plugins")
    @classmethod
    def strip_plugin_ids(cls, v: list[str]) -> list[str]:
        ids: list[str] = []
        for plugin_id in v:
            plugin_id = plugin_id.strip()
            if plugin_id and plugin_id not in ids:
                ids.append(plugin_id)
        return ids


class ValidationConfig(BaseModel):
    """Defaults used when validating readings against medical ranges."""

    default_age_group: AgeGroup = Field(default="adult", description="Population for range lookup")
    default_gender: Gender | None = Field(default=None, description="Gender for range lookup")


class DeviceManagementConfig(BaseModel):
    """Device synchronisation settings."""

    sync_timeout_seconds: float = Field(
        default=30.0, gt=0.0, description="Timeout for a single device sync"
    )
    max_concurrent_syncs: int = Field(default=10, gt=0, description="Devices synced in parallel")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: LogLevel = Field(default="INFO", description="Logging level")
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Main application configuration combining all subsystems."""

    environment: Environment = Field(default="development", description="Environment")
    debug: bool = Field(default=False, description="Enable debug mode")

    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    devices: DeviceManagementConfig = Field(default_factory=DeviceManagementConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Ensure debug mode is only allowed in development environment."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self

    @model_validator(mode="after")
    def registry_matches_environment(self) -> "AppConfig":
        if self.registry.environment != self.environment:
            raise ValueError(
                f"registry environment {self.registry.environment!r} does not match "
                f"application environment {self.environment!r}"
            )
        return self


def load_config_from_env() -> AppConfig:
    """Load configuration from environment variables with validation."""

    def _env_to_literal(val: str) -> Environment:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> LogLevel:
        v = val.strip().upper()
        levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        return cast(LogLevel, v if v in levels else "INFO")

    def _parse_bool(val: str | None, default: bool) -> bool:
        if val is None:
            return default
        return val.strip().lower() in {"1", "true", "yes", "on"}

    # ENVIRONMENT wins; NODE_ENV is honoured for deployments shared with the web app
    environment = _env_to_literal(
        os.getenv("ENVIRONMENT") or os.getenv("NODE_ENV") or "development"
    )
    debug = environment == "development"
    preset = get_registry_preset(environment)

    enabled = os.getenv("ENABLED_PLUGINS")
    registry_config = RegistryConfig(
        environment=environment,
        enabled_plugins=enabled.split(",") if enabled else list(preset.enabled_plugins),
        max_retries=preset.max_retries,
        health_check_interval_seconds=float(
            os.getenv("HEALTH_CHECK_INTERVAL_SECONDS", str(preset.health_check_interval_seconds))
        ),
        enable_hot_reload=_parse_bool(os.getenv("ENABLE_HOT_RELOAD"), preset.enable_hot_reload),
    )

    validation_config = ValidationConfig(
        default_age_group=cast(AgeGroup, os.getenv("DEFAULT_AGE_GROUP", "adult").strip().lower()),
    )

    devices_config = DeviceManagementConfig(
        sync_timeout_seconds=float(os.getenv("DEVICE_SYNC_TIMEOUT_SECONDS", "30.0")),
        max_concurrent_syncs=int(os.getenv("DEVICE_MAX_CONCURRENT_SYNCS", "10")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", preset.log_level)),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        registry=registry_config,
        validation=validation_config,
        devices=devices_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Get cached application configuration."""
    return load_config_from_env()


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog for the process."""
    config = config or get_config().logging
    logging.basicConfig(format="%(message)s", level=getattr(logging, config.level))

    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def print_config_summary() -> None:
    """Print configuration summary for debugging."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nPLUGIN REGISTRY")
    print(f"Enabled Plugins: {', '.join(config.registry.enabled_plugins) or '(none)'}")
    print(f"Health Check Interval: {config.registry.health_check_interval_seconds}s")
    print(f"Maintenance Threshold: {config.registry.maintenance_error_threshold} errors")
    print(f"Hot Reload: {config.registry.enable_hot_reload}")

    print("\nVALIDATION")
    print(f"Default Age Group: {config.validation.default_age_group}")

    print("\nDEVICES")
    print(f"Sync Timeout: {config.devices.sync_timeout_seconds}s")
    print(f"Max Concurrent Syncs: {config.devices.max_concurrent_syncs}")


if __name__ == "__main__":
    print_config_summary()
