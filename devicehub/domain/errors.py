"""Exceptions raised by the plugin registry and device plugins."""

from typing import Any, Literal

ErrorSeverity = Literal["low", "medium", "high", "critical"]


class PluginError(Exception):
    """A failure attributed to a specific plugin (and optionally a device)."""

    def __init__(
        self,
        message: str,
        plugin_id: str,
        *,
        device_id: str | None = None,
        error_code: str = "PLUGIN_ERROR",
        severity: ErrorSeverity = "medium",
        retryable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.plugin_id = plugin_id
        self.device_id = device_id
        self.error_code = error_code
        self.severity = severity
        self.retryable = retryable
        self.context = context or {}


class PluginImportError(PluginError):
    """No implementation could be resolved for a plugin id."""

    def __init__(self, message: str, plugin_id: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "PLUGIN_IMPORT_FAILED")
        kwargs.setdefault("severity", "high")
        super().__init__(message, plugin_id, **kwargs)


class PluginValidationError(PluginError):
    """A plugin instance does not satisfy the DevicePlugin contract."""

    def __init__(self, message: str, plugin_id: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "PLUGIN_INVALID")
        kwargs.setdefault("severity", "high")
        super().__init__(message, plugin_id, **kwargs)


class PluginNotLoadedError(PluginError):
    def __init__(self, plugin_id: str, **kwargs: Any) -> None:
        kwargs.setdefault("error_code", "PLUGIN_NOT_LOADED")
        super().__init__(f"Plugin {plugin_id} is not loaded", plugin_id, **kwargs)


class DeviceNotRegisteredError(LookupError):
    """No registered device has the given id."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device {device_id} not found")
        self.device_id = device_id
