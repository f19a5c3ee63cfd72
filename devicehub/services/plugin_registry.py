"""
Device plugin registry.

Loads device plugins from an explicit factory table, tracks their health, and
dispatches device operations (connect, read, sync) to them.

Key patterns:
- Explicitly constructed registry object, owned by the composition root
- Protocol-based plugins validated structurally at load time
- Event listeners (sync or async) for lifecycle and device events
- Background asyncio task for advisory health monitoring
"""

import asyncio
import contextlib
import inspect
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import structlog

from devicehub.config import RegistryConfig
from devicehub.domain.errors import (
    PluginError,
    PluginImportError,
    PluginNotLoadedError,
    PluginValidationError,
)
from devicehub.domain.models import (
    ConnectionStatus,
    DeviceConnection,
    DeviceConnectionConfig,
    PluginConfig,
    PluginEvent,
    PluginEventType,
    PluginHealth,
    PluginRoute,
    PluginState,
    PluginStatus,
    ReadDataOptions,
    SyncResult,
    VitalData,
)
from devicehub.domain.plugin import REQUIRED_PLUGIN_METHODS, DevicePlugin, PluginFactory

logger = structlog.get_logger(__name__)

EventHandler = Callable[[PluginEvent], Awaitable[None] | None]

ROUTE_PREFIX = "/plugins"
WILDCARD_DEVICE = "*"
GLOBAL_REGION = "global"


class PluginRegistry:
    """
    Registry of loaded device plugins, keyed by plugin id.

    Design principles:
    - Idempotent loading (a plugin id is never registered twice)
    - Failures raised to the caller and published as plugin:error events
    - Health data is advisory; nothing here depends on it for correctness
    """

    def __init__(
        self,
        config: RegistryConfig,
        factories: Mapping[str, PluginFactory | None],
        plugin_configs: Mapping[str, PluginConfig] | None = None,
    ) -> None:
        self.config = config
        self._factories = dict(factories)
        self._preset_configs = dict(plugin_configs or {})

        self._plugins: dict[str, DevicePlugin] = {}
        self._active_configs: dict[str, PluginConfig] = {}
        self._health: dict[str, PluginHealth] = {}
        self._routes: dict[str, list[PluginRoute]] = {}
        self._connections: dict[str, dict[str, DeviceConnection]] = {}
        self._loading: set[str] = set()

        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._health_task: asyncio.Task[None] | None = None
        self.logger = logger.bind(component="plugin_registry", environment=config.environment)

        self.on("plugin:error", self._record_plugin_error)

    # Events

    def on(self, event_type: PluginEventType, handler: EventHandler) -> None:
        """Subscribe a sync or async handler to an event type."""
        self._handlers[event_type].append(handler)

    def off(self, event_type: PluginEventType, handler: EventHandler) -> None:
        with contextlib.suppress(ValueError):
            self._handlers[event_type].remove(handler)

    async def emit(self, event: PluginEvent) -> None:
        """Deliver an event to every handler. Handler failures are logged, never raised."""
        for handler in list(self._handlers.get(event.type, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.logger.error(
                    "event_handler_failed",
                    event_type=event.type,
                    plugin_id=event.plugin_id,
                    error=str(e),
                )

    def _record_plugin_error(self, event: PluginEvent) -> None:
        health = self._health.get(event.plugin_id or "")
        if health is None:
            return
        health.error_count += 1
        # Maintenance is only left by unloading the plugin
        if health.status is not PluginStatus.MAINTENANCE:
            health.status = PluginStatus.ERROR

    async def _publish_error(
        self, error: PluginError, device_id: str | None = None, also: PluginEventType | None = None
    ) -> None:
        await self.emit(
            PluginEvent(
                type="plugin:error", plugin_id=error.plugin_id, device_id=device_id, error=error
            )
        )
        if also is not None:
            await self.emit(
                PluginEvent(type=also, plugin_id=error.plugin_id, device_id=device_id, error=error)
            )

    # Lifecycle

    async def initialize(self) -> None:
        """
        Load every enabled plugin and start health monitoring.

        A plugin that fails to load is logged and skipped so the remaining
        plugins stay available.
        """
        self.logger.info(
            "plugin_registry_initializing", enabled_plugins=self.config.enabled_plugins
        )

        failed: list[str] = []
        for plugin_id in self.config.enabled_plugins:
            try:
                await self.load_plugin(plugin_id)
            except PluginError:
                failed.append(plugin_id)

        self.start_health_monitoring()

        self.logger.info(
            "plugin_registry_ready", loaded_plugins=len(self._plugins), failed_plugins=failed
        )
        await self.emit(
            PluginEvent(
                type="registry:ready",
                data={"loaded_plugins": list(self._plugins), "failed_plugins": failed},
            )
        )

    async def load_plugin(self, plugin_id: str) -> None:
        """
        Instantiate, validate and initialize a plugin.

        Loading an id that is already loaded (or currently loading) is a no-op.

        Raises:
            PluginError: If the plugin cannot be resolved, is invalid, or fails
                to initialize. A plugin:error event is emitted first.
        """
        log = self.logger.bind(plugin_id=plugin_id)

        state = self.get_plugin_state(plugin_id)
        if state is not PluginState.UNLOADED:
            log.warning("plugin_already_loaded", state=state.value)
            return

        log.info("plugin_loading")
        self._loading.add(plugin_id)
        try:
            plugin = self._instantiate(plugin_id)
            self._validate_plugin(plugin_id, plugin)
            config = self._preset_configs.get(plugin_id)
            if config is None:
                config = plugin.get_default_config()
            await plugin.initialize(config)
        except Exception as e:
            error = (
                e
                if isinstance(e, PluginError)
                else PluginError(
                    f"Failed to load plugin {plugin_id}: {e}",
                    plugin_id,
                    error_code="PLUGIN_LOAD_FAILED",
                    severity="high",
                )
            )
            log.error("plugin_load_failed", error=str(error), error_code=error.error_code)
            await self._publish_error(error)
            if error is e:
                raise
            raise error from e
        finally:
            self._loading.discard(plugin_id)

        self._plugins[plugin_id] = plugin
        self._active_configs[plugin_id] = config
        self._health[plugin_id] = PluginHealth(plugin_id=plugin_id)
        self._connections[plugin_id] = {}
        self._collect_routes(plugin_id, plugin)

        log.info("plugin_loaded", version=plugin.metadata.version)
        await self.emit(
            PluginEvent(
                type="plugin:loaded", plugin_id=plugin_id, data={"metadata": plugin.metadata}
            )
        )

    async def unload_plugin(self, plugin_id: str) -> None:
        """
        Destroy a plugin and drop all of its bookkeeping.

        Raises:
            PluginNotLoadedError: If the plugin is not loaded.
            PluginError: If the plugin's destroy() fails (it stays registered).
        """
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise PluginNotLoadedError(plugin_id)

        log = self.logger.bind(plugin_id=plugin_id)
        log.info("plugin_unloading")

        try:
            await plugin.destroy()
        except Exception as e:
            error = PluginError(
                f"Failed to unload plugin {plugin_id}: {e}",
                plugin_id,
                error_code="PLUGIN_UNLOAD_FAILED",
            )
            log.error("plugin_unload_failed", error=str(e))
            await self._publish_error(error)
            raise error from e

        del self._plugins[plugin_id]
        self._active_configs.pop(plugin_id, None)
        self._health.pop(plugin_id, None)
        self._routes.pop(plugin_id, None)
        self._connections.pop(plugin_id, None)

        log.info("plugin_unloaded")
        await self.emit(PluginEvent(type="plugin:unloaded", plugin_id=plugin_id))

    async def reload_plugin(self, plugin_id: str) -> None:
        if plugin_id in self._plugins:
            await self.unload_plugin(plugin_id)
        await self.load_plugin(plugin_id)

    async def shutdown(self) -> None:
        """Stop health monitoring and unload every plugin."""
        self.logger.info("plugin_registry_shutting_down")
        await self.stop_health_monitoring()

        for plugin_id in list(self._plugins):
            try:
                await self.unload_plugin(plugin_id)
            except PluginError as e:
                self.logger.error(
                    "plugin_shutdown_unload_failed", plugin_id=plugin_id, error=str(e)
                )

        self._plugins.clear()
        self._active_configs.clear()
        self._health.clear()
        self._routes.clear()
        self._connections.clear()
        self.logger.info("plugin_registry_shutdown_complete")

    @asynccontextmanager
    async def session(self) -> AsyncIterator["PluginRegistry"]:
        """Initialize on enter, shut down on exit (even on error)."""
        await self.initialize()
        try:
            yield self
        finally:
            await self.shutdown()

    def _instantiate(self, plugin_id: str) -> DevicePlugin:
        if plugin_id not in self._factories:
            raise PluginImportError(f"Unknown plugin ID: {plugin_id}", plugin_id)

        factory = self._factories[plugin_id]
        if factory is None:
            raise PluginImportError(
                f"Failed to import plugin {plugin_id}: no implementation available", plugin_id
            )
        return factory()

    def _validate_plugin(self, plugin_id: str, plugin: object) -> None:
        for method in REQUIRED_PLUGIN_METHODS:
            if not callable(getattr(plugin, method, None)):
                raise PluginValidationError(f"Plugin missing required method: {method}", plugin_id)

        metadata = getattr(plugin, "metadata", None)
        if metadata is None or not getattr(metadata, "id", None) or not getattr(
            metadata, "name", None
        ):
            raise PluginValidationError("Plugin missing required metadata (id, name)", plugin_id)

    def _collect_routes(self, plugin_id: str, plugin: DevicePlugin) -> None:
        register_routes = getattr(plugin, "register_routes", None)
        if not callable(register_routes):
            return

        routes = [
            route.model_copy(update={"path": f"{ROUTE_PREFIX}/{route.path.lstrip('/')}"})
            for route in register_routes()
        ]
        self._routes[plugin_id] = routes
        self.logger.info("plugin_routes_registered", plugin_id=plugin_id, route_count=len(routes))

    # Queries

    def get_plugin(self, plugin_id: str) -> DevicePlugin | None:
        return self._plugins.get(plugin_id)

    def get_loaded_plugins(self) -> list[DevicePlugin]:
        return list(self._plugins.values())

    def get_plugin_state(self, plugin_id: str) -> PluginState:
        if plugin_id in self._plugins:
            return PluginState.LOADED
        if plugin_id in self._loading:
            return PluginState.LOADING
        return PluginState.UNLOADED

    def get_plugin_config(self, plugin_id: str) -> PluginConfig | None:
        return self._active_configs.get(plugin_id)

    def get_plugin_health(self, plugin_id: str) -> PluginHealth | None:
        return self._health.get(plugin_id)

    def get_all_plugin_health(self) -> list[PluginHealth]:
        return list(self._health.values())

    def get_plugins_for_device_type(self, device_type: str) -> list[DevicePlugin]:
        return [
            plugin
            for plugin in self._plugins.values()
            if device_type in plugin.metadata.supported_devices
            or WILDCARD_DEVICE in plugin.metadata.supported_devices
        ]

    def get_plugins_for_region(self, region: str) -> list[DevicePlugin]:
        return [
            plugin
            for plugin in self._plugins.values()
            if region in plugin.metadata.supported_regions
            or GLOBAL_REGION in plugin.metadata.supported_regions
            or not plugin.metadata.supported_regions
        ]

    def get_plugin_routes(self, plugin_id: str | None = None) -> list[PluginRoute]:
        """Route descriptors under /plugins; mounting them is up to the host app."""
        if plugin_id is not None:
            return list(self._routes.get(plugin_id, []))
        return [route for routes in self._routes.values() for route in routes]

    def get_device_connection(self, plugin_id: str, device_id: str) -> DeviceConnection | None:
        return self._connections.get(plugin_id, {}).get(device_id)

    # Device dispatch

    def _require_plugin(self, plugin_id: str) -> DevicePlugin:
        plugin = self._plugins.get(plugin_id)
        if plugin is None:
            raise PluginNotLoadedError(plugin_id)
        return plugin

    def _as_plugin_error(
        self, plugin_id: str, device_id: str, error: Exception, error_code: str
    ) -> PluginError:
        if isinstance(error, PluginError):
            return error
        return PluginError(
            str(error), plugin_id, device_id=device_id, error_code=error_code, retryable=True
        )

    def _set_connection(self, plugin_id: str, connection: DeviceConnection) -> None:
        connections = self._connections.setdefault(plugin_id, {})
        connections[connection.device_id] = connection

        health = self._health.get(plugin_id)
        if health is not None:
            health.connected_devices = sum(1 for c in connections.values() if c.is_connected)

    def _update_connection(self, plugin_id: str, device_id: str, **changes: object) -> None:
        current = self.get_device_connection(plugin_id, device_id)
        if current is None:
            current = DeviceConnection(device_id=device_id)
        self._set_connection(plugin_id, current.model_copy(update=changes))

    def _count_api_call(self, plugin_id: str) -> None:
        health = self._health.get(plugin_id)
        if health is not None:
            health.api_calls_today += 1

    async def connect_device(
        self, plugin_id: str, connection_config: DeviceConnectionConfig
    ) -> DeviceConnection:
        plugin = self._require_plugin(plugin_id)
        device_id = connection_config.device_id
        self._count_api_call(plugin_id)

        try:
            connection = await plugin.connect(connection_config)
        except Exception as e:
            error = self._as_plugin_error(plugin_id, device_id, e, "DEVICE_CONNECT_FAILED")
            self._update_connection(
                plugin_id,
                device_id,
                is_connected=False,
                status=ConnectionStatus.ERROR,
                error_message=str(e),
            )
            self.logger.warning(
                "device_connect_failed", plugin_id=plugin_id, device_id=device_id, error=str(e)
            )
            await self._publish_error(error, device_id, also="device:error")
            if error is e:
                raise
            raise error from e

        self._set_connection(plugin_id, connection)
        self.logger.info("device_connected", plugin_id=plugin_id, device_id=device_id)
        await self.emit(
            PluginEvent(type="device:connected", plugin_id=plugin_id, device_id=device_id)
        )
        return connection

    async def disconnect_device(self, plugin_id: str, device_id: str) -> None:
        plugin = self._require_plugin(plugin_id)
        self._count_api_call(plugin_id)

        try:
            await plugin.disconnect(device_id)
        except Exception as e:
            error = self._as_plugin_error(plugin_id, device_id, e, "DEVICE_DISCONNECT_FAILED")
            await self._publish_error(error, device_id, also="device:error")
            if error is e:
                raise
            raise error from e

        self._update_connection(
            plugin_id, device_id, is_connected=False, status=ConnectionStatus.DISCONNECTED
        )
        self.logger.info("device_disconnected", plugin_id=plugin_id, device_id=device_id)
        await self.emit(
            PluginEvent(type="device:disconnected", plugin_id=plugin_id, device_id=device_id)
        )

    async def read_device_data(
        self, plugin_id: str, device_id: str, options: ReadDataOptions | None = None
    ) -> list[VitalData]:
        plugin = self._require_plugin(plugin_id)
        self._count_api_call(plugin_id)

        try:
            readings = await plugin.read_data(device_id, options)
        except Exception as e:
            error = self._as_plugin_error(plugin_id, device_id, e, "DEVICE_READ_FAILED")
            self.logger.warning(
                "device_read_failed", plugin_id=plugin_id, device_id=device_id, error=str(e)
            )
            await self._publish_error(error, device_id, also="device:error")
            if error is e:
                raise
            raise error from e

        await self.emit(
            PluginEvent(
                type="device:data",
                plugin_id=plugin_id,
                device_id=device_id,
                data={"readings": readings},
            )
        )
        return readings

    async def sync_device(self, plugin_id: str, device_id: str) -> SyncResult:
        """
        Ask a plugin to sync one device.

        Overlapping calls for the same device are not serialized here.
        """
        plugin = self._require_plugin(plugin_id)
        self._count_api_call(plugin_id)
        previous = self.get_device_connection(plugin_id, device_id)
        if previous is not None and previous.is_connected:
            self._update_connection(plugin_id, device_id, status=ConnectionStatus.SYNCING)

        try:
            await self.emit(
                PluginEvent(type="sync:started", plugin_id=plugin_id, device_id=device_id)
            )
            result = await plugin.sync_device(device_id)
        except asyncio.CancelledError:
            # Timeouts from wait_for arrive here too
            if previous is not None:
                self._set_connection(plugin_id, previous)
            self.logger.info("device_sync_cancelled", plugin_id=plugin_id, device_id=device_id)
            raise
        except Exception as e:
            error = self._as_plugin_error(plugin_id, device_id, e, "DEVICE_SYNC_FAILED")
            self._update_connection(
                plugin_id, device_id, status=ConnectionStatus.ERROR, error_message=str(e)
            )
            self.logger.warning(
                "device_sync_failed", plugin_id=plugin_id, device_id=device_id, error=str(e)
            )
            await self._publish_error(error, device_id, also="sync:failed")
            if error is e:
                raise
            raise error from e

        if result.success:
            if previous is not None:
                self._update_connection(
                    plugin_id,
                    device_id,
                    status=ConnectionStatus.CONNECTED,
                    last_sync=result.last_sync_time,
                    error_message=None,
                )
            health = self._health.get(plugin_id)
            if health is not None:
                health.last_sync = result.last_sync_time
            self.logger.info(
                "device_synced",
                plugin_id=plugin_id,
                device_id=device_id,
                records_synced=result.records_synced,
            )
            await self.emit(
                PluginEvent(
                    type="sync:completed",
                    plugin_id=plugin_id,
                    device_id=device_id,
                    data={"result": result},
                )
            )
        else:
            if previous is not None:
                self._update_connection(
                    plugin_id,
                    device_id,
                    status=(
                        ConnectionStatus.CONNECTED
                        if previous.is_connected
                        else ConnectionStatus.DISCONNECTED
                    ),
                    error_message="; ".join(result.errors) or None,
                )
            self.logger.warning(
                "device_sync_unsuccessful",
                plugin_id=plugin_id,
                device_id=device_id,
                errors=result.errors,
            )
            await self.emit(
                PluginEvent(
                    type="sync:failed",
                    plugin_id=plugin_id,
                    device_id=device_id,
                    data={"result": result},
                )
            )
        return result

    # Health monitoring

    def start_health_monitoring(self) -> None:
        """Start the periodic health check task (no-op if disabled or running)."""
        interval = self.config.health_check_interval_seconds
        if interval <= 0 or (self._health_task is not None and not self._health_task.done()):
            return
        self._health_task = asyncio.create_task(
            self._health_check_loop(interval), name="plugin-health-monitor"
        )

    async def stop_health_monitoring(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _health_check_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.perform_health_check()
            except Exception as e:
                self.logger.exception("health_check_failed", error=str(e))

    async def perform_health_check(self) -> None:
        """Refresh uptimes and move persistently failing plugins to maintenance."""
        now = datetime.now(UTC)
        threshold = self.config.maintenance_error_threshold

        for plugin_id in list(self._plugins):
            health = self._health.get(plugin_id)
            if health is None:
                continue

            health.uptime = max(0.0, (now - health.start_time).total_seconds())

            if health.status is PluginStatus.ERROR and health.error_count > threshold:
                health.status = PluginStatus.MAINTENANCE
                self.logger.warning(
                    "plugin_entered_maintenance",
                    plugin_id=plugin_id,
                    error_count=health.error_count,
                    threshold=threshold,
                )
