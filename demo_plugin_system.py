"""
End-to-end walkthrough of the device plugin system.

This script exercises:
1. Configuration loading and presets
2. Payload transformation and medical range validation
3. Plugin loading, routes and compatibility checks
4. Device registration, connection, reading and sync
5. Error handling (missing plugins, failing devices)
6. Plugin health reporting

Run with: uv run python demo_plugin_system.py
"""

import asyncio

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from devicehub.bootstrap import create_device_management_service, create_plugin_registry
from devicehub.config import AppConfig, RegistryConfig, get_config, print_config_summary
from devicehub.domain.errors import PluginError
from devicehub.domain.models import (
    DeviceConnectionConfig,
    ReadingType,
    TransformationRule,
    VitalData,
)
from devicehub.plugin_config import validate_plugin_compatibility
from devicehub.services.plugin_registry import PluginRegistry
from devicehub.services.transformer import convert_units, transform_payload
from devicehub.services.validator import validate_vital_data

console = Console()

SAMPLE_READINGS = [
    (
        "Normal BP",
        VitalData(
            reading_type=ReadingType.BLOOD_PRESSURE,
            primary_value=118,
            secondary_value=76,
            unit="mmHg",
        ),
    ),
    (
        "Elevated BP",
        VitalData(
            reading_type=ReadingType.BLOOD_PRESSURE,
            primary_value=150,
            secondary_value=95,
            unit="mmHg",
        ),
    ),
    (
        "Inverted BP",
        VitalData(
            reading_type=ReadingType.BLOOD_PRESSURE,
            primary_value=80,
            secondary_value=120,
            unit="mmHg",
        ),
    ),
    (
        "Low glucose",
        VitalData(reading_type=ReadingType.BLOOD_GLUCOSE, primary_value=45, unit="mg/dL"),
    ),
    (
        "Fever",
        VitalData(reading_type=ReadingType.BODY_TEMPERATURE, primary_value=38.4, unit="°C"),
    ),
]


def demo_config() -> AppConfig:
    """Development config with background health checks disabled."""
    config = get_config()
    registry = RegistryConfig.model_validate(
        {**config.registry.model_dump(), "health_check_interval_seconds": 0}
    )
    return config.model_copy(update={"registry": registry})


async def show_configuration(registry: PluginRegistry) -> bool:
    console.print(Panel("🔧 Configuration", style="blue"))
    print_config_summary()

    compatible, reasons = validate_plugin_compatibility("omron-bp", "BLOOD_PRESSURE", "IN")
    console.print(f"\nomron-bp for BLOOD_PRESSURE in IN: compatible={compatible}")
    for reason in reasons:
        console.print(f"  • {reason}", style="yellow")
    return True


async def show_transformation(registry: PluginRegistry) -> bool:
    console.print(Panel("🔄 Transformation & Validation", style="blue"))

    rules = [
        TransformationRule(
            source_field="reading.sys", target_field="primary_value", required=True
        ),
        TransformationRule(source_field="reading.dia", target_field="secondary_value"),
        TransformationRule(source_field="meta.unit", target_field="unit"),
    ]
    payload = {
        "reading": {"sys": 132, "dia": 84},
        "meta": {"unit": "mmHg"},
        "timestamp": 1700000000000,
    }
    result = transform_payload(payload, "BLOOD_PRESSURE", rules)
    console.print(
        f"Transformed: {result.data.reading_type} {result.data.primary_value:g}/"
        f"{result.data.secondary_value:g} {result.data.unit} "
        f"(quality {result.data.quality.score:.2f}, at {result.data.timestamp:%Y-%m-%d %H:%M})"
    )
    console.print(f"98.6 °F = {convert_units(98.6, '°F', '°C'):.1f} °C")

    table = Table(title="Validation")
    table.add_column("Reading", style="cyan")
    table.add_column("Valid", style="white")
    table.add_column("Errors", style="red")
    table.add_column("Warnings", style="yellow")

    for label, reading in SAMPLE_READINGS:
        validation = validate_vital_data(reading)
        table.add_row(
            label,
            "✅" if validation.is_valid else "❌",
            "\n".join(validation.errors),
            "\n".join(validation.warnings),
        )

    console.print(table)
    return True


async def show_plugins(registry: PluginRegistry) -> bool:
    console.print(Panel("🔌 Plugins", style="blue"))

    loaded = registry.get_loaded_plugins()
    if not loaded:
        console.print("❌ No plugins loaded", style="red")
        return False

    table = Table(title="Loaded Plugins")
    table.add_column("Id", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_column("Devices", style="green")
    table.add_column("Readings", style="yellow")

    for plugin in loaded:
        meta = plugin.metadata
        table.add_row(
            meta.id,
            meta.name,
            ", ".join(meta.supported_devices),
            ", ".join(meta.capabilities.reading_types),
        )
    console.print(table)

    routes = Table(title="Plugin Routes")
    routes.add_column("Method", style="cyan")
    routes.add_column("Path", style="white")
    routes.add_column("Roles", style="yellow")
    for route in registry.get_plugin_routes():
        routes.add_row(route.method, route.path, ", ".join(route.allowed_roles))
    console.print(routes)
    return True


async def show_device_workflow(registry: PluginRegistry) -> bool:
    console.print(Panel("🩺 Device Workflow", style="blue"))

    service = create_device_management_service(registry)
    alerts: list[str] = []
    service.alert_handlers.append(lambda alert: alerts.append(alert.message))

    bp = service.register_device(
        patient_id="patient-001",
        plugin_id="mock-bp",
        device_name="Living room BP cuff",
        device_type="BLOOD_PRESSURE",
        device_identifier="mock-bp-001",
    )
    glucose = service.register_device(
        patient_id="patient-001",
        plugin_id="mock-glucose",
        device_name="Glucose meter",
        device_type="GLUCOSE_METER",
        device_identifier="mock-glucose-001",
    )

    for registration in (bp, glucose):
        await service.connect_device(registration.id)
        console.print(f"✅ Connected {registration.device_name}", style="green")

    for processed in await service.collect_readings(bp.id):
        reading = processed.reading
        console.print(
            f"BP reading: {reading.primary_value:g}/{reading.secondary_value:g} {reading.unit}"
            f" valid={processed.validation.is_valid}"
        )

    report = await service.sync_devices(patient_id="patient-001", include_historical=True)

    table = Table(title="Sync Report")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Devices Synced", str(report.devices_synced))
    table.add_row("Records Processed", str(report.records_processed))
    table.add_row("Invalid Readings", str(report.invalid_readings))
    table.add_row("Errors", str(len(report.errors)))
    table.add_row("Alerts Raised", str(len(alerts)))
    table.add_row("Duration", f"{report.duration_seconds:.2f}s")
    console.print(table)

    await service.shutdown()
    return report.devices_synced > 0


async def show_error_handling(registry: PluginRegistry) -> bool:
    console.print(Panel("🛡️ Error Handling", style="blue"))

    try:
        await registry.load_plugin("fitbit")
        console.print("❌ Loading an unimplemented plugin should fail", style="red")
        return False
    except PluginError as e:
        console.print(f"✅ fitbit rejected: {e} ({e.error_code})", style="green")

    try:
        await registry.connect_device(
            "mock-bp",
            DeviceConnectionConfig(
                device_id="mock-bp-999", connection_params={"simulate_error": True}
            ),
        )
        console.print("❌ Simulated connection error was not raised", style="red")
        return False
    except PluginError as e:
        console.print(f"✅ Connection failure surfaced: {e}", style="green")

    return True


async def show_health(registry: PluginRegistry) -> bool:
    console.print(Panel("❤️ Plugin Health", style="blue"))
    await registry.perform_health_check()

    table = Table(title="Plugin Health")
    table.add_column("Plugin", style="cyan")
    table.add_column("Status", style="white")
    table.add_column("Devices", style="green")
    table.add_column("Errors", style="red")
    table.add_column("API Calls", style="yellow")
    table.add_column("Uptime", style="magenta")

    for health in registry.get_all_plugin_health():
        table.add_row(
            health.plugin_id,
            health.status.value.upper(),
            str(health.connected_devices),
            str(health.error_count),
            str(health.api_calls_today),
            f"{health.uptime:.1f}s",
        )
    console.print(table)
    return True


async def run_demo() -> None:
    console.print(Panel("🧪 Device Plugin System - Walkthrough", style="bold blue"))

    steps = [
        ("Configuration", show_configuration),
        ("Transformation & Validation", show_transformation),
        ("Plugins", show_plugins),
        ("Device Workflow", show_device_workflow),
        ("Error Handling", show_error_handling),
        ("Plugin Health", show_health),
    ]

    registry = create_plugin_registry(demo_config())
    results = []

    async with registry.session():
        for step_name, step in steps:
            console.print(f"\n{'=' * 60}")
            try:
                results.append((step_name, await step(registry)))
            except KeyboardInterrupt:
                console.print("\n⏹️  Demo interrupted by user", style="yellow")
                break
            except Exception as e:
                console.print(f"❌ {step_name} failed with exception: {e}", style="red")
                results.append((step_name, False))

    console.print(f"\n{'=' * 60}")
    summary_table = Table(title="Summary")
    summary_table.add_column("Step", style="cyan")
    summary_table.add_column("Result", style="white")

    passed = 0
    for step_name, ok in results:
        summary_table.add_row(step_name, "✅ OK" if ok else "❌ FAILED")
        passed += ok

    console.print(summary_table)
    console.print(f"\n🎯 {passed}/{len(results)} steps completed")


if __name__ == "__main__":
    try:
        asyncio.run(run_demo())
    except KeyboardInterrupt:
        console.print("\n👋 Demo stopped by user", style="yellow")
