"""Simulated blood pressure monitor."""

from datetime import datetime
from typing import Any

from adapters.devices.simulated import SimulatedDevicePlugin, SimulatedDeviceState
from devicehub.domain.models import DeviceCapability, PluginMetadata, TransformationRule

BP_CONTEXTS: tuple[dict[str, Any], ...] = (
    {"patient_condition": "resting", "medication_taken": False, "symptoms": []},
    {
        "patient_condition": "after_exercise",
        "medication_taken": False,
        "symptoms": ["elevated_heart_rate"],
    },
    {"patient_condition": "morning", "medication_taken": True, "symptoms": []},
    {"patient_condition": "evening", "medication_taken": False, "symptoms": ["stress"]},
)

BP_TRANSFORMATION_RULES = (
    TransformationRule(source_field="systolic", target_field="primary_value", required=True),
    TransformationRule(source_field="diastolic", target_field="secondary_value", required=True),
    TransformationRule(source_field="unit", target_field="unit"),
    TransformationRule(source_field="context", target_field="context"),
)


class MockBloodPressurePlugin(SimulatedDevicePlugin):
    """Generates plausible adult blood pressure readings with a pulse."""

    metadata = PluginMetadata(
        id="mock-bp",
        name="Mock Blood Pressure Monitor",
        version="1.0.0",
        description="Simulates blood pressure monitoring devices",
        author="Device Platform Team",
        supported_devices=["BLOOD_PRESSURE"],
        supported_regions=["global"],
        capabilities=DeviceCapability(
            reading_types=["blood_pressure"],
            supports_realtime=True,
            supports_historical=True,
            supports_bulk_sync=True,
            max_history_days=30,
            min_sync_interval_seconds=5,
        ),
    )
    device_type = "BLOOD_PRESSURE"
    transformation_rules = BP_TRANSFORMATION_RULES
    seeded_devices = ("mock-bp-001", "mock-bp-002")
    firmware_version = "1.2.3"
    history_limit = 100
    default_history_limit = 100
    max_readings_per_day = 3
    sync_batch = (1, 5)

    def _generate_payload(
        self, state: SimulatedDeviceState, timestamp: datetime, context: str | None
    ) -> dict[str, Any]:
        base_systolic = 120 + (self.rng.random() - 0.5) * 40
        base_diastolic = 80 + (self.rng.random() - 0.5) * 20

        return {
            "device_id": state.device_id,
            "systolic": round(base_systolic + (self.rng.random() - 0.5) * 10),
            "diastolic": round(base_diastolic + (self.rng.random() - 0.5) * 8),
            "pulse": self.rng.randint(60, 89),
            "timestamp": timestamp,
            "unit": "mmHg",
            "context": dict(self.rng.choice(BP_CONTEXTS)),
            "battery_level": state.battery_level,
            "device_model": "Mock BP Monitor 3000",
        }
