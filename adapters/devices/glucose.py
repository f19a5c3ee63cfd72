"""Simulated glucose meter with test strip accounting and a diabetic patient profile."""

from datetime import datetime, time, timedelta
from typing import Any

from adapters.devices.simulated import SimulatedDevicePlugin, SimulatedDeviceState
from devicehub.domain.errors import PluginError
from devicehub.domain.models import (
    DeviceCapability,
    PluginConfig,
    PluginMetadata,
    PluginRoute,
    TransformationRule,
    ValidationResult,
    VitalData,
)
from devicehub.domain.ranges import HYPOGLYCEMIA_BELOW, SEVERE_HYPERGLYCEMIA_ABOVE
from devicehub.services.validator import validate_vital_data

MEASURABLE_MIN = 20
MEASURABLE_MAX = 600

# Typical self-test times: before meals, after meals and at bedtime
READING_SCHEDULE: tuple[tuple[time, str], ...] = (
    (time(7, 0), "fasting"),
    (time(11, 30), "pre_meal"),
    (time(14, 0), "post_meal"),
    (time(18, 30), "pre_meal"),
    (time(21, 0), "post_meal"),
    (time(22, 30), "bedtime"),
)

# (type 1 centre, type 1 spread, otherwise centre, otherwise spread) in mg/dL
BASELINE_BY_CONTEXT: dict[str, tuple[float, float, float, float]] = {
    "fasting": (120, 60, 100, 40),
    "pre_meal": (140, 80, 110, 50),
    "post_meal": (200, 120, 150, 80),
    "bedtime": (130, 70, 105, 40),
}

GLUCOSE_TRANSFORMATION_RULES = (
    TransformationRule(
        source_field="glucose",
        target_field="primary_value",
        required=True,
        transform=lambda value: round(float(value), 1),
    ),
    TransformationRule(
        source_field="unit", target_field="unit", transform=lambda unit: unit or "mg/dL"
    ),
    TransformationRule(source_field="context", target_field="context"),
)


def context_for_hour(hour: int) -> str:
    if 6 <= hour <= 8:
        return "fasting"
    if 11 <= hour <= 13 or 17 <= hour <= 19:
        return "pre_meal"
    if 13 < hour <= 15 or 19 < hour <= 21:
        return "post_meal"
    return "random"


class MockGlucoseMeterPlugin(SimulatedDevicePlugin):
    """Generates glucose readings shaped by time of day and patient profile."""

    metadata = PluginMetadata(
        id="mock-glucose",
        name="Mock Glucose Meter",
        version="1.0.0",
        description="Simulates glucose monitoring devices",
        author="Device Platform Team",
        supported_devices=["GLUCOSE_METER"],
        supported_regions=["global"],
        capabilities=DeviceCapability(
            reading_types=["blood_glucose"],
            supports_realtime=True,
            supports_historical=True,
            supports_bulk_sync=True,
            max_history_days=90,
            min_sync_interval_seconds=10,
        ),
    )
    device_type = "GLUCOSE_METER"
    transformation_rules = GLUCOSE_TRANSFORMATION_RULES
    seeded_devices = ("mock-glucose-001", "mock-glucose-002")
    firmware_version = "2.1.0"
    history_limit = 200
    default_history_limit = 200
    max_readings_per_day = len(READING_SCHEDULE)
    sync_batch = (1, 3)

    connect_delay = (1.5, 4.0)
    read_delay = (8.0, 15.0)
    sync_delay = (2.0, 5.0)

    def _new_device_state(self, device_id: str) -> SimulatedDeviceState:
        state = super()._new_device_state(device_id)
        state.battery_level = self.rng.randint(50, 89)
        state.profile = {
            "test_strips": self.rng.randint(10, 49),
            "type1_diabetic": self.rng.random() > 0.7,
            "type2_diabetic": self.rng.random() > 0.5,
            "target_range": (80, 180),
        }
        return state

    def strip_count(self, device_id: str) -> int:
        return self._get_state(device_id).profile["test_strips"]

    def _can_generate(self, state: SimulatedDeviceState) -> bool:
        return state.profile["test_strips"] > 0

    def _before_read(self, state: SimulatedDeviceState) -> None:
        if not self._can_generate(state):
            raise PluginError(
                f"No test strips available in device {state.device_id}",
                self.metadata.id,
                device_id=state.device_id,
                error_code="NO_TEST_STRIPS",
            )

    def _after_read(self, state: SimulatedDeviceState) -> None:
        state.profile["test_strips"] -= 1

    def _historical_slots(
        self, start: datetime, day: int, per_day: int
    ) -> list[tuple[datetime, str | None]]:
        date = (start + timedelta(days=day)).date()
        return [
            (datetime.combine(date, at, tzinfo=start.tzinfo), context)
            for at, context in READING_SCHEDULE[:per_day]
        ]

    def _generate_payload(
        self, state: SimulatedDeviceState, timestamp: datetime, context: str | None
    ) -> dict[str, Any]:
        profile = state.profile
        glucose_context = context or context_for_hour(timestamp.hour)

        if glucose_context in BASELINE_BY_CONTEXT:
            t1_centre, t1_spread, centre, spread = BASELINE_BY_CONTEXT[glucose_context]
            if profile["type1_diabetic"]:
                centre, spread = t1_centre, t1_spread
        else:
            centre, spread = 120, 80
        glucose = centre + (self.rng.random() - 0.5) * spread

        medication_taken = False
        symptoms: list[str] = []
        if profile["type1_diabetic"] or profile["type2_diabetic"]:
            medication_taken = self.rng.random() > 0.3
            if not medication_taken:
                glucose += 20 + self.rng.random() * 40

            if glucose < HYPOGLYCEMIA_BELOW:
                symptoms = ["sweating", "shaking", "hunger"]
            elif glucose > SEVERE_HYPERGLYCEMIA_ABOVE:
                symptoms = ["thirst", "frequent_urination", "fatigue"]

        payload: dict[str, Any] = {
            "device_id": state.device_id,
            "glucose": max(40, min(500, round(glucose, 1))),
            "timestamp": timestamp,
            "unit": "mg/dL",
            "context": {
                "patient_condition": glucose_context,
                "medication_taken": medication_taken,
                "symptoms": symptoms,
                "location": "fingertip",
            },
            "battery_level": state.battery_level,
            "test_strip_lot": f"LOT{self.rng.randint(1000, 9999)}",
            "device_model": "Mock Glucose Meter Pro",
            "test_strip_count": profile["test_strips"],
        }
        if self._feature("ketones_support"):
            payload["ketones"] = round(self.rng.uniform(0.0, 0.6), 1)
        return payload

    def validate_data(self, data: VitalData) -> ValidationResult:
        result = validate_vital_data(data, "adult")
        errors = list(result.errors)
        warnings = list(result.warnings)

        if not MEASURABLE_MIN <= data.primary_value <= MEASURABLE_MAX:
            errors.append(
                f"Glucose reading outside measurable range "
                f"({MEASURABLE_MIN}-{MEASURABLE_MAX} mg/dL)"
            )

        if data.primary_value < HYPOGLYCEMIA_BELOW:
            warnings.append(f"Hypoglycemia detected - glucose below {HYPOGLYCEMIA_BELOW} mg/dL")
        elif data.primary_value > SEVERE_HYPERGLYCEMIA_ABOVE:
            warnings.append(
                f"Severe hyperglycemia detected - glucose above {SEVERE_HYPERGLYCEMIA_ABOVE} mg/dL"
            )

        return result.model_copy(
            update={"is_valid": not errors, "errors": errors, "warnings": warnings}
        )

    def get_default_config(self) -> PluginConfig:
        return PluginConfig(
            environment="development",
            features={
                "mock_data": True,
                "real_time_sync": False,
                "simulate_errors": False,
                "ketones_support": True,
                "alternative_sites_testing": False,
            },
        )

    def register_routes(self) -> list[PluginRoute]:
        return [
            *super().register_routes(),
            PluginRoute(
                method="GET",
                path=f"/{self.metadata.id}/strip-count/{{device_id}}",
                handler="get_strip_count",
                allowed_roles=["DOCTOR", "HSP", "PATIENT"],
            ),
        ]
