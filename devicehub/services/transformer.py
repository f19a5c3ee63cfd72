"""
Raw device payload to canonical VitalData transformation.

Devices report readings in their own shapes. Each plugin declares a list of
TransformationRule objects; this module applies them, resolves the timestamp,
reading type and unit, and scores how complete the result is.

Field-level problems never abort a transformation: they are collected as error
strings and lower the quality score instead.
"""

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import ValidationError

from devicehub.domain.models import (
    ReadingType,
    TransformationRule,
    VitalContext,
    VitalData,
    VitalQuality,
)

logger = structlog.get_logger(__name__)

# Checked in order, first parseable value wins
TIMESTAMP_FIELDS = ("timestamp", "time", "date", "measured_at", "created_at")

READING_TYPE_FIELDS = ("reading_type", "readingType", "type")

DEVICE_TYPE_READINGS: dict[str, str] = {
    "BLOOD_PRESSURE": ReadingType.BLOOD_PRESSURE.value,
    "GLUCOSE_METER": ReadingType.BLOOD_GLUCOSE.value,
    "PULSE_OXIMETER": ReadingType.OXYGEN_SATURATION.value,
    "THERMOMETER": ReadingType.BODY_TEMPERATURE.value,
    "SCALE": ReadingType.WEIGHT.value,
    "ECG_MONITOR": ReadingType.HEART_RATE.value,
}

# Presence of any of these payload fields implies the reading type
FIELD_HINTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("systolic", "diastolic"), ReadingType.BLOOD_PRESSURE.value),
    (("glucose", "sugar"), ReadingType.BLOOD_GLUCOSE.value),
    (("spo2", "oxygen"), ReadingType.OXYGEN_SATURATION.value),
    (("temperature", "temp"), ReadingType.BODY_TEMPERATURE.value),
    (("weight", "mass"), ReadingType.WEIGHT.value),
    (("heart_rate", "heartRate", "pulse"), ReadingType.HEART_RATE.value),
)

DEFAULT_UNITS: dict[str, str] = {
    ReadingType.BLOOD_PRESSURE.value: "mmHg",
    ReadingType.BLOOD_GLUCOSE.value: "mg/dL",
    ReadingType.OXYGEN_SATURATION.value: "%",
    ReadingType.BODY_TEMPERATURE.value: "°C",
    ReadingType.WEIGHT.value: "kg",
    ReadingType.HEART_RATE.value: "bpm",
}

CONTEXT_FIELDS = ("patient_condition", "medication_taken", "symptoms", "location")

# Quality scoring weights
ERROR_PENALTY = 0.1
MISSING_CONTEXT_PENALTY = 0.05
MISSING_UNIT_PENALTY = 0.1
CONTEXT_BONUS = 0.05


@dataclass
class TransformationResult:
    """A transformed reading plus the field-level errors met on the way."""

    data: VitalData
    errors: list[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.errors


def get_nested_value(payload: Any, path: str) -> Any:
    """Resolve a dotted path ("device.readings.0.value") or return None."""
    current = payload
    for key in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(key)
        elif (
            isinstance(current, Sequence)
            and not isinstance(current, str | bytes)
            and key.isdigit()
        ):
            index = int(key)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings and epoch milliseconds. Naive values are
    taken to be UTC. Returns None when the value cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, int | float):
        try:
            parsed = datetime.fromtimestamp(value / 1000, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        if not value.strip():
            return None
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def extract_timestamp(payload: Mapping[str, Any]) -> datetime:
    """Return the first parseable timestamp field, or the current time."""
    for name in TIMESTAMP_FIELDS:
        parsed = parse_timestamp(get_nested_value(payload, name))
        if parsed is not None:
            return parsed
    return datetime.now(UTC)


def infer_reading_type(payload: Mapping[str, Any], device_type: str) -> str:
    """
    Work out what a payload measures.

    Precedence: an explicit type field on the payload, then the device type
    mapping, then field-presence heuristics. Falls back to "unknown".
    """
    for name in READING_TYPE_FIELDS:
        explicit = payload.get(name)
        if isinstance(explicit, str) and explicit:
            return explicit

    if device_type in DEVICE_TYPE_READINGS:
        return DEVICE_TYPE_READINGS[device_type]

    for fields, reading_type in FIELD_HINTS:
        if any(payload.get(name) is not None for name in fields):
            return reading_type

    return ReadingType.UNKNOWN.value


def infer_unit(reading_type: str) -> str:
    return DEFAULT_UNITS.get(reading_type, "")


def calculate_quality_score(
    errors: Sequence[str], *, has_context: bool, has_unit: bool, context: VitalContext
) -> float:
    """Heuristic 0-1 confidence in a transformed reading."""
    score = 1.0
    score -= len(errors) * ERROR_PENALTY

    if not has_context:
        score -= MISSING_CONTEXT_PENALTY
    if not has_unit:
        score -= MISSING_UNIT_PENALTY

    if context.patient_condition:
        score += CONTEXT_BONUS
    if context.symptoms:
        score += CONTEXT_BONUS

    return max(0.0, min(1.0, score))


def _as_number(name: str, value: Any, errors: list[str]) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        errors.append(f"Non-numeric value for {name}: {value!r}")
        return None
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        errors.append(f"Non-numeric value for {name}: {value!r}")
        return None
    if not math.isfinite(number):
        errors.append(f"Non-finite value for {name}: {value!r}")
        return None
    return number


def _build_context(mapped: Mapping[str, Any], errors: list[str]) -> tuple[VitalContext, bool]:
    raw_context = mapped.get("context")
    values: dict[str, Any] = dict(raw_context) if isinstance(raw_context, Mapping) else {}
    for name in CONTEXT_FIELDS:
        if mapped.get(name) is not None:
            values[name] = mapped[name]

    has_context = isinstance(raw_context, Mapping) or any(
        mapped.get(name) is not None for name in CONTEXT_FIELDS
    )

    symptoms = values.get("symptoms")
    if isinstance(symptoms, str):
        values["symptoms"] = [symptoms]
    elif isinstance(symptoms, Sequence):
        values["symptoms"] = [str(s) for s in symptoms if s is not None]
    else:
        values.pop("symptoms", None)

    try:
        return VitalContext.model_validate(values), has_context
    except ValidationError as e:
        errors.append(f"Invalid context: {e.error_count()} field(s) rejected")
        return VitalContext(), has_context


def transform_payload(
    payload: Mapping[str, Any],
    device_type: str,
    rules: Sequence[TransformationRule],
) -> TransformationResult:
    """
    Apply transformation rules to a raw payload.

    Args:
        payload: Raw device output (arbitrary nested mapping)
        device_type: Device type such as "BLOOD_PRESSURE"
        rules: Declarative field mappings for this device type

    Returns:
        TransformationResult with the canonical reading and any field errors.
    """
    timestamp = extract_timestamp(payload)
    reading_type = infer_reading_type(payload, device_type)

    mapped: dict[str, Any] = {}
    errors: list[str] = []

    for rule in rules:
        try:
            value = get_nested_value(payload, rule.source_field)

            if rule.transform is not None and value is not None:
                value = rule.transform(value)

            if (
                rule.validate_value is not None
                and value is not None
                and not rule.validate_value(value)
            ):
                errors.append(f"Validation failed for {rule.source_field}")
                continue

            if rule.required and value is None:
                errors.append(f"Required field {rule.source_field} is missing")
                continue

            if value is not None:
                mapped[rule.target_field] = value
                if rule.unit:
                    mapped.setdefault("unit", rule.unit)

        except Exception as e:
            errors.append(f"Error transforming {rule.source_field}: {e}")

    primary = _as_number("primary_value", mapped.get("primary_value", mapped.get("value")), errors)
    secondary = _as_number("secondary_value", mapped.get("secondary_value"), errors)

    mapped_unit = mapped.get("unit")
    has_unit = isinstance(mapped_unit, str) and bool(mapped_unit)
    unit = mapped_unit if has_unit else infer_unit(reading_type)

    context, has_context = _build_context(mapped, errors)

    score = calculate_quality_score(
        errors, has_context=has_context, has_unit=has_unit, context=context
    )

    if errors:
        logger.debug(
            "payload_transformed_with_errors",
            device_type=device_type,
            reading_type=reading_type,
            error_count=len(errors),
        )

    data = VitalData(
        reading_type=reading_type,
        primary_value=primary if primary is not None else 0.0,
        secondary_value=secondary,
        unit=unit,
        timestamp=timestamp,
        context=context,
        quality=VitalQuality(score=score, issues=list(errors)),
        raw_data=dict(payload),
    )
    return TransformationResult(data=data, errors=errors)


def transform_to_vital_data(
    payload: Mapping[str, Any],
    device_type: str,
    rules: Sequence[TransformationRule],
) -> VitalData:
    """Transform a payload and return only the reading (errors live in quality.issues)."""
    return transform_payload(payload, device_type, rules).data


_UNIT_ALIASES: dict[str, str] = {
    "c": "C",
    "°c": "C",
    "celsius": "C",
    "f": "F",
    "°f": "F",
    "fahrenheit": "F",
    "k": "K",
    "kelvin": "K",
    "kg": "kg",
    "kilogram": "kg",
    "lb": "lb",
    "lbs": "lb",
    "pound": "lb",
    "mg/dl": "mgdl",
    "mgdl": "mgdl",
    "mmol/l": "mmol",
    "mmol": "mmol",
}

_CONVERSIONS: dict[tuple[str, str], Any] = {
    ("C", "F"): lambda c: c * 9 / 5 + 32,
    ("F", "C"): lambda f: (f - 32) * 5 / 9,
    ("K", "C"): lambda k: k - 273.15,
    ("C", "K"): lambda c: c + 273.15,
    ("kg", "lb"): lambda kg: kg * 2.20462,
    ("lb", "kg"): lambda lb: lb / 2.20462,
    ("mgdl", "mmol"): lambda mgdl: mgdl / 18.018,
    ("mmol", "mgdl"): lambda mmol: mmol * 18.018,
}


def convert_units(value: float, from_unit: str, to_unit: str) -> float:
    """
    Convert a value between supported units.

    Supports temperature (C, F, K), weight (kg, lb) and glucose (mg/dL, mmol/L).

    Raises:
        ValueError: If no conversion exists between the two units.
    """
    source = _UNIT_ALIASES.get(from_unit.strip().lower(), from_unit)
    target = _UNIT_ALIASES.get(to_unit.strip().lower(), to_unit)
    if source == target:
        return value

    conversion = _CONVERSIONS.get((source, target))
    if conversion is None:
        raise ValueError(f"No conversion available from {from_unit} to {to_unit}")
    return conversion(value)
