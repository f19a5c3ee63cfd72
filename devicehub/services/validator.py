"""
Medical range validation for canonical vital readings.

Validation never raises for data problems. Critical-range violations and
internal inconsistencies become errors (reading is invalid); values outside the
normal band, odd timestamps and suspicious units become warnings.
"""

from datetime import UTC, datetime, timedelta

import structlog

from devicehub.config import ValidationConfig
from devicehub.domain.models import (
    AgeGroup,
    Gender,
    MedicalRange,
    ReadingType,
    ValidationResult,
    VitalData,
)
from devicehub.domain.ranges import BLOOD_PRESSURE_DIASTOLIC, find_range

logger = structlog.get_logger(__name__)

PULSE_PRESSURE_LOW = 20
PULSE_PRESSURE_HIGH = 80

# Celsius readings outside this band are probably in another unit
CELSIUS_PLAUSIBLE_MIN = 30
CELSIUS_PLAUSIBLE_MAX = 50

MAX_READING_AGE = timedelta(days=365)


def _check_against_range(
    value: float, label: str, vital_range: MedicalRange, errors: list[str], warnings: list[str]
) -> None:
    unit = vital_range.unit
    if vital_range.critical_min is not None and value < vital_range.critical_min:
        errors.append(f"Critical low {label}: {value:g} < {vital_range.critical_min:g} {unit}")
    elif vital_range.critical_max is not None and value > vital_range.critical_max:
        errors.append(f"Critical high {label}: {value:g} > {vital_range.critical_max:g} {unit}")
    elif value < vital_range.min:
        warnings.append(f"Low {label}: {value:g} < {vital_range.min:g} {unit}")
    elif value > vital_range.max:
        warnings.append(f"High {label}: {value:g} > {vital_range.max:g} {unit}")


def _check_blood_pressure(
    data: VitalData,
    age_group: str,
    gender: str | None,
    errors: list[str],
    warnings: list[str],
) -> None:
    systolic = data.primary_value
    diastolic = data.secondary_value
    if diastolic is None:
        return

    # An inverted pair makes the diastolic value meaningless on its own
    if systolic <= diastolic:
        errors.append("Systolic pressure must be higher than diastolic pressure")
        return

    diastolic_range = find_range(BLOOD_PRESSURE_DIASTOLIC, age_group, gender)
    if diastolic_range is not None:
        _check_against_range(diastolic, "diastolic BP", diastolic_range, errors, warnings)

    pulse_pressure = systolic - diastolic
    if pulse_pressure < PULSE_PRESSURE_LOW:
        warnings.append(f"Low pulse pressure detected: {pulse_pressure:g} mmHg")
    elif pulse_pressure > PULSE_PRESSURE_HIGH:
        warnings.append(f"High pulse pressure detected: {pulse_pressure:g} mmHg")


def _check_consistency(data: VitalData, warnings: list[str], now: datetime) -> None:
    if data.reading_type == ReadingType.BODY_TEMPERATURE and data.unit == "°C":
        if data.primary_value > CELSIUS_PLAUSIBLE_MAX:
            warnings.append("Temperature seems too high for Celsius, check unit")
        elif data.primary_value < CELSIUS_PLAUSIBLE_MIN:
            warnings.append("Temperature seems too low for Celsius, check unit")

    if data.timestamp is not None:
        if data.timestamp > now:
            warnings.append("Reading timestamp is in the future")
        elif data.timestamp < now - MAX_READING_AGE:
            warnings.append("Reading timestamp is more than one year old")


def normalize_data(data: VitalData) -> VitalData:
    """
    Return a cleaned copy of a reading.

    Values are rounded to two decimals, a missing timestamp becomes now, and
    empty symptom entries are dropped. Applying it twice changes nothing.
    """
    symptoms = [s for s in data.context.symptoms if isinstance(s, str) and s]
    return data.model_copy(
        update={
            "primary_value": round(data.primary_value, 2),
            "secondary_value": (
                round(data.secondary_value, 2) if data.secondary_value is not None else None
            ),
            "timestamp": data.timestamp if data.timestamp is not None else datetime.now(UTC),
            "context": data.context.model_copy(update={"symptoms": symptoms}),
        }
    )


def validate_vital_data(
    data: VitalData, age_group: AgeGroup | str = "adult", gender: Gender | str | None = None
) -> ValidationResult:
    """
    Validate a reading against the medical range table.

    Args:
        data: Canonical reading
        age_group: Population used for range lookup
        gender: Optional gender used for range lookup

    Returns:
        ValidationResult; is_valid is False only when errors were found.
    """
    errors: list[str] = []
    warnings: list[str] = []

    vital_range = find_range(data.reading_type, age_group, gender)
    if vital_range is None:
        warnings.append(f"No medical ranges defined for {data.reading_type}")
        return ValidationResult(is_valid=True, errors=errors, warnings=warnings)

    _check_against_range(data.primary_value, data.reading_type, vital_range, errors, warnings)

    if data.reading_type == ReadingType.BLOOD_PRESSURE:
        _check_blood_pressure(data, age_group, gender, errors, warnings)

    _check_consistency(data, warnings, datetime.now(UTC))

    if errors:
        logger.info(
            "vital_data_invalid",
            reading_type=data.reading_type,
            error_count=len(errors),
            warning_count=len(warnings),
        )

    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        normalized_data=normalize_data(data),
    )


class VitalDataValidator:
    """Validator bound to a default population, for plugins and services."""

    def __init__(self, config: ValidationConfig | None = None) -> None:
        self.config = config or ValidationConfig()

    def validate(
        self,
        data: VitalData,
        age_group: AgeGroup | None = None,
        gender: Gender | None = None,
    ) -> ValidationResult:
        return validate_vital_data(
            data,
            age_group or self.config.default_age_group,
            gender or self.config.default_gender,
        )
