"""
Physiological reference ranges for vital-sign validation.

Each vital type maps to a tuple of ranges for different populations. A value
between ``min`` and ``max`` is normal; a value outside ``critical_min`` /
``critical_max`` is medically dangerous. The table is static and never mutated.
"""

from types import MappingProxyType

from devicehub.domain.models import AgeGroup, Gender, MedicalRange

BLOOD_PRESSURE_SYSTOLIC = "blood_pressure_systolic"
BLOOD_PRESSURE_DIASTOLIC = "blood_pressure_diastolic"

# Alert thresholds shared by device-side warnings and patient alerts
HYPERTENSIVE_CRISIS_SYSTOLIC = 180
HYPERTENSIVE_CRISIS_DIASTOLIC = 120
HYPOGLYCEMIA_BELOW = 70
SEVERE_HYPERGLYCEMIA_ABOVE = 250

_SYSTOLIC = (
    MedicalRange(
        min=90, max=140, critical_min=70, critical_max=180, unit="mmHg", age_group="adult"
    ),
    MedicalRange(
        min=95, max=130, critical_min=75, critical_max=170, unit="mmHg", age_group="geriatric"
    ),
    MedicalRange(
        min=80, max=120, critical_min=60, critical_max=160, unit="mmHg", age_group="pediatric"
    ),
)

_DIASTOLIC = (
    MedicalRange(min=60, max=90, critical_min=40, critical_max=110, unit="mmHg", age_group="adult"),
    MedicalRange(
        min=55, max=85, critical_min=45, critical_max=105, unit="mmHg", age_group="geriatric"
    ),
    MedicalRange(
        min=50, max=80, critical_min=35, critical_max=100, unit="mmHg", age_group="pediatric"
    ),
)

MEDICAL_RANGES: MappingProxyType[str, tuple[MedicalRange, ...]] = MappingProxyType(
    {
        BLOOD_PRESSURE_SYSTOLIC: _SYSTOLIC,
        # Blood pressure readings carry systolic as their primary value
        "blood_pressure": _SYSTOLIC,
        BLOOD_PRESSURE_DIASTOLIC: _DIASTOLIC,
        "heart_rate": (
            MedicalRange(
                min=60, max=100, critical_min=40, critical_max=150, unit="bpm", age_group="adult"
            ),
            MedicalRange(
                min=65,
                max=100,
                critical_min=45,
                critical_max=140,
                unit="bpm",
                age_group="geriatric",
            ),
            MedicalRange(
                min=70,
                max=120,
                critical_min=50,
                critical_max=180,
                unit="bpm",
                age_group="pediatric",
            ),
        ),
        "oxygen_saturation": (
            MedicalRange(
                min=95, max=100, critical_min=90, critical_max=100, unit="%", age_group="adult"
            ),
            MedicalRange(
                min=94, max=100, critical_min=88, critical_max=100, unit="%", age_group="geriatric"
            ),
            MedicalRange(
                min=95, max=100, critical_min=92, critical_max=100, unit="%", age_group="pediatric"
            ),
        ),
        "body_temperature": (
            MedicalRange(
                min=36.1,
                max=37.2,
                critical_min=35.0,
                critical_max=40.0,
                unit="°C",
                age_group="adult",
            ),
            MedicalRange(
                min=36.0,
                max=37.1,
                critical_min=35.0,
                critical_max=39.5,
                unit="°C",
                age_group="geriatric",
            ),
            MedicalRange(
                min=36.5,
                max=37.5,
                critical_min=35.5,
                critical_max=40.5,
                unit="°C",
                age_group="pediatric",
            ),
        ),
        "blood_glucose": (
            MedicalRange(
                min=70, max=140, critical_min=54, critical_max=250, unit="mg/dL", age_group="adult"
            ),
        ),
        "weight": (
            MedicalRange(
                min=40, max=200, critical_min=30, critical_max=300, unit="kg", age_group="adult"
            ),
        ),
    }
)


def get_ranges(vital_type: str) -> tuple[MedicalRange, ...]:
    """Return every range defined for a vital type (empty if none)."""
    return MEDICAL_RANGES.get(vital_type, ())


def find_range(
    vital_type: str, age_group: AgeGroup | str = "adult", gender: Gender | str | None = None
) -> MedicalRange | None:
    """
    Find the best matching range for a population.

    A range matches when its age group and gender are either unset or equal to
    the requested ones. Falls back to the first range for the vital type.

    Returns:
        The matching range, or None if the vital type has no ranges at all.
    """
    ranges = get_ranges(vital_type)
    if not ranges:
        return None

    for candidate in ranges:
        if (candidate.age_group is None or candidate.age_group == age_group) and (
            candidate.gender is None or candidate.gender == gender
        ):
            return candidate

    return ranges[0]
