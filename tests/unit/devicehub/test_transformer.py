"""
Tests for raw payload transformation in `devicehub/services/transformer.py`.

Covers:
- Timestamp resolution order and fallbacks
- Reading type and unit inference
- Rule application with partial-failure semantics
- Quality scoring
- Unit conversion
"""

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from devicehub.domain.models import TransformationRule, VitalContext
from devicehub.services.transformer import (
    calculate_quality_score,
    convert_units,
    extract_timestamp,
    get_nested_value,
    infer_reading_type,
    infer_unit,
    parse_timestamp,
    transform_payload,
    transform_to_vital_data,
)

BP_RULES = [
    TransformationRule(source_field="systolic", target_field="primary_value", required=True),
    TransformationRule(source_field="diastolic", target_field="secondary_value", required=True),
    TransformationRule(source_field="unit", target_field="unit"),
    TransformationRule(source_field="context", target_field="context"),
]


class TestNestedValues:
    def test_resolves_dotted_paths_and_list_indices(self) -> None:
        payload = {"device": {"readings": [{"value": 7}, {"value": 9}]}}

        assert get_nested_value(payload, "device.readings.1.value") == 9
        assert get_nested_value(payload, "device.readings.5.value") is None
        assert get_nested_value(payload, "device.missing.value") is None

    def test_does_not_index_into_strings(self) -> None:
        assert get_nested_value({"name": "abc"}, "name.0") is None


class TestTimestamps:
    def test_iso_string_with_z_suffix_is_utc(self) -> None:
        parsed = parse_timestamp("2024-01-01T08:00:00Z")
        assert parsed == datetime(2024, 1, 1, 8, 0, tzinfo=UTC)

    def test_epoch_numbers_are_milliseconds(self) -> None:
        assert parse_timestamp(1_700_000_000_000) == datetime.fromtimestamp(1_700_000_000, UTC)

    def test_naive_datetimes_are_taken_as_utc(self) -> None:
        assert parse_timestamp(datetime(2024, 5, 1, 12, 0)).tzinfo == UTC

    @pytest.mark.parametrize("value", [None, "", "not a date", True, object()])
    def test_unparseable_values_return_none(self, value: object) -> None:
        assert parse_timestamp(value) is None

    def test_first_parseable_field_wins(self) -> None:
        payload = {
            "timestamp": "garbage",
            "time": "2024-02-02T10:00:00+00:00",
            "date": "2023-01-01T00:00:00+00:00",
        }
        assert extract_timestamp(payload) == datetime(2024, 2, 2, 10, 0, tzinfo=UTC)

    @given(
        payload=st.dictionaries(
            keys=st.sampled_from(["systolic", "glucose", "note", "value"]),
            values=st.one_of(st.integers(0, 300), st.text(max_size=5)),
        )
    )
    def test_missing_timestamp_defaults_to_now(self, payload: dict[str, object]) -> None:
        """Property-based test: payloads without a time field are stamped with now."""
        before = datetime.now(UTC)
        data = transform_to_vital_data(payload, "BLOOD_PRESSURE", [])
        after = datetime.now(UTC)

        assert data.timestamp is not None
        assert before - timedelta(seconds=1) <= data.timestamp <= after + timedelta(seconds=1)


class TestInference:
    def test_explicit_type_wins_over_device_type(self) -> None:
        assert infer_reading_type({"type": "heart_rate"}, "BLOOD_PRESSURE") == "heart_rate"

    def test_device_type_mapping(self) -> None:
        assert infer_reading_type({}, "GLUCOSE_METER") == "blood_glucose"

    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"systolic": 120}, "blood_pressure"),
            ({"glucose": 90}, "blood_glucose"),
            ({"spo2": 97}, "oxygen_saturation"),
            ({"temperature": 36.6}, "body_temperature"),
            ({"weight": 70}, "weight"),
            ({"pulse": 70}, "heart_rate"),
            ({"foo": 1}, "unknown"),
        ],
    )
    def test_field_presence_heuristics(self, payload: dict[str, object], expected: str) -> None:
        assert infer_reading_type(payload, "SOMETHING_ELSE") == expected

    def test_default_units(self) -> None:
        assert infer_unit("blood_pressure") == "mmHg"
        assert infer_unit("body_temperature") == "°C"
        assert infer_unit("unknown") == ""


class TestTransformPayload:
    def test_blood_pressure_payload(self) -> None:
        payload = {"systolic": 150, "diastolic": 95, "timestamp": "2024-01-01T08:00:00Z"}

        result = transform_payload(payload, "BLOOD_PRESSURE", BP_RULES)

        assert result.is_clean
        assert result.data.reading_type == "blood_pressure"
        assert result.data.primary_value == 150
        assert result.data.secondary_value == 95
        assert result.data.unit == "mmHg"
        assert result.data.timestamp == datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
        assert result.data.raw_data == payload

    def test_missing_required_field_is_recorded_not_raised(self) -> None:
        result = transform_payload({"systolic": 120}, "BLOOD_PRESSURE", BP_RULES)

        assert result.errors == ["Required field diastolic is missing"]
        assert result.data.primary_value == 120
        assert result.data.secondary_value is None
        assert result.data.quality.issues == result.errors

    def test_failing_transform_does_not_abort_other_rules(self) -> None:
        def explode(value: object) -> object:
            raise ValueError("bad sensor frame")

        rules = [
            TransformationRule(source_field="systolic", target_field="primary_value"),
            TransformationRule(
                source_field="diastolic", target_field="secondary_value", transform=explode
            ),
        ]

        result = transform_payload({"systolic": 130, "diastolic": 85}, "BLOOD_PRESSURE", rules)

        assert result.errors == ["Error transforming diastolic: bad sensor frame"]
        assert result.data.primary_value == 130

    def test_validator_predicate_rejects_value(self) -> None:
        rules = [
            TransformationRule(
                source_field="glucose",
                target_field="primary_value",
                validate=lambda v: 20 <= v <= 600,
            )
        ]

        result = transform_payload({"glucose": 900}, "GLUCOSE_METER", rules)

        assert result.errors == ["Validation failed for glucose"]
        assert result.data.primary_value == 0.0

    def test_rule_unit_applies_when_payload_has_none(self) -> None:
        rules = [
            TransformationRule(source_field="temp_f", target_field="primary_value", unit="°F"),
        ]

        data = transform_to_vital_data({"temp_f": 99.1}, "THERMOMETER", rules)

        assert data.unit == "°F"

    def test_non_numeric_primary_value_is_an_error(self) -> None:
        rules = [TransformationRule(source_field="reading", target_field="primary_value")]

        result = transform_payload({"reading": "high"}, "GLUCOSE_METER", rules)

        assert result.errors == ["Non-numeric value for primary_value: 'high'"]

    def test_number_too_large_for_float_is_an_error(self) -> None:
        payload = {"systolic": 120, "diastolic": 10**400}

        result = transform_payload(payload, "BLOOD_PRESSURE", BP_RULES)

        assert len(result.errors) == 1
        assert result.errors[0].startswith("Non-numeric value for secondary_value: 1000")
        assert result.data.primary_value == 120
        assert result.data.secondary_value is None

    @pytest.mark.parametrize("value", [float("nan"), float("inf"), "-inf", "NaN"])
    def test_non_finite_values_are_rejected(self, value: object) -> None:
        rules = [TransformationRule(source_field="weight", target_field="primary_value")]

        result = transform_payload({"weight": value}, "SCALE", rules)

        assert result.errors == [f"Non-finite value for primary_value: {value!r}"]
        assert result.data.primary_value == 0.0

    def test_context_fields_are_collected(self) -> None:
        payload = {
            "systolic": 120,
            "diastolic": 80,
            "unit": "mmHg",
            "context": {"patient_condition": "resting", "symptoms": ["dizzy", None]},
        }

        data = transform_to_vital_data(payload, "BLOOD_PRESSURE", BP_RULES)

        assert data.context.patient_condition == "resting"
        assert data.context.symptoms == ["dizzy"]


class TestQualityScore:
    def test_complete_reading_scores_full(self) -> None:
        score = calculate_quality_score(
            [], has_context=True, has_unit=True, context=VitalContext()
        )
        assert score == 1.0

    def test_penalties_for_errors_and_missing_fields(self) -> None:
        score = calculate_quality_score(
            ["e1", "e2"], has_context=False, has_unit=False, context=VitalContext()
        )
        assert score == pytest.approx(1.0 - 0.2 - 0.05 - 0.1)

    def test_context_bonus_is_capped_at_one(self) -> None:
        context = VitalContext(patient_condition="resting", symptoms=["cough"])
        score = calculate_quality_score([], has_context=True, has_unit=True, context=context)
        assert score == 1.0

    @given(error_count=st.integers(min_value=0, max_value=50))
    def test_score_is_always_clamped(self, error_count: int) -> None:
        score = calculate_quality_score(
            ["err"] * error_count, has_context=False, has_unit=False, context=VitalContext()
        )
        assert 0.0 <= score <= 1.0


class TestConvertUnits:
    @pytest.mark.parametrize(
        "value,from_unit,to_unit,expected",
        [
            (100.0, "°C", "°F", 212.0),
            (98.6, "F", "C", 37.0),
            (310.15, "K", "celsius", 37.0),
            (70.0, "kg", "lbs", 154.3234),
            (180.18, "mg/dL", "mmol/L", 10.0),
        ],
    )
    def test_supported_conversions(
        self, value: float, from_unit: str, to_unit: str, expected: float
    ) -> None:
        assert convert_units(value, from_unit, to_unit) == pytest.approx(expected, rel=1e-4)

    def test_same_unit_is_identity(self) -> None:
        assert convert_units(42.0, "mmHg", "mmHg") == 42.0

    def test_unknown_pair_raises(self) -> None:
        with pytest.raises(ValueError, match="No conversion available from mmHg to kg"):
            convert_units(120.0, "mmHg", "kg")
