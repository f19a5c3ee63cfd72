"""
Tests for plugin presets and compatibility checks in `devicehub/plugin_config.py`
and the reference range table in `devicehub/domain/ranges.py`.
"""

import pytest

from devicehub.domain.ranges import MEDICAL_RANGES, find_range, get_ranges
from devicehub.plugin_config import (
    PLUGIN_CONFIGS,
    get_plugin_config,
    get_registry_preset,
    plugin_ids_for_device_type,
    plugin_ids_for_region,
    validate_plugin_compatibility,
)


class TestPresets:
    def test_development_mocks_run_fast(self) -> None:
        for plugin_id in ("mock-bp", "mock-glucose"):
            config = get_plugin_config(plugin_id, "development")
            assert config is not None
            assert config.feature("fast_mode")
            assert config.feature("mock_data")

    def test_production_has_no_mock_plugins(self) -> None:
        assert "mock-bp" not in PLUGIN_CONFIGS["production"]
        assert get_plugin_config("mock-bp", "production") is None

    def test_unknown_environment_falls_back_to_development(self) -> None:
        assert get_registry_preset("qa") == get_registry_preset("development")

    def test_lookup_tables(self) -> None:
        assert plugin_ids_for_device_type("GLUCOSE_METER") == ["mock-glucose", "generic-bluetooth"]
        assert plugin_ids_for_device_type("MRI") == []
        assert plugin_ids_for_region("Atlantis") == plugin_ids_for_region("global")


class TestCompatibility:
    def test_compatible_plugin(self) -> None:
        assert validate_plugin_compatibility("mock-bp", "BLOOD_PRESSURE", "US") == (True, [])

    def test_every_failed_check_is_reported(self) -> None:
        compatible, reasons = validate_plugin_compatibility("omron-bp", "SCALE", "IN")

        assert not compatible
        assert reasons == [
            "Plugin omron-bp does not support device type SCALE",
            "Plugin omron-bp is not available in region IN",
            "Plugin omron-bp is not enabled in current environment",
        ]

    def test_explicit_enabled_list_overrides_preset(self) -> None:
        compatible, _ = validate_plugin_compatibility(
            "omron-bp", "BLOOD_PRESSURE", "EU", enabled_plugins=["omron-bp"]
        )
        assert compatible

    def test_environment_preset_is_used(self) -> None:
        compatible, _ = validate_plugin_compatibility(
            "fitbit", "WEARABLE", "US", environment="production"
        )
        assert compatible


class TestRanges:
    def test_table_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            MEDICAL_RANGES["blood_pressure"] = ()  # type: ignore[index]

    @pytest.mark.parametrize(
        "age_group,expected_max", [("adult", 140), ("geriatric", 130), ("pediatric", 120)]
    )
    def test_population_specific_systolic(self, age_group: str, expected_max: float) -> None:
        vital_range = find_range("blood_pressure", age_group)
        assert vital_range is not None
        assert vital_range.max == expected_max

    def test_missing_population_falls_back_to_first_range(self) -> None:
        assert find_range("weight", "pediatric") == get_ranges("weight")[0]

    def test_unknown_vital_has_no_range(self) -> None:
        assert get_ranges("respiratory_rate") == ()
        assert find_range("respiratory_rate") is None

    @pytest.mark.parametrize("vital_type", sorted(MEDICAL_RANGES))
    def test_bands_are_ordered(self, vital_type: str) -> None:
        for vital_range in get_ranges(vital_type):
            assert vital_range.min <= vital_range.max
            if vital_range.critical_min is not None:
                assert vital_range.critical_min <= vital_range.min
            if vital_range.critical_max is not None:
                assert vital_range.max <= vital_range.critical_max
