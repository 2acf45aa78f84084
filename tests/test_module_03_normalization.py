"""
Tests for Module 03 — Validation and Normalisation.
Tests rounding, region mapping, record validation and drop-not-default behaviour.
"""

from datetime import datetime, timezone

import pytest

from pipeline.errors import ValidationError
from pipeline.ingestion.validator import (
    map_region, normalize_observation, normalize_observations, round_half_up,
    validate_observation,
)


class TestRoundHalfUp:
    def test_rounds_up_at_fourth_decimal(self):
        assert round_half_up(12.34567) == 12.346

    def test_rounds_down_below_half(self):
        assert round_half_up(12.3444) == 12.344

    def test_half_rounds_away_from_zero(self):
        assert round_half_up(2.0005) == 2.001
        assert round_half_up(-2.0005) == -2.001

    def test_integer_places(self):
        assert round_half_up(89.5, 0) == 90.0
        assert round_half_up(90.01, 0) == 90.0


class TestMapRegion:
    def test_country_code_is_region(self):
        assert map_region("de") == "DE"

    def test_missing_country_is_unknown(self):
        assert map_region(None) == "UNKNOWN"
        assert map_region("  ") == "UNKNOWN"


class TestValidateObservation:
    def test_valid_observation(self, make):
        result = validate_observation(make())
        assert result.is_valid
        assert str(result) == "Valid"

    def test_missing_station_id(self, make):
        result = validate_observation(make(station_id=""))
        assert not result.is_valid
        assert any("station_id" in r for r in result.reasons)

    def test_missing_pollutant(self, make):
        result = validate_observation(make(pollutant=""))
        assert not result.is_valid

    @pytest.mark.parametrize("value", ["12.5", None, float("nan"), True])
    def test_non_numeric_value(self, make, value):
        result = validate_observation(make(value=value))
        assert not result.is_valid

    def test_unparsable_timestamp(self, make):
        result = validate_observation(make(observed_at="not-a-time"))
        assert not result.is_valid
        assert result.observed_at is None

    def test_string_timestamp_is_parsed(self, make):
        result = validate_observation(make(observed_at="2024-06-01T14:00:00+02:00"))
        assert result.is_valid
        assert result.observed_at == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)


class TestNormalizeObservations:
    def test_values_rounded_and_region_resolved(self, make):
        out = normalize_observations([
            make(value=12.34567, country_code="fr"),
            make(station_id="B", value=12.3444),
        ])
        assert [o.value for o in out] == [12.346, 12.344]
        assert out[0].region_code == "FR"
        assert out[1].region_code == "DE"

    def test_invalid_records_dropped_not_defaulted(self, make):
        out = normalize_observations([
            make(station_id="ok"),
            make(station_id="bad-time", observed_at="garbage"),
            make(station_id="bad-value", value="n/a"),
            make(station_id=""),
        ])
        assert [o.station_id for o in out] == ["ok"]

    def test_observed_at_converted_to_utc(self, make):
        out = normalize_observations([make(observed_at="2024-06-01T14:00:00+02:00")])
        assert out[0].observed_at == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)

    def test_input_not_mutated(self, make):
        original = make(value=1.23456)
        normalize_observations([original])
        assert original.value == 1.23456


class TestNormalizeObservation:
    def test_raises_validation_error_with_field(self, make):
        with pytest.raises(ValidationError) as exc_info:
            normalize_observation(make(value="abc"))
        assert exc_info.value.field == "value"

    def test_valid_observation_normalised(self, make):
        obs = normalize_observation(make(value=7.77777, country_code="nl"))
        assert obs.value == 7.778
        assert obs.region_code == "NL"
