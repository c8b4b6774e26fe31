"""Tests for provider entry validation and normalization."""

from datetime import datetime, timezone

import pytest

from token_pipeline.exceptions import ValidationError
from token_pipeline.normalize import normalize_entry, parse_timestamp


@pytest.mark.unit
class TestNormalizeEntry:

    def test_valid_entry(self):
        record = normalize_entry({
            "address": "0xabc",
            "price": "1.25",
            "volume_24h": 1000,
            "market_cap": 5e6,
            "timestamp": 1704067200
        })

        assert record.identifier == "0xabc"
        assert record.metrics == {"price": 1.25, "volume_24h": 1000.0, "market_cap": 5e6}
        assert record.source_ts == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert record.commit_attempts == 0

    def test_identifier_field_precedence(self):
        record = normalize_entry({"identifier": "TOKEN", "symbol": "TKN", "price": 1, "timestamp": 1})
        assert record.identifier == "TOKEN"

    def test_unknown_fields_are_ignored(self):
        record = normalize_entry({"id": "t", "price": 1, "timestamp": 1, "logo": "x.png"})
        assert set(record.metrics) == {"price"}

    @pytest.mark.parametrize("entry, field", [
        ({"price": 1, "timestamp": 1}, "identifier"),
        ({"identifier": "   ", "price": 1, "timestamp": 1}, "identifier"),
        ({"identifier": "t", "timestamp": 1}, "price"),
        ({"identifier": "t", "price": 1}, "timestamp"),
        ({"identifier": "t", "price": "abc", "timestamp": 1}, "price"),
        ({"identifier": "t", "price": True, "timestamp": 1}, "price"),
        ({"identifier": "t", "price": float("nan"), "timestamp": 1}, "price"),
        ({"identifier": "t", "price": 1, "volume_24h": "lots", "timestamp": 1}, "volume_24h"),
        ({"identifier": "t", "price": 1, "timestamp": "yesterday"}, "timestamp"),
        ({"identifier": "t", "price": 10 ** 400, "timestamp": 1}, "price"),
        ({"identifier": "t", "price": 1, "timestamp": 1e20}, "timestamp"),
        ({"identifier": "t", "price": 1, "timestamp": 10 ** 400}, "timestamp"),
    ])
    def test_invalid_entries(self, entry, field):
        with pytest.raises(ValidationError) as exc_info:
            normalize_entry(entry)

        assert exc_info.value.field == field

    def test_validation_error_carries_identifier(self):
        with pytest.raises(ValidationError) as exc_info:
            normalize_entry({"identifier": "0xabc", "price": None, "timestamp": 1})

        assert exc_info.value.identifier == "0xabc"

    def test_non_mapping_entry(self):
        with pytest.raises(ValidationError):
            normalize_entry(["0xabc", 1.0])


@pytest.mark.unit
class TestParseTimestamp:

    def test_epoch_seconds_and_milliseconds_agree(self):
        assert parse_timestamp(1704067200) == parse_timestamp(1704067200000)

    def test_iso_with_z_suffix(self):
        assert parse_timestamp("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2024-01-01T00:00:00").tzinfo is not None

    def test_negative_epoch_rejected(self):
        with pytest.raises(ValidationError):
            parse_timestamp(-5)

    @pytest.mark.parametrize("value", [1e20, 10 ** 400, "0001-01-01T00:00:00+01:00"])
    def test_out_of_range_timestamp_rejected(self, value):
        with pytest.raises(ValidationError) as exc_info:
            parse_timestamp(value, identifier="t")

        assert exc_info.value.field == "timestamp"
