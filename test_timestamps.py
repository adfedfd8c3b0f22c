"""
Tests for timestamp normalization.
"""

from datetime import datetime, timedelta, timezone

import pytest

from social_insight.timestamps import (
    compact_timestamp,
    format_utc,
    normalize_timestamp,
    parse_timestamp,
)


def assert_close_to_now(value: str):
    parsed = datetime.strptime(value, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=timezone.utc)
    assert abs(datetime.now(timezone.utc) - parsed) < timedelta(seconds=5)


class TestNormalizeTimestamp:
    """Epoch seconds, epoch milliseconds and ISO strings."""

    @pytest.mark.parametrize("value", [
        1700000000,
        1700000000000,
        1700000000.4,
        "1700000000",
        "1700000000000",
        "2023-11-14T22:13:20Z",
        "2023-11-14T23:13:20+01:00",
        "2023-11-14T22:13:20",
    ])
    def test_same_instant(self, value):
        assert normalize_timestamp(value) == "2023-11-14T22:13:20Z"

    @pytest.mark.parametrize("value", [None, "", "   ", "yesterday", True, {"seconds": 1}])
    def test_unusable_values_fall_back_to_now(self, value):
        assert_close_to_now(normalize_timestamp(value))

    def test_millisecond_threshold(self):
        assert normalize_timestamp(9_999_999_999) == "2286-11-20T17:46:39Z"
        assert normalize_timestamp(10_000_000_000) == "1970-04-26T17:46:40Z"


class TestParseTimestamp:

    def test_returns_aware_utc(self):
        parsed = parse_timestamp("2023-11-14T19:13:20-03:00")

        assert parsed == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        assert parsed.utcoffset() == timedelta(0)

    def test_garbage_is_none(self):
        assert parse_timestamp("not a date") is None
        assert parse_timestamp(False) is None


class TestFormatting:

    def test_format_utc_converts_offsets(self):
        moment = datetime(2023, 11, 14, 19, 13, 20, tzinfo=timezone(timedelta(hours=-3)))

        assert format_utc(moment) == "2023-11-14T22:13:20Z"

    def test_compact_timestamp(self):
        assert compact_timestamp("2023-11-14T22:13:20Z") == "20231114_221320"
