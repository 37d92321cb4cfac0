"""Unit tests for racehero_etl.normalize."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from racehero_etl.normalize import (
    as_list,
    csv_url,
    parse_api_ts,
    parse_int,
    parse_numeric,
    sub,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None

    def test_number_is_stringified(self):
        assert trim(42) == "42"


# ---------------------------------------------------------------------------
# parse_api_ts
# ---------------------------------------------------------------------------

class TestParseApiTs:
    def test_zulu_suffix_is_utc(self):
        assert parse_api_ts("2024-06-01T12:30:00Z") == datetime(
            2024, 6, 1, 12, 30, tzinfo=timezone.utc
        )

    def test_explicit_offset(self):
        result = parse_api_ts("2024-06-01T08:30:00-04:00")
        assert result.utcoffset() == timedelta(hours=-4)

    def test_fractional_seconds(self):
        result = parse_api_ts("2024-06-01T12:30:00.250+00:00")
        assert result.microsecond == 250000

    def test_garbage_returns_none(self):
        assert parse_api_ts("not a date") is None

    def test_none_and_blank(self):
        assert parse_api_ts(None) is None
        assert parse_api_ts("  ") is None


# ---------------------------------------------------------------------------
# parse_numeric / parse_int
# ---------------------------------------------------------------------------

class TestParseNumeric:
    def test_float_value(self):
        assert parse_numeric(43.6591) == Decimal("43.6591")

    def test_string_value(self):
        assert parse_numeric(" -70.25 ") == Decimal("-70.25")

    def test_bool_is_not_numeric(self):
        assert parse_numeric(True) is None

    def test_garbage(self):
        assert parse_numeric("abc") is None


class TestParseInt:
    def test_int_passthrough(self):
        assert parse_int(12) == 12

    def test_string_and_integral_float(self):
        assert parse_int("12") == 12
        assert parse_int(12.0) == 12

    def test_fraction_rejected(self):
        assert parse_int("12.5") is None

    def test_infinity_rejected(self):
        assert parse_int("Infinity") is None

    def test_none(self):
        assert parse_int(None) is None


# ---------------------------------------------------------------------------
# Nested access helpers
# ---------------------------------------------------------------------------

class TestNestedHelpers:
    def test_as_list(self):
        assert as_list([1, 2]) == [1, 2]
        assert as_list(None) == []
        assert as_list({"data": []}) == []

    def test_sub_returns_dict(self):
        assert sub({"venue": {"id": 3}}, "venue") == {"id": 3}

    def test_sub_missing_or_wrong_type(self):
        assert sub({"venue": None}, "venue") == {}
        assert sub({"venue": "x"}, "venue") == {}
        assert sub(None, "venue") == {}


# ---------------------------------------------------------------------------
# csv_url
# ---------------------------------------------------------------------------

class TestCsvUrl:
    def test_appends_extension(self):
        assert csv_url("https://api.example/runs/9/results") == "https://api.example/runs/9/results.csv"

    def test_missing(self):
        assert csv_url(None) is None
        assert csv_url("") is None
