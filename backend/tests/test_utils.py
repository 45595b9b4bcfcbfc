"""Tests for lto_verify/pipeline/utils.py — shared normalisation and date helpers.

Covers:
  - normalize_text / normalize_plate / normalize_identifier
  - identifiers_match: missing sides, plate vs identifier rules
  - parse_date: MM/DD first, DD/MM fallback, 2-digit years, ISO, garbage
  - is_date_only
  - parse_number: separators, units, garbage
"""

import pytest
from datetime import date, datetime

from lto_verify.pipeline.utils import (
    identifiers_match,
    is_date_only,
    normalize_identifier,
    normalize_plate,
    normalize_text,
    parse_date,
    parse_number,
)


# ═══════════════════════════════════════════════════
# Normalisation
# ═══════════════════════════════════════════════════

class TestNormalize:

    def test_text(self):
        assert normalize_text("  certificate\n of \tregistration ") == "CERTIFICATE OF REGISTRATION"
        assert normalize_text("") == ""
        assert normalize_text(None) == ""

    def test_plate_keeps_single_spaces(self):
        assert normalize_plate("  abc   123 ") == "ABC 123"
        assert normalize_plate(None) == ""

    def test_plate_hyphen_is_a_separator(self):
        assert normalize_plate("NCR-1234") == "NCR 1234"
        assert normalize_plate("ncr - 1234") == "NCR 1234"
        assert normalize_plate("-ABC-123-") == "ABC 123"

    def test_identifier_drops_all_whitespace(self):
        assert normalize_identifier(" mr2 bt9f30\nk1234567 ") == "MR2BT9F30K1234567"
        assert normalize_identifier(None) == ""


class TestIdentifiersMatch:

    def test_missing_side_is_unknown(self):
        assert identifiers_match(None, "ABC") is None
        assert identifiers_match("ABC", "") is None

    def test_identifier_equality(self):
        assert identifiers_match("2NZ 7654321", "2nz7654321") is True
        assert identifiers_match("2NZ7654321", "2NZ7654322") is False

    def test_plate_equality(self):
        assert identifiers_match("NCR  1234", "ncr 1234", plate=True) is True
        assert identifiers_match("NCR-1234", "NCR 1234", plate=True) is True
        assert identifiers_match("NCR-1234", "NCR 1235", plate=True) is False
        assert identifiers_match("NCR1234", "NCR 1234", plate=True) is False


# ═══════════════════════════════════════════════════
# Dates
# ═══════════════════════════════════════════════════

class TestParseDate:

    @pytest.mark.parametrize("text,expected", [
        ("06/01/2026", datetime(2026, 6, 1)),
        ("6-1-2026", datetime(2026, 6, 1)),
        ("Expiry Date: 10/15/2025 (inclusive)", datetime(2025, 10, 15)),
        ("03/10/25", datetime(2025, 3, 10)),
        ("03/10/75", datetime(1975, 3, 10)),
        ("2025-10-01", datetime(2025, 10, 1)),
        ("2025-10-01T08:30:00", datetime(2025, 10, 1, 8, 30)),
    ])
    def test_formats(self, text, expected):
        assert parse_date(text) == expected

    def test_day_first_fallback(self):
        assert parse_date("25/12/2024") == datetime(2024, 12, 25)

    def test_impossible_date(self):
        assert parse_date("31/02/2024") is None

    def test_timezone_is_dropped(self):
        parsed = parse_date("2025-10-01T08:30:00Z")
        assert parsed is not None
        assert parsed.tzinfo is None

    @pytest.mark.parametrize("value", [None, "", "not a date", "13/13/13x"])
    def test_garbage(self, value):
        assert parse_date(value) is None

    def test_date_objects(self):
        moment = datetime(2025, 1, 2, 3, 4)
        assert parse_date(moment) is moment
        assert parse_date(date(2025, 1, 2)) == datetime(2025, 1, 2)


class TestIsDateOnly:

    def test_values(self):
        assert is_date_only("06/01/2026") is True
        assert is_date_only(date(2026, 6, 1)) is True
        assert is_date_only("2026-06-01T23:00:00") is False
        assert is_date_only(datetime(2026, 6, 1)) is False
        assert is_date_only("") is False


# ═══════════════════════════════════════════════════
# Numbers
# ═══════════════════════════════════════════════════

class TestParseNumber:

    @pytest.mark.parametrize("value,expected", [
        ("1,250.00", 1250.0),
        ("8.5%", 8.5),
        ("280 ppm", 280.0),
        ("PHP 100,000", 100000.0),
        (5, 5.0),
        (2.5, 2.5),
    ])
    def test_values(self, value, expected):
        assert parse_number(value) == expected

    @pytest.mark.parametrize("value", [None, "", "abc", ".", "-"])
    def test_garbage(self, value):
        assert parse_number(value) is None
