"""
Tests for the day-first date parser.
"""

from datetime import date

from bankrecon.pipeline.date_parser import is_date_like, parse_date, parse_iso_date


class TestParseDate:
    """Test day-first date parsing."""

    def test_dotted_croatian(self):
        result = parse_date("15.01.2025")
        assert result.parsed_date == date(2025, 1, 15)
        assert result.format_detected == "DD.MM.YYYY"
        assert not result.is_ambiguous

    def test_trailing_dot(self):
        assert parse_date("15.01.2025.").parsed_date == date(2025, 1, 15)

    def test_slash_day_first(self):
        result = parse_date("01/02/2025")
        assert result.parsed_date == date(2025, 2, 1)
        assert result.is_ambiguous
        assert result.confidence == 0.70

    def test_iso(self):
        result = parse_date("2025-03-15")
        assert result.parsed_date == date(2025, 3, 15)
        assert result.confidence >= 0.90

    def test_named_month(self):
        assert parse_date("15 Jan 2025").parsed_date == date(2025, 1, 15)
        assert parse_date("5 February 2025").parsed_date == date(2025, 2, 5)

    def test_two_digit_year(self):
        assert parse_date("10.01.25").parsed_date == date(2025, 1, 10)

    def test_period_resolves_ambiguity(self):
        result = parse_date("05.01.2025", date(2025, 1, 1), date(2025, 1, 31))
        assert result.parsed_date == date(2025, 1, 5)
        assert not result.is_ambiguous

    def test_invalid_day(self):
        assert parse_date("32.01.2025").parsed_date is None

    def test_unparseable(self):
        result = parse_date("not a date")
        assert result.parsed_date is None
        assert result.confidence == 0.0
        assert parse_date("").parsed_date is None


class TestParseIsoDate:

    def test_date_and_timestamp(self):
        assert parse_iso_date("2025-01-31") == date(2025, 1, 31)
        assert parse_iso_date("2025-01-31T10:15:00+01:00") == date(2025, 1, 31)

    def test_missing(self):
        assert parse_iso_date(None) is None
        assert parse_iso_date("  ") is None
        assert parse_iso_date("31.01.2025") is None


class TestIsDateLike:

    def test_patterns(self):
        assert is_date_like("15.01.2025")
        assert is_date_like("2025-01-15")
        assert is_date_like("15 Jan 2025")

    def test_not_date(self):
        assert not is_date_like("hello world")
        assert not is_date_like("")
