"""
Tests for the statement amount parser.
"""

from decimal import Decimal

from bankrecon.pipeline.amount_parser import is_amount_like, parse_amount


class TestParseAmount:
    """Test amount parsing across both decimal conventions."""

    def test_simple_amount(self):
        result = parse_amount("1234.56")
        assert result.amount == Decimal("1234.56")
        assert not result.is_negative

    def test_decimal_comma(self):
        result = parse_amount("1234,56")
        assert result.amount == Decimal("1234.56")
        assert result.decimal_separator == ","

    def test_european_thousands(self):
        result = parse_amount("-1.234,56")
        assert result.amount == Decimal("-1234.56")
        assert result.is_negative
        assert result.sign_convention == "MINUS"

    def test_english_thousands(self):
        result = parse_amount("1,234.56")
        assert result.amount == Decimal("1234.56")

    def test_thousands_only_comma(self):
        assert parse_amount("1,234").amount == Decimal("1234")

    def test_decimal_hint_forces_comma(self):
        assert parse_amount("1.234", decimal_hint=",").amount == Decimal("1234")

    def test_currency_stripped(self):
        assert parse_amount("EUR 500,00").amount == Decimal("500.00")
        assert parse_amount("€500.00").amount == Decimal("500.00")
        assert parse_amount("120,00 kn").amount == Decimal("120.00")

    def test_parentheses_negative(self):
        result = parse_amount("(500,00)")
        assert result.amount == Decimal("-500.00")
        assert result.sign_convention == "PARENTHESES"

    def test_dr_suffix(self):
        result = parse_amount("100,00 DR")
        assert result.amount == Decimal("-100.00")
        assert result.sign_convention == "DR_CR"

    def test_cr_suffix(self):
        result = parse_amount("250.00 CR")
        assert result.amount == Decimal("250.00")
        assert not result.is_negative

    def test_trailing_minus(self):
        result = parse_amount("75,50-")
        assert result.amount == Decimal("-75.50")
        assert result.is_negative

    def test_explicit_plus(self):
        assert parse_amount("+42.10").amount == Decimal("42.10")

    def test_empty_and_dash(self):
        assert parse_amount("").amount is None
        assert parse_amount("-").amount is None
        assert parse_amount(None).amount is None

    def test_garbage(self):
        assert parse_amount("n/a").amount is None


class TestIsAmountLike:

    def test_amounts(self):
        assert is_amount_like("1.234,56")
        assert is_amount_like("(500.00)")

    def test_not_amount(self):
        assert not is_amount_like("hello world")
        assert not is_amount_like("")
