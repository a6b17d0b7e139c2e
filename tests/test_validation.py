"""Tests for card and amount validation."""

from datetime import date
from decimal import Decimal

import pytest

from threeds.core.errors import ValidationError
from threeds.core.validation import CardValidator, format_amount, parse_amount


@pytest.fixture
def validator():
    return CardValidator(today=date(2025, 6, 15))


class TestCardNumber:
    """Tests for card number checks."""

    @pytest.mark.parametrize(
        "card_number",
        ["4111111111111111", "4111 1111 1111 1111", "4111-1111-1111-1111", "5555555555554444", "378282246310005"],
    )
    def test_valid(self, validator, card_number):
        assert validator.validate_card_number(card_number) is True

    @pytest.mark.parametrize(
        "card_number",
        [None, "", "411111111111", "4111111111111112", "4111111111111111111111", "4111abcd11111111"],
    )
    def test_invalid(self, validator, card_number):
        """Test short, long, non-numeric and Luhn-failing numbers."""
        assert validator.validate_card_number(card_number) is False

    def test_clean_card_number(self):
        assert CardValidator.clean_card_number(" 4111-1111 1111 1111 ") == "4111111111111111"

    @pytest.mark.parametrize(
        "card_number,expected",
        [
            ("4111111111111111", "411111******1111"),
            ("4111 1111 1111 1111", "411111******1111"),
            ("1234567890", "**********"),
            ("", ""),
        ],
    )
    def test_mask(self, card_number, expected):
        assert CardValidator.mask_card_number(card_number) == expected


class TestExpiry:
    """Tests for MM/YY expiry checks."""

    @pytest.mark.parametrize("expiry", ["06/25", "12/25", "01/30"])
    def test_current_or_future(self, validator, expiry):
        assert validator.validate_expiry_date(expiry) is True

    @pytest.mark.parametrize("expiry", ["05/25", "12/24", "13/26", "00/26", "1/26", "2026-01", "", None])
    def test_past_or_malformed(self, validator, expiry):
        assert validator.validate_expiry_date(expiry) is False

    def test_format_to_yymm(self):
        assert CardValidator.format_expiry_date("12/25") == "2512"
        assert CardValidator.format_expiry_date("bad") == ""


class TestAmount:
    """Tests for amount parsing and minor-unit formatting."""

    @pytest.mark.parametrize("amount", ["10.00", 10, 10.5, Decimal("0.01"), " 7.25 "])
    def test_parse_valid(self, amount):
        assert parse_amount(amount) > 0

    @pytest.mark.parametrize("amount", [None, True, "", "abc", "0", 0, "-1", "NaN", "Infinity"])
    def test_parse_invalid(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            parse_amount(amount)
        assert "valid amount" in str(exc_info.value)

    @pytest.mark.parametrize(
        "amount,expected",
        [
            (10, "1000"),
            ("10.00", "1000"),
            (19.99, "1999"),
            (19.995, "2000"),
            (0.01, "1"),
            (Decimal("1234.565"), "123457"),
        ],
    )
    def test_format_minor_units(self, amount, expected):
        """Test half-up rounding on the decimal value, not its float approximation."""
        assert format_amount(amount) == expected


class TestValidateAttempt:
    """Tests for the combined attempt check."""

    def test_returns_parsed_amount(self, validator):
        assert validator.validate_attempt("4111111111111111", "25.50", "12/26") == Decimal("25.50")

    def test_expiry_optional(self, validator):
        assert validator.validate_attempt("4111111111111111", 5) == Decimal("5")

    def test_card_checked_first(self, validator):
        """Test a bad card is reported even when the amount is also bad."""
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_attempt("1234", "abc")
        assert "card number" in str(exc_info.value)

    def test_expired_card(self, validator):
        with pytest.raises(ValidationError) as exc_info:
            validator.validate_attempt("4111111111111111", "5", "01/25")
        assert "expiry date" in str(exc_info.value)
