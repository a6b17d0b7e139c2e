"""
Card and amount validation for 3DS attempts.

Nothing in this module talks to the 3DS Server. A failed check raises
ValidationError so the caller can correct the input and retry.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from .errors import ValidationError

Amount = Union[int, float, str, Decimal]

CARD_DIGITS_PATTERN = re.compile(r"^\d{13,19}$")
EXPIRY_PATTERN = re.compile(r"^\d{2}/\d{2}$")
MIN_CARD_LENGTH = 13


def parse_amount(amount: Amount) -> Decimal:
    """
    Parse a caller-supplied amount into a Decimal.

    Floats go through str() so 19.995 stays 19.995 instead of its binary
    approximation.

    Raises:
        ValidationError: If the amount is not a finite positive number
    """
    if amount is None or isinstance(amount, bool):
        raise ValidationError("Please enter a valid amount")
    try:
        value = Decimal(str(amount).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError("Please enter a valid amount")
    if not value.is_finite() or value <= 0:
        raise ValidationError("Please enter a valid amount")
    return value


def format_amount(amount: Amount) -> str:
    """Convert a major-unit amount to integer minor units as a decimal string."""
    minor_units = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return str(int(minor_units))


class CardValidator:
    """Format, Luhn and expiry checks for card input."""

    def __init__(self, today: Optional[date] = None):
        self._today = today

    def validate_card_number(self, card_number: Optional[str]) -> bool:
        if not card_number or len(card_number) < MIN_CARD_LENGTH:
            return False

        cleaned = self.clean_card_number(card_number)
        if not CARD_DIGITS_PATTERN.match(cleaned):
            return False

        return self.luhn_check(cleaned)

    @staticmethod
    def clean_card_number(card_number: str) -> str:
        """Strip spaces, dashes and any other non-digit characters."""
        return re.sub(r"\D", "", card_number or "")

    @staticmethod
    def luhn_check(number: str) -> bool:
        total = 0
        alternate = False

        for char in reversed(number):
            digit = int(char)
            if alternate:
                digit *= 2
                if digit > 9:
                    digit -= 9
            total += digit
            alternate = not alternate

        return total % 10 == 0

    def validate_expiry_date(self, expiry_date: Optional[str]) -> bool:
        """Accept MM/YY dates from the current month onwards."""
        if not expiry_date or not EXPIRY_PATTERN.match(expiry_date):
            return False

        month_str, year_str = expiry_date.split("/")
        month = int(month_str)
        year = 2000 + int(year_str)

        if month < 1 or month > 12:
            return False

        today = self._today or date.today()
        return not (year < today.year or (year == today.year and month < today.month))

    @staticmethod
    def format_expiry_date(expiry_date: str) -> str:
        """Convert MM/YY into the YYMM form the 3DS Server expects."""
        parts = expiry_date.split("/")
        if len(parts) != 2:
            return ""
        return parts[1].strip() + parts[0].strip()

    @staticmethod
    def mask_card_number(card_number: str) -> str:
        """Keep the BIN and last four digits, mask the rest."""
        cleaned = re.sub(r"\D", "", card_number or "")
        if len(cleaned) <= 10:
            return "*" * len(cleaned)
        return cleaned[:6] + "*" * (len(cleaned) - 10) + cleaned[-4:]

    def validate_attempt(self, card_number: Optional[str], amount: Amount, expiry_date: Optional[str] = None) -> Decimal:
        """
        Run every check for one authentication attempt.

        Args:
            card_number: Card number as typed (spaces allowed)
            amount: Purchase amount in major units
            expiry_date: Optional MM/YY expiry

        Returns:
            The parsed amount

        Raises:
            ValidationError: On the first failing check
        """
        if not self.validate_card_number(card_number):
            raise ValidationError("Please enter a valid card number")

        if expiry_date and not self.validate_expiry_date(expiry_date):
            raise ValidationError("Please enter a valid expiry date (MM/YY) that has not expired")

        return parse_amount(amount)
