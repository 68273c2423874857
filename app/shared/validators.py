"""Shared validation utilities"""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from .errors import ValidationError


def is_valid_phone_number(phone: Optional[str]) -> bool:
    """
    Check a phone number has a plausible digit count.

    US numbers have 10 digits (11 with the country code); international
    numbers can be up to 15 digits.
    """
    if not phone:
        return False
    digits = re.sub(r"\D", "", phone)
    return 10 <= len(digits) <= 15


def format_phone_to_e164(phone: str) -> str:
    """
    Normalize a phone number to E.164 format (+[country code][number]).

    Args:
        phone: Phone number string in various formats

    Returns:
        Phone number in E.164 format, e.g. +14155551234

    Raises:
        ValueError: If the number does not have a valid digit count
    """
    if not is_valid_phone_number(phone):
        raise ValueError("Phone number must have between 10 and 15 digits")

    digits = re.sub(r"\D", "", phone)

    # 10 digit US number - add +1
    if len(digits) == 10:
        return f"+1{digits}"

    return f"+{digits}"


def mask_phone_number(phone: Optional[str]) -> str:
    """Mask a phone number for logs, keeping the last 4 digits"""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 4:
        return "****"
    return f"(***) ***-{digits[-4:]}"


def parse_positive_amount(value: Union[Decimal, float, int, str, None], field: str = "Amount") -> Decimal:
    """
    Parse a money amount that must be strictly positive.

    Raises:
        ValidationError: If the value is missing, not numeric, or <= 0
    """
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field} is required")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number") from e

    if not amount.is_finite():
        raise ValidationError(f"{field} must be a number")

    # Sub-cent amounts round to zero and are rejected with it
    amount = amount.quantize(Decimal("0.01"))
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")

    return amount
