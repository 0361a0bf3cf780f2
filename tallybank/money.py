"""
Money Handling Module

Decimal helpers for monetary values. The bank runs a single currency with
cent precision; amounts are kept at full precision through calculations and
rounded half-up to cents only when they become ledger amounts.
NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Union
import re

# High precision for interest and compounding calculations
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0")

Numeric = Union[Decimal, int, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Coerce a value to Decimal without passing through float

    Raises:
        ValueError: If the value is a float or cannot be parsed
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Monetary values must not be {type(value).__name__}: {value!r}")
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        return decimal_from_string(value)
    raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: Numeric) -> Decimal:
    """Round to cents using ROUND_HALF_UP"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, handling common formats

    Args:
        value: String representation of number, e.g. "$1,250.00"

    Returns:
        Decimal value

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    # Remove currency symbols and whitespace
    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    # Comma is always a thousands separator for this bank
    clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")

    if not result.is_finite():
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return result


def format_money(value: Numeric) -> str:
    """Format for display, e.g. $1,234.50 or -$12.00"""
    amount = round_money(value)
    sign = "-" if amount < ZERO else ""
    return f"{sign}${abs(amount):,.2f}"
