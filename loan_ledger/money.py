"""
Money Helpers

Exact decimal handling for ledger amounts. The virtual economy has a single
unit of account, so amounts are plain Decimals quantized to cents with
ROUND_HALF_UP. Binary floating point never enters the ledger.
"""

import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from typing import Any

from .exceptions import ValidationError

getcontext().prec = 28  # High precision for financial calculations

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
# Intermediate rate precision; at least 6 places to avoid compounding drift
RATE_QUANTUM = Decimal("0.0000000001")


def quantize_money(value: Decimal) -> Decimal:
    """Round to cents, half up"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def quantize_rate(value: Decimal) -> Decimal:
    """Round an intermediate rate to 10 decimal places, half up"""
    return value.quantize(RATE_QUANTUM, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Coerce a number to Decimal without going through binary float

    Args:
        value: Decimal, int, str or float

    Returns:
        Decimal value

    Raises:
        ValidationError: If the value cannot be represented as a finite Decimal
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValidationError("Boolean is not a valid amount")
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        # repr of a float is the shortest round-tripping literal
        result = Decimal(repr(value))
    elif isinstance(value, str):
        result = decimal_from_string(value)
    else:
        raise ValidationError(f"Cannot convert {type(value).__name__} to Decimal")

    if not result.is_finite():
        raise ValidationError(f"Amount must be finite, got {value!r}")
    return result


def to_money(value: Any) -> Decimal:
    """Coerce and round to cents"""
    return quantize_money(to_decimal(value))


def decimal_from_string(value: str) -> Decimal:
    """
    Safely convert string to Decimal, tolerating thousands separators

    Only whitespace, underscores and thousands commas are removed; a single
    comma followed by at most two digits is read as the decimal point.
    Anything else must already be a valid Decimal literal, so "12abc" is
    rejected rather than read as 12.

    Args:
        value: String representation of number

    Returns:
        Decimal value

    Raises:
        ValidationError: If string cannot be converted to a finite Decimal
    """
    if not value or not isinstance(value, str):
        raise ValidationError("Value must be a non-empty string")

    clean_value = re.sub(r'[\s_]', '', value)

    if ',' in clean_value and '.' in clean_value:
        # Both comma and dot - comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif ',' in clean_value and clean_value.count(',') == 1:
        parts = clean_value.split(',')
        if len(parts[1]) <= 2:
            clean_value = clean_value.replace(',', '.')
        else:
            clean_value = clean_value.replace(',', '')
    else:
        clean_value = clean_value.replace(',', '')

    try:
        result = Decimal(clean_value)
    except InvalidOperation:
        raise ValidationError(f"Cannot convert '{value}' to Decimal") from None
    if not result.is_finite():
        raise ValidationError(f"Amount must be finite, got {value!r}")
    return result
