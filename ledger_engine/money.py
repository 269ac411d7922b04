"""
Fixed-Point Money Module

All monetary values are Decimal quantized to cents with ROUND_HALF_UP.
NEVER uses float for monetary values; floats are converted through str().
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from .errors import InvalidAmount

CENTS = Decimal('0.01')
ZERO = Decimal('0.00')

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert a raw value to Decimal without rounding

    Raises:
        InvalidAmount: If the value is not a finite number
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Amount must be numeric, got {value!r}")

    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"Cannot convert {value!r} to an amount")

    if not result.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")
    return result


def quantize(value: AmountLike) -> Decimal:
    """Round to cents"""
    return to_decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def positive_amount(value: AmountLike) -> Decimal:
    """
    Parse and round an amount that must be strictly positive

    Amounts that round to 0.00 are rejected as well.

    Raises:
        InvalidAmount: If the rounded amount is <= 0
    """
    amount = quantize(value)
    if amount <= ZERO:
        raise InvalidAmount(f"Amount must be greater than zero, got {amount}")
    return amount


def format_amount(amount: Decimal) -> str:
    """Format for display"""
    return f"{quantize(amount):,.2f}"
