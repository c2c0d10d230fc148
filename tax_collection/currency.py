"""
Currency Module

Rupee amount helpers. All money is held as Decimal and rounded to two places
with ROUND_HALF_UP; floats never enter a calculation.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from typing import Union

# Set decimal precision high enough for intermediate percentage maths
getcontext().prec = 28

CURRENCY_CODE = "INR"
CURRENCY_SYMBOL = "₹"
PRECISION = 2

ZERO = Decimal("0.00")
_QUANTUM = Decimal("0.01")

AmountLike = Union[Decimal, int, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert a value to Decimal without passing through float"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        raise TypeError("Use Decimal or string for monetary amounts, not float")
    return Decimal(str(value))


def round_amount(value: AmountLike) -> Decimal:
    """Round to paise, half-up"""
    return to_decimal(value).quantize(_QUANTUM, rounding=ROUND_HALF_UP)


def format_amount(value: AmountLike) -> str:
    """Format for display, e.g. ₹1,250.00"""
    return f"{CURRENCY_SYMBOL}{round_amount(value):,.2f}"
