"""
Money Utilities Module

Fixed-point helpers for every money figure the engine produces. All values are
Decimal quantized to cents with ROUND_HALF_UP. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from typing import Iterable, Union

from .errors import ValidationError

# Set global decimal context for financial precision
getcontext().prec = 28

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

Numeric = Union[Decimal, int, float, str]


def to_decimal(value: Numeric) -> Decimal:
    """
    Convert a raw numeric value to Decimal without binary float artefacts.

    Floats go through their shortest string representation, so 1.005 becomes
    Decimal("1.005") rather than 1.00499999999999989...

    Raises:
        ValidationError: If the value cannot be interpreted as a number
    """
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValidationError(f"Not a monetary value: {value!r}")
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except ArithmeticError as exc:
            raise ValidationError(f"Not a monetary value: {value!r}") from exc
    else:
        raise ValidationError(f"Not a monetary value: {value!r}")

    if not result.is_finite():
        raise ValidationError(f"Monetary value must be finite: {value!r}")
    return result


def round_money(value: Numeric) -> Decimal:
    """Round to 2 decimal places, half-up"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_sum(values: Iterable[Numeric]) -> Decimal:
    """Sum values and round the result to cents"""
    total = Decimal("0")
    for value in values:
        total += to_decimal(value)
    return round_money(total)


def percent_of(base: Numeric, percent: Numeric) -> Decimal:
    """Unrounded ``base * percent / 100``"""
    return to_decimal(base) * to_decimal(percent) / Decimal("100")


def require_non_negative(value: Numeric, field_name: str) -> Decimal:
    """
    Validate that a monetary input is not negative.

    Malformed inputs are rejected rather than clamped to zero.
    """
    amount = to_decimal(value)
    if amount < 0:
        raise ValidationError(f"{field_name} cannot be negative: {amount}")
    return amount


def require_positive(value: Numeric, field_name: str) -> Decimal:
    """Validate that a monetary input is strictly positive"""
    amount = to_decimal(value)
    if amount <= 0:
        raise ValidationError(f"{field_name} must be positive: {amount}")
    return amount


def split_evenly(total: Numeric, parts: int) -> list:
    """
    Split a total into ``parts`` cent-rounded shares.

    Every share is ``round(total / parts)`` except the last, which absorbs the
    rounding difference so the shares always add back to ``round(total)``.
    """
    if parts < 1:
        raise ValidationError(f"Cannot split into {parts} parts")
    rounded_total = round_money(total)
    share = round_money(rounded_total / parts)
    shares = [share] * parts
    shares[-1] = round_money(rounded_total - share * (parts - 1))
    return shares
