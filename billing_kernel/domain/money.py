"""
Decimal helpers for monetary amounts and ratios.

Money is carried as ``Decimal`` with 2 fractional digits, intermediate
ratios (tax rate fractions, allocation proportions) with 4.  Both round
``ROUND_HALF_UP``.  Floats are rejected.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

MONEY_PLACES = Decimal("0.01")
RATIO_PLACES = Decimal("0.0001")
ZERO = Decimal("0.00")


def to_decimal(value: Decimal | int | str) -> Decimal:
    """Convert to Decimal without passing through float.

    Raises:
        TypeError: If ``value`` is a float.
        ValueError: If ``value`` is not a valid decimal literal.
    """
    if isinstance(value, float):
        raise TypeError("Monetary values must not be floats; use Decimal or str")
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(value)
    except InvalidOperation:
        raise ValueError(f"Not a decimal value: {value!r}") from None


def money(value: Decimal | int | str) -> Decimal:
    """Quantize to 2 fractional digits, half-up."""
    return to_decimal(value).quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)


def ratio(value: Decimal | int | str) -> Decimal:
    """Quantize to 4 fractional digits, half-up."""
    return to_decimal(value).quantize(RATIO_PLACES, rounding=ROUND_HALF_UP)


def percent_to_ratio(rate: Decimal | int | str) -> Decimal:
    """19 -> 0.1900."""
    return ratio(to_decimal(rate) / Decimal(100))
