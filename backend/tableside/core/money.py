"""Decimal money helpers.

Amounts are always ``Decimal`` and rounded half-up to the currency's minor
unit, except per-head shares which round down. Floats never enter the arithmetic.
"""

from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

# Minor-unit exponents for currencies that are not cent-based
CURRENCY_EXPONENTS = {
    "JPY": 0,
    "KRW": 0,
    "CLP": 0,
    "BHD": 3,
    "KWD": 3,
}
DEFAULT_EXPONENT = 2

ZERO = Decimal("0")


def minor_unit(currency: str) -> Decimal:
    """Smallest representable amount, e.g. ``Decimal("0.01")`` for EUR."""
    exponent = CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)
    return Decimal(1).scaleb(-exponent)


def to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so 0.1 stays 0.1 instead of its binary expansion
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Not a valid amount: {value!r}") from exc


def quantize(amount: Union[Decimal, int, float, str], currency: str) -> Decimal:
    return to_decimal(amount).quantize(minor_unit(currency), rounding=ROUND_HALF_UP)


def floor_to_unit(amount: Union[Decimal, int, float, str], currency: str) -> Decimal:
    """Round toward zero to the minor unit, for shares that must never overshoot their total."""
    return to_decimal(amount).quantize(minor_unit(currency), rounding=ROUND_DOWN)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert to the integer amount payment providers expect (cents for EUR)."""
    exponent = CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)
    return int(quantize(amount, currency).scaleb(exponent))


def from_minor_units(value: int, currency: str) -> Decimal:
    exponent = CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_EXPONENT)
    return quantize(Decimal(value).scaleb(-exponent), currency)
