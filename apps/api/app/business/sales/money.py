from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

_CENT = Decimal("0.01")
_RATE = Decimal("0.0001")
_QUANTITY = Decimal("0.0001")


def _to_decimal(value: Decimal | int | str) -> Decimal:
    if isinstance(value, float):
        raise TypeError("floats are not accepted for monetary values")
    return value if isinstance(value, Decimal) else Decimal(value)


def to_money(value: Decimal | int | str) -> Decimal:
    """Quantize to cents, rounding half up."""

    return _to_decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_rate(value: Decimal | int | str) -> Decimal:
    return _to_decimal(value).quantize(_RATE, rounding=ROUND_HALF_UP)


def to_quantity(value: Decimal | int | str) -> Decimal:
    return _to_decimal(value).quantize(_QUANTITY, rounding=ROUND_HALF_UP)


def percentage_of(amount: Decimal, percentage: Decimal) -> Decimal:
    return to_money(_to_decimal(amount) * _to_decimal(percentage) / HUNDRED)
