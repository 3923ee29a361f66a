from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Union

from .errors import ValidationError

_CENT = Decimal("0.01")


def to_cents(amount: Union[int, float, str, Decimal]) -> int:
    """Convert a display amount (19.99) to integer minor units (1999)."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    return int((value.quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def to_display(cents: int) -> float:
    # JSON responses carry decimals; 6997 -> 69.97
    return cents / 100


def cart_total_cents(lines: Iterable) -> int:
    """Sum ``price_cents * quantity`` over cart lines."""
    return sum(line.price_cents * line.quantity for line in lines)
