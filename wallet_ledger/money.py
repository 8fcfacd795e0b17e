from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
HUNDRED = Decimal("100")

AmountLike = Union[Decimal, int, float, str]


def to_decimal(value: AmountLike) -> Decimal:
    """Convert to a two-place Decimal, rounding half-up.

    Floats go through ``str`` so ``0.1`` stays ``0.10``. Raises ``ValueError``
    for anything that is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError("Amount must be a number")
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValueError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValueError("Amount must be finite")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        # more digits than the context precision allows
        raise ValueError(f"Amount out of range: {value!r}")


def to_positive_amount(value: AmountLike) -> Decimal:
    amount = to_decimal(value)
    if amount <= ZERO:
        raise ValueError("Amount must be greater than zero")
    return amount


def usage_percent(used: Decimal, limit: Decimal) -> Decimal:
    if limit <= ZERO:
        return ZERO
    percent = (used / limit * HUNDRED).quantize(CENT, rounding=ROUND_HALF_UP)
    return min(max(percent, ZERO), HUNDRED.quantize(CENT))
