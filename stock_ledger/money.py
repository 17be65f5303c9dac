from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Convert a price or amount to a Decimal rounded half-up to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value) -> Optional[Decimal]:
    """Like to_decimal, but None for anything that is not a finite number."""
    if isinstance(value, bool):
        return None
    try:
        amount = to_decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    if not amount.is_finite():
        return None
    return amount
