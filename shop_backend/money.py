import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS_PER_UNIT = 100


def round_half_up(value) -> int:
    return int(Decimal(value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def safe_float(value, default=0.0):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError):
        return default
    return max(default, numeric)


def to_minor_units(amount) -> int:
    """Convert a major-unit price (e.g. 10.005 dollars) to whole cents.

    The value goes through ``str`` first so binary float noise does not
    decide the rounding direction: ``to_minor_units(1.005) == 101``.
    """
    try:
        decimal_amount = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        decimal_amount = Decimal(0)
    return round_half_up(decimal_amount * CENTS_PER_UNIT)


def from_minor_units(cents) -> float:
    return float(Decimal(int(cents or 0)) / CENTS_PER_UNIT)


def discount_amount(amount: int, percentage) -> int:
    return round_half_up(Decimal(int(amount)) * Decimal(str(percentage)) / 100)


def apply_discount(amount: int, percentage) -> int:
    """Return ``amount`` (minor units) reduced by ``percentage`` percent."""
    return int(amount) - discount_amount(amount, percentage)
