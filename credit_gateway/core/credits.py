"""
Credit arithmetic.

Credits are decimal amounts with two fractional digits. They are stored
as integer hundredths so balance checks can run as plain integer
comparisons inside SQL.
"""

from decimal import Decimal, InvalidOperation, ROUND_UP
from typing import Union

CREDIT_QUANTUM = Decimal("0.01")
UNITS_PER_CREDIT = 100

CreditLike = Union[Decimal, int, float, str]


def to_credits(value: CreditLike) -> Decimal:
    """Normalize a credit amount with conservative rounding.

    Args:
        value: Amount as Decimal, int, float or numeric string

    Returns:
        Amount rounded UP to 2 decimal places

    Raises:
        ValueError: If the value is not numeric or is negative
    """
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid credit amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid credit amount: {value!r}")
    if amount < 0:
        raise ValueError(f"Credit amount must be >= 0, got {amount}")
    return amount.quantize(CREDIT_QUANTUM, rounding=ROUND_UP)


def to_units(value: CreditLike) -> int:
    """Convert a credit amount to integer hundredths for storage."""
    return int(to_credits(value) * UNITS_PER_CREDIT)


def from_units(units: int) -> Decimal:
    """Convert stored hundredths (possibly negative) back to credits."""
    return (Decimal(units) / UNITS_PER_CREDIT).quantize(CREDIT_QUANTUM)
