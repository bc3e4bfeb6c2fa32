"""
Monetary Amount Helpers

Exact base-10 arithmetic for balances and transaction amounts.
NEVER uses float for monetary values.
"""

from decimal import (
    Decimal, Context, ROUND_HALF_UP, Inexact, Rounded, InvalidOperation, Overflow,
    MAX_PREC, MAX_EMAX, MIN_EMIN
)
from typing import Union

# Precision is unbounded so sums stay exact at any magnitude or scale;
# a result that would still have to round raises instead of losing cents
LEDGER_CONTEXT = Context(
    prec=MAX_PREC, Emax=MAX_EMAX, Emin=MIN_EMIN, rounding=ROUND_HALF_UP,
    traps=[Inexact, Rounded, InvalidOperation, Overflow]
)

DISPLAY_PLACES = Decimal("0.01")
ZERO = Decimal("0.00")

AmountLike = Union[Decimal, int, str, float]


def to_amount(value: AmountLike) -> Decimal:
    """
    Convert a caller-supplied value into a positive Decimal amount.

    Floats are converted through their shortest decimal representation, so
    50.25 becomes Decimal("50.25") rather than its binary approximation.

    Raises:
        ValueError: If the value is not a finite, strictly positive number
    """
    if isinstance(value, bool):
        raise ValueError("Amount must be a number")

    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            raise ValueError(f"Invalid amount: {value!r}") from None

    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    if amount <= 0:
        raise ValueError("Amount must be positive")

    return amount


def apply_delta(current: Decimal, delta: Decimal) -> Decimal:
    """Add a signed delta to a stored amount without rounding"""
    return LEDGER_CONTEXT.add(current, delta)


def negate(amount: Decimal) -> Decimal:
    """Sign flip without rounding"""
    return LEDGER_CONTEXT.minus(amount)


def format_amount(amount: Decimal) -> str:
    """Render an amount with at least two fractional digits ("0.00", "150.25")"""
    if amount.as_tuple().exponent > DISPLAY_PLACES.as_tuple().exponent:
        amount = amount.quantize(DISPLAY_PLACES, context=LEDGER_CONTEXT)
    return f"{amount:f}"
