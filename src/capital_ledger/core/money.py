"""
Decimal-backed money helpers for accounting paths.

Capital figures are carried as floats through the ledger; every value that is
persisted or compared against a tolerance goes through these helpers first so
rounding is deterministic (ROUND_HALF_UP to cents).
"""

from decimal import ROUND_HALF_UP, Decimal, getcontext
from typing import Iterable, Union

getcontext().prec = 28

ZERO = Decimal("0")
MONEY_Q = Decimal("0.01")

Number = Union[int, float, str, Decimal]


def D(x: Number) -> Decimal:
    """
    Convert any numeric type to Decimal safely.

    Floats go through ``str`` so ``D(0.1)`` is ``Decimal('0.1')`` rather than
    the binary expansion.

    Examples:
        >>> D(99.99)
        Decimal('99.99')
        >>> D("123.45")
        Decimal('123.45')
    """
    if isinstance(x, Decimal):
        return x
    if x is None:
        return ZERO
    return Decimal(str(x))


def q_money(x: Number) -> Decimal:
    """
    Quantize a value to money precision (2 decimal places).

    Examples:
        >>> q_money("123.456")
        Decimal('123.46')
        >>> q_money(99.994)
        Decimal('99.99')
    """
    return D(x).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def round_usd(x: Number) -> float:
    """Round a USD amount to cents and return it as a float."""
    return float(q_money(x))


def sum_usd(values: Iterable[Number]) -> float:
    """Sum USD amounts in Decimal space and round the result to cents."""
    return float(q_money(sum((D(v) for v in values), start=ZERO)))


def within_tolerance(a: Number, b: Number, tolerance: Number) -> bool:
    """Check ``|a - b| <= tolerance`` without float noise."""
    return abs(D(a) - D(b)) <= D(tolerance)


def format_usd(x: Number) -> str:
    """Format an amount as ``$1,234.56`` (negative as ``-$1,234.56``)."""
    value = q_money(x)
    if value < 0:
        return f"-${abs(value):,.2f}"
    return f"${value:,.2f}"
