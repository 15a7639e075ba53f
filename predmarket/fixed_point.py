"""
Fixed-point primitives. Every amount on the ledger is an int in micro-units
(6 decimal places). Transcendental functions run on Decimal with a fixed
60-digit context, so results are correctly rounded and identical on every
platform.
"""

from decimal import (
    Context, Decimal, InvalidOperation, ROUND_FLOOR, ROUND_HALF_EVEN,
)


DECIMALS = 6
SCALE = 10 ** DECIMALS
BPS_DENOMINATOR = 10_000
FEE_PER_SHARE_PRECISION = 10 ** 18

CONTEXT = Context(prec=60, rounding=ROUND_HALF_EVEN,
                  Emax=999_999, Emin=-999_999)

ZERO = Decimal(0)
ONE = Decimal(1)


# ---------------------------------------------------------------------------
# Conversions
# ---------------------------------------------------------------------------

def to_fixed(value) -> int:
    """
    Convert a human amount ("12.5", Decimal, int) to micro-units.
    Rejects anything that does not fit exactly in 6 decimals.
    """
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"invalid amount: {value}")
    if not d.is_finite():
        raise ValueError(f"invalid amount: {value}")
    scaled = d.scaleb(DECIMALS, CONTEXT)
    if scaled != scaled.to_integral_value(rounding=ROUND_FLOOR):
        raise ValueError(
            f"amount {value} exceeds precision (max {DECIMALS} dp)")
    return int(scaled)


def from_fixed(units: int) -> Decimal:
    return Decimal(units).scaleb(-DECIMALS)


def floor_int(d: Decimal) -> int:
    return int(d.to_integral_value(rounding=ROUND_FLOOR))


# ---------------------------------------------------------------------------
# Transcendentals
# ---------------------------------------------------------------------------

def exp(x: Decimal) -> Decimal:
    return x.exp(CONTEXT)


def ln(x: Decimal) -> Decimal:
    if x <= ZERO:
        raise ValueError(f"ln of non-positive value {x}")
    return x.ln(CONTEXT)


# ---------------------------------------------------------------------------
# Integer helpers
# ---------------------------------------------------------------------------

def mul_div(a: int, b: int, c: int) -> int:
    """floor(a * b / c) on non-negative ints."""
    if c == 0:
        raise ZeroDivisionError("mul_div by zero")
    return a * b // c


def apply_bps(amount: int, bps: int) -> int:
    """Portion of `amount` at `bps` basis points, rounded down."""
    return mul_div(amount, bps, BPS_DENOMINATOR)
