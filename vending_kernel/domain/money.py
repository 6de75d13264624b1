"""
Money -- Integer-cents and basis-point arithmetic.

Responsibility:
    The single conversion point where fractional money becomes whole cents.
    Every percentage, proration and fee calculation in the engines goes
    through ``round_half_up_div``; nothing else in the code base rounds.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    Imported by records and every engine.

Invariants enforced:
    - Money is ``int`` cents, percentages are ``int`` basis points. Floats,
      Decimals and bools are rejected at the boundary.
    - Rounding is half-up (away from zero on ties), symmetric for negative
      numerators, so variance arithmetic on negative values mirrors positive.
    - ``ensure_cents`` rejects values beyond the signed 64-bit range with
      ``ArithmeticOverflowError`` rather than silently truncating.

Failure modes:
    - Helpers raise ``TypeError`` on non-int input
      and ``ZeroDivisionError`` on a zero denominator (programming errors).
    - ArithmeticOverflowError from ``ensure_cents``.
"""

from __future__ import annotations

from vending_kernel.exceptions import ArithmeticOverflowError

BPS_DENOMINATOR = 10_000
"""Basis points per whole (1 bp = 0.01%)."""

MAX_ABS_CENTS = 2**63 - 1
"""Largest magnitude a cents value may take when leaving the core."""

SECONDS_PER_DAY = 86_400
REFERENCE_MONTH_DAYS = 30


def require_int(value: object, label: str) -> int:
    """Return ``value`` if it is a plain ``int`` (bool excluded), else raise TypeError."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{label} must be an int, got {type(value).__name__}")
    return value


def round_half_up_div(numerator: int, denominator: int) -> int:
    """
    Divide two integers, rounding half away from zero.

    Preconditions:
        - Both arguments are ints; ``denominator != 0``.
    Postconditions:
        - Result is the nearest integer to ``numerator / denominator``;
          exact halves round away from zero (2.5 -> 3, -2.5 -> -3).
    """
    require_int(numerator, "numerator")
    require_int(denominator, "denominator")
    if denominator == 0:
        raise ZeroDivisionError("round_half_up_div denominator is zero")
    if denominator < 0:
        numerator, denominator = -numerator, -denominator
    sign = -1 if numerator < 0 else 1
    quotient, remainder = divmod(abs(numerator), denominator)
    if remainder * 2 >= denominator:
        quotient += 1
    return sign * quotient


def apply_bps(cents: int, bps: int) -> int:
    """``round_half_up(cents * bps / 10000)``."""
    return round_half_up_div(require_int(cents, "cents") * require_int(bps, "bps"), BPS_DENOMINATOR)


def prorate(cents: int, numerator: int, denominator: int) -> int:
    """Scale ``cents`` by ``numerator / denominator`` with half-up rounding."""
    return round_half_up_div(require_int(cents, "cents") * require_int(numerator, "numerator"), denominator)


def prorate_to_month(
    cents: int,
    duration_seconds: int,
    reference_days: int = REFERENCE_MONTH_DAYS,
) -> int:
    """
    Prorate a monthly amount linearly over a reference month.

    A period of ``d`` whole days yields ``round_half_up(cents * d / reference_days)``;
    partial days scale by the exact second count.
    """
    return prorate(cents, duration_seconds, reference_days * SECONDS_PER_DAY)


def ensure_cents(value: int, label: str, limit: int = MAX_ABS_CENTS) -> int:
    """Return ``value`` unchanged, or raise ArithmeticOverflowError beyond +/-``limit``."""
    require_int(value, label)
    if abs(value) > limit:
        raise ArithmeticOverflowError(label=label, value=value, limit=limit)
    return value


def format_cents(cents: int) -> str:
    """Render cents as a signed dollars string, e.g. ``-12.05``. Display only."""
    require_int(cents, "cents")
    sign = "-" if cents < 0 else ""
    whole, frac = divmod(abs(cents), 100)
    return f"{sign}{whole}.{frac:02d}"
