from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")

# Absolute tolerance for stored balances and sums.
AMOUNT_TOLERANCE = Decimal("0.01")
# Installment amount is schedule metadata, a little rounding slack is allowed.
INSTALLMENT_TOLERANCE = Decimal("0.02")

# Relative bands for converted amounts (percent).
CONVERSION_NOISE_PCT = Decimal("1")
CONVERSION_CRITICAL_PCT = Decimal("10")


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce DB/JSON numerics to Decimal without passing through binary floats."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid monetary value: {value!r}") from exc


def quantize_money(value: Any) -> Decimal:
    d = to_decimal(value)
    if d is None:
        return ZERO.quantize(CENT)
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Any) -> str:
    return str(quantize_money(value))


def amounts_equal(a: Any, b: Any, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    da = to_decimal(a)
    db = to_decimal(b)
    if da is None and db is None:
        return True
    if da is None or db is None:
        return False
    return abs(da - db) <= tolerance


def percent_error(expected: Any, actual: Any) -> Decimal:
    exp = to_decimal(expected) or ZERO
    act = to_decimal(actual) or ZERO
    if exp > 0:
        return abs(act - exp) / exp * HUNDRED
    return HUNDRED if act > 0 else ZERO


def conversion_severity(expected: Any, recorded: Any) -> Optional[str]:
    """Classify a converted amount against its recomputed value.

    Returns ``"critical"`` when the conversion is missing (recorded zero
    while a nonzero value is expected) or off by more than 10%,
    ``"warning"`` for (1%, 10%], and ``None`` at or below the 1% noise floor.
    """
    exp = to_decimal(expected) or ZERO
    rec = to_decimal(recorded) or ZERO
    if rec == 0 and exp != 0:
        return "critical"
    err = percent_error(exp, rec)
    if err > CONVERSION_CRITICAL_PCT:
        return "critical"
    if err > CONVERSION_NOISE_PCT:
        return "warning"
    return None
