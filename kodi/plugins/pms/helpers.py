# ===============================================================
# HELPERS
# ===============================================================
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any

from bson import Decimal128

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def money(val: Any) -> Decimal:
    """Quantise anything numeric to two places. None and blanks become 0.00."""
    if val is None or val == "":
        return ZERO
    if isinstance(val, Decimal128):
        val = val.to_decimal()
    if isinstance(val, float):
        val = repr(val)
    try:
        return Decimal(str(val).replace(",", "")).quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Not a monetary amount: {val!r}") from e


def parse_amount(text: str) -> Decimal:
    """'1,250.50' -> Decimal('1250.50')"""
    return money(text.strip())


def format_amount(val: Any) -> str:
    """Display form used in SMS text: thousands separators, no trailing .00"""
    amount = money(val)
    if amount == amount.to_integral_value():
        return f"{amount:,.0f}"
    return f"{amount:,.2f}"


def clamp_zero(val: Decimal) -> Decimal:
    return val if val > ZERO else ZERO
