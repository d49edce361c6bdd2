from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from .errors import InputError


# Maximum price: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_PRICE_CENTS = 999_999_999

# 100% expressed in basis points
FULL_PCT_BPS = 10_000


def parse_id(value: Any, field: str) -> int:
    """Strict positive integer id (rejects bools, floats and blank strings)."""
    if isinstance(value, bool):
        raise InputError(f"{field} must be an integer")
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
    else:
        raise InputError(f"{field} must be an integer")
    if parsed <= 0:
        raise InputError(f"{field} must be > 0")
    return parsed


def parse_cents(value: Any, field: str, *, allow_zero: bool = True) -> int:
    """
    Validate a minor-currency amount.

    Integers only: floats, decimals and scientific notation are rejected so no
    binary rounding ever reaches the ledger.
    """
    if isinstance(value, bool) or value is None:
        raise InputError(f"{field} must be an integer number of cents")
    if isinstance(value, float):
        raise InputError(f"{field} must be an integer, not a decimal")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise InputError(f"{field} must be an integer number of cents")
        if "e" in stripped.lower():
            raise InputError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise InputError(f"{field} must be an integer (no decimals)")
        try:
            value = int(stripped)
        except ValueError:
            raise InputError(f"{field} must be an integer number of cents")
    if not isinstance(value, int):
        raise InputError(f"{field} must be an integer number of cents")
    if value < 0 or (value == 0 and not allow_zero):
        raise InputError(f"{field} must be {'>= 0' if allow_zero else '> 0'}")
    if value > MAX_PRICE_CENTS:
        raise InputError(f"{field} cannot exceed {MAX_PRICE_CENTS}")
    return value


def parse_percent_bps(value: Any, field: str = "discount_pct") -> int:
    """
    Convert a percentage (e.g. 12.5, "7", Decimal("33.33")) to basis points.

    - Range 0..100 inclusive
    - At most 2 decimal places; anything finer is rejected rather than rounded
    """
    if value is None or isinstance(value, bool):
        raise InputError(f"{field} is required and must be a number")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise InputError(f"{field} is required and must be a number")
        if "e" in stripped.lower():
            raise InputError(f"{field} must be a plain number (scientific notation not allowed)")
        raw = stripped
    elif isinstance(value, (int, float, Decimal)):
        # str() of a float is its shortest repr, so 12.5 -> "12.5" exactly
        raw = str(value)
    else:
        raise InputError(f"{field} must be a number")

    try:
        pct = Decimal(raw)
    except InvalidOperation:
        raise InputError(f"{field} must be a number")

    if not pct.is_finite():
        raise InputError(f"{field} must be a finite number")
    if pct < 0 or pct > 100:
        raise InputError(f"{field} must be between 0 and 100")

    bps = pct * 100
    if bps != bps.to_integral_value():
        raise InputError(f"{field} supports at most 2 decimal places")
    return int(bps)


def format_bps(bps: int | None) -> str | None:
    """Render basis points as a percentage string: 1250 -> "12.50%"."""
    if bps is None:
        return None
    sign = "-" if bps < 0 else ""
    whole, frac = divmod(abs(bps), 100)
    return f"{sign}{whole}.{frac:02d}%"


def format_cents(cents: int | None) -> str | None:
    """Render cents as dollars without float conversion: 164999 -> "$1,649.99"."""
    if cents is None:
        return None
    sign = "-" if cents < 0 else ""
    dollars, rem = divmod(abs(cents), 100)
    return f"{sign}${dollars:,}.{rem:02d}"
