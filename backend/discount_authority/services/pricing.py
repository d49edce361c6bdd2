"""
Pricing calculator: pure integer arithmetic on cents and basis points.

WHY: Discount boundaries are decided at the cent level, so nothing here
touches floats. Money is integer cents, percentages are integer basis
points (1% = 100 bps), ratios are exact Fractions until the single rounding
step, and the rounding rule is explicit (HALF_UP or HALF_EVEN).

ROUNDING POLICY:
- discount amount: price * bps / 10000, rounded by the configured mode
- margin/commission figures for display: same mode
- cost floor: rounded UP to the next cent, so for integer prices
  `price_after < cost_floor_price_cents` is exactly `price_after < cost * (1 + buffer)`
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_HALF_UP
from fractions import Fraction

from ..validation import FULL_PCT_BPS


ROUNDING_MODES = {
    "HALF_UP": ROUND_HALF_UP,
    "HALF_EVEN": ROUND_HALF_EVEN,
}


def round_ratio(numerator: int, denominator: int, mode: str = "HALF_UP") -> int:
    """Round numerator/denominator to an integer using a named rounding mode."""
    if denominator == 0:
        raise ZeroDivisionError("denominator must be non-zero")
    value = Fraction(numerator, denominator)
    # Fraction -> Decimal is exact here: the quotient is quantized to an
    # integer and ties (x.5) are representable.
    exact = Decimal(value.numerator) / Decimal(value.denominator)
    return int(exact.quantize(Decimal(1), rounding=ROUNDING_MODES[mode]))


def margin_cents(price_cents: int, cost_cents: int) -> int:
    return price_cents - cost_cents


def margin_ratio_bps(price_cents: int, cost_cents: int) -> Fraction:
    """
    Exact margin percentage of price, in basis points.

    A zero price has no defined margin; it is treated as 0%.
    """
    if price_cents == 0:
        return Fraction(0)
    return Fraction((price_cents - cost_cents) * FULL_PCT_BPS, price_cents)


def margin_bps(price_cents: int, cost_cents: int, mode: str = "HALF_UP") -> int:
    ratio = margin_ratio_bps(price_cents, cost_cents)
    return round_ratio(ratio.numerator, ratio.denominator, mode)


def discount_amount_cents(price_cents: int, discount_bps: int, mode: str = "HALF_UP") -> int:
    return round_ratio(price_cents * discount_bps, FULL_PCT_BPS, mode)


def price_after_discount(price_cents: int, discount_cents: int) -> int:
    return price_cents - discount_cents


def cost_floor_price_cents(cost_cents: int, buffer_bps: int) -> int:
    """Smallest whole-cent price at or above cost * (1 + buffer)."""
    numerator = cost_cents * (FULL_PCT_BPS + buffer_bps)
    return -(-numerator // FULL_PCT_BPS)


def commission_cents(margin: int, commission_rate_bps: int, mode: str = "HALF_UP") -> int:
    return round_ratio(margin * commission_rate_bps, FULL_PCT_BPS, mode)


@dataclass(frozen=True)
class PriceBreakdown:
    """Every pricing quantity a decision record reports, before and after discount."""
    original_price_cents: int
    unit_cost_cents: int
    discount_bps: int
    discount_amount_cents: int
    price_after_cents: int
    margin_before_cents: int
    margin_before_bps: int
    margin_after_cents: int
    margin_after_bps: int
    cost_floor_price_cents: int
    commission_rate_bps: int
    commission_before_cents: int
    commission_after_cents: int
    commission_impact_cents: int

    @property
    def below_cost_floor(self) -> bool:
        return self.price_after_cents < self.cost_floor_price_cents


def breakdown(
    *,
    price_cents: int,
    cost_cents: int,
    discount_bps: int,
    commission_rate_bps: int,
    buffer_bps: int,
    mode: str = "HALF_UP",
) -> PriceBreakdown:
    """Compute the full before/after picture for one unit at one discount."""
    discount = discount_amount_cents(price_cents, discount_bps, mode)
    after = price_after_discount(price_cents, discount)
    margin_before = margin_cents(price_cents, cost_cents)
    margin_after = margin_cents(after, cost_cents)
    commission_before = commission_cents(margin_before, commission_rate_bps, mode)
    commission_after = commission_cents(margin_after, commission_rate_bps, mode)

    return PriceBreakdown(
        original_price_cents=price_cents,
        unit_cost_cents=cost_cents,
        discount_bps=discount_bps,
        discount_amount_cents=discount,
        price_after_cents=after,
        margin_before_cents=margin_before,
        margin_before_bps=margin_bps(price_cents, cost_cents, mode),
        margin_after_cents=margin_after,
        margin_after_bps=margin_bps(after, cost_cents, mode),
        cost_floor_price_cents=cost_floor_price_cents(cost_cents, buffer_bps),
        commission_rate_bps=commission_rate_bps,
        commission_before_cents=commission_before,
        commission_after_cents=commission_after,
        commission_impact_cents=commission_after - commission_before,
    )
