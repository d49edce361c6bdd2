"""
Tier policy resolver.

WHY: Who may discount how much is data, not code. Roles form an ordered
list (lowest authority first) and a table maps (role, margin class) to a
percentage ceiling. Adding a role means adding a row to the config.

DESIGN PRINCIPLES:
- Loaded once at app start into an immutable DiscountPolicy
- resolve_tier() is pure: same inputs, same ceiling (audit replays depend on it)
- `unrestricted` skips the percentage ceiling but never the cost floor
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from fractions import Fraction
from types import MappingProxyType
from typing import Mapping

from flask import current_app

from ..errors import InputError, PolicyConfigError
from ..validation import parse_percent_bps
from .pricing import ROUNDING_MODES


MARGIN_CLASS_STANDARD = "standard"
MARGIN_CLASS_HIGH = "high"

POLICY_EXTENSION_KEY = "discount_policy"


@dataclass(frozen=True)
class RolePolicy:
    role: str
    rank: int
    max_standard_bps: int | None
    max_high_bps: int | None
    unrestricted: bool = False


@dataclass(frozen=True)
class TierCeiling:
    role: str
    margin_class: str
    max_discount_bps: int | None  # None when unrestricted
    unrestricted: bool


@dataclass(frozen=True)
class DiscountPolicy:
    high_margin_threshold_bps: int
    min_margin_buffer_bps: int
    roles: Mapping[str, RolePolicy]
    rounding_mode: str
    escalation_timeout_seconds: int
    reservation_timeout_seconds: int
    default_budget_cents: int

    @property
    def fingerprint(self) -> str:
        """Stable hash of every setting that can change a decision."""
        canonical = {
            "high_margin_threshold_bps": self.high_margin_threshold_bps,
            "min_margin_buffer_bps": self.min_margin_buffer_bps,
            "rounding_mode": self.rounding_mode,
            "roles": [
                [r.role, r.rank, r.max_standard_bps, r.max_high_bps, r.unrestricted]
                for r in sorted(self.roles.values(), key=lambda r: r.rank)
            ],
        }
        raw = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def top_rank(self) -> int:
        return max(r.rank for r in self.roles.values())

    def role_policy(self, role: str) -> RolePolicy:
        try:
            return self.roles[role]
        except KeyError:
            raise InputError(f"Unknown discount role: {role}", details={"role": role})

    def rank_of(self, role: str) -> int:
        return self.role_policy(role).rank

    def outranks(self, role: str, other: str) -> bool:
        """True when `role` has strictly more authority than `other`."""
        return self.rank_of(role) > self.rank_of(other)


def _pct_setting(value, name: str) -> int:
    try:
        return parse_percent_bps(value, name)
    except InputError as exc:
        raise PolicyConfigError(str(exc)) from exc


def load_policy(config: Mapping) -> DiscountPolicy:
    """
    Build the immutable policy from app config.

    Raises PolicyConfigError for tables that would make authority
    non-monotonic or otherwise ambiguous.
    """
    order = list(config["DISCOUNT_ROLE_ORDER"])
    table = config["DISCOUNT_TIER_TABLE"]

    if not order:
        raise PolicyConfigError("DISCOUNT_ROLE_ORDER must list at least one role")
    if len(set(order)) != len(order):
        raise PolicyConfigError("DISCOUNT_ROLE_ORDER contains duplicate roles")
    unknown = set(table) - set(order)
    if unknown:
        raise PolicyConfigError(f"DISCOUNT_TIER_TABLE has roles missing from DISCOUNT_ROLE_ORDER: {sorted(unknown)}")

    roles: dict[str, RolePolicy] = {}
    previous: RolePolicy | None = None
    for rank, role in enumerate(order, start=1):
        row = table.get(role)
        if row is None:
            raise PolicyConfigError(f"DISCOUNT_TIER_TABLE has no entry for role {role!r}")

        if row.get("unrestricted"):
            if rank != len(order):
                raise PolicyConfigError(f"Only the highest role may be unrestricted (got {role!r})")
            policy = RolePolicy(role=role, rank=rank, max_standard_bps=None, max_high_bps=None, unrestricted=True)
        else:
            standard = _pct_setting(row.get("standard"), f"{role}.standard")
            high = _pct_setting(row.get("high"), f"{role}.high")
            policy = RolePolicy(role=role, rank=rank, max_standard_bps=standard, max_high_bps=high)

            if previous is not None and (
                standard < previous.max_standard_bps or high < previous.max_high_bps
            ):
                raise PolicyConfigError(
                    f"Ceilings for {role!r} must not be lower than for {previous.role!r}"
                )

        roles[role] = policy
        previous = policy

    rounding_mode = str(config["DISCOUNT_ROUNDING_MODE"]).upper()
    if rounding_mode not in ROUNDING_MODES:
        raise PolicyConfigError(f"DISCOUNT_ROUNDING_MODE must be one of {sorted(ROUNDING_MODES)}")

    escalation_timeout = int(config["ESCALATION_TIMEOUT_SECONDS"])
    reservation_timeout = int(config["RESERVATION_TIMEOUT_SECONDS"])
    if escalation_timeout <= 0 or reservation_timeout <= 0:
        raise PolicyConfigError("Escalation and reservation timeouts must be positive")

    default_budget = int(config["DISCOUNT_DEFAULT_BUDGET_CENTS"])
    if default_budget < 0:
        raise PolicyConfigError("DISCOUNT_DEFAULT_BUDGET_CENTS must be >= 0")

    return DiscountPolicy(
        high_margin_threshold_bps=_pct_setting(config["DISCOUNT_HIGH_MARGIN_THRESHOLD_PCT"], "DISCOUNT_HIGH_MARGIN_THRESHOLD_PCT"),
        min_margin_buffer_bps=_pct_setting(config["DISCOUNT_MIN_MARGIN_BUFFER_PCT"], "DISCOUNT_MIN_MARGIN_BUFFER_PCT"),
        roles=MappingProxyType(roles),
        rounding_mode=rounding_mode,
        escalation_timeout_seconds=escalation_timeout,
        reservation_timeout_seconds=reservation_timeout,
        default_budget_cents=default_budget,
    )


def get_policy() -> DiscountPolicy:
    """The process-wide policy loaded by create_app()."""
    return current_app.extensions[POLICY_EXTENSION_KEY]


def classify_margin(policy: DiscountPolicy, margin_before_bps: Fraction | int) -> str:
    if margin_before_bps >= policy.high_margin_threshold_bps:
        return MARGIN_CLASS_HIGH
    return MARGIN_CLASS_STANDARD


def resolve_tier(policy: DiscountPolicy, role: str, margin_before_bps: Fraction | int) -> TierCeiling:
    """
    Map (role, pre-discount margin) to the discount ceiling.

    margin_before_bps should be the exact ratio (pricing.margin_ratio_bps) so
    a product sitting a fraction of a basis point under the threshold is
    never promoted to the high-margin class by rounding.
    """
    role_policy = policy.role_policy(role)
    margin_class = classify_margin(policy, margin_before_bps)

    if role_policy.unrestricted:
        return TierCeiling(role=role, margin_class=margin_class, max_discount_bps=None, unrestricted=True)

    ceiling = role_policy.max_high_bps if margin_class == MARGIN_CLASS_HIGH else role_policy.max_standard_bps
    return TierCeiling(role=role, margin_class=margin_class, max_discount_bps=ceiling, unrestricted=False)
