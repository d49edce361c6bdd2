"""
Validation Orchestrator: validate(product, employee, pct) -> DecisionRecord.

WHY: One place composes pricing, tier policy and the budget probe into a
single auditable decision. Denials and escalations are returned as records,
not raised; only malformed input raises.

CHECK ORDER (first failing check wins, so escalation_reason is unambiguous):
1. price_after < cost floor       -> below_cost_floor (applies to admins too)
2. pct > role ceiling             -> exceeds_tier_limit (skipped when unrestricted)
3. otherwise                      -> allowed

Budget figures on the record are an informational projection; validate()
never touches the ledger. Mutation happens on reserve/commit.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, fields

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..errors import InputError
from ..extensions import db
from ..models import BudgetReservation, DiscountDecision
from ..validation import format_bps, format_cents, parse_id, parse_percent_bps
from . import audit_service, budget_service, pricing
from .catalog_service import Actor, ProductEconomics, get_actor, get_product_economics
from .concurrency import run_fail_closed
from .policy_service import DiscountPolicy, get_policy, resolve_tier


ESCALATION_BELOW_COST_FLOOR = "below_cost_floor"
ESCALATION_EXCEEDS_TIER_LIMIT = "exceeds_tier_limit"


@dataclass(frozen=True)
class DecisionRecord:
    """Immutable outcome of one validation; its fingerprint is its id."""
    product_id: int
    employee_id: int
    approver_employee_id: int | None
    authority_role: str
    transaction_id: str | None
    proposed_discount_bps: int
    original_price_cents: int
    unit_cost_cents: int
    discount_amount_cents: int
    price_after_cents: int
    margin_before_cents: int
    margin_before_bps: int
    margin_after_cents: int
    margin_after_bps: int
    cost_floor_price_cents: int
    margin_class: str
    max_discount_bps: int | None
    max_discount_cents: int | None
    unrestricted: bool
    commission_rate_bps: int
    commission_before_cents: int
    commission_after_cents: int
    commission_impact_cents: int
    budget_remaining_before_cents: int | None
    budget_remaining_after_cents: int | None
    allowed: bool
    escalation_required: bool
    escalation_reason: str | None
    reason: str
    policy_fingerprint: str
    rounding_mode: str

    @property
    def fingerprint(self) -> str:
        raw = json.dumps(asdict(self), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    @property
    def decision_id(self) -> str:
        return self.fingerprint

    def as_row_values(self) -> dict:
        values = asdict(self)
        values["id"] = self.fingerprint
        return values

    def to_dict(self) -> dict:
        data = asdict(self)
        data["id"] = self.fingerprint
        data["display"] = {
            "proposed_discount": format_bps(self.proposed_discount_bps),
            "max_discount": format_bps(self.max_discount_bps) if not self.unrestricted else "unrestricted",
            "original_price": format_cents(self.original_price_cents),
            "discount_amount": format_cents(self.discount_amount_cents),
            "price_after": format_cents(self.price_after_cents),
            "cost_floor_price": format_cents(self.cost_floor_price_cents),
            "margin_before": format_bps(self.margin_before_bps),
            "margin_after": format_bps(self.margin_after_bps),
            "commission_impact": format_cents(self.commission_impact_cents),
        }
        return data

    @classmethod
    def from_row(cls, row: DiscountDecision) -> "DecisionRecord":
        return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})


def evaluate(
    policy: DiscountPolicy,
    economics: ProductEconomics,
    actor: Actor,
    discount_bps: int,
    *,
    transaction_id: str | None = None,
    budget_remaining_before: int | None = None,
    authority_role: str | None = None,
    approver_employee_id: int | None = None,
) -> DecisionRecord:
    """
    Pure decision logic.

    `actor` is whose sale it is (commission, budget). `authority_role`
    overrides the tier used for the ceiling, which is how an approver
    re-validates a requester's discount under their own authority.
    """
    role = authority_role or actor.role
    price = economics.unit_price_cents
    cost = economics.unit_cost_cents
    mode = policy.rounding_mode

    figures = pricing.breakdown(
        price_cents=price,
        cost_cents=cost,
        discount_bps=discount_bps,
        commission_rate_bps=actor.commission_rate_bps,
        buffer_bps=policy.min_margin_buffer_bps,
        mode=mode,
    )
    tier = resolve_tier(policy, role, pricing.margin_ratio_bps(price, cost))
    max_discount_cents = (
        None if tier.unrestricted else pricing.discount_amount_cents(price, tier.max_discount_bps, mode)
    )

    if figures.below_cost_floor:
        escalation_reason = ESCALATION_BELOW_COST_FLOOR
        reason = (
            f"Price after discount {format_cents(figures.price_after_cents)} is below the cost floor "
            f"{format_cents(figures.cost_floor_price_cents)}"
        )
    elif not tier.unrestricted and discount_bps > tier.max_discount_bps:
        escalation_reason = ESCALATION_EXCEEDS_TIER_LIMIT
        reason = (
            f"{format_bps(discount_bps)} exceeds the {role} limit of "
            f"{format_bps(tier.max_discount_bps)} for {tier.margin_class}-margin products"
        )
    else:
        escalation_reason = None
        reason = f"Within {role} authority"

    budget_after = None
    if budget_remaining_before is not None:
        budget_after = budget_remaining_before - figures.discount_amount_cents

    return DecisionRecord(
        product_id=economics.product_id,
        employee_id=actor.employee_id,
        approver_employee_id=approver_employee_id,
        authority_role=role,
        transaction_id=transaction_id,
        proposed_discount_bps=discount_bps,
        original_price_cents=figures.original_price_cents,
        unit_cost_cents=figures.unit_cost_cents,
        discount_amount_cents=figures.discount_amount_cents,
        price_after_cents=figures.price_after_cents,
        margin_before_cents=figures.margin_before_cents,
        margin_before_bps=figures.margin_before_bps,
        margin_after_cents=figures.margin_after_cents,
        margin_after_bps=figures.margin_after_bps,
        cost_floor_price_cents=figures.cost_floor_price_cents,
        margin_class=tier.margin_class,
        max_discount_bps=tier.max_discount_bps,
        max_discount_cents=max_discount_cents,
        unrestricted=tier.unrestricted,
        commission_rate_bps=figures.commission_rate_bps,
        commission_before_cents=figures.commission_before_cents,
        commission_after_cents=figures.commission_after_cents,
        commission_impact_cents=figures.commission_impact_cents,
        budget_remaining_before_cents=budget_remaining_before,
        budget_remaining_after_cents=budget_after,
        allowed=escalation_reason is None,
        escalation_required=escalation_reason is not None,
        escalation_reason=escalation_reason,
        reason=reason,
        policy_fingerprint=policy.fingerprint,
        rounding_mode=mode,
    )


def persist_decision(record: DecisionRecord) -> None:
    """
    Insert the record keyed by its fingerprint; an identical record that is
    already stored is left as is. Runs in the caller's transaction.
    """
    values = record.as_row_values()
    dialect = db.session.get_bind().dialect.name

    if dialect == "sqlite":
        stmt = sqlite_insert(DiscountDecision).values(**values).on_conflict_do_nothing(index_elements=["id"])
    elif dialect == "postgresql":
        stmt = pg_insert(DiscountDecision).values(**values).on_conflict_do_nothing(index_elements=["id"])
    else:
        if db.session.get(DiscountDecision, values["id"]) is None:
            db.session.add(DiscountDecision(**values))
            db.session.flush()
        return
    db.session.execute(stmt)


def _normalize_transaction_id(transaction_id) -> str | None:
    if transaction_id is None:
        return None
    transaction_id = str(transaction_id).strip()
    if not transaction_id:
        return None
    if len(transaction_id) > 64:
        raise InputError("transaction_id cannot exceed 64 characters")
    return transaction_id


def validate(product_id, employee_id, proposed_discount_pct, transaction_id=None) -> DecisionRecord:
    """
    Decide whether the employee may apply the discount to one unit.

    Raises InputError for malformed input or unknown product/employee;
    every other outcome is a DecisionRecord.
    """
    product_id = parse_id(product_id, "product_id")
    employee_id = parse_id(employee_id, "employee_id")
    discount_bps = parse_percent_bps(proposed_discount_pct, "proposed_discount_pct")
    transaction_id = _normalize_transaction_id(transaction_id)

    policy = get_policy()
    economics = get_product_economics(product_id)
    actor = get_actor(employee_id)

    record = evaluate(
        policy,
        economics,
        actor,
        discount_bps,
        transaction_id=transaction_id,
        budget_remaining_before=budget_service.probe_remaining(employee_id),
    )

    def _op():
        persist_decision(record)
        db.session.commit()

    run_fail_closed(_op, operation="validate")

    audit_service.record(
        "discount.validated", "decision", record.decision_id,
        actor_employee_id=employee_id,
        payload=record.to_dict(),
    )
    return record


def get_decision(decision_id: str) -> DecisionRecord | None:
    row = db.session.get(DiscountDecision, str(decision_id))
    if row is None:
        return None
    return DecisionRecord.from_row(row)


def reserve_for_decision(decision_id: str, transaction_id=None) -> BudgetReservation:
    """
    Direct-commit path, step one: hold the decision's discount amount.

    Only allowed decisions made under the requester's own authority
    qualify; escalation approvals commit their budget themselves.
    A decision holds at most one live reservation: repeating the call
    returns the RESERVED or COMMITTED one until it is released or expires.
    """
    row = db.session.get(DiscountDecision, str(decision_id))
    if row is None:
        raise InputError(f"Decision {decision_id} not found", details={"decision_id": decision_id})
    if not row.allowed:
        raise InputError(
            "Decision was not allowed; open an escalation instead",
            details={"decision_id": row.id, "escalation_reason": row.escalation_reason},
        )
    if row.approver_employee_id is not None:
        raise InputError(
            "Decision was approved through escalation and is already committed",
            details={"decision_id": row.id},
        )

    live = budget_service.get_live_reservation_for_decision(row.id)
    if live is not None:
        return live

    return budget_service.reserve(
        row.employee_id,
        row.discount_amount_cents,
        decision_id=row.id,
        transaction_id=_normalize_transaction_id(transaction_id) or row.transaction_id,
    )
