"""
Escalation State Machine.

WHY: A discount the requester cannot authorize waits, persisted, until
someone with more authority approves or denies it. Approval may happen
on another register, in another process, minutes later; the case id is
the only handle.

STATES:
- PENDING -> APPROVED | DENIED | EXPIRED (terminal, never change again)

DESIGN PRINCIPLES:
- Creating a case places a hold on the requester's budget so the
  approved discount cannot later bounce on an exhausted budget
- Approval re-validates the discount with the SAME evaluate() logic under
  the approver's role; an approver cannot approve beyond their own authority
- Approval is one transaction: status flip, hold release, reserve, commit
- Concurrent resolutions serialize on the case version column; the loser
  retries, sees the terminal state and gets the idempotent replay
- Overdue cases expire lazily on access and via expire_stale_cases()
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import EscalationError, InputError, NotAuthorizedToResolve
from ..extensions import db
from ..models import BudgetReservation, DiscountDecision, EscalationCase
from ..time_utils import utc_after, utcnow
from ..validation import parse_id, parse_percent_bps
from . import audit_service, budget_service
from .authority_service import DecisionRecord, evaluate, persist_decision
from .catalog_service import Actor, ProductEconomics, get_actor
from .concurrency import lock_for_update, run_fail_closed
from .policy_service import get_policy


STATUS_PENDING = "PENDING"
STATUS_APPROVED = "APPROVED"
STATUS_DENIED = "DENIED"
STATUS_EXPIRED = "EXPIRED"

ACTION_APPROVE = "approve"
ACTION_DENY = "deny"

OUTCOME_APPROVED = "approved"
OUTCOME_DENIED = "denied"
OUTCOME_EXPIRED = "expired"
OUTCOME_APPROVAL_REJECTED = "approval_rejected"

_ACTION_TERMINAL_STATUS = {
    ACTION_APPROVE: STATUS_APPROVED,
    ACTION_DENY: STATUS_DENIED,
}


@dataclass(frozen=True)
class CaseResult:
    case: dict
    outcome: str
    decision: DecisionRecord | None = None
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "case": self.case,
            "outcome": self.outcome,
            "decision": self.decision.to_dict() if self.decision else None,
            "replayed": self.replayed,
        }


def _notes(value, field: str = "notes") -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    if len(value) > 255:
        raise InputError(f"{field} cannot exceed 255 characters")
    return value or None


def _case_payload(case: EscalationCase, **extra) -> dict:
    payload = {
        "decision_id": case.decision_id,
        "requester_employee_id": case.requester_employee_id,
        "requester_role": case.requester_role,
        "product_id": case.product_id,
        "requested_discount_bps": case.requested_discount_bps,
        "escalation_reason": case.escalation_reason,
        "status": case.status,
    }
    payload.update(extra)
    return payload


def _expire_in_session(case: EscalationCase, now) -> None:
    case.status = STATUS_EXPIRED
    case.resolved_at = now
    db.session.flush()
    if case.hold_reservation_id:
        budget_service._release_in_session(
            case.hold_reservation_id, now,
            final_status=budget_service.RESERVATION_EXPIRED,
            strict=False,
        )


def _audit_expired(case: EscalationCase) -> None:
    audit_service.record(
        "escalation.expired", "escalation_case", case.id,
        actor_employee_id=case.requester_employee_id,
        payload=_case_payload(case),
    )


# =============================================================================
# CREATE
# =============================================================================

def create_escalation(decision_id, notes=None) -> EscalationCase:
    """
    Open a case for a decision that requires escalation.

    Returns the existing case when the decision already has a PENDING or
    APPROVED one; only DENIED or EXPIRED history allows a new case.
    Raises BudgetExhausted when the requester's budget cannot hold the
    proposed discount; no case is created then.
    """
    decision = db.session.get(DiscountDecision, str(decision_id))
    if decision is None:
        raise InputError(f"Decision {decision_id} not found", details={"decision_id": decision_id})
    if not decision.escalation_required:
        raise EscalationError(
            "Decision is already allowed; no escalation needed",
            details={"decision_id": decision.id},
        )

    policy = get_policy()
    requester_role = decision.authority_role
    if policy.rank_of(requester_role) >= policy.top_rank:
        raise EscalationError(
            f"No role outranks {requester_role}; nothing to escalate to",
            details={"decision_id": decision.id, "role": requester_role},
        )
    get_actor(decision.employee_id)
    notes = _notes(notes)

    def _op():
        now = utcnow()
        expired = None
        approved = db.session.query(EscalationCase).filter_by(
            decision_id=decision.id, status=STATUS_APPROVED
        ).first()
        if approved:
            return approved, False, None, None, []

        existing = db.session.query(EscalationCase).filter_by(
            decision_id=decision.id, status=STATUS_PENDING
        ).first()
        if existing:
            if existing.expires_at > now:
                return existing, False, None, None, []
            _expire_in_session(existing, now)
            expired = existing

        case = EscalationCase(
            decision_id=decision.id,
            requester_employee_id=decision.employee_id,
            requester_role=requester_role,
            product_id=decision.product_id,
            requested_discount_bps=decision.proposed_discount_bps,
            escalation_reason=decision.escalation_reason,
            request_notes=notes,
            status=STATUS_PENDING,
            created_at=now,
            expires_at=utc_after(policy.escalation_timeout_seconds, now),
        )
        db.session.add(case)
        try:
            db.session.flush()
        except IntegrityError:
            # Another register opened the PENDING case for this decision first
            db.session.rollback()
            winner = db.session.query(EscalationCase).filter_by(
                decision_id=decision.id, status=STATUS_PENDING
            ).first()
            if winner is None:
                raise
            return winner, False, None, None, []

        hold, swept = budget_service._reserve_in_session(
            decision.employee_id,
            decision.discount_amount_cents,
            now=now,
            expires_at=case.expires_at,
            decision_id=decision.id,
            escalation_case_id=case.id,
            transaction_id=decision.transaction_id,
        )
        case.hold_reservation_id = hold.id
        db.session.commit()
        return case, True, hold, expired, swept

    case, created, hold, expired, swept = run_fail_closed(_op, operation="create_escalation")

    budget_service._audit_expired(swept)
    if expired is not None:
        _audit_expired(expired)
    if created:
        current_app.logger.info(
            "Escalation case %s opened for decision %s (%s)", case.id, decision.id, case.escalation_reason
        )
        audit_service.record(
            "budget.reserved", "reservation", hold.id,
            actor_employee_id=hold.employee_id,
            payload=hold.to_dict(),
        )
        audit_service.record(
            "escalation.created", "escalation_case", case.id,
            actor_employee_id=case.requester_employee_id,
            payload=_case_payload(case, hold_reservation_id=hold.id, notes=notes),
        )
    return case


# =============================================================================
# RESOLVE
# =============================================================================

def _replay(case: EscalationCase, action: str) -> CaseResult:
    if case.status == STATUS_EXPIRED:
        return CaseResult(case=case.to_dict(), outcome=OUTCOME_EXPIRED, replayed=True)

    if _ACTION_TERMINAL_STATUS[action] != case.status:
        raise EscalationError(
            f"Escalation case {case.id} is already {case.status.lower()}",
            details={"case_id": case.id, "status": case.status},
        )

    if case.status == STATUS_APPROVED:
        final = DecisionRecord.from_row(case.final_decision) if case.final_decision else None
        return CaseResult(case=case.to_dict(), outcome=OUTCOME_APPROVED, decision=final, replayed=True)
    return CaseResult(case=case.to_dict(), outcome=OUTCOME_DENIED, replayed=True)


def resolve_escalation(case_id, approver_id, action, override_discount_pct=None, notes=None) -> CaseResult:
    """
    Approve or deny a PENDING case.

    - The approver's role must outrank the requester's (NotAuthorizedToResolve)
    - approve re-validates (override or requested pct) under the approver's
      role; a failing re-validation returns outcome approval_rejected and
      leaves the case PENDING
    - Repeating the action that already resolved the case replays its
      result; a conflicting action raises EscalationError
    """
    case_id = parse_id(case_id, "case_id")
    action = str(action or "").strip().lower()
    if action not in _ACTION_TERMINAL_STATUS:
        raise InputError("action must be 'approve' or 'deny'", details={"action": action})
    override_bps = None
    if override_discount_pct is not None:
        override_bps = parse_percent_bps(override_discount_pct, "override_discount_pct")
    notes = _notes(notes)

    approver = get_actor(parse_id(approver_id, "approver_id"))
    policy = get_policy()

    def _op():
        now = utcnow()
        case = lock_for_update(db.session.query(EscalationCase).filter_by(id=case_id)).first()
        if not case:
            raise InputError(f"Escalation case {case_id} not found", details={"case_id": case_id})

        if not policy.outranks(approver.role, case.requester_role):
            raise NotAuthorizedToResolve(
                f"{approver.role} cannot resolve a case raised by {case.requester_role}",
                details={"case_id": case.id, "approver_role": approver.role, "requester_role": case.requester_role},
            )

        if case.status == STATUS_PENDING and case.expires_at <= now:
            _expire_in_session(case, now)
            db.session.commit()
            return CaseResult(case=case.to_dict(), outcome=OUTCOME_EXPIRED), case, []

        if case.status != STATUS_PENDING:
            return _replay(case, action), None, []

        if action == ACTION_DENY:
            case.status = STATUS_DENIED
            case.approver_employee_id = approver.employee_id
            case.approver_role = approver.role
            case.resolution_notes = notes
            case.resolved_at = now
            db.session.flush()
            if case.hold_reservation_id:
                budget_service._release_in_session(case.hold_reservation_id, now, strict=False)
            db.session.commit()
            return CaseResult(case=case.to_dict(), outcome=OUTCOME_DENIED), case, []

        origin = case.decision
        hold = db.session.get(BudgetReservation, case.hold_reservation_id) if case.hold_reservation_id else None
        remaining = budget_service.probe_remaining(origin.employee_id)
        if remaining is not None and hold is not None and hold.status == budget_service.RESERVATION_RESERVED:
            remaining += hold.amount_cents

        record = evaluate(
            policy,
            ProductEconomics(
                product_id=origin.product_id,
                unit_price_cents=origin.original_price_cents,
                unit_cost_cents=origin.unit_cost_cents,
            ),
            Actor(
                employee_id=origin.employee_id,
                role=case.requester_role,
                commission_rate_bps=origin.commission_rate_bps,
            ),
            override_bps if override_bps is not None else case.requested_discount_bps,
            transaction_id=origin.transaction_id,
            budget_remaining_before=remaining,
            authority_role=approver.role,
            approver_employee_id=approver.employee_id,
        )
        persist_decision(record)

        if not record.allowed:
            db.session.commit()
            return CaseResult(case=case.to_dict(), outcome=OUTCOME_APPROVAL_REJECTED, decision=record), case, []

        case.status = STATUS_APPROVED
        case.approver_employee_id = approver.employee_id
        case.approver_role = approver.role
        case.approved_discount_bps = record.proposed_discount_bps
        case.final_decision_id = record.decision_id
        case.resolution_notes = notes
        case.resolved_at = now
        db.session.flush()

        if case.hold_reservation_id:
            budget_service._release_in_session(case.hold_reservation_id, now, strict=False)
        reservation, swept = budget_service._reserve_in_session(
            origin.employee_id,
            record.discount_amount_cents,
            now=now,
            expires_at=utc_after(policy.reservation_timeout_seconds, now),
            decision_id=record.decision_id,
            escalation_case_id=case.id,
            transaction_id=origin.transaction_id,
        )
        budget_service._commit_in_session(reservation.id, now)
        case.committed_reservation_id = reservation.id
        db.session.commit()
        return CaseResult(case=case.to_dict(), outcome=OUTCOME_APPROVED, decision=record), case, swept

    result, case, swept = run_fail_closed(_op, operation="resolve_escalation")
    budget_service._audit_expired(swept)

    if result.replayed:
        return result

    if result.outcome == OUTCOME_EXPIRED:
        _audit_expired(case)
    else:
        current_app.logger.info("Escalation case %s %s by employee %s", case_id, result.outcome, approver.employee_id)
        audit_service.record(
            f"escalation.{result.outcome}", "escalation_case", case_id,
            actor_employee_id=approver.employee_id,
            payload=_case_payload(
                case,
                approver_employee_id=approver.employee_id,
                approver_role=approver.role,
                override_discount_bps=override_bps,
                final_decision=result.decision.to_dict() if result.decision else None,
                committed_reservation_id=result.case.get("committed_reservation_id"),
                notes=notes,
            ),
        )
    return result


# =============================================================================
# READS AND SWEEPS
# =============================================================================

def _expire_case(case_id: int) -> EscalationCase | None:
    """Expire one overdue PENDING case; None when it was resolved meanwhile."""
    def _op():
        now = utcnow()
        case = lock_for_update(db.session.query(EscalationCase).filter_by(id=case_id)).first()
        if case is None or case.status != STATUS_PENDING or case.expires_at > now:
            return None
        _expire_in_session(case, now)
        db.session.commit()
        return case

    case = run_fail_closed(_op, operation="expire_escalation")
    if case is not None:
        _audit_expired(case)
    return case


def get_case(case_id) -> EscalationCase | None:
    case_id = parse_id(case_id, "case_id")
    case = db.session.get(EscalationCase, case_id)
    if case is None:
        return None
    if case.status == STATUS_PENDING and case.expires_at <= utcnow():
        _expire_case(case_id)
        case = db.session.get(EscalationCase, case_id)
    return case


def expire_stale_cases() -> list[int]:
    """Expire every overdue PENDING case. Returns the ids that expired."""
    overdue = [
        row.id for row in db.session.query(EscalationCase.id).filter(
            EscalationCase.status == STATUS_PENDING,
            EscalationCase.expires_at <= utcnow(),
        ).order_by(EscalationCase.id)
    ]
    expired = [case_id for case_id in overdue if _expire_case(case_id) is not None]
    if expired:
        current_app.logger.info("Expired %s overdue escalation cases", len(expired))
    return expired


def list_pending_for_approver(approver_id) -> list[EscalationCase]:
    """PENDING cases the approver may resolve, oldest first."""
    approver = get_actor(parse_id(approver_id, "approver_id"))
    policy = get_policy()
    expire_stale_cases()

    below = [role for role in policy.roles if policy.outranks(approver.role, role)]
    if not below:
        return []
    return db.session.query(EscalationCase).filter(
        EscalationCase.status == STATUS_PENDING,
        EscalationCase.requester_role.in_(below),
    ).order_by(EscalationCase.created_at, EscalationCase.id).all()
