"""
Budget Ledger: per-employee, per-period discretionary discount budgets.

WHY: An employee's budget is shared by every register they sign into.
Reading the remaining amount and then decrementing it would let two
terminals pass against the same stale figure and jointly overspend.

DESIGN PRINCIPLES:
- Every mutation is ONE guarded UPDATE (compare-and-set in the WHERE
  clause); rowcount 0 means the guard failed, never a partial write
- Invariant: reserved_cents + committed_cents <= limit_cents, also
  enforced by a table check constraint
- Reserve-then-commit; abandoned reservations expire and are returned
- Storage errors are retried a bounded number of times, then fail closed
- Stale reservation ids raise ConcurrencyConflict and are NOT retried

The underscore helpers run inside the caller's transaction so the
escalation service can combine hold release, reserve and commit into one
atomic unit.
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError

from ..errors import BudgetExhausted, ConcurrencyConflict, InputError
from ..extensions import db
from ..models import BudgetReservation, DiscountBudget
from ..time_utils import iso_week_key, utc_after, utcnow
from ..validation import parse_cents, parse_id
from . import audit_service
from .catalog_service import get_actor
from .concurrency import lock_for_update, run_fail_closed
from .policy_service import get_policy


BUDGET_OPEN = "OPEN"
BUDGET_CLOSED = "CLOSED"

RESERVATION_RESERVED = "RESERVED"
RESERVATION_COMMITTED = "COMMITTED"
RESERVATION_RELEASED = "RELEASED"
RESERVATION_EXPIRED = "EXPIRED"


# =============================================================================
# PERIODS
# =============================================================================

def get_active_budget(employee_id: int) -> DiscountBudget | None:
    return db.session.query(DiscountBudget).filter_by(
        employee_id=employee_id,
        status=BUDGET_OPEN,
    ).first()


def open_budget_period(employee_id, limit_cents=None, period_key: str | None = None) -> DiscountBudget:
    """
    Open the employee's budget for a period (idempotent).

    Defaults: the current ISO week and DISCOUNT_DEFAULT_BUDGET_CENTS.
    Re-opening the period that is already OPEN returns it unchanged.
    """
    employee_id = parse_id(employee_id, "employee_id")
    get_actor(employee_id)

    limit = get_policy().default_budget_cents if limit_cents is None else parse_cents(limit_cents, "limit_cents")
    period_key = (period_key or iso_week_key()).strip()
    if not period_key or len(period_key) > 64:
        raise InputError("period_key must be 1-64 characters")

    active = get_active_budget(employee_id)
    if active:
        if active.period_key == period_key:
            return active
        raise InputError(
            f"Employee {employee_id} already has open budget period {active.period_key}",
            details={"budget_id": active.id, "period_key": active.period_key},
        )

    existing = db.session.query(DiscountBudget).filter_by(employee_id=employee_id, period_key=period_key).first()
    if existing:
        raise InputError(f"Budget period {period_key} is closed for employee {employee_id}")

    budget = DiscountBudget(
        employee_id=employee_id,
        period_key=period_key,
        status=BUDGET_OPEN,
        limit_cents=limit,
        reserved_cents=0,
        committed_cents=0,
        version_id=1,
    )
    db.session.add(budget)
    try:
        db.session.commit()
    except IntegrityError:
        # Another terminal opened the same period first
        db.session.rollback()
        budget = db.session.query(DiscountBudget).filter_by(employee_id=employee_id, period_key=period_key).first()
        if budget is None or budget.status != BUDGET_OPEN:
            raise
        return budget

    current_app.logger.info("Opened discount budget %s for employee %s (%s cents)", period_key, employee_id, limit)
    audit_service.record(
        "budget.opened", "budget", budget.id,
        actor_employee_id=employee_id,
        payload={"period_key": period_key, "limit_cents": limit},
    )
    return budget


def close_budget_period(budget_id) -> DiscountBudget:
    """
    Archive a budget period. Outstanding reservations are released first;
    a CLOSED budget never mutates again.
    """
    budget_id = parse_id(budget_id, "budget_id")

    def _op():
        now = utcnow()
        budget = lock_for_update(db.session.query(DiscountBudget).filter_by(id=budget_id)).first()
        if not budget:
            raise InputError(f"Budget {budget_id} not found")
        if budget.status == BUDGET_CLOSED:
            return budget, [], False

        closed = db.session.execute(
            update(DiscountBudget)
            .where(DiscountBudget.id == budget_id, DiscountBudget.status == BUDGET_OPEN)
            .values(
                status=BUDGET_CLOSED,
                reserved_cents=0,
                closed_at=now,
                version_id=DiscountBudget.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if closed.rowcount != 1:
            raise ConcurrencyConflict(f"Budget {budget_id} changed while closing")

        released = [
            r.id for r in db.session.query(BudgetReservation.id).filter_by(
                budget_id=budget_id, status=RESERVATION_RESERVED
            )
        ]
        db.session.execute(
            update(BudgetReservation)
            .where(BudgetReservation.budget_id == budget_id, BudgetReservation.status == RESERVATION_RESERVED)
            .values(status=RESERVATION_RELEASED, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return budget, released, True

    budget, released, changed = run_fail_closed(_op, operation="close_budget_period")
    if changed:
        current_app.logger.info("Closed discount budget %s (%s reservations released)", budget_id, len(released))
        audit_service.record(
            "budget.closed", "budget", budget_id,
            actor_employee_id=budget.employee_id,
            payload={
                "period_key": budget.period_key,
                "committed_cents": budget.committed_cents,
                "released_reservation_ids": released,
            },
        )
    return budget


def probe_remaining(employee_id: int) -> int | None:
    """Read-only remaining cents for the open period; None when no period is open."""
    budget = get_active_budget(employee_id)
    if budget is None:
        return None
    return budget.remaining_cents


def get_budget_summary(employee_id) -> dict | None:
    employee_id = parse_id(employee_id, "employee_id")
    budget = get_active_budget(employee_id)
    if not budget:
        return None
    outstanding = db.session.query(BudgetReservation).filter_by(
        budget_id=budget.id,
        status=RESERVATION_RESERVED,
    ).order_by(BudgetReservation.created_at, BudgetReservation.id).all()
    return {
        "budget": budget.to_dict(),
        "outstanding_reservations": [r.to_dict() for r in outstanding],
    }


def list_budgets(employee_id: int | None = None, status: str | None = None) -> list[DiscountBudget]:
    query = db.session.query(DiscountBudget)
    if employee_id is not None:
        query = query.filter_by(employee_id=employee_id)
    if status:
        query = query.filter_by(status=status.upper())
    return query.order_by(DiscountBudget.employee_id, DiscountBudget.opened_at, DiscountBudget.id).all()


# =============================================================================
# IN-TRANSACTION LEDGER STEPS
# =============================================================================

def _expire_due_reservations(budget_id: int, now: datetime) -> list[dict]:
    """Return overdue RESERVED holds on one budget. Caller commits."""
    due = db.session.query(BudgetReservation).filter(
        BudgetReservation.budget_id == budget_id,
        BudgetReservation.status == RESERVATION_RESERVED,
        BudgetReservation.expires_at <= now,
    ).all()

    expired = []
    for reservation in due:
        if _release_in_session(reservation.id, now, final_status=RESERVATION_EXPIRED, strict=False):
            expired.append({
                "reservation_id": reservation.id,
                "employee_id": reservation.employee_id,
                "amount_cents": reservation.amount_cents,
            })
    return expired


def _reserve_in_session(
    employee_id: int,
    amount_cents: int,
    *,
    now: datetime,
    expires_at: datetime,
    decision_id: str | None = None,
    escalation_case_id: int | None = None,
    transaction_id: str | None = None,
) -> tuple[BudgetReservation, list[dict]]:
    budget = get_active_budget(employee_id)
    if budget is None:
        raise BudgetExhausted(
            f"Employee {employee_id} has no open discount budget",
            details={"reason": "no_open_period", "employee_id": employee_id},
        )

    expired = _expire_due_reservations(budget.id, now)

    result = db.session.execute(
        update(DiscountBudget)
        .where(
            DiscountBudget.id == budget.id,
            DiscountBudget.status == BUDGET_OPEN,
            DiscountBudget.reserved_cents + DiscountBudget.committed_cents + amount_cents <= DiscountBudget.limit_cents,
        )
        .values(
            reserved_cents=DiscountBudget.reserved_cents + amount_cents,
            version_id=DiscountBudget.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.expire(budget)
        raise BudgetExhausted(
            f"Discount budget cannot cover {amount_cents} cents",
            details={
                "reason": "insufficient_budget",
                "employee_id": employee_id,
                "budget_id": budget.id,
                "requested_cents": amount_cents,
                "remaining_cents": budget.remaining_cents,
            },
        )
    db.session.expire(budget)

    reservation = BudgetReservation(
        budget_id=budget.id,
        employee_id=employee_id,
        amount_cents=amount_cents,
        status=RESERVATION_RESERVED,
        decision_id=decision_id,
        escalation_case_id=escalation_case_id,
        transaction_id=transaction_id,
        created_at=now,
        expires_at=expires_at,
    )
    db.session.add(reservation)
    db.session.flush()
    return reservation, expired


def get_live_reservation_for_decision(decision_id: str, now: datetime | None = None) -> BudgetReservation | None:
    """The decision's COMMITTED or unexpired RESERVED direct-commit reservation, if any."""
    now = now or utcnow()
    return db.session.query(BudgetReservation).filter(
        BudgetReservation.decision_id == decision_id,
        BudgetReservation.escalation_case_id.is_(None),
        or_(
            BudgetReservation.status == RESERVATION_COMMITTED,
            and_(BudgetReservation.status == RESERVATION_RESERVED, BudgetReservation.expires_at > now),
        ),
    ).order_by(BudgetReservation.id).first()


def _load_reservation(reservation_id: int) -> BudgetReservation:
    reservation = db.session.get(BudgetReservation, reservation_id)
    if reservation is None:
        raise ConcurrencyConflict(
            f"Unknown reservation {reservation_id}",
            details={"reservation_id": reservation_id},
        )
    return reservation


def _stale(reservation: BudgetReservation, action: str) -> ConcurrencyConflict:
    db.session.expire(reservation)
    status = reservation.status
    if status == RESERVATION_RESERVED:
        status = RESERVATION_EXPIRED
    return ConcurrencyConflict(
        f"Cannot {action} reservation {reservation.id}: it is {status.lower()}",
        details={"reservation_id": reservation.id, "status": status},
    )


def _commit_in_session(reservation_id: int, now: datetime) -> BudgetReservation:
    reservation = _load_reservation(reservation_id)

    moved = db.session.execute(
        update(BudgetReservation)
        .where(
            BudgetReservation.id == reservation_id,
            BudgetReservation.status == RESERVATION_RESERVED,
            BudgetReservation.expires_at > now,
        )
        .values(status=RESERVATION_COMMITTED, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        raise _stale(reservation, "commit")

    applied = db.session.execute(
        update(DiscountBudget)
        .where(DiscountBudget.id == reservation.budget_id, DiscountBudget.status == BUDGET_OPEN)
        .values(
            reserved_cents=DiscountBudget.reserved_cents - reservation.amount_cents,
            committed_cents=DiscountBudget.committed_cents + reservation.amount_cents,
            version_id=DiscountBudget.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if applied.rowcount != 1:
        raise ConcurrencyConflict(
            f"Budget {reservation.budget_id} is closed",
            details={"reservation_id": reservation_id, "budget_id": reservation.budget_id},
        )

    db.session.expire(reservation)
    return reservation


def _release_in_session(
    reservation_id: int,
    now: datetime,
    *,
    final_status: str = RESERVATION_RELEASED,
    strict: bool = True,
) -> bool:
    """
    Return a RESERVED hold to the budget.

    With strict=False a hold that is already final is left alone and
    False is returned (used for escalation holds that may have been swept).
    """
    reservation = db.session.get(BudgetReservation, reservation_id)
    if reservation is None:
        if strict:
            raise ConcurrencyConflict(f"Unknown reservation {reservation_id}", details={"reservation_id": reservation_id})
        return False

    moved = db.session.execute(
        update(BudgetReservation)
        .where(BudgetReservation.id == reservation_id, BudgetReservation.status == RESERVATION_RESERVED)
        .values(status=final_status, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    if moved.rowcount != 1:
        if strict:
            raise _stale(reservation, "release")
        return False

    db.session.execute(
        update(DiscountBudget)
        .where(DiscountBudget.id == reservation.budget_id)
        .values(
            reserved_cents=DiscountBudget.reserved_cents - reservation.amount_cents,
            version_id=DiscountBudget.version_id + 1,
        )
        .execution_options(synchronize_session=False)
    )
    db.session.expire(reservation)
    return True


def _audit_expired(expired: list[dict]) -> None:
    for item in expired:
        audit_service.record(
            "budget.released", "reservation", item["reservation_id"],
            actor_employee_id=item["employee_id"],
            payload={"status": RESERVATION_EXPIRED, "amount_cents": item["amount_cents"]},
        )


def _audit_reservation(event_type: str, reservation: BudgetReservation) -> None:
    audit_service.record(
        event_type, "reservation", reservation.id,
        actor_employee_id=reservation.employee_id,
        payload=reservation.to_dict(),
    )


# =============================================================================
# PUBLIC LEDGER OPERATIONS
# =============================================================================

def reserve(
    employee_id,
    amount_cents,
    *,
    decision_id: str | None = None,
    transaction_id: str | None = None,
    expires_in_seconds: int | None = None,
) -> BudgetReservation:
    """
    Hold amount_cents of the employee's open budget.

    Raises BudgetExhausted when reserved + committed + amount would exceed
    the limit (or no period is open); nothing is written in that case.

    With a decision_id, a decision that already has a live reservation
    gets that reservation back instead of a second hold.
    """
    employee_id = parse_id(employee_id, "employee_id")
    amount = parse_cents(amount_cents, "amount_cents")
    ttl = expires_in_seconds or get_policy().reservation_timeout_seconds

    def _op():
        now = utcnow()
        try:
            reservation, expired = _reserve_in_session(
                employee_id,
                amount,
                now=now,
                expires_at=utc_after(ttl, now),
                decision_id=decision_id,
                transaction_id=transaction_id,
            )
        except IntegrityError:
            # Another register reserved this decision first
            db.session.rollback()
            existing = get_live_reservation_for_decision(decision_id, now) if decision_id else None
            if existing is None:
                raise
            return existing, [], False
        db.session.commit()
        return reservation, expired, True

    reservation, expired, created = run_fail_closed(_op, operation="reserve")
    _audit_expired(expired)
    if created:
        _audit_reservation("budget.reserved", reservation)
    return reservation


def commit_reservation(reservation_id) -> BudgetReservation:
    """Move a live reservation from reserved into committed."""
    reservation_id = parse_id(reservation_id, "reservation_id")

    def _op():
        reservation = _commit_in_session(reservation_id, utcnow())
        db.session.commit()
        return reservation

    reservation = run_fail_closed(_op, operation="commit_reservation")
    _audit_reservation("budget.committed", reservation)
    return reservation


def release_reservation(reservation_id) -> BudgetReservation:
    """Return a live reservation to the available budget."""
    reservation_id = parse_id(reservation_id, "reservation_id")

    def _op():
        _release_in_session(reservation_id, utcnow())
        db.session.commit()
        return db.session.get(BudgetReservation, reservation_id)

    reservation = run_fail_closed(_op, operation="release_reservation")
    _audit_reservation("budget.released", reservation)
    return reservation


def release_expired_reservations(now: datetime | None = None) -> list[int]:
    """Sweep every budget for overdue holds. Returns the expired reservation ids."""
    cutoff = now or utcnow()
    budget_ids = [
        row.budget_id for row in db.session.query(BudgetReservation.budget_id).filter(
            BudgetReservation.status == RESERVATION_RESERVED,
            BudgetReservation.expires_at <= cutoff,
        ).distinct()
    ]

    expired_ids = []
    for budget_id in budget_ids:
        def _op(budget_id=budget_id):
            expired = _expire_due_reservations(budget_id, cutoff)
            db.session.commit()
            return expired

        expired = run_fail_closed(_op, operation="release_expired_reservations")
        _audit_expired(expired)
        expired_ids.extend(item["reservation_id"] for item in expired)

    if expired_ids:
        current_app.logger.info("Expired %s abandoned budget reservations", len(expired_ids))
    return expired_ids
