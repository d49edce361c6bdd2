from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


LIVE_DECISION_RESERVATION = (
    "status IN ('RESERVED', 'COMMITTED') "
    "AND escalation_case_id IS NULL AND decision_id IS NOT NULL"
)


class DiscountBudget(db.Model):
    """
    Per-employee discretionary discount budget for one accounting period.

    WHY: Several registers can discount against the same employee's budget at
    once. All mutation goes through guarded UPDATE statements in
    budget_service, so reserved + committed can never exceed the limit even
    when two terminals race.

    LIFECYCLE:
    - OPEN: reservations may be placed, committed and released
    - CLOSED: archived; outstanding reservations were released at close

    version_id is a mutation counter bumped by every ledger statement.
    """
    __tablename__ = "discount_budgets"
    __table_args__ = (
        db.UniqueConstraint("employee_id", "period_key", name="uq_discount_budgets_employee_period"),
        db.CheckConstraint("reserved_cents >= 0", name="ck_discount_budgets_reserved_nonneg"),
        db.CheckConstraint("committed_cents >= 0", name="ck_discount_budgets_committed_nonneg"),
        db.CheckConstraint("reserved_cents + committed_cents <= limit_cents", name="ck_discount_budgets_within_limit"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)

    # e.g. "2026-W42" for weekly budgets or "shift-1842" for shift budgets
    period_key = db.Column(db.String(64), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)  # OPEN, CLOSED

    # All amounts in cents
    limit_cents = db.Column(db.Integer, nullable=False)
    reserved_cents = db.Column(db.Integer, nullable=False, default=0)
    committed_cents = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    employee = db.relationship("Employee", backref=db.backref("discount_budgets", lazy=True))

    @property
    def remaining_cents(self) -> int:
        return self.limit_cents - self.reserved_cents - self.committed_cents

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "period_key": self.period_key,
            "status": self.status,
            "limit_cents": self.limit_cents,
            "reserved_cents": self.reserved_cents,
            "committed_cents": self.committed_cents,
            "remaining_cents": self.remaining_cents,
            "version_id": self.version_id,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
        }


class BudgetReservation(db.Model):
    """
    A hold on part of a discount budget.

    STATUS:
    - RESERVED: counted in reserved_cents until committed, released or expired
    - COMMITTED: moved into committed_cents (discount applied)
    - RELEASED: returned (abandoned checkout, denied escalation, period close)
    - EXPIRED: returned by the expiry sweep after expires_at passed

    Only RESERVED rows ever change status.
    """
    __tablename__ = "budget_reservations"
    __table_args__ = (
        db.Index("ix_budget_reservations_budget_status", "budget_id", "status"),
        db.CheckConstraint("amount_cents >= 0", name="ck_budget_reservations_amount_nonneg"),
        # At most one live direct-commit reservation per decision
        db.Index(
            "uq_budget_reservations_live_decision",
            "decision_id",
            unique=True,
            sqlite_where=db.text(LIVE_DECISION_RESERVATION),
            postgresql_where=db.text(LIVE_DECISION_RESERVATION),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    budget_id = db.Column(db.Integer, db.ForeignKey("discount_budgets.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)

    amount_cents = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="RESERVED", index=True)

    # Attribution
    decision_id = db.Column(db.String(64), db.ForeignKey("discount_decisions.id"), nullable=True, index=True)
    escalation_case_id = db.Column(db.Integer, nullable=True, index=True)
    transaction_id = db.Column(db.String(64), nullable=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    budget = db.relationship("DiscountBudget", backref=db.backref("reservations", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "budget_id": self.budget_id,
            "employee_id": self.employee_id,
            "amount_cents": self.amount_cents,
            "status": self.status,
            "decision_id": self.decision_id,
            "escalation_case_id": self.escalation_case_id,
            "transaction_id": self.transaction_id,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
        }
