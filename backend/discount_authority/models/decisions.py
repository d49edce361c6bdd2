from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class DiscountDecision(db.Model):
    """
    Persisted decision record (immutable).

    The primary key is the content fingerprint of the record, so validating
    the same request twice against the same budget state maps to one row.
    Rows are inserted with conflict-ignore and never updated.
    """
    __tablename__ = "discount_decisions"

    id = db.Column(db.String(64), primary_key=True)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    approver_employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)
    authority_role = db.Column(db.String(32), nullable=False)
    transaction_id = db.Column(db.String(64), nullable=True, index=True)

    proposed_discount_bps = db.Column(db.Integer, nullable=False)

    # Economics snapshot and computed quantities (cents / basis points)
    original_price_cents = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False)
    discount_amount_cents = db.Column(db.Integer, nullable=False)
    price_after_cents = db.Column(db.Integer, nullable=False)
    margin_before_cents = db.Column(db.Integer, nullable=False)
    margin_before_bps = db.Column(db.Integer, nullable=False)
    margin_after_cents = db.Column(db.Integer, nullable=False)
    margin_after_bps = db.Column(db.Integer, nullable=False)
    cost_floor_price_cents = db.Column(db.Integer, nullable=False)
    margin_class = db.Column(db.String(16), nullable=False)
    max_discount_bps = db.Column(db.Integer, nullable=True)
    max_discount_cents = db.Column(db.Integer, nullable=True)
    unrestricted = db.Column(db.Boolean, nullable=False, default=False)
    commission_rate_bps = db.Column(db.Integer, nullable=False)
    commission_before_cents = db.Column(db.Integer, nullable=False)
    commission_after_cents = db.Column(db.Integer, nullable=False)
    commission_impact_cents = db.Column(db.Integer, nullable=False)
    budget_remaining_before_cents = db.Column(db.Integer, nullable=True)
    budget_remaining_after_cents = db.Column(db.Integer, nullable=True)

    # Outcome
    allowed = db.Column(db.Boolean, nullable=False)
    escalation_required = db.Column(db.Boolean, nullable=False)
    escalation_reason = db.Column(db.String(32), nullable=True)  # below_cost_floor, exceeds_tier_limit
    reason = db.Column(db.String(255), nullable=False)

    policy_fingerprint = db.Column(db.String(64), nullable=False)
    rounding_mode = db.Column(db.String(16), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())


class EscalationCase(db.Model):
    """
    Deferred approval for a decision the requester could not authorize.

    LIFECYCLE:
    - PENDING: waiting for an approver whose role outranks the requester's
    - APPROVED / DENIED / EXPIRED: terminal, no further transitions

    Resolution may happen in another process than creation; the case id is
    the only handle. version_id makes concurrent resolutions serialize: the
    loser's flush fails with StaleDataError and re-reads the winner's result.
    """
    __tablename__ = "escalation_cases"
    __table_args__ = (
        db.Index("ix_escalation_cases_status_created", "status", "created_at"),
        # At most one PENDING case per decision
        db.Index(
            "uq_escalation_cases_pending_decision",
            "decision_id",
            unique=True,
            sqlite_where=db.text("status = 'PENDING'"),
            postgresql_where=db.text("status = 'PENDING'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    decision_id = db.Column(db.String(64), db.ForeignKey("discount_decisions.id"), nullable=False, index=True)

    requester_employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True)
    requester_role = db.Column(db.String(32), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    requested_discount_bps = db.Column(db.Integer, nullable=False)
    escalation_reason = db.Column(db.String(32), nullable=False)
    request_notes = db.Column(db.String(255), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)

    # Budget hold placed for the requested amount while PENDING
    hold_reservation_id = db.Column(db.Integer, db.ForeignKey("budget_reservations.id"), nullable=True)

    # Resolution
    approver_employee_id = db.Column(db.Integer, db.ForeignKey("employees.id"), nullable=True)
    approver_role = db.Column(db.String(32), nullable=True)
    approved_discount_bps = db.Column(db.Integer, nullable=True)
    final_decision_id = db.Column(db.String(64), db.ForeignKey("discount_decisions.id"), nullable=True)
    committed_reservation_id = db.Column(db.Integer, db.ForeignKey("budget_reservations.id"), nullable=True)
    resolution_notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    decision = db.relationship("DiscountDecision", foreign_keys=[decision_id])
    final_decision = db.relationship("DiscountDecision", foreign_keys=[final_decision_id])
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "decision_id": self.decision_id,
            "requester_employee_id": self.requester_employee_id,
            "requester_role": self.requester_role,
            "product_id": self.product_id,
            "requested_discount_bps": self.requested_discount_bps,
            "escalation_reason": self.escalation_reason,
            "request_notes": self.request_notes,
            "status": self.status,
            "hold_reservation_id": self.hold_reservation_id,
            "approver_employee_id": self.approver_employee_id,
            "approver_role": self.approver_role,
            "approved_discount_bps": self.approved_discount_bps,
            "final_decision_id": self.final_decision_id,
            "committed_reservation_id": self.committed_reservation_id,
            "resolution_notes": self.resolution_notes,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
            "version_id": self.version_id,
        }
