from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class DiscountAuditEvent(db.Model):
    """
    Append-only audit trail for discount decisions and their resolutions.

    - No updates or deletes.
    - entry_id is assigned by the producer; redelivered entries are ignored.
    - occurred_at is business time; created_at is system time (DB default).
    """
    __tablename__ = "discount_audit_events"
    __table_args__ = (
        db.Index("ix_discount_audit_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    entry_id = db.Column(db.String(32), nullable=False, unique=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g. discount.validated, escalation.approved
    entity_type = db.Column(db.String(64), nullable=False)  # decision, escalation_case, budget, reservation
    entity_id = db.Column(db.String(64), nullable=False)

    actor_employee_id = db.Column(db.Integer, nullable=True, index=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    payload = db.Column(db.Text, nullable=True)  # JSON

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entry_id": self.entry_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_employee_id": self.actor_employee_id,
            "occurred_at": to_utc_z(self.occurred_at),
            "created_at": to_utc_z(self.created_at),
            "payload": self.payload,
        }
