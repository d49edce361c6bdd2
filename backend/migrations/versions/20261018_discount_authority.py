"""Discount authority schema: catalog, decisions, budgets, escalations, audit

Revision ID: 20261018_discount_authority
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261018_discount_authority"
down_revision = None
branch_labels = None
depends_on = None

LIVE_DECISION_RESERVATION = (
    "status IN ('RESERVED', 'COMMITTED') "
    "AND escalation_case_id IS NULL AND decision_id IS NOT NULL"
)


def _timestamp(name, nullable=False, server_default=True):
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade():
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("category", sa.String(length=64), nullable=True),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("cost_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint("price_cents >= 0", name="ck_products_price_nonneg"),
        sa.CheckConstraint("cost_cents >= 0", name="ck_products_cost_nonneg"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_products_sku", "products", ["sku"], unique=True)
    op.create_index("ix_products_category", "products", ["category"])
    op.create_index("ix_products_is_active", "products", ["is_active"])

    op.create_table(
        "employees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=128), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("commission_rate_bps", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        _timestamp("created_at"),
        sa.CheckConstraint(
            "commission_rate_bps >= 0 AND commission_rate_bps <= 10000",
            name="ck_employees_commission_range",
        ),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_employees_username", "employees", ["username"], unique=True)
    op.create_index("ix_employees_role", "employees", ["role"])
    op.create_index("ix_employees_is_active", "employees", ["is_active"])

    op.create_table(
        "discount_decisions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("employee_id", sa.Integer(), sa.ForeignKey("employees.id"), nullable=False),
        sa.Column("approver_employee_id", sa.Integer(), sa.ForeignKey("employees.id"), nullable=True),
        sa.Column("authority_role", sa.String(length=32), nullable=False),
        sa.Column("transaction_id", sa.String(length=64), nullable=True),
        sa.Column("proposed_discount_bps", sa.Integer(), nullable=False),
        sa.Column("original_price_cents", sa.Integer(), nullable=False),
        sa.Column("unit_cost_cents", sa.Integer(), nullable=False),
        sa.Column("discount_amount_cents", sa.Integer(), nullable=False),
        sa.Column("price_after_cents", sa.Integer(), nullable=False),
        sa.Column("margin_before_cents", sa.Integer(), nullable=False),
        sa.Column("margin_before_bps", sa.Integer(), nullable=False),
        sa.Column("margin_after_cents", sa.Integer(), nullable=False),
        sa.Column("margin_after_bps", sa.Integer(), nullable=False),
        sa.Column("cost_floor_price_cents", sa.Integer(), nullable=False),
        sa.Column("margin_class", sa.String(length=16), nullable=False),
        sa.Column("max_discount_bps", sa.Integer(), nullable=True),
        sa.Column("max_discount_cents", sa.Integer(), nullable=True),
        sa.Column("unrestricted", sa.Boolean(), nullable=False),
        sa.Column("commission_rate_bps", sa.Integer(), nullable=False),
        sa.Column("commission_before_cents", sa.Integer(), nullable=False),
        sa.Column("commission_after_cents", sa.Integer(), nullable=False),
        sa.Column("commission_impact_cents", sa.Integer(), nullable=False),
        sa.Column("budget_remaining_before_cents", sa.Integer(), nullable=True),
        sa.Column("budget_remaining_after_cents", sa.Integer(), nullable=True),
        sa.Column("allowed", sa.Boolean(), nullable=False),
        sa.Column("escalation_required", sa.Boolean(), nullable=False),
        sa.Column("escalation_reason", sa.String(length=32), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("policy_fingerprint", sa.String(length=64), nullable=False),
        sa.Column("rounding_mode", sa.String(length=16), nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_discount_decisions_product_id", "discount_decisions", ["product_id"])
    op.create_index("ix_discount_decisions_employee_id", "discount_decisions", ["employee_id"])
    op.create_index("ix_discount_decisions_transaction_id", "discount_decisions", ["transaction_id"])

    op.create_table(
        "discount_budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("employee_id", sa.Integer(), sa.ForeignKey("employees.id"), nullable=False),
        sa.Column("period_key", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("reserved_cents", sa.Integer(), nullable=False),
        sa.Column("committed_cents", sa.Integer(), nullable=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        _timestamp("opened_at"),
        _timestamp("closed_at", nullable=True, server_default=False),
        sa.UniqueConstraint("employee_id", "period_key", name="uq_discount_budgets_employee_period"),
        sa.CheckConstraint("reserved_cents >= 0", name="ck_discount_budgets_reserved_nonneg"),
        sa.CheckConstraint("committed_cents >= 0", name="ck_discount_budgets_committed_nonneg"),
        sa.CheckConstraint(
            "reserved_cents + committed_cents <= limit_cents",
            name="ck_discount_budgets_within_limit",
        ),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_discount_budgets_employee_id", "discount_budgets", ["employee_id"])
    op.create_index("ix_discount_budgets_status", "discount_budgets", ["status"])

    op.create_table(
        "budget_reservations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("budget_id", sa.Integer(), sa.ForeignKey("discount_budgets.id"), nullable=False),
        sa.Column("employee_id", sa.Integer(), sa.ForeignKey("employees.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("decision_id", sa.String(length=64), sa.ForeignKey("discount_decisions.id"), nullable=True),
        sa.Column("escalation_case_id", sa.Integer(), nullable=True),
        sa.Column("transaction_id", sa.String(length=64), nullable=True),
        _timestamp("created_at"),
        _timestamp("expires_at", server_default=False),
        _timestamp("resolved_at", nullable=True, server_default=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_budget_reservations_amount_nonneg"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_budget_reservations_budget_id", "budget_reservations", ["budget_id"])
    op.create_index("ix_budget_reservations_employee_id", "budget_reservations", ["employee_id"])
    op.create_index("ix_budget_reservations_status", "budget_reservations", ["status"])
    op.create_index("ix_budget_reservations_decision_id", "budget_reservations", ["decision_id"])
    op.create_index("ix_budget_reservations_escalation_case_id", "budget_reservations", ["escalation_case_id"])
    op.create_index("ix_budget_reservations_transaction_id", "budget_reservations", ["transaction_id"])
    op.create_index("ix_budget_reservations_expires_at", "budget_reservations", ["expires_at"])
    op.create_index("ix_budget_reservations_budget_status", "budget_reservations", ["budget_id", "status"])
    op.create_index(
        "uq_budget_reservations_live_decision",
        "budget_reservations",
        ["decision_id"],
        unique=True,
        sqlite_where=sa.text(LIVE_DECISION_RESERVATION),
        postgresql_where=sa.text(LIVE_DECISION_RESERVATION),
    )

    op.create_table(
        "escalation_cases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("decision_id", sa.String(length=64), sa.ForeignKey("discount_decisions.id"), nullable=False),
        sa.Column("requester_employee_id", sa.Integer(), sa.ForeignKey("employees.id"), nullable=False),
        sa.Column("requester_role", sa.String(length=32), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("requested_discount_bps", sa.Integer(), nullable=False),
        sa.Column("escalation_reason", sa.String(length=32), nullable=False),
        sa.Column("request_notes", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("hold_reservation_id", sa.Integer(), sa.ForeignKey("budget_reservations.id"), nullable=True),
        sa.Column("approver_employee_id", sa.Integer(), sa.ForeignKey("employees.id"), nullable=True),
        sa.Column("approver_role", sa.String(length=32), nullable=True),
        sa.Column("approved_discount_bps", sa.Integer(), nullable=True),
        sa.Column("final_decision_id", sa.String(length=64), sa.ForeignKey("discount_decisions.id"), nullable=True),
        sa.Column("committed_reservation_id", sa.Integer(), sa.ForeignKey("budget_reservations.id"), nullable=True),
        sa.Column("resolution_notes", sa.String(length=255), nullable=True),
        _timestamp("created_at"),
        _timestamp("expires_at", server_default=False),
        _timestamp("resolved_at", nullable=True, server_default=False),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_escalation_cases_decision_id", "escalation_cases", ["decision_id"])
    op.create_index("ix_escalation_cases_requester_employee_id", "escalation_cases", ["requester_employee_id"])
    op.create_index("ix_escalation_cases_status", "escalation_cases", ["status"])
    op.create_index("ix_escalation_cases_expires_at", "escalation_cases", ["expires_at"])
    op.create_index("ix_escalation_cases_status_created", "escalation_cases", ["status", "created_at"])
    op.create_index(
        "uq_escalation_cases_pending_decision",
        "escalation_cases",
        ["decision_id"],
        unique=True,
        sqlite_where=sa.text("status = 'PENDING'"),
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "discount_audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("entry_id", sa.String(length=32), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=False),
        sa.Column("actor_employee_id", sa.Integer(), nullable=True),
        _timestamp("occurred_at", server_default=False),
        _timestamp("created_at"),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.UniqueConstraint("entry_id", name="uq_discount_audit_events_entry_id"),
        sqlite_autoincrement=True,
    )
    op.create_index("ix_discount_audit_events_event_type", "discount_audit_events", ["event_type"])
    op.create_index("ix_discount_audit_events_actor_employee_id", "discount_audit_events", ["actor_employee_id"])
    op.create_index("ix_discount_audit_events_occurred_at", "discount_audit_events", ["occurred_at"])
    op.create_index("ix_discount_audit_entity", "discount_audit_events", ["entity_type", "entity_id"])


def downgrade():
    op.drop_table("discount_audit_events")
    op.drop_table("escalation_cases")
    op.drop_table("budget_reservations")
    op.drop_table("discount_budgets")
    op.drop_table("discount_decisions")
    op.drop_table("employees")
    op.drop_table("products")
