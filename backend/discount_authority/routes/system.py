# backend/discount_authority/routes/system.py
"""
System health endpoint.

Checks database connectivity, the loaded discount policy and the audit
retry backlog.
"""

import time

from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db
from ..models import DiscountBudget, EscalationCase
from ..services.audit_service import get_dispatcher
from ..services.policy_service import get_policy
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        open_budgets = db.session.query(DiscountBudget).filter_by(status="OPEN").count()
        pending_cases = db.session.query(EscalationCase).filter_by(status="PENDING").count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "open_budgets": open_budgets,
                "pending_escalations": pending_cases,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_audit_health() -> dict:
    """A non-empty retry queue means the audit store is lagging (degraded, not down)."""
    pending = get_dispatcher().pending
    if pending:
        return {"status": "degraded", "warning": f"{pending} audit entries awaiting retry", "details": {"pending": pending}}
    return {"status": "healthy", "details": {"pending": 0}}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    audit_health = check_audit_health()
    policy = get_policy()

    all_checks = [database_health, audit_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "policy_fingerprint": policy.fingerprint,
        "checks": {
            "database": database_health,
            "audit": audit_health,
        },
    }, http_status
