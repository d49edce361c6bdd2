# Overview: Flask API routes for discount validation, reservations and escalations.

# backend/discount_authority/routes/discounts.py
"""
Discount Authority API Routes

DESIGN:
- Thin adapters: parse JSON, call the service, serialize the result
- Denials are 200 responses carrying allowed=false; only malformed input,
  budget/ledger conflicts and storage failures are error statuses
- Authentication is handled upstream; actor ids arrive in the payload
"""

from flask import Blueprint, current_app, jsonify, request

from ..errors import DiscountAuthorityError, InputError
from ..services import authority_service, budget_service, escalation_service


discounts_bp = Blueprint("discounts", __name__, url_prefix="/api/discounts")


def _error_response(exc: DiscountAuthorityError):
    return jsonify(exc.to_dict()), exc.http_status


def _internal_error(message: str):
    current_app.logger.exception(message)
    return jsonify({"error": "Internal server error"}), 500


def _require(data: dict, *names: str):
    missing = [name for name in names if data.get(name) is None]
    if missing:
        raise InputError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})


# =============================================================================
# VALIDATION
# =============================================================================

@discounts_bp.post("/validate")
def validate_route():
    """
    Request body:
    {
        "product_id": 1,
        "employee_id": 7,
        "proposed_discount_pct": "12.5",
        "transaction_id": "T-1001"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        _require(data, "product_id", "employee_id", "proposed_discount_pct")
        record = authority_service.validate(
            data["product_id"],
            data["employee_id"],
            data["proposed_discount_pct"],
            transaction_id=data.get("transaction_id"),
        )
        return jsonify({"decision": record.to_dict()}), 200
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to validate discount")


@discounts_bp.get("/decisions/<decision_id>")
def get_decision_route(decision_id: str):
    record = authority_service.get_decision(decision_id)
    if record is None:
        return jsonify({"error": "Decision not found"}), 404
    return jsonify({"decision": record.to_dict()})


# =============================================================================
# DIRECT-COMMIT PATH
# =============================================================================

@discounts_bp.post("/decisions/<decision_id>/reserve")
def reserve_decision_route(decision_id: str):
    try:
        data = request.get_json(silent=True) or {}
        reservation = authority_service.reserve_for_decision(decision_id, data.get("transaction_id"))
        return jsonify({"reservation": reservation.to_dict()}), 201
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to reserve budget for decision")


@discounts_bp.post("/reservations/<int:reservation_id>/commit")
def commit_reservation_route(reservation_id: int):
    try:
        reservation = budget_service.commit_reservation(reservation_id)
        return jsonify({"reservation": reservation.to_dict()})
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to commit reservation")


@discounts_bp.post("/reservations/<int:reservation_id>/release")
def release_reservation_route(reservation_id: int):
    try:
        reservation = budget_service.release_reservation(reservation_id)
        return jsonify({"reservation": reservation.to_dict()})
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to release reservation")


# =============================================================================
# ESCALATIONS
# =============================================================================

@discounts_bp.post("/escalations")
def create_escalation_route():
    """
    Request body:
    {
        "decision_id": "<64-char decision id>",
        "notes": "Customer is price-matching"  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        _require(data, "decision_id")
        case = escalation_service.create_escalation(data["decision_id"], notes=data.get("notes"))
        return jsonify({"case": case.to_dict()}), 201
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to create escalation")


@discounts_bp.get("/escalations/pending")
def pending_escalations_route():
    approver_id = request.args.get("approver_id")
    try:
        if approver_id is None:
            raise InputError("approver_id query parameter is required")
        cases = escalation_service.list_pending_for_approver(approver_id)
        return jsonify({"cases": [c.to_dict() for c in cases]})
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to list pending escalations")


@discounts_bp.get("/escalations/<int:case_id>")
def get_escalation_route(case_id: int):
    try:
        case = escalation_service.get_case(case_id)
        if case is None:
            return jsonify({"error": "Escalation case not found"}), 404
        return jsonify({"case": case.to_dict()})
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to load escalation case")


@discounts_bp.post("/escalations/<int:case_id>/resolve")
def resolve_escalation_route(case_id: int):
    """
    Request body:
    {
        "approver_id": 2,
        "action": "approve" | "deny",
        "override_discount_pct": "20",  (optional, approve only)
        "notes": "..."                  (optional)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        _require(data, "approver_id", "action")
        result = escalation_service.resolve_escalation(
            case_id,
            data["approver_id"],
            data["action"],
            override_discount_pct=data.get("override_discount_pct"),
            notes=data.get("notes"),
        )
        return jsonify(result.to_dict())
    except DiscountAuthorityError as e:
        return _error_response(e)
    except Exception:
        return _internal_error("Failed to resolve escalation")
