# Overview: Flask API routes for discount budget periods.

from flask import Blueprint, current_app, jsonify, request

from ..errors import DiscountAuthorityError, InputError
from ..services import budget_service


budgets_bp = Blueprint("budgets", __name__, url_prefix="/api/budgets")


@budgets_bp.post("/")
@budgets_bp.post("")
def open_budget_route():
    """
    Open (or fetch the already open) budget period for an employee.

    Request body:
    {
        "employee_id": 7,
        "limit_cents": 50000,    (optional, defaults to DISCOUNT_DEFAULT_BUDGET_CENTS)
        "period_key": "2026-W42" (optional, defaults to the current ISO week)
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        if data.get("employee_id") is None:
            raise InputError("employee_id required")
        budget = budget_service.open_budget_period(
            data["employee_id"],
            limit_cents=data.get("limit_cents"),
            period_key=data.get("period_key"),
        )
        return jsonify({"budget": budget.to_dict()}), 201
    except DiscountAuthorityError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to open budget period")
        return jsonify({"error": "Internal server error"}), 500


@budgets_bp.post("/<int:budget_id>/close")
def close_budget_route(budget_id: int):
    try:
        budget = budget_service.close_budget_period(budget_id)
        return jsonify({"budget": budget.to_dict()})
    except DiscountAuthorityError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to close budget period")
        return jsonify({"error": "Internal server error"}), 500


@budgets_bp.get("/employees/<int:employee_id>")
def employee_budget_route(employee_id: int):
    summary = budget_service.get_budget_summary(employee_id)
    if summary is None:
        return jsonify({"error": "No open budget period"}), 404
    return jsonify(summary)
