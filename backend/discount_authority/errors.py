"""
Error taxonomy for the discount authority core.

Denials and escalations are NOT errors: they come back from validate() as
decision records with allowed=False. Exceptions here are reserved for
malformed input, exhausted budgets, stale ledger references, invalid
escalation transitions and unavailable storage.
"""

from __future__ import annotations


class DiscountAuthorityError(Exception):
    """Base class; carries a machine-readable code and structured details."""
    code = "discount_authority_error"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class InputError(DiscountAuthorityError):
    """400-level input problem (malformed percentage, unknown product/employee)."""
    code = "input_error"
    http_status = 400


class BudgetExhausted(DiscountAuthorityError):
    """Reserve refused: the employee's period budget cannot cover the amount."""
    code = "budget_exhausted"
    http_status = 409


class ConcurrencyConflict(DiscountAuthorityError):
    """
    Stale reservation reference on commit/release.

    Never retried by the ledger; the caller must start over with a fresh
    reservation.
    """
    code = "concurrency_conflict"
    http_status = 409


UnknownReservation = ConcurrencyConflict


class EscalationError(DiscountAuthorityError):
    """Invalid escalation request or transition."""
    code = "escalation_error"
    http_status = 409


class NotAuthorizedToResolve(EscalationError):
    """Approver's role does not outrank the requester's."""
    code = "not_authorized_to_resolve"
    http_status = 403


class PersistenceFailure(DiscountAuthorityError):
    """Ledger storage unavailable after bounded retries; the operation failed closed."""
    code = "persistence_failure"
    http_status = 503


class PolicyConfigError(ValueError):
    """Discount policy configuration is invalid; raised at app start."""
