from .catalog import Product, Employee
from .decisions import DiscountDecision, EscalationCase
from .budgets import DiscountBudget, BudgetReservation
from .audit import DiscountAuditEvent

__all__ = [
    'Product', 'Employee',
    'DiscountDecision', 'EscalationCase',
    'DiscountBudget', 'BudgetReservation',
    'DiscountAuditEvent',
]
