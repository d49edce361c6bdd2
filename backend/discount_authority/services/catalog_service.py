# Overview: Read-side lookups into the product and employee stores.

from __future__ import annotations

from dataclasses import dataclass

from ..errors import InputError
from ..extensions import db
from ..models import Employee, Product
from ..validation import parse_cents
from .policy_service import get_policy


@dataclass(frozen=True)
class ProductEconomics:
    """Price/cost snapshot taken once per validation."""
    product_id: int
    unit_price_cents: int
    unit_cost_cents: int


@dataclass(frozen=True)
class Actor:
    employee_id: int
    role: str
    commission_rate_bps: int


def get_product_economics(product_id: int) -> ProductEconomics:
    product = db.session.get(Product, product_id)
    if not product or not product.is_active:
        raise InputError(f"Product {product_id} not found", details={"product_id": product_id})
    if product.price_cents < 0 or product.cost_cents < 0:
        raise InputError(f"Product {product_id} has negative price or cost", details={"product_id": product_id})
    return ProductEconomics(
        product_id=product.id,
        unit_price_cents=product.price_cents,
        unit_cost_cents=product.cost_cents,
    )


def get_actor(employee_id: int) -> Actor:
    employee = db.session.get(Employee, employee_id)
    if not employee or not employee.is_active:
        raise InputError(f"Employee {employee_id} not found", details={"employee_id": employee_id})
    # Rejects roles the policy table does not know
    get_policy().role_policy(employee.role)
    return Actor(
        employee_id=employee.id,
        role=employee.role,
        commission_rate_bps=employee.commission_rate_bps,
    )


def create_product(sku: str, name: str, price_cents, cost_cents, category: str | None = None) -> Product:
    """Register a product (CLI/bootstrap helper)."""
    if db.session.query(Product).filter_by(sku=sku).first():
        raise InputError(f"Product with SKU '{sku}' already exists")

    product = Product(
        sku=sku,
        name=name,
        category=category,
        price_cents=parse_cents(price_cents, "price_cents"),
        cost_cents=parse_cents(cost_cents, "cost_cents"),
        is_active=True,
    )
    db.session.add(product)
    db.session.commit()
    return product


def create_employee(username: str, role: str, commission_rate_bps: int = 500, display_name: str | None = None) -> Employee:
    """Register an employee (CLI/bootstrap helper)."""
    get_policy().role_policy(role)
    if not 0 <= commission_rate_bps <= 10_000:
        raise InputError("commission_rate_bps must be between 0 and 10000")
    if db.session.query(Employee).filter_by(username=username).first():
        raise InputError(f"Employee '{username}' already exists")

    employee = Employee(
        username=username,
        display_name=display_name,
        role=role,
        commission_rate_bps=commission_rate_bps,
        is_active=True,
    )
    db.session.add(employee)
    db.session.commit()
    return employee
