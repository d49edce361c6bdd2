# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/discount_authority/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to the factory (PowerShell: $env:FLASK_APP="discount_authority:create_app").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Catalog bootstrap:
# - python -m flask employees create --username jdoe --role staff --commission-rate-bps 500
# - python -m flask products create --sku TV-65 --name "65in TV" --price-cents 164999 --cost-cents 112200
#
# Budgets:
# - python -m flask budgets open --employee-id 1 [--limit-cents 50000] [--period-key 2026-W42]
# - python -m flask budgets close --budget-id 3
# - python -m flask budgets list [--employee-id 1] [--status OPEN]
#
# Escalations:
# - python -m flask escalations pending --approver-id 2
#
# Maintenance:
# - python -m flask maintenance sweep
#   Expire overdue escalation cases and abandoned budget reservations.

import click
from flask.cli import with_appcontext

from .errors import DiscountAuthorityError
from .extensions import db
from .services import budget_service, catalog_service, escalation_service
from .services.policy_service import get_policy
from .validation import format_bps, format_cents


def _fail(exc: DiscountAuthorityError):
    raise click.ClickException(str(exc))


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


# =============================================================================
# CATALOG
# =============================================================================

@click.group('employees')
def employees_group():
    """Employee bootstrap commands."""


@employees_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--role', prompt=True, help='Discount role (e.g. staff, manager, admin)')
@click.option('--commission-rate-bps', type=int, default=500, show_default=True, help='Commission rate in basis points')
@click.option('--display-name', default=None, help='Display name')
@with_appcontext
def create_employee_cli(username, role, commission_rate_bps, display_name):
    """Create an employee who can request or approve discounts."""
    try:
        employee = catalog_service.create_employee(
            username=username,
            role=role,
            commission_rate_bps=commission_rate_bps,
            display_name=display_name,
        )
    except DiscountAuthorityError as e:
        _fail(e)
    click.echo(f"PASS Created employee {employee.username} (id={employee.id}, role={employee.role})")


@click.group('products')
def products_group():
    """Product bootstrap commands."""


@products_group.command('create')
@click.option('--sku', required=True, help='SKU (unique)')
@click.option('--name', required=True, help='Product name')
@click.option('--price-cents', required=True, help='Unit price in cents')
@click.option('--cost-cents', required=True, help='Unit cost in cents')
@click.option('--category', default=None, help='Category')
@with_appcontext
def create_product_cli(sku, name, price_cents, cost_cents, category):
    """Create a product with its price/cost economics."""
    try:
        product = catalog_service.create_product(sku, name, price_cents, cost_cents, category=category)
    except DiscountAuthorityError as e:
        _fail(e)
    click.echo(
        f"PASS Created product {product.sku} (id={product.id}) "
        f"price={format_cents(product.price_cents)} cost={format_cents(product.cost_cents)}"
    )


# =============================================================================
# BUDGETS
# =============================================================================

@click.group('budgets')
def budgets_group():
    """Discount budget period commands."""


@budgets_group.command('open')
@click.option('--employee-id', type=int, required=True, help='Employee ID')
@click.option('--limit-cents', type=int, default=None, help='Budget limit (defaults to DISCOUNT_DEFAULT_BUDGET_CENTS)')
@click.option('--period-key', default=None, help='Period key (defaults to the current ISO week)')
@with_appcontext
def open_budget_cli(employee_id, limit_cents, period_key):
    """Open a budget period for an employee (idempotent)."""
    try:
        budget = budget_service.open_budget_period(employee_id, limit_cents=limit_cents, period_key=period_key)
    except DiscountAuthorityError as e:
        _fail(e)
    click.echo(
        f"PASS Budget {budget.id} {budget.period_key} OPEN for employee {budget.employee_id} "
        f"limit={format_cents(budget.limit_cents)} remaining={format_cents(budget.remaining_cents)}"
    )


@budgets_group.command('close')
@click.option('--budget-id', type=int, required=True, help='Budget ID')
@with_appcontext
def close_budget_cli(budget_id):
    """Close a budget period and release outstanding reservations."""
    try:
        budget = budget_service.close_budget_period(budget_id)
    except DiscountAuthorityError as e:
        _fail(e)
    click.echo(f"PASS Budget {budget.id} {budget.period_key} CLOSED committed={format_cents(budget.committed_cents)}")


@budgets_group.command('list')
@click.option('--employee-id', type=int, default=None, help='Filter by employee ID')
@click.option('--status', type=click.Choice(['OPEN', 'CLOSED'], case_sensitive=False), default=None)
@with_appcontext
def list_budgets_cli(employee_id, status):
    """List budget periods."""
    budgets = budget_service.list_budgets(employee_id=employee_id, status=status)
    if not budgets:
        click.echo("No budgets found.")
        return

    click.echo(f"{'ID':<6} {'Employee':<10} {'Period':<16} {'Status':<8} {'Limit':>14} {'Reserved':>14} {'Committed':>14}")
    click.echo("-" * 88)
    for b in budgets:
        click.echo(
            f"{b.id:<6} {b.employee_id:<10} {b.period_key:<16} {b.status:<8} "
            f"{format_cents(b.limit_cents):>14} {format_cents(b.reserved_cents):>14} {format_cents(b.committed_cents):>14}"
        )


# =============================================================================
# ESCALATIONS
# =============================================================================

@click.group('escalations')
def escalations_group():
    """Escalation inspection commands."""


@escalations_group.command('pending')
@click.option('--approver-id', type=int, required=True, help='Approver employee ID')
@with_appcontext
def pending_escalations_cli(approver_id):
    """List PENDING cases the approver may resolve, oldest first."""
    try:
        cases = escalation_service.list_pending_for_approver(approver_id)
    except DiscountAuthorityError as e:
        _fail(e)
    if not cases:
        click.echo("No pending escalations.")
        return

    for case in cases:
        click.echo(
            f"#{case.id} {case.requester_role} employee={case.requester_employee_id} "
            f"product={case.product_id} requested={format_bps(case.requested_discount_bps)} "
            f"reason={case.escalation_reason} expires={case.expires_at:%Y-%m-%d %H:%M}"
        )


# =============================================================================
# MAINTENANCE
# =============================================================================

@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('sweep')
@with_appcontext
def sweep_cli():
    """Expire overdue escalation cases and abandoned budget reservations."""
    expired_cases = escalation_service.expire_stale_cases()
    expired_reservations = budget_service.release_expired_reservations()
    click.echo(
        f"Expired {len(expired_cases)} escalation cases and {len(expired_reservations)} reservations "
        f"(policy {get_policy().fingerprint[:12]})."
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(employees_group)
    app.cli.add_command(products_group)
    app.cli.add_command(budgets_group)
    app.cli.add_command(escalations_group)
    app.cli.add_command(maintenance_group)
