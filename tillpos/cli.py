# Overview: Flask CLI command groups for bootstrap, sessions and maintenance.

# tillpos/cli.py
# Commands Legend:
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP=tillpos (PowerShell: $env:FLASK_APP="tillpos").
# - Use: flask <group> <command> [options]
#
# System bootstrap:
# - flask system init-db
#   Create all tables on the configured database (idempotent).
# - flask system seed-demo [--business "Demo Shop"] [--vat-rate-bps 1600]
#   Create a demo business with two locations, roles, employees and stocked products.
#
# Sessions:
# - flask sessions issue --employee-id 1
#   Mint a bearer token for an employee (printed once, stored only as a hash).
# - flask sessions revoke 7 [--reason "Lost device"]
#   Revoke a session by id.
#
# Stock maintenance:
# - flask stock reconcile [--business-id 1] [--dry-run]
#   Recompute every product's cached total from its ledger rows and report drift.

import click
from flask.cli import with_appcontext

from .extensions import db
from .errors import TillError
from .models import Business, Employee, Location, Product, Role
from .permissions import ALL_PERMISSIONS, INVENTORY_MOVE
from .services import aggregate_service, session_service, stock_service
from .services.access_service import caller_from_employee
from .services.concurrency import begin_immediate


# =============================================================================
# SYSTEM
# =============================================================================

@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


def _get_or_create(model, defaults=None, **filters):
    row = db.session.query(model).filter_by(**filters).first()
    if row is not None:
        return row, False
    row = model(**filters, **(defaults or {}))
    db.session.add(row)
    db.session.flush()
    return row, True


@system_group.command('seed-demo')
@click.option('--business', 'business_name', default='Demo Shop', help='Business name')
@click.option('--vat-rate-bps', default=1600, type=int, help='VAT rate in basis points (1600 = 16%)')
@with_appcontext
def seed_demo(business_name, vat_rate_bps):
    """
    Create a demo tenant: locations "Front Shop" and "Warehouse", roles
    admin and cashier, one employee per role, and three stocked products
    plus a service. Safe to run twice.
    """
    business, created = _get_or_create(Business, name=business_name, defaults={"vat_rate_bps": vat_rate_bps})
    click.echo(f"{'PASS Created' if created else 'PASS Using existing'} business: {business.name} (ID: {business.id})")

    front, _ = _get_or_create(Location, business_id=business.id, name="Front Shop")
    warehouse, _ = _get_or_create(Location, business_id=business.id, name="Warehouse")

    admin_role, _ = _get_or_create(
        Role, business_id=business.id, name="admin", defaults={"permissions": list(ALL_PERMISSIONS)}
    )
    cashier_role, _ = _get_or_create(
        Role, business_id=business.id, name="cashier", defaults={"permissions": []}
    )
    _get_or_create(
        Role, business_id=business.id, name="stockkeeper", defaults={"permissions": [INVENTORY_MOVE]}
    )

    admin, _ = _get_or_create(
        Employee,
        business_id=business.id,
        email="admin@tillpos.local",
        defaults={"name": "Admin", "role_id": admin_role.id, "default_location_id": front.id},
    )
    cashier, _ = _get_or_create(
        Employee,
        business_id=business.id,
        email="cashier@tillpos.local",
        defaults={"name": "Cashier", "role_id": cashier_role.id, "default_location_id": front.id},
    )

    demo_products = [
        ("DEMO-SODA", "Soda 500ml", 150, False, 48),
        ("DEMO-BREAD", "Bread loaf", 250, False, 20),
        ("DEMO-RICE", "Rice 2kg", 900, False, 12),
        ("DEMO-DELIVERY", "Delivery", 500, True, 0),
    ]
    new_products = []
    for product_id, name, price_cents, is_service, _qty in demo_products:
        existing = db.session.get(Product, product_id)
        if existing is None:
            db.session.add(Product(
                id=product_id,
                business_id=business.id,
                name=name,
                price_cents=price_cents,
                is_service=is_service,
            ))
            new_products.append(product_id)
    db.session.commit()

    caller = caller_from_employee(admin)
    for product_id, _name, _price, is_service, qty in demo_products:
        if product_id in new_products and not is_service and qty:
            stock_service.increase_stock(
                caller,
                product_id=product_id,
                location_id=warehouse.id,
                quantity=qty,
                notes="Demo seed",
            )
            stock_service.move_stock(
                caller,
                product_id=product_id,
                from_location_id=warehouse.id,
                to_location_id=front.id,
                quantity=qty // 2,
            )

    click.echo(f"PASS Locations: {front.name} (ID: {front.id}), {warehouse.name} (ID: {warehouse.id})")
    click.echo(f"PASS Employees: {admin.email} (ID: {admin.id}), {cashier.email} (ID: {cashier.id})")
    click.echo(f"PASS Products created: {len(new_products)}")


# =============================================================================
# SESSIONS
# =============================================================================

@click.group('sessions')
def sessions_group():
    """Bearer session commands."""


@sessions_group.command('issue')
@click.option('--employee-id', required=True, type=int, help='Employee to issue the token for')
@with_appcontext
def issue_session(employee_id):
    """Mint a bearer token. The plaintext is shown once."""
    try:
        session, token = session_service.create_session(employee_id)
    except TillError as e:
        raise click.ClickException(str(e))

    click.echo(f"PASS Session {session.id} for employee {employee_id}, expires {session.expires_at:%Y-%m-%d %H:%M} UTC")
    click.echo(token)


@sessions_group.command('revoke')
@click.argument('session_id', type=int)
@click.option('--reason', default='Revoked from CLI', help='Reason stored on the session')
@with_appcontext
def revoke_session(session_id, reason):
    """Revoke a session by id."""
    if session_service.revoke_session(session_id, reason):
        click.echo(f"PASS Session {session_id} revoked")
    else:
        click.echo(f"WARN  Session {session_id} not found or already revoked")


# =============================================================================
# STOCK
# =============================================================================

@click.group('stock')
def stock_group():
    """Stock ledger maintenance commands."""


@stock_group.command('reconcile')
@click.option('--business-id', type=int, default=None, help='Limit to one business')
@click.option('--dry-run', is_flag=True, help='Report drift without saving')
@with_appcontext
def reconcile_stock(business_id, dry_run):
    """Recompute cached product totals from the ledger."""
    begin_immediate()
    drifted = aggregate_service.reconcile(business_id)
    if dry_run:
        db.session.rollback()
    else:
        db.session.commit()

    if not drifted:
        click.echo("PASS All product totals match the ledger")
        return
    for row in drifted:
        click.echo(f"DRIFT {row['product_id']}: {row['before']} -> {row['after']}")
    verb = "Found" if dry_run else "Fixed"
    click.echo(f"{verb} {len(drifted)} drifted product(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(stock_group)
