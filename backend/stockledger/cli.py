# Overview: Flask CLI command groups for bootstrap and inventory maintenance.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent).
# - python -m flask system create-business --name "Acme Foods" --code "ACME"
#   Create a business (tenant).
#
# Inventory maintenance:
# - python -m flask inventory reconcile --business-id 1
#   Recompute entry and product quantity caches from the movement log.
# - python -m flask inventory audit-entry --business-id 1 --entry-id 7
#   Replay one entry's movement history and report drift.
# - python -m flask inventory low-stock --business-id 1
#   List products at or below their reorder threshold.
# - python -m flask inventory expiring --business-id 1 --days 14
#   List in-stock entries expiring within the window, soonest first.

import click
from flask.cli import with_appcontext

from .errors import LedgerError
from .extensions import db
from .models import Business
from .services import movement_service, product_service


@click.group('system')
def system_group():
    """System bootstrap commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables."""
    db.create_all()
    click.echo("Database tables created.")


@system_group.command('create-business')
@click.option('--name', required=True, help='Business name')
@click.option('--code', required=True, help='Unique business code')
@with_appcontext
def create_business(name, code):
    """Create a business (tenant)."""
    existing = db.session.query(Business).filter_by(code=code).first()
    if existing:
        raise click.ClickException(f"Business with code {code!r} already exists (id={existing.id})")
    business = Business(name=name, code=code, is_active=True)
    db.session.add(business)
    db.session.commit()
    click.echo(f"Created business {business.id}: {business.name} ({business.code})")


@click.group('inventory')
def inventory_group():
    """Inventory maintenance commands."""


@inventory_group.command('reconcile')
@click.option('--business-id', type=int, required=True, help='Business to reconcile')
@with_appcontext
def reconcile(business_id):
    """Recompute cached quantities from the movement log."""
    try:
        results = product_service.reconcile_business(business_id)
    except LedgerError as exc:
        raise click.ClickException(exc.message)

    changed = [r for r in results if r["changed"]]
    for r in changed:
        click.echo(
            f"  product {r['product_id']}: {r['previous_quantity']} -> {r['quantity']}"
            f" ({len(r['entries_repaired'])} entries repaired)"
        )
    click.echo(f"Reconciled {len(results)} products, {len(changed)} changed.")


@inventory_group.command('audit-entry')
@click.option('--business-id', type=int, required=True)
@click.option('--entry-id', type=int, required=True)
@with_appcontext
def audit_entry(business_id, entry_id):
    """Replay an entry's movement history."""
    try:
        report = movement_service.audit_entry(business_id, entry_id)
    except LedgerError as exc:
        raise click.ClickException(exc.message)

    click.echo(
        f"entry {report['entry_id']}: received={report['quantity_received']} "
        f"movements={report['movement_count']} derived={report['derived_quantity']} "
        f"cached={report['cached_quantity']} drift={report['drift']}"
    )


@inventory_group.command('low-stock')
@click.option('--business-id', type=int, required=True)
@with_appcontext
def low_stock(business_id):
    """List products at or below their reorder threshold."""
    products = product_service.low_stock_products(business_id)
    if not products:
        click.echo("No products at or below threshold.")
        return
    for p in products:
        click.echo(f"{p.product_code:<16} {p.name:<32} qty={p.quantity:<6} threshold={p.reorder_threshold}")


@inventory_group.command('expiring')
@click.option('--business-id', type=int, required=True)
@click.option('--days', type=int, default=30, show_default=True)
@with_appcontext
def expiring(business_id, days):
    """List in-stock entries expiring within --days, soonest first."""
    try:
        rows = product_service.expiring_entries(business_id, days)
    except LedgerError as exc:
        raise click.ClickException(exc.message)
    if not rows:
        click.echo(f"No stock expiring within {days} days.")
        return
    for row in rows:
        click.echo(
            f"{row['product_code']:<16} entry={row['entry_id']:<6} qty={row['quantity']:<6} "
            f"expires={row['expiry_date']} days={row['days_until_expiry']}"
        )


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
