# Overview: Flask CLI command groups for bootstrap and ledger inspection.

# backend/lounge/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - python -m flask system seed-demo
#   Idempotent: demo catalog (snacks, drinks, accessories) and customers.
#
# Ledger inspection:
# - python -m flask ledger reconcile [--item-id 3]
#   Compare cached stock against SUM(delta); exits 1 on any divergence.
# - python -m flask ledger replay 3
#   Walk one item's ledger checking every balance_after snapshot.
# - python -m flask ledger low-stock [--threshold 10]
#   List active items below their low-stock threshold.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Customer, InventoryItem
from .services import catalog_service, ledger_service, reporting_service
from .errors import LedgerError


DEMO_ITEMS = [
    # name, category, unit price (cents), cost (cents), opening stock, extras
    ("Coca-Cola 500ml", "Drinks", 10000, 6000, 48, {}),
    ("Red Bull 250ml", "Drinks", 25000, 17000, 24, {"is_redeemable": True, "points_required": 40}),
    ("Pringles Original", "Snacks", 35000, 24000, 12, {}),
    ("Chicken Samosa", "Snacks", 5000, 2500, 30, {}),
    ("PS5 DualSense Controller", "Accessories", 950000, 780000, 3, {"low_stock_threshold": 2}),
    ("VIP Lounge Energy Pack", "Drinks", 60000, 35000, 10, {"is_vip_only": True}),
]

DEMO_CUSTOMERS = [
    ("Wanjiru Kamau", "+254700000001", "Bronze"),
    ("Otieno Ochieng", "+254700000002", "Gold"),
    ("Amina Hassan", "+254700000003", "VIP"),
]


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA, including the stock ledger!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete. Run 'python -m flask system seed-demo' for sample data.")


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create the demo catalog and customers. Existing rows are left alone."""
    created = 0
    for name, category, price, cost, opening, extras in DEMO_ITEMS:
        if db.session.query(InventoryItem).filter_by(name=name).first():
            click.echo(f"SKIP {name} already exists")
            continue
        payload = {
            "name": name,
            "category": category,
            "unit_price_cents": price,
            "cost_price_cents": cost,
            "supplier": "Demo Supplies Ltd",
        }
        payload.update(extras)
        item = catalog_service.create_item(payload, opening_stock=opening, performed_by="seed-demo")
        click.echo(f"PASS Created {item['name']} (ID: {item['id']}, stock {item['stock_quantity']})")
        created += 1

    for full_name, phone, tier in DEMO_CUSTOMERS:
        if db.session.query(Customer).filter_by(phone_number=phone).first():
            click.echo(f"SKIP customer {full_name} already exists")
            continue
        db.session.add(Customer(full_name=full_name, phone_number=phone, loyalty_tier=tier))
        db.session.commit()
        click.echo(f"PASS Created customer {full_name} ({tier})")

    click.echo(f"DONE Seeded {created} item(s)")


@click.group('ledger')
def ledger_group():
    """Stock ledger inspection commands."""


@ledger_group.command('reconcile')
@click.option('--item-id', type=int, default=None, help='Check a single item')
@with_appcontext
def reconcile(item_id):
    """Compare cached stock_quantity against the ledger sum."""
    rows = ledger_service.find_inconsistencies(item_id)
    if not rows:
        click.echo("PASS Stock matches the ledger for every item checked")
        return

    for row in rows:
        click.echo(
            f"FAIL Item {row['item_id']} ({row['name']}): cached {row['cached_stock']}, "
            f"ledger {row['ledger_stock']}"
        )
    raise SystemExit(1)


@ledger_group.command('replay')
@click.argument('item_id', type=int)
@with_appcontext
def replay(item_id):
    """Replay an item's ledger and verify every running balance."""
    try:
        report = ledger_service.replay_item(item_id)
    except LedgerError as e:
        raise click.ClickException(e.message)

    click.echo(
        f"Item {item_id}: {report.entries} entries, ledger stock {report.ledger_stock}, "
        f"cached stock {report.cached_stock}"
    )
    for mismatch in report.mismatches:
        click.echo(f"  MISMATCH {mismatch}")
    if not report.consistent:
        raise SystemExit(1)
    click.echo("PASS Ledger replay consistent")


@ledger_group.command('low-stock')
@click.option('--threshold', type=int, default=None, help='Override every item threshold')
@with_appcontext
def low_stock(threshold):
    """List active items below their low-stock threshold."""
    items = reporting_service.low_stock_items(threshold)
    if not items:
        click.echo("No low-stock items")
        return
    for item in items:
        limit = threshold if threshold is not None else item.low_stock_threshold
        click.echo(f"{item.id:>5}  {item.name:<32} {item.stock_quantity:>6} / {limit}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
