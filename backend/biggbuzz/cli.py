# Overview: Flask CLI command groups for bootstrap, catalog, ledger and maintenance.

# backend/biggbuzz/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables (use `flask db upgrade` for migrated deployments).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Operators:
# - python -m flask operators create --username admin --email admin@biggbuzz.local --password "Password123!"
# - python -m flask operators list
#
# Catalog:
# - python -m flask catalog add-product --sku FLW-001 --name "Sativa 3.5g" --price-cents 10000 --stock 25
# - python -m flask catalog restock --sku FLW-001 --quantity 10
#
# Tokens and ledger:
# - python -m flask tokens credit --phone 0821234567 --amount-cents 50000 --type DEPOSIT
# - python -m flask ledger check [--subscriber-id 1]
#   Verify token balances against the append-only ledger.
#
# Maintenance:
# - python -m flask maintenance sweep
#   Delete expired pending registrations and OTP entries.

import click
from flask.cli import with_appcontext
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .errors import CoreError, InvariantViolationError
from .extensions import db
from .models import Operator, Product, Subscriber
from .services import maintenance_service, token_ledger_service
from .services.auth_service import PasswordValidationError, create_operator
from .services.identity_service import normalize_phone


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("OK Database schema created.")


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
    click.echo("CREATE  Creating all tables...")
    db.create_all()
    click.echo("OK Database reset complete.")


@click.group('operators')
def operators_group():
    """Back-office operator accounts."""


@operators_group.command('create')
@click.option('--username', prompt=True)
@click.option('--email', prompt=True)
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@with_appcontext
def create_operator_cli(username, email, password):
    try:
        operator = create_operator(username, email, password)
    except PasswordValidationError as e:
        raise click.ClickException(str(e))
    except CoreError as e:
        raise click.ClickException(e.message)
    click.echo(f"OK Created operator {operator.username} (id={operator.id})")


@operators_group.command('list')
@with_appcontext
def list_operators():
    for operator in db.session.query(Operator).order_by(Operator.id).all():
        status = "active" if operator.is_active else "inactive"
        click.echo(f"{operator.id:>4}  {operator.username:<20} {operator.email:<30} {status}")


@click.group('catalog')
def catalog_group():
    """Product catalog management."""


@catalog_group.command('add-product')
@click.option('--sku', required=True)
@click.option('--name', required=True)
@click.option('--price-cents', type=int, required=True)
@click.option('--stock', type=int, default=0, show_default=True)
@click.option('--category', default=None)
@click.option('--description', default=None)
@with_appcontext
def add_product(sku, name, price_cents, stock, category, description):
    if price_cents < 0 or stock < 0:
        raise click.ClickException("price and stock must not be negative")
    product = Product(
        sku=sku,
        name=name,
        price_cents=price_cents,
        stock_quantity=stock,
        in_stock=True,
        category=category,
        description=description,
    )
    db.session.add(product)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise click.ClickException(f"SKU {sku} already exists")
    click.echo(f"OK Created product {product.sku} (id={product.id}, stock={product.stock_quantity})")


@catalog_group.command('restock')
@click.option('--sku', required=True)
@click.option('--quantity', type=int, required=True)
@with_appcontext
def restock(sku, quantity):
    if quantity <= 0:
        raise click.ClickException("quantity must be positive")
    result = db.session.execute(
        update(Product)
        .where(Product.sku == sku)
        .values(stock_quantity=Product.stock_quantity + quantity, version_id=Product.version_id + 1)
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        db.session.rollback()
        raise click.ClickException(f"Product {sku} not found")
    db.session.commit()
    product = db.session.query(Product).filter_by(sku=sku).first()
    click.echo(f"OK {sku} stock is now {product.stock_quantity}")


@click.group('tokens')
def tokens_group():
    """Subscriber token balances."""


@tokens_group.command('credit')
@click.option('--phone', required=True)
@click.option('--amount-cents', type=int, required=True)
@click.option('--type', 'tx_type', type=click.Choice(token_ledger_service.CREDIT_TYPES), default='DEPOSIT', show_default=True)
@click.option('--description', default=None)
@with_appcontext
def credit(phone, amount_cents, tx_type, description):
    try:
        subscriber = db.session.query(Subscriber).filter_by(phone=normalize_phone(phone)).first()
        if not subscriber:
            raise click.ClickException("Subscriber not found")
        tx = token_ledger_service.credit_tokens(
            subscriber.id, amount_cents, tx_type=tx_type, description=description
        )
    except CoreError as e:
        raise click.ClickException(e.message)
    click.echo(f"OK {tx_type} {amount_cents} cents; balance is now {tx.balance_cents}")


@click.group('ledger')
def ledger_group():
    """Ledger consistency checks."""


@ledger_group.command('check')
@click.option('--subscriber-id', type=int, default=None)
@with_appcontext
def check_ledger(subscriber_id):
    """Compare every subscriber balance with the sum of its ledger entries."""
    query = db.session.query(Subscriber.id).order_by(Subscriber.id)
    if subscriber_id is not None:
        query = query.filter(Subscriber.id == subscriber_id)

    mismatches = 0
    for (sid,) in query.all():
        try:
            balance = token_ledger_service.check_ledger_consistency(sid)
            click.echo(f"OK   subscriber {sid}: {balance}")
        except InvariantViolationError as e:
            mismatches += 1
            click.echo(f"FAIL subscriber {sid}: {e.details}")

    if mismatches:
        raise click.ClickException(f"{mismatches} subscriber(s) out of balance")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('sweep')
@with_appcontext
def sweep():
    """Delete expired pending registrations and OTP entries."""
    removed = maintenance_service.sweep_expired()
    click.echo(
        f"Deleted {removed['pending_registrations']} pending registrations "
        f"and {removed['otp_entries']} OTP entries."
    )


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(operators_group)
    app.cli.add_command(catalog_group)
    app.cli.add_command(tokens_group)
    app.cli.add_command(ledger_group)
    app.cli.add_command(maintenance_group)
