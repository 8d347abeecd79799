# Overview: Flask CLI commands for bootstrap, inspection, and maintenance.

# backend/trustcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask trust <command> [options]
#
# - python -m flask trust init-db
#   Create all tables (use `flask db upgrade` for migrated databases).
# - python -m flask trust create-store --name "Main Store" --tax-rate-bps 825
#   Create a store.
# - python -m flask trust create-user --username alice --role CASHIER
#   Create an employee (prompts for the password, enforces the password policy).
# - python -m flask trust create-product --sku SKU-1 --name "Widget" --price-cents 1999 --quantity 10
#   Create a product with on-hand quantity.
# - python -m flask trust create-customer --first-name Ann --last-name Lee --email ann@example.com
#   Create a customer (email/phone encrypted at rest).
# - python -m flask trust customer-contact 7 [--email new@example.com] [--phone 555-0100]
#   Show (or replace) a customer's decrypted contact details.
# - python -m flask trust verify-transaction 42
#   Recompute line-item integrity hashes for a transaction.
# - python -m flask trust health
#   Run the security health check.
# - python -m flask trust report --hours 24
#   Summarize security events.
# - python -m flask trust generate-secrets
#   Print fresh random values for every secret (environment file format).
# - python -m flask trust purge-keyed-store
#   Delete expired revocation / lockout / rate-limit entries from the shared table.

import secrets
from datetime import timedelta

import click
from flask import current_app
from flask.cli import with_appcontext

from .config import SECRET_KEYS
from .context import get_security_context
from .errors import TrustCoreError
from .extensions import db
from .models import Product, Store
from .models.auth import ROLE_CASHIER, VALID_ROLES
from .services import customer_service, health_service
from .services.keyed_store import SqlKeyedStore
from .time_utils import utcnow


KEYED_STORE_NAMESPACES = ("failed_attempts", "revoked_tokens", "rate_limits")


@click.group("trust")
def trust_group():
    """Trust core bootstrap, inspection and maintenance commands."""


@trust_group.command("init-db")
@with_appcontext
def init_db():
    """Create all tables for a fresh database."""
    db.create_all()
    click.echo("PASS Database tables created")


@trust_group.command("create-store")
@click.option("--name", required=True)
@click.option("--code", default=None)
@click.option("--timezone", "tz", default="UTC", show_default=True)
@click.option("--tax-rate-bps", type=int, default=None, help="Basis points (825 = 8.25%)")
@with_appcontext
def create_store(name, code, tz, tax_rate_bps):
    """Create a store."""
    store = Store(name=name, code=code, timezone=tz, tax_rate_bps=tax_rate_bps, is_active=True)
    db.session.add(store)
    db.session.commit()
    click.echo(f"PASS Created store {store.name} (ID: {store.id})")


@trust_group.command("create-user")
@click.option("--username", prompt=True)
@click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
@click.option("--role", type=click.Choice(VALID_ROLES), default=ROLE_CASHIER, show_default=True)
@click.option("--first-name", default="")
@click.option("--last-name", default="")
@click.option("--store-id", type=int, default=None)
@with_appcontext
def create_user(username, password, role, first_name, last_name, store_id):
    """Create an employee account."""
    auth = get_security_context().auth
    try:
        user = auth.create_user(
            username,
            password,
            role=role,
            first_name=first_name,
            last_name=last_name,
            store_id=store_id,
        )
    except TrustCoreError as e:
        click.echo(f"FAIL Failed to create user '{username}': {e.message}")
        for error in e.details.get("errors", []):
            click.echo(f"  - {error}")
        raise SystemExit(1)
    click.echo(f"PASS Created user {user.username} (ID: {user.id}, role: {user.role})")


@trust_group.command("create-product")
@click.option("--sku", required=True)
@click.option("--name", required=True)
@click.option("--price-cents", type=int, required=True)
@click.option("--quantity", type=int, default=0, show_default=True)
@click.option("--store-id", type=int, default=None)
@click.option("--age-restricted", is_flag=True, default=False)
@with_appcontext
def create_product(sku, name, price_cents, quantity, store_id, age_restricted):
    """Create a product with on-hand quantity."""
    if price_cents < 0 or quantity < 0:
        click.echo("FAIL price and quantity must be non-negative")
        raise SystemExit(1)
    product = Product(
        sku=sku,
        name=name,
        price_cents=price_cents,
        quantity=quantity,
        store_id=store_id,
        age_restricted=age_restricted,
        is_active=True,
    )
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product {product.sku} (ID: {product.id}, quantity: {product.quantity})")


@trust_group.command("create-customer")
@click.option("--first-name", required=True)
@click.option("--last-name", required=True)
@click.option("--email", default=None)
@click.option("--phone", default=None)
@with_appcontext
def create_customer(first_name, last_name, email, phone):
    """Create a customer; contact details are encrypted at rest."""
    customer = customer_service.create_customer(
        get_security_context().vault, first_name, last_name, email=email, phone=phone,
    )
    click.echo(f"PASS Created customer {customer.first_name} {customer.last_name} (ID: {customer.id})")


@trust_group.command("customer-contact")
@click.argument("customer_id", type=int)
@click.option("--email", default=None)
@click.option("--phone", default=None)
@with_appcontext
def customer_contact(customer_id, email, phone):
    """Show a customer's contact details, replacing them first when given."""
    context = get_security_context()
    try:
        if email is not None or phone is not None:
            customer_service.update_contact(context.vault, customer_id, email=email, phone=phone)
            click.echo(f"PASS Updated contact for customer {customer_id}")
        contact = customer_service.get_contact(context.vault, customer_id, context.events)
    except TrustCoreError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)
    click.echo(f"email: {contact['email'] or '-'}")
    click.echo(f"phone: {contact['phone'] or '-'}")


@trust_group.command("verify-transaction")
@click.argument("transaction_id", type=int)
@with_appcontext
def verify_transaction(transaction_id):
    """Recompute line-item integrity hashes for a transaction."""
    try:
        report = get_security_context().ledger.verify_integrity(transaction_id)
    except TrustCoreError as e:
        click.echo(f"FAIL {e.message}")
        raise SystemExit(1)

    for line in report.lines:
        marker = "PASS" if line.valid else "FAIL"
        click.echo(f"{marker} line {line.line_number} (item {line.line_item_id}, product {line.product_id})")
    if not report.integrity_valid:
        click.echo(f"FAIL Transaction {transaction_id} failed integrity verification")
        raise SystemExit(2)
    click.echo(f"PASS Transaction {transaction_id} integrity verified")


@trust_group.command("health")
@with_appcontext
def health():
    """Run the security health check."""
    result = health_service.security_health_check(get_security_context(), current_app.config)
    for name, check in result["checks"].items():
        click.echo(f"{check['status'].upper():<10} {name}")
    click.echo(f"Overall: {result['status']}")
    if result["status"] == health_service.UNHEALTHY:
        raise SystemExit(1)


@trust_group.command("report")
@click.option("--hours", type=int, default=24, show_default=True)
@with_appcontext
def report(hours):
    """Summarize security events over the trailing period."""
    summary = health_service.security_report(utcnow(), timedelta(hours=hours))
    click.echo(f"Security events in the last {summary['period_hours']}h: "
               f"{summary['total_events']} total, {summary['failed_events']} failed")
    for event_type, counts in sorted(summary["events_by_type"].items()):
        click.echo(f"  {event_type:<28} success={counts['success']} failure={counts['failure']}")


@trust_group.command("generate-secrets")
def generate_secrets():
    """Print fresh random values for every secret."""
    for name in SECRET_KEYS:
        click.echo(f"{name}={secrets.token_hex(32)}")


@trust_group.command("purge-keyed-store")
@with_appcontext
def purge_keyed_store():
    """Delete expired entries from the shared keyed store table."""
    total = 0
    for namespace in KEYED_STORE_NAMESPACES:
        removed = SqlKeyedStore(namespace).purge_expired()
        click.echo(f"PASS {namespace}: removed {removed} expired entries")
        total += removed
    click.echo(f"Total removed: {total}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(trust_group)
