"""
Pytest fixtures for trust core backend tests.

Provides a fresh app + in-memory database per test, seeded store, users,
products and customers, and helpers for authenticated HTTP calls.

The app is function-scoped: lockout records, revoked tokens and rate-limit
counters live in the app's SecurityContext and must not leak between tests.
"""

import pytest

from trustcore import create_app
from trustcore.config import TestConfig
from trustcore.context import get_security_context
from trustcore.extensions import db
from trustcore.models import Product, SecurityEvent, Store
from trustcore.models.auth import ROLE_ADMIN, ROLE_CASHIER, ROLE_MANAGER
from trustcore.services import customer_service
from trustcore.services.fraud_scorer import FraudScorer
from trustcore.services.ledger_service import CheckoutItem, CheckoutRequest, count_recent_checkouts
from trustcore.time_utils import utcnow


PASSWORD = "Tr0ub4dor&3-Horse"


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def ctx(app):
    """
    The app's SecurityContext with fraud scoring pinned to midday, so the
    unusual-hours factor does not depend on when the suite runs.
    """
    context = get_security_context()
    noon = utcnow().replace(hour=12, minute=0, second=0, microsecond=0)
    scorer = FraudScorer(count_recent_checkouts, clock=lambda: noon)
    context.fraud = scorer
    context.ledger.fraud_scorer = scorer
    return context


@pytest.fixture(scope='function')
def store(app):
    store = Store(name="Main Street", code="MAIN", timezone="UTC", tax_rate_bps=800)
    db.session.add(store)
    db.session.commit()
    return store


def _make_user(ctx, store, username, role):
    return ctx.auth.create_user(
        username,
        PASSWORD,
        role=role,
        first_name=username.capitalize(),
        last_name="Tester",
        store_id=store.id,
    )


@pytest.fixture(scope='function')
def cashier(ctx, store):
    return _make_user(ctx, store, "alice", ROLE_CASHIER)


@pytest.fixture(scope='function')
def manager(ctx, store):
    return _make_user(ctx, store, "morgan", ROLE_MANAGER)


@pytest.fixture(scope='function')
def admin(ctx, store):
    return _make_user(ctx, store, "root", ROLE_ADMIN)


@pytest.fixture(scope='function')
def widget(store):
    product = Product(store_id=store.id, sku="WID-001", name="Widget", price_cents=1999, quantity=10)
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def gadget(store):
    product = Product(store_id=store.id, sku="GAD-001", name="Gadget", price_cents=500, quantity=4)
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def cigarettes(store):
    product = Product(
        store_id=store.id,
        sku="TOB-001",
        name="Cigarettes",
        price_cents=1000,
        quantity=5,
        age_restricted=True,
        lot_number="LOT-7",
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def customer(ctx):
    return customer_service.create_customer(ctx.vault, "Dana", "Buyer", email="dana@example.com")


def checkout_request(*lines, payment_method="CARD", **kwargs) -> CheckoutRequest:
    """checkout_request((product, qty), ...) -> CheckoutRequest"""
    items = [CheckoutItem(product_id=product.id, quantity=qty) for product, qty in lines]
    return CheckoutRequest(items=items, payment_method=payment_method, **kwargs)


def events_of(event_type: str) -> list[SecurityEvent]:
    return db.session.query(SecurityEvent).filter_by(event_type=event_type).all()


def login(client, username: str, password: str = PASSWORD, headers: dict | None = None):
    return client.post(
        '/api/auth/login',
        json={'username': username, 'password': password},
        headers=headers or {},
    )


def auth_headers(login_payload: dict, with_csrf: bool = False) -> dict:
    """Authorization (and optionally CSRF) headers from a login response body."""
    headers = {'Authorization': f"Bearer {login_payload['access_token']}"}
    if with_csrf:
        headers['X-CSRF-Token'] = login_payload['csrf_token']
    return headers
