"""
Pytest fixtures for Bigg Buzz backend tests.

Provides the application with an in-memory database, a recording SMS
transport, subscriber/product/operator factories and auth helpers.
"""

import re
from datetime import date

import pytest

from biggbuzz import create_app
from biggbuzz.config import TestingConfig
from biggbuzz.errors import TransportError
from biggbuzz.extensions import db
from biggbuzz.models import Operator, Product, Subscriber
from biggbuzz.services.auth_service import hash_password
from biggbuzz.services.identity_service import luhn_check_digit
from biggbuzz.services import token_ledger_service, token_service


CODE_RE = re.compile(r"code is: (\d{6})")


class RecordingTransport:
    """SMS transport that keeps sent messages in memory; can be told to fail."""

    def __init__(self):
        self.messages = []
        self.fail = False

    def send(self, to, body, *, channel="sms"):
        if self.fail:
            raise TransportError("SMS provider unavailable", {"channel": channel})
        self.messages.append({"to": to, "body": body, "channel": channel})

    def last_code(self, to=None):
        for message in reversed(self.messages):
            if to is None or message["to"] == to:
                return CODE_RE.search(message["body"]).group(1)
        return None

    def reset(self):
        self.messages.clear()
        self.fail = False


def make_national_id(born: date, sequence: int = 5009, citizenship: int = 0) -> str:
    """Build a checksum-valid national ID for the given birth date."""
    body = f"{born:%y%m%d}{sequence:04d}{citizenship}8"
    return body + str(luhn_check_digit(body))


@pytest.fixture(scope='session')
def transport():
    return RecordingTransport()


@pytest.fixture(scope='session')
def app(transport):
    """Create application for testing."""
    app = create_app(TestingConfig, transport=transport)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app, transport):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        db.session.rollback()
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        transport.reset()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def make_subscriber(db_session):
    """Factory for active subscribers with an optional opening token balance."""
    counter = {"n": 0}

    def _make(phone="0821234567", balance_cents=0, **overrides):
        counter["n"] += 1
        n = counter["n"]
        subscriber = Subscriber(
            first_name=overrides.pop("first_name", "Thabo"),
            last_name=overrides.pop("last_name", f"Nkosi{n}"),
            phone="+27" + phone[1:] if phone.startswith("0") else phone,
            email=overrides.pop("email", f"subscriber{n}@example.co.za"),
            national_id=overrides.pop("national_id", make_national_id(date(1980, 1, n), sequence=5000 + n)),
            date_of_birth=date(1980, 1, n),
            terms_accepted=True,
            privacy_accepted=True,
            is_active=True,
            token_balance_cents=0,
            **overrides,
        )
        db_session.add(subscriber)
        db_session.commit()
        if balance_cents:
            token_ledger_service.credit_tokens(subscriber.id, balance_cents, description="Opening balance")
        return subscriber

    return _make


@pytest.fixture(scope='function')
def subscriber(make_subscriber):
    return make_subscriber()


@pytest.fixture(scope='function')
def make_product(db_session):
    counter = {"n": 0}

    def _make(price_cents=10000, stock=10, in_stock=True, name=None):
        counter["n"] += 1
        product = Product(
            sku=f"SKU-{counter['n']:03d}",
            name=name or f"Product {counter['n']}",
            price_cents=price_cents,
            stock_quantity=stock,
            in_stock=in_stock,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product()


@pytest.fixture(scope='function')
def operator(db_session):
    operator = Operator(
        username="operator",
        email="operator@biggbuzz.local",
        password_hash=hash_password("Password123!"),
    )
    db_session.add(operator)
    db_session.commit()
    return operator


@pytest.fixture(scope='function')
def registration_payload():
    return {
        "first_name": "Thabo",
        "last_name": "Nkosi",
        "phone": "0821234567",
        "national_id": "8001015009087",
        "email": "thabo@example.co.za",
        "terms_accepted": True,
        "privacy_accepted": True,
        "marketing_consent": False,
    }


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def subscriber_headers(subscriber):
    return auth_headers(token_service.issue_subscriber_token(subscriber))


@pytest.fixture(scope='function')
def operator_headers(operator):
    return auth_headers(token_service.issue_operator_token(operator))
