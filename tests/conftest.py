"""Shared test fixtures for the fulfillment test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, mail suppressed)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- outbox: messages captured by the suppressed mailer
- staged_cart: the Jollof Rice / Plantain cart (20.00 total)
- post_event: POST a Stripe-signed event to /stripe/webhooks
"""

import hashlib
import hmac
import json
import time

import pytest

from fulfillment import create_app
from fulfillment.extensions import db as _db, mailer
from fulfillment.models.cart import PendingCart

WEBHOOK_SECRET = "whsec_test_fake"


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for raw payload bytes."""
    if timestamp is None:
        timestamp = int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    signature = hmac.new(
        secret.encode("utf-8"), signed, hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


def checkout_event(cart_id, event_id="evt_checkout_001", amount_total=2000,
                   payment_intent="pi_test_001", currency="gbp", metadata=None):
    """A checkout.session.completed event as Stripe sends it."""
    if metadata is None:
        metadata = {"cartId": cart_id}
    return {
        "id": event_id,
        "object": "event",
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": "cs_test_001",
                "object": "checkout.session",
                "amount_total": amount_total,
                "currency": currency,
                "payment_intent": payment_intent,
                "payment_status": "paid",
                "metadata": metadata,
            }
        },
    }


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture(autouse=True)
def outbox():
    """Mail captured by the suppressed mailer, emptied per test."""
    mailer.outbox.clear()
    yield mailer.outbox
    mailer.outbox.clear()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def staged_cart(app, db_session):
    """Stage a cart: 2 x Jollof Rice @ 8.50 + 1 x Plantain @ 3.00 = 20.00.

    Returns the cart id.
    """
    cart = PendingCart(
        id="cart_jollof_001",
        customer_email="ada@example.com",
        customer_name="Ada Obi",
        customer_phone="07123 456789",
        delivery_address="12 High Street, London",
        items=[
            {"product_name": "Jollof Rice", "quantity": 2, "unit_price": "8.50"},
            {"product_name": "Plantain", "quantity": 1, "unit_price": 3.00},
        ],
    )
    _db.session.add(cart)
    _db.session.commit()
    return cart.id


@pytest.fixture
def post_event(client):
    """POST an event dict (or raw bytes) with a valid Stripe signature."""

    def _post(event, secret=WEBHOOK_SECRET, timestamp=None):
        body = event if isinstance(event, bytes) else json.dumps(event).encode("utf-8")
        return client.post(
            "/stripe/webhooks",
            data=body,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(body, secret, timestamp)},
        )

    return _post
