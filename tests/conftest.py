import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from tagshop.config import Settings
from tagshop.database import Store
from tagshop.main import create_app
from tagshop.models import Contact, Order, Tag

WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "jwt-test-secret"


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{ts}.".encode() + body
    sig = hmac.new(secret.encode(), signed_payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def stripe_event(event_type, obj, event_id="evt_test_1"):
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


class RecordingChannel:
    def __init__(self):
        self.sent = []

    def send(self, recipient, subject, body):
        self.sent.append({"recipient": recipient, "subject": subject, "body": body})
        return f"<msg-{len(self.sent)}@test>"


@pytest.fixture
def store(tmp_path):
    store = Store(f"sqlite:///{tmp_path / 'test.db'}")
    store.create_all()
    yield store
    store.dispose()


@pytest.fixture
def seed_order(store):
    """Insert a contact, an order and its tag; returns the order id."""

    def _seed(order_id=7, status="pending", payment_reference=None, email=None, with_tag=True):
        db = store.session_factory()
        contact = Contact(
            firstname="Ada",
            lastname="Lovelace",
            petname="Biscuit",
            phone="555-0100",
            email=email,
            address_line_1="1 Analytical Way",
        )
        db.add(contact)
        db.flush()
        db.add(
            Order(
                id=order_id,
                contact_id=contact.id,
                amount=1999,
                currency="usd",
                status=status,
                payment_reference=payment_reference,
            )
        )
        if with_tag:
            db.add(Tag(order_id=order_id, front_line_1="BISCUIT", back_line_1="555-0100", has_qr_code=True))
        db.commit()
        db.close()
        return order_id

    return _seed


@pytest.fixture
def get_order(store):
    def _get(order_id):
        db = store.session_factory()
        try:
            return db.get(Order, order_id)
        finally:
            db.close()

    return _get


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        stripe_secret_key="sk_test_123",
        stripe_publishable_key="pk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        jwt_secret=JWT_SECRET,
        order_notification_recipient="orders@example.com",
    )


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def app(settings, store, channel):
    return create_app(settings, store=store, channel=channel)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def post_event(client):
    """POST a correctly signed event body to the webhook endpoint."""

    def _post(event, secret=WEBHOOK_SECRET):
        body = json.dumps(event).encode()
        return client.post(
            "/paymentWebhook",
            content=body,
            headers={"stripe-signature": sign(body, secret), "content-type": "application/json"},
        )

    return _post
