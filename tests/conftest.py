import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone

os.environ["DATABASE_URL"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "store_test"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

import mongomock
import pytest
from fastapi.testclient import TestClient

import chat
import main
from auth import get_password_hash, issue_token
from chat import ChatBroker, get_broker
from config import get_settings
from database import create_document, ensure_indexes, get_db
from errors import UpstreamError
from payments import PaymentGateway, get_payment_gateway
from schemas import Product, User

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


class FakeGateway(PaymentGateway):
    """Real webhook verification, canned checkout sessions."""

    def __init__(self, settings, fail=False):
        super().__init__(settings)
        self.fail = fail
        self.sessions = []

    def create_checkout_session(self, order):
        if self.fail:
            raise UpstreamError("Payment provider unavailable")
        self.sessions.append(order)
        return {"id": f"cs_test_{order.id}", "url": f"https://checkout.stripe.test/{order.id}"}

    def is_session_paid(self, session_id):
        return session_id.startswith("cs_paid")


@pytest.fixture
def db():
    database = mongomock.MongoClient().store_test
    ensure_indexes(database)
    return database


@pytest.fixture
def broker():
    return ChatBroker()


@pytest.fixture
def gateway():
    return FakeGateway(get_settings())


@pytest.fixture
def client(db, broker, gateway):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_broker] = lambda: broker
    main.app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role="customer", status="approved", password="secret", full_name=None, email=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            full_name=full_name or f"User {n}",
            email=email or f"user{n}@example.com",
            password_hash=get_password_hash(password),
            role=role,
            status=status,
        )
        user.id = create_document(db, "user", user)
        return user

    return _make


@pytest.fixture
def make_product(db):
    def _make(name="Widget", price=19.99, stock_quantity=10, is_active=True, category="other"):
        product = Product(name=name, price=price, stock_quantity=stock_quantity, category=category, is_active=is_active)
        product.id = create_document(db, "product", product)
        return product

    return _make


@pytest.fixture
def clock(monkeypatch):
    """Strictly increasing timestamps for chat messages."""
    state = {"t": datetime(2026, 1, 1, tzinfo=timezone.utc)}

    def _now():
        state["t"] += timedelta(seconds=1)
        return state["t"]

    monkeypatch.setattr(chat, "now", _now)
    return _now


def auth_headers(user):
    return {"Authorization": f"Bearer {issue_token(user)}"}


def stripe_signature(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def checkout_completed_event(order_id, amount_total=3998, payment_intent="pi_123", payment_status="paid", event_id="evt_1"):
    return json.dumps({
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "object": "checkout.session",
                "amount_total": amount_total,
                "payment_intent": payment_intent,
                "payment_status": payment_status,
                "metadata": {"order_id": order_id},
            }
        },
    })
