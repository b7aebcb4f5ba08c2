"""Pytest fixtures: test client, in-memory SQLite, fake Stripe gateway, signed webhooks."""
import hashlib
import hmac
import json
import os
import time
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

# Must be set before crush is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("PROMO_RATE_LIMIT_PER_MINUTE", "30")
os.environ.setdefault("USAGE_INCREMENT_RETRY_WAIT_SECONDS", "0")

from sqlmodel import Session, SQLModel

from crush.api.deps import get_gateway
from crush.core.database import engine
from crush.core.errors import PaymentGatewayError
from crush.core.rate_limit import limiter
from crush.core.security import create_access_token
from crush.main import app
from crush.models import PromoCode, User
from crush.models.base import utcnow
from crush.payments import CheckoutSessionRef
from crush.payments.stripe_gateway import StripeGateway

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
ADMIN_HEADERS = {"X-Admin-Secret": os.environ["ADMIN_SECRET"]}


class FakeGateway(StripeGateway):
    """Stripe without the network: records calls, keeps the real signature check."""

    def __init__(self):
        super().__init__(api_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET, max_retries=0)
        self.sessions = []
        self.coupons = []
        self.subscriptions = {}
        self.fail_coupon = False
        self.fail_session = False
        self.fail_subscription = False

    def create_checkout_session(self, **params):
        if self.fail_session:
            raise PaymentGatewayError("Stripe is down", transient=True)
        self.sessions.append(params)
        n = len(self.sessions)
        return CheckoutSessionRef(id=f"cs_test_{n}", url=f"https://checkout.stripe.test/cs_test_{n}")

    def create_single_use_coupon(self, *, percent_off, name, metadata):
        if self.fail_coupon:
            raise PaymentGatewayError("coupon rejected")
        self.coupons.append({"percent_off": percent_off, "name": name, "metadata": metadata})
        return f"coupon_{len(self.coupons)}"

    def retrieve_subscription(self, subscription_id):
        if self.fail_subscription:
            raise PaymentGatewayError("Stripe is down", transient=True)
        return self.subscriptions[subscription_id]

    def add_subscription(self, subscription_id, user_id, period_end, status="active", plan_id="monthly"):
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "current_period_end": int(period_end),
            "metadata": {"userId": user_id, "planId": plan_id},
        }


@pytest.fixture(autouse=True)
def _fresh_database():
    """Every test starts with empty tables and a clean rate limit counter."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    limiter.reset()
    yield


@pytest.fixture
def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_gateway] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_gateway, None)


@pytest.fixture(scope="function")
def client(gateway):
    """TestClient; lifespan creates the tables on the in-memory DB."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_user(db):
    def _make(user_id="user-1", email="user1@example.com", **fields):
        user = User(id=user_id, email=email, **fields)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_promo(db):
    def _make(code="LAUNCH50", discount_percent=50, **fields):
        now = utcnow()
        fields.setdefault("valid_from", now - timedelta(days=1))
        fields.setdefault("valid_until", now + timedelta(days=30))
        promo = PromoCode(code=code, discount_percent=discount_percent, **fields)
        db.add(promo)
        db.commit()
        db.refresh(promo)
        return promo

    return _make


def auth_headers_for(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id})}"}


@pytest.fixture
def auth_headers(make_user):
    user = make_user()
    return auth_headers_for(user.id)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Stripe-Signature header value: t=<ts>,v1=HMAC-SHA256(secret, "<ts>.<payload>")."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def post_event(client):
    """POSTs a signed Stripe event to the webhook endpoint."""

    def _post(event: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event)
        return client.post(
            "/api/stripe/webhook",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, secret), "Content-Type": "application/json"},
        )

    return _post


def stripe_event(event_id: str, event_type: str, obj: dict, created: int | None = None) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()) if created is None else created,
        "data": {"object": obj},
    }
