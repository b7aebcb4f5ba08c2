"""Checkout sessions: plan resolution, single-use coupons, ledger-backed discounts."""
from fastapi.testclient import TestClient
from sqlmodel import select

from crush.models import PromoCodeRedemption
from crush.services.checkout import DISCOUNT_DEGRADED_WARNING
from tests.conftest import auth_headers_for


def _apply(client, code="LAUNCH50", plan="monthly", user_id="user-1"):
    r = client.post("/promo/apply", json={"code": code, "planId": plan}, headers=auth_headers_for(user_id))
    assert r.json()["success"] is True
    return r


def test_plain_checkout_session(client: TestClient, gateway, auth_headers):
    r = client.post("/api/stripe/create-checkout-session", json={"planId": "yearly"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {
        "sessionId": "cs_test_1",
        "url": "https://checkout.stripe.test/cs_test_1",
        "discountApplied": False,
    }
    params = gateway.sessions[0]
    assert params["price_id"] == "price_yearly"
    assert params["customer_email"] == "user1@example.com"
    assert params["client_reference_id"] == "user-1"
    assert params["metadata"] == {"userId": "user-1", "planId": "yearly"}
    assert params["subscription_metadata"] == params["metadata"]
    assert params["coupon_id"] is None
    assert params["success_url"].endswith("/premium/success?session_id={CHECKOUT_SESSION_ID}")
    assert gateway.coupons == []


def test_unknown_plan_rejected(client: TestClient, auth_headers):
    r = client.post("/api/stripe/create-checkout-session", json={"planId": "weekly"}, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["error"] == "Invalid plan selected"


def test_discount_comes_from_reservation(client: TestClient, gateway, db, make_user, make_promo):
    make_user()
    make_promo("LAUNCH50", 50)
    _apply(client)
    r = client.post(
        "/api/stripe/create-checkout-session",
        # A forged discount is ignored in favour of the reserved one
        json={"planId": "monthly", "promoCode": "launch50", "discountPercent": 99},
        headers=auth_headers_for("user-1"),
    )
    assert r.status_code == 200
    assert r.json()["discountApplied"] is True

    assert len(gateway.coupons) == 1
    assert gateway.coupons[0]["percent_off"] == 50
    params = gateway.sessions[0]
    assert params["coupon_id"] == "coupon_1"
    redemption = db.exec(select(PromoCodeRedemption)).one()
    assert params["metadata"] == {
        "userId": "user-1",
        "planId": "monthly",
        "promoCode": "LAUNCH50",
        "discountPercent": "50",
        "redemptionId": str(redemption.id),
    }
    assert redemption.status == "applied"
    assert redemption.checkout_session_id == "cs_test_1"


def test_promo_without_reservation_rejected(client: TestClient, gateway, auth_headers, make_promo):
    make_promo("LAUNCH50", 50)
    r = client.post(
        "/api/stripe/create-checkout-session",
        json={"planId": "monthly", "promoCode": "LAUNCH50", "discountPercent": 50},
        headers=auth_headers,
    )
    assert r.status_code == 400
    assert r.json()["error"] == "Apply the promo code before starting checkout"
    assert gateway.sessions == []


def test_coupon_failure_degrades_to_full_price(client: TestClient, gateway, db, make_user, make_promo):
    make_user()
    make_promo("LAUNCH50", 50)
    _apply(client)
    gateway.fail_coupon = True
    r = client.post(
        "/api/stripe/create-checkout-session",
        json={"planId": "monthly", "promoCode": "LAUNCH50"},
        headers=auth_headers_for("user-1"),
    )
    assert r.status_code == 200
    j = r.json()
    assert j["discountApplied"] is False
    assert j["warning"] == DISCOUNT_DEGRADED_WARNING
    assert gateway.sessions[0]["coupon_id"] is None
    assert gateway.sessions[0]["metadata"] == {"userId": "user-1", "planId": "monthly"}
    # Still reserved for a later attempt
    assert db.exec(select(PromoCodeRedemption)).one().status == "pending"


def test_gateway_failure_is_500(client: TestClient, gateway, auth_headers):
    gateway.fail_session = True
    r = client.post("/api/stripe/create-checkout-session", json={"planId": "monthly"}, headers=auth_headers)
    assert r.status_code == 500
    assert r.json()["error"] == "Failed to create checkout session. Please try again."
