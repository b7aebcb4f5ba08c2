"""Redeemer: free activation, pending reservation, per-user slot races."""
from datetime import datetime, timedelta

from fastapi.testclient import TestClient
from sqlmodel import select

from crush.models import AuditLog, PromoCodeRedemption, User
from crush.models.base import utcnow
from crush.services import promo_redeemer, promo_store
from crush.services.entitlements import add_months
from crush.services.promo_redeemer import FreeActivation, PendingPayment, RedemptionFailed
from tests.conftest import auth_headers_for


def _redemptions(db, user_id="user-1"):
    db.expire_all()
    return db.exec(select(PromoCodeRedemption).where(PromoCodeRedemption.user_id == user_id)).all()


def test_free_activation_grants_premium_once(client: TestClient, db, make_user, make_promo):
    make_user("U1")
    promo = make_promo("FREEPREMIUM", 100, max_uses_per_user=1)
    headers = auth_headers_for("U1")

    r = client.post("/promo/apply", json={"code": "FREEPREMIUM", "planId": "monthly"}, headers=headers)
    assert r.status_code == 200
    j = r.json()
    assert j["success"] is True
    assert j["isFreeAccess"] is True
    assert j["discountPercent"] == 100
    assert "redirectToPayment" not in j

    user = db.get(User, "U1")
    db.refresh(user)
    assert user.is_premium is True
    assert user.premium_plan == "monthly"
    assert user.premium_source == "promo_code"
    assert user.premium_auto_renew is False
    assert user.premium_promo_code == "FREEPREMIUM"
    expected = add_months(utcnow(), 1)
    assert abs((user.premium_expires_at - expected).total_seconds()) < 60
    first_expiry = user.premium_expires_at

    rows = _redemptions(db, "U1")
    assert len(rows) == 1
    assert rows[0].status == "completed"
    assert rows[0].usage_counted is True
    db.refresh(promo)
    assert promo.used_count == 1

    r = client.post("/promo/apply", json={"code": "FREEPREMIUM", "planId": "monthly"}, headers=headers)
    assert r.json() == {
        "success": False,
        "error": "already used",
        "message": "You have already used this promo code",
    }
    db.refresh(user)
    assert user.premium_expires_at == first_expiry
    db.refresh(promo)
    assert promo.used_count == 1
    assert len(_redemptions(db, "U1")) == 1


def test_partial_discount_reserves_pending_row(client: TestClient, db, make_user, make_promo):
    make_user()
    promo = make_promo("LAUNCH50", 50, max_uses=100, used_count=99)
    r = client.post(
        "/promo/apply", json={"code": "LAUNCH50", "planId": "monthly"}, headers=auth_headers_for("user-1")
    )
    assert r.json() == {
        "success": True,
        "isFreeAccess": False,
        "discountPercent": 50,
        "redirectToPayment": True,
    }
    rows = _redemptions(db)
    assert [(row.status, row.usage_counted, row.discount_percent) for row in rows] == [("pending", False, 50)]
    db.refresh(promo)
    assert promo.used_count == 99
    user = db.get(User, "user-1")
    db.refresh(user)
    assert user.is_premium is False


def test_pending_endpoint_returns_open_reservation(client: TestClient, make_user, make_promo):
    make_user()
    make_promo("LAUNCH50", 50)
    headers = auth_headers_for("user-1")
    assert client.get("/promo/pending", headers=headers).json() is None
    client.post("/promo/apply", json={"code": "LAUNCH50", "planId": "yearly"}, headers=headers)
    j = client.get("/promo/pending", headers=headers).json()
    assert j["promoCode"] == "LAUNCH50"
    assert j["status"] == "pending"
    assert j["planId"] == "yearly"
    history = client.get("/promo/redemptions", headers=headers).json()
    assert [h["promoCode"] for h in history] == ["LAUNCH50"]


def test_invalid_code_writes_nothing(db, make_user, make_promo):
    make_user()
    outcome = promo_redeemer.redeem(db, "MISSING", "user-1", "monthly")
    assert outcome == RedemptionFailed(reason="invalid", message="Invalid promo code")
    assert _redemptions(db) == []


def test_free_activation_stacks_on_unexpired_entitlement(db, make_user, make_promo):
    now = datetime(2026, 1, 10, 12, 0, 0)
    current_expiry = now + timedelta(days=10)
    make_user(is_premium=True, premium_expires_at=current_expiry, premium_source="promo_code")
    make_promo("FREEYEAR", 100, valid_from=now - timedelta(days=1), valid_until=now + timedelta(days=1))
    outcome = promo_redeemer.redeem(db, "FREEYEAR", "user-1", "quarterly", now=now)
    assert isinstance(outcome, FreeActivation)
    assert outcome.expires_at == add_months(current_expiry, 3)


def test_exhausted_at_commit_rolls_everything_back(db, make_user, make_promo, monkeypatch):
    """Another user took the last use between validation and the increment."""
    make_user()
    promo = make_promo("FREEPREMIUM", 100, max_uses=1, used_count=0)
    monkeypatch.setattr(promo_store, "increment_usage", lambda *args, **kwargs: False)
    outcome = promo_redeemer.redeem(db, "FREEPREMIUM", "user-1", "monthly")
    assert outcome.reason == "exhausted"
    assert _redemptions(db) == []
    user = db.get(User, "user-1")
    db.refresh(user)
    assert user.is_premium is False
    db.refresh(promo)
    assert promo.used_count == 0


def test_concurrent_slot_reservation_loses_cleanly(db, make_user, make_promo, monkeypatch):
    """A stale per-user count makes the insert collide with the row the other attempt wrote."""
    make_user()
    promo = make_promo("FREEPREMIUM", 100)
    assert isinstance(promo_redeemer.redeem(db, "FREEPREMIUM", "user-1", "monthly"), FreeActivation)
    db.refresh(promo)
    assert promo.used_count == 1

    # Both the validator and the reservation read 0: the unique slot key is what stops it
    monkeypatch.setattr(promo_store, "count_user_redemptions", lambda *args, **kwargs: 0)
    outcome = promo_redeemer.redeem(db, "FREEPREMIUM", "user-1", "monthly")
    assert outcome.reason == "already used"

    assert len(_redemptions(db)) == 1
    db.refresh(promo)
    assert promo.used_count == 1


def test_multi_use_code_takes_next_slot(db, make_user, make_promo):
    make_user()
    make_promo("TWICE", 100, max_uses_per_user=2)
    assert isinstance(promo_redeemer.redeem(db, "TWICE", "user-1", "monthly"), FreeActivation)
    assert isinstance(promo_redeemer.redeem(db, "TWICE", "user-1", "monthly"), FreeActivation)
    assert promo_redeemer.redeem(db, "TWICE", "user-1", "monthly").reason == "already used"
    assert sorted(row.slot for row in _redemptions(db)) == [0, 1]


def test_free_activation_for_unknown_user_fails_without_writes(db, make_promo):
    promo = make_promo("FREEPREMIUM", 100)
    outcome = promo_redeemer.redeem(db, "FREEPREMIUM", "ghost", "monthly")
    assert outcome.reason == "activation failed"
    assert _redemptions(db, "ghost") == []
    db.refresh(promo)
    assert promo.used_count == 0


def test_audit_rows_written(db, make_user, make_promo):
    make_user()
    make_promo("FREEPREMIUM", 100)
    make_promo("LAUNCH50", 50)
    promo_redeemer.redeem(db, "FREEPREMIUM", "user-1", "monthly")
    assert isinstance(promo_redeemer.redeem(db, "LAUNCH50", "user-1", "monthly"), PendingPayment)
    events = [a.event for a in db.exec(select(AuditLog).order_by(AuditLog.id)).all()]
    assert events == ["free_activation", "promo_reserved"]
