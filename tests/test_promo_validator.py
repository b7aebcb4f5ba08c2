"""Validator: ordered checks, structured verdicts, no writes."""
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlmodel import select

from crush.models import PromoCodeRedemption
from crush.models.base import utcnow
from crush.services import promo_validator
from crush.services.promo_validator import InvalidPromo, ValidPromo


def test_valid_partial_discount(client: TestClient, auth_headers, make_promo):
    make_promo("LAUNCH50", 50, max_uses=100, used_count=99)
    r = client.post("/promo/validate", json={"code": "launch50", "planId": "monthly"}, headers=auth_headers)
    assert r.status_code == 200
    assert r.json() == {"isValid": True, "discountPercent": 50, "isFreeAccess": False}


def test_free_access_code(client: TestClient, auth_headers, make_promo):
    make_promo("FREEPREMIUM", 100)
    r = client.post("/promo/validate", json={"code": " freepremium "}, headers=auth_headers)
    assert r.json()["isValid"] is True
    assert r.json()["isFreeAccess"] is True


def test_unknown_code_is_invalid(client: TestClient, auth_headers):
    r = client.post("/promo/validate", json={"code": "NOPE"}, headers=auth_headers)
    assert r.status_code == 200
    j = r.json()
    assert j["isValid"] is False
    assert j["error"] == "invalid"
    assert j["message"] == "Invalid promo code"


def test_expired_code_rejected_regardless_of_usage(client: TestClient, auth_headers, make_promo):
    now = utcnow()
    make_promo(
        "EXPIRED2024",
        100,
        valid_from=now - timedelta(days=60),
        valid_until=now - timedelta(days=1),
        max_uses=None,
        used_count=0,
        max_uses_per_user=5,
    )
    r = client.post("/promo/validate", json={"code": "EXPIRED2024"}, headers=auth_headers)
    assert r.json() == {"isValid": False, "error": "expired", "message": "This promo code has expired"}


def test_not_yet_active(db, make_user, make_promo):
    now = utcnow()
    make_promo("SOON", 20, valid_from=now + timedelta(days=1), valid_until=now + timedelta(days=10))
    verdict = promo_validator.validate(db, "SOON", "user-1")
    assert verdict == InvalidPromo("not yet active")


def test_check_order_inactive_before_expired(db, make_promo):
    now = utcnow()
    make_promo("OLD", 20, is_active=False, valid_until=now - timedelta(days=1))
    assert promo_validator.validate(db, "OLD", "user-1").reason == "inactive"


def test_exhausted(db, make_promo):
    make_promo("FULL", 30, max_uses=10, used_count=10)
    assert promo_validator.validate(db, "FULL", "user-1").reason == "exhausted"


def test_plan_mismatch(db, make_promo):
    make_promo("YEARLY30", 30, applicable_plans="yearly")
    assert promo_validator.validate(db, "YEARLY30", "user-1", "monthly").reason == "plan mismatch"
    assert isinstance(promo_validator.validate(db, "YEARLY30", "user-1", "yearly"), ValidPromo)
    # No plan given: the plan check is skipped
    assert isinstance(promo_validator.validate(db, "YEARLY30", "user-1"), ValidPromo)


def test_pending_row_counts_as_used(db, make_user, make_promo):
    make_user()
    promo = make_promo("LAUNCH50", 50)
    db.add(
        PromoCodeRedemption(
            user_id="user-1",
            promo_code_id=promo.id,
            promo_code=promo.code,
            discount_percent=50,
            plan_id="monthly",
            status="pending",
        )
    )
    db.commit()
    verdict = promo_validator.validate(db, "LAUNCH50", "user-1", "monthly")
    assert verdict.reason == "already used"
    assert verdict.message == "You have already used this promo code"
    assert isinstance(promo_validator.validate(db, "LAUNCH50", "user-2", "monthly"), ValidPromo)


def test_validate_never_writes(client: TestClient, auth_headers, db, make_promo):
    promo = make_promo("FREEPREMIUM", 100, max_uses=5, used_count=2)
    for _ in range(5):
        r = client.post("/promo/validate", json={"code": "FREEPREMIUM", "planId": "monthly"}, headers=auth_headers)
        assert r.json()["isValid"] is True
    db.refresh(promo)
    assert promo.used_count == 2
    assert db.exec(select(PromoCodeRedemption)).all() == []


def test_validate_rejects_unknown_plan_id(client: TestClient, auth_headers, make_promo):
    make_promo("LAUNCH50", 50)
    r = client.post("/promo/validate", json={"code": "LAUNCH50", "planId": "weekly"}, headers=auth_headers)
    assert r.status_code == 422
    assert r.json()["status_code"] == 422
