"""Admin promo code API."""
from fastapi.testclient import TestClient

from tests.conftest import ADMIN_HEADERS, auth_headers_for

PAYLOAD = {
    "code": " spring25 ",
    "discountPercent": 25,
    "validFrom": "2026-01-01T00:00:00Z",
    "validUntil": "2099-12-31T23:59:59Z",
    "maxUses": 500,
    "applicablePlans": ["monthly", "yearly"],
    "description": "Spring campaign",
}


def test_create_and_list(client: TestClient):
    r = client.post("/admin/promo-codes", json=PAYLOAD, headers=ADMIN_HEADERS)
    assert r.status_code == 201
    j = r.json()
    assert j["code"] == "SPRING25"
    assert j["discountPercent"] == 25
    assert j["usedCount"] == 0
    assert j["maxUsesPerUser"] == 1
    assert j["applicablePlans"] == ["monthly", "yearly"]
    assert j["isActive"] is True

    r = client.get("/admin/promo-codes", headers=ADMIN_HEADERS)
    assert [p["code"] for p in r.json()] == ["SPRING25"]


def test_duplicate_code_conflicts(client: TestClient):
    client.post("/admin/promo-codes", json=PAYLOAD, headers=ADMIN_HEADERS)
    r = client.post("/admin/promo-codes", json={**PAYLOAD, "code": "SPRING25"}, headers=ADMIN_HEADERS)
    assert r.status_code == 409
    assert r.json()["error"] == "This code already exists"


def test_window_must_be_ordered(client: TestClient):
    r = client.post(
        "/admin/promo-codes",
        json={**PAYLOAD, "validFrom": "2026-02-01T00:00:00Z", "validUntil": "2026-01-01T00:00:00Z"},
        headers=ADMIN_HEADERS,
    )
    assert r.status_code == 422


def test_deactivate_is_a_kill_switch(client: TestClient, make_user):
    make_user()
    promo_id = client.post("/admin/promo-codes", json=PAYLOAD, headers=ADMIN_HEADERS).json()["id"]
    r = client.post(f"/admin/promo-codes/{promo_id}/deactivate", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    assert r.json()["isActive"] is False

    r = client.post("/promo/validate", json={"code": "SPRING25"}, headers=auth_headers_for("user-1"))
    assert r.json()["error"] == "inactive"


def test_redemption_ledger_for_code(client: TestClient, make_user):
    make_user()
    promo_id = client.post("/admin/promo-codes", json=PAYLOAD, headers=ADMIN_HEADERS).json()["id"]
    client.post("/promo/apply", json={"code": "SPRING25", "planId": "yearly"}, headers=auth_headers_for("user-1"))
    r = client.get(f"/admin/promo-codes/{promo_id}/redemptions", headers=ADMIN_HEADERS)
    assert r.status_code == 200
    rows = r.json()
    assert len(rows) == 1
    assert rows[0]["userId"] == "user-1"
    assert rows[0]["status"] == "pending"
    assert rows[0]["usageCounted"] is False


def test_unknown_code_is_404(client: TestClient):
    assert client.post("/admin/promo-codes/999/deactivate", headers=ADMIN_HEADERS).status_code == 404
    assert client.get("/admin/promo-codes/999/redemptions", headers=ADMIN_HEADERS).status_code == 404


def test_admin_requires_secret(client: TestClient):
    assert client.get("/admin/promo-codes").status_code == 403
