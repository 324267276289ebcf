import inspect
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

import database
from auth import get_current_user
from main import app


def test_root(client):
    assert client.get("/").json() == {"message": "Mobile Accessories Store API running"}


def test_missing_database_is_a_dependency_error(monkeypatch):
    monkeypatch.setattr(database, "db", None)
    app.dependency_overrides.clear()
    with TestClient(app) as c:
        r = c.get("/api/products")
    assert r.status_code == 503
    assert r.json() == {"detail": "Database not configured", "kind": "dependency"}


def test_seed_is_idempotent(client, db):
    assert client.get("/seed/init").json() == {"ok": True}
    client.get("/seed/init")
    assert db["product"].count_documents({}) == 5
    assert db["coupon"].count_documents({}) == 2

    # the out-of-stock sample is hidden from listings
    assert len(client.get("/api/products").json()) == 4
    r = client.post("/api/coupons/validate", json={"code": "WELCOME10", "amount": 5000})
    assert r.json() == {"valid": True, "discount": 200.0}


@pytest.mark.parametrize("change", [
    {"payment_method": "card"},
    {"shipping_address": {"full_name": " ", "phone_number": "1", "address": "a", "city": "c", "state": "s", "pincode": "1"}},
    {"items": [{"product_id": "1", "quantity": 1, "price": "250.005"}]},
    {"items": [{"product_id": "1", "quantity": 0, "price": "250.00"}]},
])
def test_request_validation_errors_carry_kind(client, db, user_headers, shipping_address, change):
    payload = {
        "items": [{"product_id": "1", "quantity": 1, "price": "250.00"}],
        "shipping_address": shipping_address,
        "payment_method": "cod",
        "total_amount": "349.00",
        **change,
    }
    r = client.post("/api/orders", json=payload, headers=user_headers)
    assert r.status_code == 422
    assert r.json()["kind"] == "validation"
    assert isinstance(r.json()["detail"], list)
    assert db["order"].count_documents({}) == 0


@pytest.mark.parametrize("claims,secret", [
    ({"sub": "user-1", "exp": (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()}, None),
    ({"sub": "user-1"}, "some-other-secret"),
    ({"email": "nobody@example.com"}, None),
])
def test_rejected_tokens(client, token_signer, claims, secret):
    token = token_signer(claims, secret) if secret else token_signer(claims)
    r = client.get("/api/cart", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 401


def test_current_user_dependency_runs_in_threadpool():
    # blocking pymongo calls must stay off the event loop
    assert not inspect.iscoroutinefunction(get_current_user)
