import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import JWT_SECRET, EmailAllowListAdminCheck, get_admin_check
from database import ensure_indexes, get_db
from main import app

ADMIN_EMAIL = "admin@example.com"


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_admin_check] = lambda: EmailAllowListAdminCheck(db, [ADMIN_EMAIL])
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def sign_token(claims: dict, secret: str = JWT_SECRET) -> str:
    """HS256 token as the identity provider would issue it."""
    header = _b64(json.dumps({"alg": "HS256", "typ": "JWT"}).encode())
    payload = _b64(json.dumps(claims, default=str).encode())
    signature = hmac.new(secret.encode(), f"{header}.{payload}".encode(), hashlib.sha256).digest()
    return f"{header}.{payload}.{_b64(signature)}"


@pytest.fixture
def token_signer():
    return sign_token


def _headers(user_id, email):
    exp = datetime.now(timezone.utc) + timedelta(hours=1)
    token = sign_token({"sub": user_id, "email": email, "exp": exp.isoformat()})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers():
    return _headers("user-1", "buyer@example.com")


@pytest.fixture
def other_headers():
    return _headers("user-2", "someone@example.com")


@pytest.fixture
def admin_headers():
    return _headers("admin-1", ADMIN_EMAIL)


@pytest.fixture
def make_product(db):
    def _make(name="Rugged Armor Case", price="250.00", stock_quantity=10, **extra):
        doc = {
            "name": name,
            "price": price,
            "brand": extra.pop("brand", "Samsung"),
            "model": extra.pop("model", "Galaxy S24"),
            "material": extra.pop("material", "TPU"),
            "stock_quantity": stock_quantity,
            "in_stock": stock_quantity > 0,
            "featured": extra.pop("featured", False),
            "rating": 0,
            "num_reviews": 0,
            **extra,
        }
        return str(db["product"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def shipping_address():
    return {
        "full_name": "Asha Verma",
        "phone_number": "9876543210",
        "address": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
    }
