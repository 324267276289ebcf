from decimal import Decimal

import pytest

import errors
from catalog import ProductCatalog
from schemas import Product, ProductUpdate


@pytest.fixture
def catalog(db):
    return ProductCatalog(db)


def test_create_derives_stock_flag_and_money(catalog):
    p = catalog.create(Product(name="Leather Flip Cover", price=Decimal("1199"), brand="Apple", stock_quantity=0))
    assert p["price"] == "1199.00"
    assert p["in_stock"] is False

    p = catalog.update(p["id"], ProductUpdate(stock_quantity=5, price=Decimal("999.5")))
    assert p["in_stock"] is True
    assert p["price"] == "999.50"


def test_list_filters(catalog, make_product):
    make_product(name="Armor Case", price="649.00", brand="Samsung")
    make_product(name="Clear Case", price="299.00", brand="Apple", material="Polycarbonate")
    make_product(name="Sold Out Case", price="199.00", brand="Apple", stock_quantity=0)

    assert {p["name"] for p in catalog.list()} == {"Armor Case", "Clear Case"}
    assert [p["name"] for p in catalog.list(brand="Apple")] == ["Clear Case"]
    assert [p["name"] for p in catalog.list(min_price=Decimal("300"))] == ["Armor Case"]
    assert [p["name"] for p in catalog.list(max_price=Decimal("300"))] == ["Clear Case"]
    assert [p["name"] for p in catalog.list(search="armor")] == ["Armor Case"]
    assert [p["name"] for p in catalog.list(material="Polycarbonate")] == ["Clear Case"]


def test_featured(catalog, make_product):
    make_product(name="Hero Case", featured=True)
    make_product(name="Plain Case")
    assert [p["name"] for p in catalog.featured()] == ["Hero Case"]


def test_missing_product(catalog):
    with pytest.raises(errors.NotFoundError):
        catalog.get("nope")


def test_review_requires_delivered_order(client, user_headers, admin_headers, make_product, shipping_address):
    pid = make_product(price="250.00")
    review = {"rating": 5, "title": "Great grip", "comment": "Fits perfectly"}

    r = client.post(f"/api/products/{pid}/reviews", json=review, headers=user_headers)
    assert r.status_code == 403

    order = client.post("/api/orders", json={
        "items": [{"product_id": pid, "quantity": 1, "price": "250.00"}],
        "shipping_address": shipping_address,
        "payment_method": "online",
        "total_amount": "349.00",
    }, headers=user_headers).json()
    client.put(f"/api/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin_headers)

    r = client.post(f"/api/products/{pid}/reviews", json=review, headers=user_headers)
    assert r.status_code == 200

    r = client.post(f"/api/products/{pid}/reviews", json=review, headers=user_headers)
    assert r.status_code == 409

    product = client.get(f"/api/products/{pid}").json()
    assert product["rating"] == 5
    assert product["num_reviews"] == 1
    assert len(client.get(f"/api/products/{pid}/reviews").json()) == 1


def test_product_admin_routes(client, user_headers, admin_headers):
    body = {"name": "Tempered Glass", "price": "299", "brand": "OnePlus", "stock_quantity": 3}
    r = client.post("/api/products", json=body, headers=user_headers)
    assert r.status_code == 403
    assert r.json() == {"detail": "Admin access required", "kind": "forbidden"}

    created = client.post("/api/products", json=body, headers=admin_headers).json()
    assert created["price"] == "299.00"

    r = client.delete(f"/api/products/{created['id']}", headers=admin_headers)
    assert r.json() == {"success": True}
    assert client.get(f"/api/products/{created['id']}").status_code == 404


def test_users_me(client, admin_headers, user_headers):
    assert client.get("/api/users/me", headers=admin_headers).json()["is_admin"] is True
    me = client.get("/api/users/me", headers=user_headers).json()
    assert me == {"id": "user-1", "name": None, "email": "buyer@example.com", "is_admin": False}
