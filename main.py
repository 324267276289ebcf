import os
import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
from pymongo.errors import PyMongoError

import errors
from auth import EmailAllowListAdminCheck, get_admin_check, get_current_user, require_admin
from cart import CartStore
from catalog import ProductCatalog
from coupons import CouponValidator
import database
from database import create_document, ensure_indexes, get_db
from orders import OrderAssembler
from schemas import (
    CartAdd,
    CartQuantity,
    Coupon,
    CouponValidateRequest,
    CouponValidation,
    OrderCreate,
    OrderStatusUpdate,
    Product,
    ProductUpdate,
    ReviewCreate,
    TrackingUpdate,
)

structlog.configure(
    wrapper_class=structlog.make_filtering_bound_logger(
        getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    ),
)
logger = structlog.get_logger("storefront")

app = FastAPI(title="Mobile Accessories Store API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(errors.StoreError)
async def store_error_handler(request: Request, exc: errors.StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "kind": exc.kind})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(exc.errors()), "kind": errors.ValidationError.kind})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("database_error", method=request.method, path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"detail": "Database unavailable", "kind": errors.DependencyError.kind})


@app.on_event("startup")
def create_indexes():
    if database.db is None:
        logger.warning("database_not_configured")
        return
    ensure_indexes(database.db)


# Dependencies
def get_catalog(db=Depends(get_db)) -> ProductCatalog:
    return ProductCatalog(db)

def get_cart(db=Depends(get_db)) -> CartStore:
    return CartStore(db)

def get_coupons(db=Depends(get_db)) -> CouponValidator:
    return CouponValidator(db)

def get_orders(db=Depends(get_db), is_admin: EmailAllowListAdminCheck = Depends(get_admin_check)) -> OrderAssembler:
    return OrderAssembler(db, cart=CartStore(db), coupons=CouponValidator(db), is_admin=is_admin)


# Users
@app.get("/api/users/me")
def get_me(current_user: dict = Depends(get_current_user), is_admin=Depends(get_admin_check)):
    return {
        "id": current_user["_id"],
        "name": current_user.get("name"),
        "email": current_user.get("email"),
        "is_admin": is_admin(current_user["_id"]),
    }

# Products
@app.get("/api/products")
def list_products(
    brand: Optional[str] = None,
    material: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    featured: Optional[bool] = None,
    catalog: ProductCatalog = Depends(get_catalog),
):
    return catalog.list(brand=brand, material=material, search=search, min_price=min_price, max_price=max_price, featured=featured)

@app.get("/api/products/featured")
def featured_products(catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.featured()

@app.get("/api/products/{product_id}")
def get_product(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.get(product_id)

@app.post("/api/products")
def create_product(body: Product, current_user: dict = Depends(get_current_user), is_admin=Depends(get_admin_check), catalog: ProductCatalog = Depends(get_catalog)):
    require_admin(current_user, is_admin)
    return catalog.create(body)

@app.put("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, current_user: dict = Depends(get_current_user), is_admin=Depends(get_admin_check), catalog: ProductCatalog = Depends(get_catalog)):
    require_admin(current_user, is_admin)
    return catalog.update(product_id, body)

@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, current_user: dict = Depends(get_current_user), is_admin=Depends(get_admin_check), catalog: ProductCatalog = Depends(get_catalog)):
    require_admin(current_user, is_admin)
    catalog.delete(product_id)
    return {"success": True}

# Reviews
@app.get("/api/products/{product_id}/reviews")
def product_reviews(product_id: str, catalog: ProductCatalog = Depends(get_catalog)):
    return catalog.reviews(product_id)

@app.post("/api/products/{product_id}/reviews")
def add_review(product_id: str, body: ReviewCreate, current_user: dict = Depends(get_current_user), catalog: ProductCatalog = Depends(get_catalog), orders: OrderAssembler = Depends(get_orders)):
    if not orders.has_delivered_product(current_user["_id"], product_id):
        raise errors.ForbiddenError("You can review a product once your order has been delivered")
    return catalog.add_review(product_id, current_user["_id"], body)

# Cart
@app.get("/api/cart")
def get_cart_items(current_user: dict = Depends(get_current_user), cart: CartStore = Depends(get_cart)):
    return cart.list(current_user["_id"])

@app.post("/api/cart")
def add_to_cart(body: CartAdd, current_user: dict = Depends(get_current_user), cart: CartStore = Depends(get_cart)):
    return cart.add(current_user["_id"], body.product_id, body.quantity)

@app.put("/api/cart/{item_id}")
def update_cart_item(item_id: str, body: CartQuantity, current_user: dict = Depends(get_current_user), cart: CartStore = Depends(get_cart)):
    return cart.update_quantity(current_user["_id"], item_id, body.quantity)

@app.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, current_user: dict = Depends(get_current_user), cart: CartStore = Depends(get_cart)):
    cart.remove(current_user["_id"], item_id)
    return {"message": "Item removed from cart"}

@app.delete("/api/cart")
def clear_cart(current_user: dict = Depends(get_current_user), cart: CartStore = Depends(get_cart)):
    cart.clear(current_user["_id"])
    return {"message": "Cart cleared"}

# Coupons
@app.post("/api/coupons/validate", response_model=CouponValidation, response_model_exclude_none=True)
def validate_coupon(body: CouponValidateRequest, coupons: CouponValidator = Depends(get_coupons)):
    return coupons.validate(body.code, body.amount)

@app.post("/api/admin/coupons")
def create_coupon(body: Coupon, current_user: dict = Depends(get_current_user), is_admin=Depends(get_admin_check), coupons: CouponValidator = Depends(get_coupons)):
    require_admin(current_user, is_admin)
    return coupons.create(body)

# Orders
@app.post("/api/orders")
def create_order(payload: OrderCreate, current_user: dict = Depends(get_current_user), orders: OrderAssembler = Depends(get_orders)):
    return orders.place_order(
        current_user["_id"],
        payload.items,
        payload.shipping_address,
        payload.payment_method,
        payload.total_amount,
        coupon_code=payload.coupon_code,
    )

@app.get("/api/orders")
def my_orders(current_user: dict = Depends(get_current_user), orders: OrderAssembler = Depends(get_orders)):
    return orders.list_orders(current_user["_id"], include_all=orders.is_admin(current_user["_id"]))

@app.get("/api/orders/{order_id}")
def order_detail(order_id: str, current_user: dict = Depends(get_current_user), orders: OrderAssembler = Depends(get_orders)):
    return orders.get_order(order_id, current_user["_id"], include_all=orders.is_admin(current_user["_id"]))

@app.put("/api/orders/{order_id}/status")
def update_order_status(order_id: str, body: OrderStatusUpdate, current_user: dict = Depends(get_current_user), orders: OrderAssembler = Depends(get_orders)):
    return orders.update_status(order_id, body.status, current_user["_id"])

@app.put("/api/orders/{order_id}/tracking")
def update_tracking(order_id: str, body: TrackingUpdate, current_user: dict = Depends(get_current_user), orders: OrderAssembler = Depends(get_orders)):
    return orders.set_tracking_number(order_id, body.tracking_number, current_user["_id"])

# Health + test
@app.get("/")
def root():
    return {"message": "Mobile Accessories Store API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "collections": []
    }
    try:
        if database.db is not None:
            collections = database.db.list_collection_names()
            response["collections"] = collections[:10]
    except Exception as e:
        response["error"] = str(e)[:120]
    return response

@app.get('/seed/init')
def seed(db=Depends(get_db)):
    sample_products = [
        { 'name': 'MagSafe Silicone Case', 'description': 'Soft-touch case with built-in magnets', 'price': '799.00', 'original_price': '1299.00', 'brand': 'Apple', 'model': 'iPhone 15', 'material': 'Silicone', 'stock_quantity': 120, 'featured': True },
        { 'name': 'Rugged Armor Case', 'description': 'Drop-tested shock absorbing case', 'price': '649.00', 'brand': 'Samsung', 'model': 'Galaxy S24', 'material': 'TPU', 'stock_quantity': 80, 'featured': True },
        { 'name': 'Tempered Glass Screen Guard', 'description': '9H hardness, edge to edge', 'price': '299.00', 'original_price': '499.00', 'brand': 'OnePlus', 'model': 'OnePlus 12', 'material': 'Glass', 'stock_quantity': 300, 'featured': False },
        { 'name': 'Leather Flip Cover', 'description': 'Card slots and stand', 'price': '1199.00', 'brand': 'Apple', 'model': 'iPhone 14', 'material': 'Leather', 'stock_quantity': 40, 'featured': False },
        { 'name': 'Clear Hybrid Case', 'description': 'Anti-yellowing transparent back', 'price': '499.00', 'brand': 'Google', 'model': 'Pixel 8', 'material': 'Polycarbonate', 'stock_quantity': 0, 'featured': False },
    ]
    for p in sample_products:
        if not db['product'].find_one({ 'name': p['name'], 'model': p['model'] }):
            create_document(db, 'product', { **p, 'in_stock': p['stock_quantity'] > 0, 'images': [], 'rating': 0, 'num_reviews': 0 })
    coupons = [
        { 'code': 'WELCOME10', 'discount_type': 'percentage', 'discount_value': '10.00', 'max_discount_amount': '200.00', 'min_order_amount': None, 'usage_limit': None },
        { 'code': 'FLAT100', 'discount_type': 'fixed', 'discount_value': '100.00', 'max_discount_amount': None, 'min_order_amount': '999.00', 'usage_limit': 500 },
    ]
    for c in coupons:
        if not db['coupon'].find_one({ 'code': c['code'] }):
            create_document(db, 'coupon', { **c, 'used_count': 0, 'is_active': True, 'valid_until': datetime.now(timezone.utc) + timedelta(days=90), 'redeemed_orders': [] })
    return { 'ok': True }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
