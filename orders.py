"""
Order placement and administration.

An order is an ``order`` header plus one ``order_item`` row per line. Item
prices are the snapshot submitted at checkout, not the live catalog price.
The header and its items are written as one unit: if the items cannot be
stored the header is deleted again, and the cart is only cleared afterwards.
"""
import os
import secrets
import string
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

import pydantic
import structlog
from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

import errors
from cart import CartStore
from catalog import serialize_product
from coupons import CouponValidator
from schemas import OrderItemIn, ShippingAddress, money_str, to_money

logger = structlog.get_logger(__name__)

FREE_SHIPPING_THRESHOLD = Decimal(os.getenv("FREE_SHIPPING_THRESHOLD", "999"))
SHIPPING_FEE = Decimal(os.getenv("SHIPPING_FEE", "99"))

STATUS_FLOW = ["pending", "confirmed", "shipped", "delivered"]
TERMINAL_STATUSES = {"delivered", "cancelled"}
PAYMENT_METHODS = {"cod", "online"}

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_order_number() -> str:
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def can_transition(current: str, new: str) -> bool:
    """Forward moves along STATUS_FLOW, or cancellation of an open order."""
    if current in TERMINAL_STATUSES or current == new:
        return False
    if new == "cancelled":
        return True
    if current not in STATUS_FLOW or new not in STATUS_FLOW:
        return False
    return STATUS_FLOW.index(new) > STATUS_FLOW.index(current)


def shipping_fee_for(subtotal: Decimal) -> Decimal:
    return Decimal("0") if subtotal >= FREE_SHIPPING_THRESHOLD else SHIPPING_FEE


def compute_order_total(items: Iterable[OrderItemIn], discount=0) -> Dict[str, Decimal]:
    subtotal = to_money(sum((to_money(i.price) * i.quantity for i in items), Decimal("0")))
    discount = to_money(discount)
    shipping_fee = to_money(shipping_fee_for(subtotal))
    total = max(subtotal - discount + shipping_fee, Decimal("0"))
    return {
        "subtotal": subtotal,
        "discount": discount,
        "shipping_fee": shipping_fee,
        "total_amount": to_money(total),
    }


def serialize_order(doc: dict, items: Optional[List[dict]] = None) -> Dict[str, Any]:
    o = dict(doc)
    o["id"] = str(o.pop("_id"))
    if items is not None:
        o["items"] = items
    return o


def serialize_order_item(doc: dict) -> Dict[str, Any]:
    i = dict(doc)
    i["id"] = str(i.pop("_id"))
    return i


def _order_oid(order_id: str) -> ObjectId:
    if not ObjectId.is_valid(order_id):
        raise errors.NotFoundError("Order not found")
    return ObjectId(order_id)


def _parse(model, value):
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except pydantic.ValidationError as e:
        raise errors.ValidationError(f"Invalid {model.__name__}: {e.errors()[0]['msg']}")


class OrderAssembler:
    def __init__(self, db, cart: Optional[CartStore] = None, coupons: Optional[CouponValidator] = None,
                 is_admin: Optional[Callable[[str], bool]] = None):
        self.db = db
        self.orders = db["order"]
        self.order_items = db["order_item"]
        self.cart = cart or CartStore(db)
        self.coupons = coupons or CouponValidator(db)
        self.is_admin = is_admin or (lambda user_id: False)

    # -- placement --

    def place_order(self, user_id: str, items: List[Any], shipping_address: Any, payment_method: str,
                    total_amount, coupon_code: Optional[str] = None) -> Dict[str, Any]:
        if not items:
            raise errors.ValidationError("Order must contain at least one item")
        items = [_parse(OrderItemIn, i) for i in items]
        address = _parse(ShippingAddress, shipping_address)
        if payment_method not in PAYMENT_METHODS:
            raise errors.ValidationError(f"Unsupported payment method: {payment_method}")

        discount = Decimal("0")
        if coupon_code:
            subtotal = compute_order_total(items)["subtotal"]
            result = self.coupons.validate(coupon_code, subtotal)
            if not result.valid:
                raise errors.ValidationError(result.message)
            discount = Decimal(str(result.discount))

        totals = compute_order_total(items, discount)
        if to_money(total_amount) != totals["total_amount"]:
            raise errors.ValidationError(
                f"Total amount {money_str(total_amount)} does not match order total {totals['total_amount']}"
            )

        now = datetime.now(timezone.utc)
        header = {
            "order_number": generate_order_number(),
            "user_id": user_id,
            "status": "pending",
            "subtotal": str(totals["subtotal"]),
            "discount": str(totals["discount"]),
            "shipping_fee": str(totals["shipping_fee"]),
            "total_amount": str(totals["total_amount"]),
            "coupon_code": coupon_code or None,
            "payment_method": payment_method,
            # online payments are verified before the order is submitted
            "payment_status": "completed" if payment_method == "online" else "pending",
            "shipping_address": address.model_dump(),
            "tracking_number": None,
            "created_at": now,
            "updated_at": now,
        }
        try:
            oid = self.orders.insert_one(header).inserted_id
            header["_id"] = oid
        except DuplicateKeyError:
            raise errors.ConflictError("Order number collision, please retry")
        order_id = str(oid)

        try:
            stored_items = self._insert_items(order_id, items, now)
        except Exception:
            logger.error("order_items_failed", order_number=header["order_number"], user_id=user_id)
            self.order_items.delete_many({"order_id": order_id})
            self.orders.delete_one({"_id": oid})
            raise

        logger.info("order_placed", order_number=header["order_number"], user_id=user_id,
                    items=len(stored_items), total=header["total_amount"])

        if coupon_code:
            try:
                self.coupons.redeem(coupon_code, order_id)
            except PyMongoError:
                logger.warning("coupon_redeem_failed", code=coupon_code, order_id=order_id, exc_info=True)

        try:
            self.cart.clear(user_id)
        except PyMongoError:
            logger.warning("cart_clear_failed", order_id=order_id, user_id=user_id, exc_info=True)

        return serialize_order(header, stored_items)

    def _insert_items(self, order_id: str, items: List[OrderItemIn], now: datetime) -> List[Dict[str, Any]]:
        docs = [
            {
                "_id": ObjectId(),
                "order_id": order_id,
                "product_id": i.product_id,
                "quantity": i.quantity,
                "price": money_str(i.price),
                "created_at": now,
            }
            for i in items
        ]
        self.order_items.insert_many(docs)
        return [serialize_order_item(d) for d in docs]

    # -- queries --

    def list_orders(self, user_id: str, include_all: bool = False) -> List[Dict[str, Any]]:
        query = {} if include_all else {"user_id": user_id}
        return [serialize_order(o) for o in self.orders.find(query).sort([("created_at", -1)])]

    def get_order(self, order_id: str, user_id: str, include_all: bool = False) -> Dict[str, Any]:
        o = self.orders.find_one({"_id": _order_oid(order_id)})
        if not o or (o["user_id"] != user_id and not include_all):
            raise errors.NotFoundError("Order not found")
        rows = list(self.order_items.find({"order_id": order_id}))
        product_ids = [ObjectId(r["product_id"]) for r in rows if ObjectId.is_valid(r["product_id"])]
        products = {}
        if product_ids:
            products = {str(p["_id"]): p for p in self.db["product"].find({"_id": {"$in": product_ids}})}
        items = []
        for r in rows:
            item = serialize_order_item(r)
            product = products.get(r["product_id"])
            item["product"] = serialize_product(product) if product else None
            items.append(item)
        return serialize_order(o, items)

    def has_delivered_product(self, user_id: str, product_id: str) -> bool:
        delivered = [str(o["_id"]) for o in self.orders.find({"user_id": user_id, "status": "delivered"}, {"_id": 1})]
        if not delivered:
            return False
        return self.order_items.find_one({"order_id": {"$in": delivered}, "product_id": product_id}) is not None

    # -- admin --

    def _require_admin(self, actor_id: str) -> None:
        if not self.is_admin(actor_id):
            raise errors.ForbiddenError("Admin access required")

    def update_status(self, order_id: str, status: str, actor_id: str) -> Dict[str, Any]:
        self._require_admin(actor_id)
        oid = _order_oid(order_id)
        o = self.orders.find_one({"_id": oid}, {"status": 1})
        if not o:
            raise errors.NotFoundError("Order not found")
        if not can_transition(o["status"], status):
            raise errors.ValidationError(f"Cannot change order status from {o['status']} to {status}")
        # guard on the status we checked so concurrent admins cannot skip the rules
        updated = self.orders.find_one_and_update(
            {"_id": oid, "status": o["status"]},
            {"$set": {"status": status, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise errors.ConflictError("Order status changed concurrently, please retry")
        logger.info("order_status_changed", order_number=updated["order_number"], from_status=o["status"],
                    to_status=status, actor_id=actor_id)
        return serialize_order(updated)

    def set_tracking_number(self, order_id: str, tracking_number: str, actor_id: str) -> Dict[str, Any]:
        self._require_admin(actor_id)
        updated = self.orders.find_one_and_update(
            {"_id": _order_oid(order_id)},
            {"$set": {"tracking_number": tracking_number, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise errors.NotFoundError("Order not found")
        return serialize_order(updated)
