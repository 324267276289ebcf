"""
Per-user shopping cart backed by the ``cart_item`` collection.

A cart holds at most one row per (user, product). Adding a product that is
already in the cart increments the existing row with a single atomic upsert.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import errors
from catalog import serialize_product

logger = structlog.get_logger(__name__)


def serialize_cart_item(doc: dict) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "user_id": doc["user_id"],
        "product_id": doc["product_id"],
        "quantity": doc["quantity"],
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
    }


class CartStore:
    def __init__(self, db):
        self.db = db
        self.items = db["cart_item"]

    def _item_filter(self, user_id: str, cart_item_id: str) -> dict:
        try:
            oid = ObjectId(cart_item_id)
        except (InvalidId, TypeError):
            raise errors.NotFoundError("Cart item not found")
        return {"_id": oid, "user_id": user_id}

    def add(self, user_id: str, product_id: str, quantity: int = 1) -> Dict[str, Any]:
        if quantity < 1:
            raise errors.ValidationError("Quantity must be at least 1")
        if not ObjectId.is_valid(product_id) or not self.db["product"].find_one({"_id": ObjectId(product_id)}, {"_id": 1}):
            raise errors.NotFoundError("Product not found")

        now = datetime.now(timezone.utc)
        query = {"user_id": user_id, "product_id": product_id}
        update = {
            "$inc": {"quantity": quantity},
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        }
        try:
            doc = self.items.find_one_and_update(query, update, upsert=True, return_document=ReturnDocument.AFTER)
        except DuplicateKeyError:
            # lost the insert race to a concurrent add; the row exists now
            doc = self.items.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        return serialize_cart_item(doc)

    def update_quantity(self, user_id: str, cart_item_id: str, quantity: int) -> Dict[str, Any]:
        if quantity < 1:
            raise errors.ValidationError("Quantity must be at least 1; remove the item instead")
        doc = self.items.find_one_and_update(
            self._item_filter(user_id, cart_item_id),
            {"$set": {"quantity": quantity, "updated_at": datetime.now(timezone.utc)}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise errors.NotFoundError("Cart item not found")
        return serialize_cart_item(doc)

    def remove(self, user_id: str, cart_item_id: str) -> None:
        res = self.items.delete_one(self._item_filter(user_id, cart_item_id))
        if res.deleted_count == 0:
            raise errors.NotFoundError("Cart item not found")

    def clear(self, user_id: str) -> int:
        res = self.items.delete_many({"user_id": user_id})
        logger.debug("cart_cleared", user_id=user_id, removed=res.deleted_count)
        return res.deleted_count

    def list(self, user_id: str) -> List[Dict[str, Any]]:
        """Cart rows joined with the live product document (None if deleted)."""
        rows = list(self.items.find({"user_id": user_id}))
        product_ids = [ObjectId(r["product_id"]) for r in rows if ObjectId.is_valid(r["product_id"])]
        products = {}
        if product_ids:
            for p in self.db["product"].find({"_id": {"$in": product_ids}}):
                products[str(p["_id"])] = p
        result = []
        for r in rows:
            item = serialize_cart_item(r)
            product = products.get(r["product_id"])
            item["product"] = serialize_product(product) if product else None
            result.append(item)
        return result
