"""
Product catalog and reviews.

The catalog supplies display price and stock for the cart; order pricing
never reads from it.
"""
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

import errors
from database import create_document
from schemas import Product, ProductUpdate, ReviewCreate, money_str

FEATURED_LIMIT = 8


def serialize_product(doc: dict) -> Dict[str, Any]:
    p = dict(doc)
    p["id"] = str(p.pop("_id"))
    p["in_stock"] = int(p.get("stock_quantity", 0)) > 0
    return p


def _product_oid(product_id: str) -> ObjectId:
    if not ObjectId.is_valid(product_id):
        raise errors.NotFoundError("Product not found")
    return ObjectId(product_id)


def _product_fields(data: dict) -> dict:
    for key in ("price", "original_price"):
        if data.get(key) is not None:
            data[key] = money_str(data[key])
    if "stock_quantity" in data:
        data["in_stock"] = data["stock_quantity"] > 0
    return data


class ProductCatalog:
    def __init__(self, db):
        self.db = db
        self.products = db["product"]

    def list(
        self,
        brand: Optional[str] = None,
        material: Optional[str] = None,
        search: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        featured: Optional[bool] = None,
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"in_stock": True}
        if brand:
            query["brand"] = brand
        if material:
            query["material"] = material
        if featured is not None:
            query["featured"] = featured
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
                {"brand": {"$regex": pattern, "$options": "i"}},
                {"model": {"$regex": pattern, "$options": "i"}},
            ]
        items = []
        for p in self.products.find(query).sort([("created_at", -1)]):
            # prices are stored as strings, so range filters compare in Python
            price = Decimal(p["price"])
            if min_price is not None and price < min_price:
                continue
            if max_price is not None and price > max_price:
                continue
            items.append(serialize_product(p))
        return items

    def featured(self) -> List[Dict[str, Any]]:
        cursor = self.products.find({"featured": True, "in_stock": True}).sort([("rating", -1)]).limit(FEATURED_LIMIT)
        return [serialize_product(p) for p in cursor]

    def get(self, product_id: str) -> Dict[str, Any]:
        p = self.products.find_one({"_id": _product_oid(product_id)})
        if not p:
            raise errors.NotFoundError("Product not found")
        return serialize_product(p)

    def create(self, body: Product) -> Dict[str, Any]:
        doc = _product_fields(body.model_dump())
        doc.update({"rating": 0, "num_reviews": 0})
        pid = create_document(self.db, "product", doc)
        return self.get(pid)

    def update(self, product_id: str, body: ProductUpdate) -> Dict[str, Any]:
        update = _product_fields(body.model_dump(exclude_none=True))
        update["updated_at"] = datetime.now(timezone.utc)
        res = self.products.update_one({"_id": _product_oid(product_id)}, {"$set": update})
        if res.matched_count == 0:
            raise errors.NotFoundError("Product not found")
        return self.get(product_id)

    def delete(self, product_id: str) -> None:
        res = self.products.delete_one({"_id": _product_oid(product_id)})
        if res.deleted_count == 0:
            raise errors.NotFoundError("Product not found")

    def reviews(self, product_id: str) -> List[Dict[str, Any]]:
        result = []
        for r in self.db["review"].find({"product_id": product_id}).sort([("created_at", -1)]):
            r["id"] = str(r.pop("_id"))
            result.append(r)
        return result

    def add_review(self, product_id: str, user_id: str, body: ReviewCreate) -> Dict[str, Any]:
        """Store a review and refresh the product's average rating."""
        self.get(product_id)
        doc = {
            "product_id": product_id,
            "user_id": user_id,
            "rating": body.rating,
            "title": body.title,
            "comment": body.comment,
            "verified": True,
            "created_at": datetime.now(timezone.utc),
        }
        try:
            res = self.db["review"].insert_one(doc)
        except DuplicateKeyError:
            raise errors.ConflictError("You already reviewed this product")
        pipeline = [
            {"$match": {"product_id": product_id}},
            {"$group": {"_id": "$product_id", "avg": {"$avg": "$rating"}, "count": {"$sum": 1}}},
        ]
        agg = list(self.db["review"].aggregate(pipeline))
        if agg:
            self.products.update_one(
                {"_id": ObjectId(product_id)},
                {"$set": {"rating": round(agg[0]["avg"], 2), "num_reviews": agg[0]["count"]}},
            )
        doc["id"] = str(res.inserted_id)
        doc.pop("_id", None)
        return doc
