"""
MongoDB access for the storefront.

Connection settings come from DATABASE_URL and DATABASE_NAME. When either is
missing ``db`` stays None and the API reports the database as unavailable.
"""
import os
from datetime import datetime, timezone
from typing import Union

from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import errors

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def ensure_indexes(database) -> None:
    # (user, product) uniqueness backs the cart merge upsert
    database["cart_item"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    database["coupon"].create_index("code", unique=True)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order_item"].create_index("order_id")
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    res = database[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_db():
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise errors.DependencyError("Database not configured")
    return db
