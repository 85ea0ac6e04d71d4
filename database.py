"""
Database helpers

A single MongoClient is created at import time. pymongo connects lazily, so
importing this module never blocks on the server. Route handlers receive the
database through the `get_db` dependency so tests can swap it out.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client = MongoClient(DATABASE_URL)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = now_utc()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def parse_object_id(value: str, label: str = "id") -> ObjectId:
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(value)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    # Convert ObjectId in nested fields too
    for k, v in list(doc.items()):
        doc[k] = _serialize_value(v)
    return doc


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["wishlist"].create_index("user_id", unique=True)
    database["product"].create_index([("style_id", ASCENDING), ("storefront", ASCENDING)])
    database["product"].create_index("storefront")
    database["product"].create_index(
        "packaging_box_id",
        unique=True,
        partialFilterExpression={"packaging_box_id": {"$exists": True}},
    )
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("brand", ASCENDING), ("status", ASCENDING)])
    # at most one open draft per user
    database["hamper"].create_index(
        "user_id",
        unique=True,
        partialFilterExpression={"is_complete": False},
    )
    database["coupon"].create_index("code", unique=True)
    database["notification"].create_index([("recipient_users", ASCENDING), ("created_at", DESCENDING)])
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["brand"].create_index("permanent_name", unique=True)
