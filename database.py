"""
MongoDB access shared by the route modules.

`db` is None when DATABASE_URL is not set; the app still boots so /test can
report the missing configuration.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config

logger = logging.getLogger(__name__)

client = MongoClient(config.DATABASE_URL) if config.DATABASE_URL else None
db = client[config.DATABASE_NAME] if client is not None else None


def utcnow() -> datetime:
    # pymongo hands back naive UTC datetimes, so we store them that way too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    res = db[collection_name].insert_one(doc)
    return str(res.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[List] = None, skip: int = 0, limit: int = 0) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(d) for d in cursor]


def ensure_indexes():
    db["user"].create_index([("email", ASCENDING)], unique=True)
    db["product"].create_index([("slug", ASCENDING)], unique=True)
    db["product"].create_index([("sku", ASCENDING)], unique=True)
    db["product"].create_index([("category", ASCENDING), ("gender", ASCENDING)])
    db["order"].create_index([("order_number", ASCENDING)], unique=True)
    db["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    db["order"].create_index([("order_status", ASCENDING)])
    db["order"].create_index([("payment_status", ASCENDING)])
    db["order"].create_index([("payment_intent_id", ASCENDING)])
    db["review"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["review"].create_index([("product_id", ASCENDING), ("status", ASCENDING)])
    db["wishlist"].create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    db["wishlist"].create_index([("user_id", ASCENDING), ("added_at", DESCENDING)])
    db["cache"].create_index([("expires_at", ASCENDING)], expireAfterSeconds=0)
    logger.info("Database indexes ensured")
