"""
MongoDB access

A single pymongo client is created at import time. pymongo connects lazily,
so importing this module never blocks on the server. Routes receive the
database through the ``get_db`` dependency, which tests override.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ASCENDING, DESCENDING, TEXT, MongoClient
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

client = MongoClient(config.DATABASE_URL, tz_aware=True, serverSelectionTimeoutMS=5000)
db = client[config.DATABASE_NAME]


def get_db() -> Database:
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the driver."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: str, label: str = "id") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return ObjectId(value)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.get("_id")
    if isinstance(_id, ObjectId):
        doc["id"] = str(_id)
        del doc["_id"]
    # Convert ObjectId in nested fields if any
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def create_document(database: Database, collection_name: str, data: Dict[str, Any]) -> str:
    now = utcnow()
    data = {**data, "created_at": now, "updated_at": now}
    result = database[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(
    database: Database,
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize_doc(d) for d in cursor]


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("role")
    database["product"].create_index("slug", unique=True, sparse=True)
    database["product"].create_index([("category", ASCENDING), ("brand", ASCENDING)])
    database["product"].create_index([("sales.total_sold", DESCENDING)])
    database["product"].create_index(
        [("name", TEXT), ("description", TEXT), ("category", TEXT), ("brand", TEXT)],
        name="product_text",
    )
    database["cart"].create_index("user_id", sparse=True)
    database["cart"].create_index("session_id", sparse=True)
    database["cart"].create_index("expires_at", expireAfterSeconds=0)
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("status")
    database["order"].create_index("gdpr.data_retention_until")
    database["coupon"].create_index("code", unique=True)
    logger.info("MongoDB indexes ensured on %s", database.name)
