"""
MongoDB access layer.

The client is created once at import time from DATABASE_URL / DATABASE_NAME.
When either is missing ``db`` stays ``None`` and every request that needs the
database fails with a DependencyFailure.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

import config
from errors import DependencyFailure, ValidationFailed

logger = logging.getLogger(__name__)

db = None
if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]

# Collection names
USERS = "users"
MEALS = "meals"
REVIEWS = "reviews"
FAVORITES = "favorites"
ORDERS = "orders"
PAYMENTS = "payments"


def get_db():
    """FastAPI dependency returning the active database handle."""
    if db is None:
        raise DependencyFailure("Database not configured")
    return db


def create_document(collection, data, database=None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    database = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="python")
    else:
        data_dict = dict(data)
    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None, database=None) -> List[dict]:
    database = database if database is not None else get_db()
    cursor = database[collection].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database):
    database[USERS].create_index("email", unique=True)
    database[USERS].create_index("chefId", unique=True, sparse=True)
    database[FAVORITES].create_index([("userEmail", ASCENDING), ("foodId", ASCENDING)], unique=True)
    database[ORDERS].create_index("chefId")
    database[ORDERS].create_index("userEmail")
    database[REVIEWS].create_index("foodId")
    database[PAYMENTS].create_index("transactionId", unique=True)
    database[PAYMENTS].create_index("email")
    logger.info("Indexes ensured on %s", database.name)


def to_object_id(value: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationFailed(f"Invalid id: {value}")


def serialize_doc(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
        elif isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, dict):
            doc[k] = serialize_doc(v)
    return doc
