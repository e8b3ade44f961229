"""
MongoDB access helpers.

`db` is the shared database handle, or None when no DATABASE_URL is set.
Documents are plain dicts; every document written through these helpers
carries `created_at` / `updated_at` timestamps in UTC.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_URL, DATABASE_NAME

logger = logging.getLogger(__name__)

db = None
if DATABASE_URL:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Mongo hands back naive datetimes that are already UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _require_db():
    if db is None:
        raise RuntimeError("Database not available. Set DATABASE_URL.")
    return db


def to_object_id(id_str: str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def serialize(value: Any) -> Any:
    """Make a document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        out = {}
        for key, val in value.items():
            if key == "password_hash":
                continue
            out["id" if key == "_id" else key] = serialize(val)
        return out
    return value


def create_document(collection_name: str, data) -> str:
    """Insert a document and return its id as a string."""
    database = _require_db()
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = utcnow()
    doc["created_at"] = now
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict] = None,
                  limit: Optional[int] = None, sort=None) -> List[Dict]:
    database = _require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_document(collection_name: str, id_str: str) -> Optional[Dict]:
    _id = to_object_id(id_str)
    if _id is None:
        return None
    return _require_db()[collection_name].find_one({"_id": _id})


def update_document(collection_name: str, id_str: str, changes: Dict) -> Optional[Dict]:
    """Apply `$set` changes and return the updated document."""
    database = _require_db()
    _id = to_object_id(id_str)
    if _id is None:
        return None
    changes = dict(changes)
    changes["updated_at"] = utcnow()
    database[collection_name].update_one({"_id": _id}, {"$set": changes})
    return database[collection_name].find_one({"_id": _id})


def ensure_indexes():
    database = _require_db()
    database["user"].create_index("email", unique=True)
    database["coupon"].create_index("code", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["product"].create_index("category")
    database["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index("order_status")
    logger.debug("Indexes ensured on %s", database.name)
