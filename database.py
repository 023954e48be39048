"""
MongoDB access helpers.

Each Pydantic model in schemas.py maps to a collection named after the
lowercased class name (School -> "school"). `db` is None when the
connection settings are missing so that the app can still boot and report
its status through /test and /health.
"""
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

db = None
if DATABASE_URL and DATABASE_NAME:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]

_OBJECT_ID_RE = re.compile(r"^[a-fA-F0-9]{24}$")


class DatabaseUnavailable(RuntimeError):
    pass


def require_db():
    if db is None:
        raise DatabaseUnavailable("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id as a string."""
    database = require_db()
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
    database = require_db()
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def is_object_id(value: Any) -> bool:
    return isinstance(value, str) and bool(_OBJECT_ID_RE.match(value))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive datetimes that are already UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a raw document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if not doc:
        return doc
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        elif isinstance(value, datetime):
            out[key] = as_utc(value)
        elif isinstance(value, dict):
            out[key] = serialize(value)
        elif isinstance(value, list):
            out[key] = [serialize(v) if isinstance(v, dict) else v for v in value]
        else:
            out[key] = value
    return out


def ensure_indexes(database=None) -> None:
    database = database if database is not None else require_db()
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["session"].create_index([("token", ASCENDING)], unique=True)
    database["school"].create_index([("name", ASCENDING)], unique=True)
    database["school"].create_index([("slug", ASCENDING)], unique=True)
    database["school"].create_index([("status", ASCENDING), ("featured", DESCENDING)])
    database["school"].create_index([("adopters.userId", ASCENDING)])
    database["school"].create_index([("adoptionCount", DESCENDING)])
    database["adoption"].create_index([("userId", ASCENDING), ("schoolId", ASCENDING)], unique=True)
    database["journal"].create_index([("userId", ASCENDING), ("date", DESCENDING)])
    database["prayerrequest"].create_index([("schoolId", ASCENDING), ("created_at", DESCENDING)])
    database["ratelimit"].create_index([("key", ASCENDING)], unique=True)
    database["ratelimit"].create_index([("expires", ASCENDING)], expireAfterSeconds=0)
