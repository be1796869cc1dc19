"""
Database connection and document helpers.

The client is created once at import time from DATABASE_URL / DATABASE_NAME.
When either is missing `db` stays None and routes report the store as
unavailable instead of failing at startup.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def now() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Return value as an ObjectId, or None if it cannot be one."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document stamped with createdAt/updatedAt and return its id."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(by_alias=True)
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict["createdAt"] = stamp
    data_dict["updatedAt"] = stamp
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, newest_first: bool = False) -> List[Dict[str, Any]]:
    cursor = database[collection_name].find(filter_dict or {})
    if newest_first:
        cursor = cursor.sort("createdAt", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize_doc(doc: Any) -> Any:
    """Make a stored document JSON friendly: `_id` becomes `id`, ObjectIds and datetimes become strings."""
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = serialize_doc(v)
    return out


def ensure_indexes(database: Database) -> None:
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["product"].create_index(
        [("sellerId", ASCENDING), ("name", ASCENDING), ("category", ASCENDING)], unique=True
    )
    database["product"].create_index([("sellerId", ASCENDING), ("category", ASCENDING)])
    database["cart"].create_index([("userId", ASCENDING)], unique=True)
    database["order"].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    database["order"].create_index([("items.sellerId", ASCENDING)])
