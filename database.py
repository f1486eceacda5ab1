"""
MongoDB access for the marketplace backend.

The client is created once from DATABASE_URL / DATABASE_NAME. Handlers get the
database handle through the `get_db` dependency so tests can swap in another
handle with `app.dependency_overrides`.
"""

import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pydantic import BaseModel
from pymongo import MongoClient

from errors import NotFound, StorageFailure

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def get_db():
    if db is None:
        raise StorageFailure("Database not available")
    return db


def utcnow() -> datetime:
    """Naive UTC now; Mongo hands datetimes back naive, so everything stored is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(value: str, label: str = "Document") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def find_by_id(database, collection_name: str, doc_id: str, label: str = "Document") -> Dict[str, Any]:
    doc = database[collection_name].find_one({"_id": to_object_id(doc_id, label)})
    if not doc:
        raise NotFound(f"{label} not found")
    return doc


def update_fields(database, collection_name: str, doc_id, updates: dict) -> None:
    updates = dict(updates)
    updates["updated_at"] = utcnow()
    database[collection_name].update_one({"_id": to_object_id(doc_id)}, {"$set": updates})


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Stringify the ObjectId so the document can be returned as JSON."""
    if doc is None:
        return None
    doc = dict(doc)
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


def serialize_many(docs) -> List[Dict[str, Any]]:
    return [serialize(d) for d in docs]


def regex_filter(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}
