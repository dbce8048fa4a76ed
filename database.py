"""
MongoDB access for the marketplace service.

Collections:
- order: orders with their embedded tracking block
- product / store: review hosts with embedded review arrays
- user: accounts (read only here)

Documents that are mutated carry a `version` counter. Writes go through
`read_modify_write`, which only applies an update when the version read is
still current and re-runs the mutation otherwise.
"""
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from errors import Conflict, NotFound

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "marketplace")
MAX_WRITE_ATTEMPTS = int(os.getenv("MAX_WRITE_ATTEMPTS", "3"))

logger = structlog.get_logger(__name__)

client = MongoClient(DATABASE_URL, tz_aware=True)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def now_utc() -> datetime:
    """Current UTC time at Mongo's millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def as_utc(value: datetime) -> datetime:
    # pymongo hands back naive UTC datetimes unless the client is tz_aware
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def to_object_id(value: Any, label: str) -> ObjectId:
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFound(f"{label} not found")


def find_by_id(collection: Collection, doc_id: Any, label: str) -> Dict[str, Any]:
    doc = collection.find_one({"_id": to_object_id(doc_id, label)})
    if not doc:
        raise NotFound(f"{label} not found")
    return doc


def create_document(collection: Collection, data: Any) -> Dict[str, Any]:
    """Insert a pydantic model or dict with timestamps and an initial version."""
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = now_utc()
    doc["created_at"] = now
    doc["updated_at"] = now
    doc["version"] = 0
    res = collection.insert_one(doc)
    doc["_id"] = res.inserted_id
    return doc


def save_versioned(collection: Collection, doc: Dict[str, Any], fields: Dict[str, Any]) -> bool:
    version: Optional[int] = doc.get("version")
    query: Dict[str, Any] = {"_id": doc["_id"]}
    query["version"] = version if version is not None else {"$exists": False}
    fields = {**fields, "updated_at": now_utc()}
    res = collection.update_one(query, {"$set": fields, "$inc": {"version": 1}})
    if res.matched_count != 1:
        return False
    doc.update(fields)
    doc["version"] = (version or 0) + 1
    return True


def read_modify_write(
    collection: Collection,
    doc_id: Any,
    label: str,
    mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
) -> Dict[str, Any]:
    """Fetch a document, let `mutate` compute the fields to $set, write them back.

    `mutate` may raise; nothing is written in that case. When another writer got
    in between the read and the write, the document is re-read and `mutate` runs
    again on the fresh copy.
    """
    for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
        doc = find_by_id(collection, doc_id, label)
        fields = mutate(doc)
        if save_versioned(collection, doc, fields):
            return doc
        logger.warning("write_conflict", collection=collection.name, id=str(doc["_id"]), attempt=attempt)
    raise Conflict(f"{label} was modified concurrently, please retry")
