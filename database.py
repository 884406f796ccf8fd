"""
MongoDB access helpers.

The database handle is created once at startup and passed to whatever needs
it; nothing in this module holds a client.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.database import Database

from errors import InvalidRequest

logger = logging.getLogger(__name__)


def connect(url: str, name: str) -> Database:
    """Open a client for ``url`` and return the ``name`` database."""
    client = MongoClient(url)
    logger.info(f"Connected to MongoDB database '{name}'")
    return client[name]


def to_object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise InvalidRequest(f"Invalid {label}: {value}")


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> dict:
    """Insert ``data`` with timestamps and return the stored document."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict["created_at"] = stamp
    data_dict["updated_at"] = stamp
    result = db[collection_name].insert_one(data_dict)
    data_dict["_id"] = result.inserted_id
    return data_dict


def get_documents(
    db: Database,
    collection_name: str,
    filter_dict: Optional[dict] = None,
    limit: Optional[int] = None,
    sort: Optional[list] = None,
) -> list[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value: Any) -> Any:
    """Recursively turn ObjectIds into strings so documents are JSON friendly."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize(v) for v in value]
    return value


def ensure_indexes(db: Database) -> None:
    db["transaction"].create_index("transaction_id", unique=True)
    db["transaction"].create_index("student.user_id")
    db["transaction"].create_index("student.course")
    db["transaction"].create_index([("transaction_date", -1)])
    db["stockentry"].create_index([("created_at", -1)])
