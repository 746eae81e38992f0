"""
MongoDB access for the catalog service.

One process-wide MongoClient is created at import time when DATABASE_URI is
set. Request handlers receive the database through ``get_db`` so tests can
swap in another database object.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from errors import Fatal

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URI:
    try:
        client = MongoClient(config.DATABASE_URI, **config.MONGO_CLIENT_OPTIONS)
        db = client[config.DATABASE_NAME]
        logger.info("MongoDB client configured for database %s", config.DATABASE_NAME)
    except PyMongoError as e:
        logger.error("Failed to configure MongoDB client: %s", e)
        client = None
        db = None


def get_db() -> Database:
    if db is None:
        raise Fatal("Database is not configured")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: Any) -> Optional[ObjectId]:
    """Parse an id string, returning None when it is not a valid ObjectId."""
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(str(id_str))
    except (InvalidId, TypeError):
        return None


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    target = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now()
    data_dict.setdefault("created_at", stamp)
    data_dict.setdefault("updated_at", stamp)
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Make a stored document JSON friendly: ``_id`` becomes ``id``, ObjectIds and datetimes become strings."""
    if doc is None:
        return None
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        else:
            out[k] = _serialize_value(v)
    return out


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize_value(v) for v in value]
    return value


def ensure_indexes(database: Database) -> None:
    database["category"].create_index("slug", unique=True)
    database["category"].create_index([("parent", ASCENDING), ("level", ASCENDING)])
    database["brand"].create_index("slug", unique=True)
    database["brand"].create_index([("parent", ASCENDING), ("level", ASCENDING)])
    database["product"].create_index("slug", unique=True)
    database["product"].create_index([("primary_category_id", ASCENDING), ("featured", ASCENDING)])
    database["product"].create_index([("additional_category_ids", ASCENDING), ("featured", ASCENDING)])
    database["product"].create_index([("business_type_slugs", ASCENDING), ("status", ASCENDING)])
    database["product"].create_index([("created_at", DESCENDING)])
    database["customer"].create_index("phone", unique=True, sparse=True)
    database["customer"].create_index("email", unique=True, sparse=True)
    database["enquiry"].create_index("public_id", unique=True)
    database["enquiry"].create_index([("customer_id", ASCENDING)])
    database["enquiry"].create_index([("status", ASCENDING)])
    database["enquiryitem"].create_index([("enquiry_id", ASCENDING)])
    database["enquirymessage"].create_index([("enquiry_id", ASCENDING), ("created_at", DESCENDING)])
