"""
MongoDB access shared by the inventory and invoice modules.

Connection settings come from the environment (or a .env file):
DATABASE_URL, DATABASE_NAME and LEDGER_MAX_RETRIES.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

from errors import ConflictError, NotFoundError, ValidationError

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "5"))

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _resolve(database):
    database = db if database is None else database
    if database is None:
        raise RuntimeError("Database not configured")
    return database


def create_document(collection_name: str, data: Union[BaseModel, dict], database=None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = _resolve(database)[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  sort: Optional[List[Tuple[str, int]]] = None, database=None) -> List[dict]:
    cursor = _resolve(database)[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database=None) -> None:
    database = _resolve(database)
    database["user"].create_index("username", unique=True)
    database["warehouse"].create_index("company_id")
    database["store"].create_index("company_id")
    database["product"].create_index([("warehouse_id", ASCENDING), ("created_at", DESCENDING)])
    database["product"].create_index([("company_id", ASCENDING), ("is_box", ASCENDING), ("barcode", ASCENDING)])
    database["invoice"].create_index([("store_id", ASCENDING), ("invoice_number", DESCENDING)])
    # one open-invoice consumer per physical unit
    database["invoice_item"].create_index("barcode", unique=True)
    database["invoice_item"].create_index("invoice_id")


def to_object_id(value: Union[str, ObjectId]) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid id: {value}")


def serialize(value: Any) -> Any:
    """Make a stored document JSON friendly: `_id` becomes `id`, ObjectIds become strings."""
    if isinstance(value, dict):
        out = {}
        for key, item in value.items():
            if key == "_id":
                out["id"] = str(item)
            else:
                out[key] = serialize(item)
        return out
    if isinstance(value, list):
        return [serialize(item) for item in value]
    if isinstance(value, ObjectId):
        return str(value)
    return value


def cas_update(database, collection_name: str, doc_id: Union[str, ObjectId],
               mutate: Callable[[Dict[str, Any]], Dict[str, Any]],
               missing: str = "Document not found",
               retries: Optional[int] = None) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Optimistic read-modify-write of a single document.

    `mutate` receives the current document and returns the replacement; it
    must not modify its argument and may raise a domain error to abort.
    The write only lands if `version` is unchanged since the read, otherwise
    the document is re-read and `mutate` runs again.

    Returns (before, after).
    """
    collection = _resolve(database)[collection_name]
    oid = to_object_id(doc_id)
    attempts = LEDGER_MAX_RETRIES if retries is None else retries
    for attempt in range(1, attempts + 1):
        current = collection.find_one({"_id": oid})
        if current is None:
            raise NotFoundError(missing)
        updated = mutate(current)
        version = current.get("version", 0)
        updated["_id"] = oid
        updated["version"] = version + 1
        updated["updated_at"] = utcnow()
        if "version" in current:
            guard = {"_id": oid, "version": version}
        else:
            guard = {"_id": oid, "version": {"$exists": False}}
        result = collection.replace_one(guard, updated)
        if result.matched_count == 1:
            return current, updated
        logger.info("Version conflict on %s/%s (attempt %d of %d)", collection_name, oid, attempt, attempts)
    raise ConflictError(f"{collection_name} {oid} kept changing, please try again")
