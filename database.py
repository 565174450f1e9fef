"""
MongoDB access for the storefront.

`db` is the process-wide Database handle. It is built by `connect()` at
startup and may be swapped for another handle (tests use mongomock).
"""
import logging
import time
from datetime import datetime
from typing import Callable, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from errors import InvalidInput, ServiceUnavailable

log = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None


def connect(url: Optional[str] = None, name: Optional[str] = None,
            attempts: int = config.DB_CONNECT_ATTEMPTS,
            backoff: float = config.DB_CONNECT_BACKOFF) -> Optional[Database]:
    """Connect and ping, retrying with exponential backoff. Reuses a live handle."""
    global client, db
    if db is not None:
        return db
    url = url or config.DATABASE_URL
    name = name or config.DATABASE_NAME
    if not url or not name:
        log.warning("DATABASE_URL or DATABASE_NAME not set; running without a database")
        return None

    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            log.info("Connecting to MongoDB (attempt %d/%d)", attempt, attempts)
            candidate = MongoClient(url, serverSelectionTimeoutMS=5000, retryWrites=True)
            candidate.admin.command("ping")
            client = candidate
            db = candidate[name]
            log.info("MongoDB connected, database %s", name)
            return db
        except PyMongoError as e:
            last_error = e
            log.error("MongoDB connection attempt %d failed: %s", attempt, e)
            if attempt < attempts:
                time.sleep(backoff * (2 ** (attempt - 1)))
    raise ServiceUnavailable(f"Database connection failed after {attempts} attempts: {last_error}")


def close():
    global client, db
    if client is not None:
        client.close()
        log.info("MongoDB connection closed")
    client = None
    db = None


def ping() -> bool:
    if db is None:
        return False
    try:
        db.command("ping")
        return True
    except PyMongoError as e:
        log.warning("Database ping failed: %s", e)
        return False


def collection(name: str):
    if db is None:
        raise ServiceUnavailable("Database not available")
    return db[name]


def with_retry(operation: Callable, attempts: int = 2, delay: float = 0.5):
    """Run a database operation, retrying on driver errors."""
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except PyMongoError as e:
            log.error("Database operation attempt %d failed: %s", attempt, e)
            if attempt == attempts:
                raise ServiceUnavailable(
                    f"Database operation failed after {attempts} attempts: {e}"
                )
            time.sleep(delay)


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document, stamping createdAt/updatedAt. Returns the new id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.utcnow()
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    result = collection(collection_name).insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort=None, skip: int = 0):
    cursor = collection(collection_name).find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if skip:
        cursor = cursor.skip(skip)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def oid(id_str: str, label: str = "id") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise InvalidInput(f"Invalid {label}")


def serialize(doc):
    """Replace `_id` with a string `id` and stringify nested ObjectIds."""
    if doc is None:
        return None
    out = {}
    for key, value in doc.items():
        if key == "_id":
            out["id"] = str(value)
        elif isinstance(value, ObjectId):
            out[key] = str(value)
        elif isinstance(value, dict):
            out[key] = serialize(value)
        elif isinstance(value, list):
            out[key] = [serialize(v) if isinstance(v, dict) else (str(v) if isinstance(v, ObjectId) else v) for v in value]
        else:
            out[key] = value
    return out


def paginate(page: int, limit: int, total: int) -> dict:
    pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "hasNext": page < pages,
        "hasPrev": page > 1,
    }


def ensure_indexes():
    collection("user").create_index("email", unique=True)
    collection("product").create_index("slug", unique=True)
    collection("category").create_index("slug", unique=True)
    collection("cart").create_index("userId", unique=True)
    collection("cart").create_index("items.expiresAt")
    collection("payment").create_index("stripePaymentIntentId", unique=True)
    collection("payment").create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    collection("payment").create_index("orderId")
    collection("payment").create_index("status")
    collection("order").create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    collection("webhook_event").create_index("eventId", unique=True)
