"""
MongoDB access helpers.

Each collection is named after the lowercase schema class (Product -> "product").
Helpers take the database handle explicitly so the app and the tests can point
them at different servers.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings

logger = logging.getLogger(__name__)

DEFAULT_URL = "mongodb://localhost:27017"
DEFAULT_NAME = "storefront"

USERS = "user"
CATEGORIES = "category"
PRODUCTS = "product"
CARTS = "cart"
ORDERS = "order"


def connect(settings: Settings) -> Database:
    url = settings.database_url or DEFAULT_URL
    name = settings.database_name or DEFAULT_NAME
    # connect=False: nothing is contacted until the first query
    client = MongoClient(url, tz_aware=True, connect=False)
    logger.info("Using MongoDB database %s", name)
    return client[name]


def ensure_indexes(db: Database) -> None:
    """Create the uniqueness constraints the services rely on."""
    db[USERS].create_index("firebase_uid", unique=True)
    db[USERS].create_index("email", unique=True)
    db[CATEGORIES].create_index("name", unique=True)
    db[CATEGORIES].create_index("slug", unique=True)
    db[CATEGORIES].create_index("parent_id")
    db[PRODUCTS].create_index("slug", unique=True)
    db[PRODUCTS].create_index([("category_id", ASCENDING), ("status", ASCENDING)])
    db[CARTS].create_index("user_id", unique=True)
    db[CARTS].create_index("items.id")
    db[ORDERS].create_index("order_number", unique=True)
    db[ORDERS].create_index([("firebase_uid", ASCENDING), ("created_at", DESCENDING)])
    db[ORDERS].create_index([("status", ASCENDING), ("created_at", DESCENDING)])


# -----------------
# Small helpers
# -----------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def object_id(value: Union[str, ObjectId, None]) -> Optional[ObjectId]:
    """Parse an id from a path or body; None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    if not value:
        return None
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(db: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    else:
        data = dict(data)
    now = utcnow()
    data.setdefault("created_at", now)
    data["updated_at"] = now
    result = db[collection_name].insert_one(data)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Optional[List[Tuple[str, int]]] = None) -> List[dict]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def get_page(db: Database, collection_name: str, filter_dict: Dict[str, Any], page: int, size: int,
             sort: List[Tuple[str, int]], transform: Callable[[dict], Any]) -> Dict[str, Any]:
    """Zero-based page of documents plus the totals a client needs to page through."""
    page = max(0, page)
    size = max(1, size)
    total = db[collection_name].count_documents(filter_dict)
    cursor = db[collection_name].find(filter_dict).sort(sort).skip(page * size).limit(size)
    return {
        "content": [transform(d) for d in cursor],
        "page": page,
        "size": size,
        "total_elements": total,
        "total_pages": math.ceil(total / size) if total else 0,
    }
