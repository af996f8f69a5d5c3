"""
MongoDB connection and generic document helpers.

``db`` is None when DATABASE_URL / DATABASE_NAME are not configured; the API
reports that through ``/test`` and answers data requests with 503.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from schemas import utcnow

logger = logging.getLogger(__name__)

HABIT_COLLECTION = "habit"
HABIT_LOG_COLLECTION = "habitlog"


def _connect() -> Optional[Database]:
    settings = get_settings()
    if not settings.database_url or not settings.database_name:
        logger.warning("DATABASE_URL / DATABASE_NAME not set, running without a database")
        return None
    client = MongoClient(
        settings.database_url,
        serverSelectionTimeoutMS=settings.mongo_timeout_ms,
        tz_aware=True,
    )
    return client[settings.database_name]


db = _connect()


def ensure_indexes(database: Database) -> None:
    database[HABIT_COLLECTION].create_index([("user_id", ASCENDING)])
    database[HABIT_LOG_COLLECTION].create_index([("user_id", ASCENDING)])
    database[HABIT_LOG_COLLECTION].create_index(
        [("habit_id", ASCENDING), ("date", ASCENDING)], unique=True
    )


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    """Mongo document -> plain dict with a string ``id`` instead of ``_id``."""
    if not doc:
        return None
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, date) and not isinstance(v, datetime):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


def create_document(
    collection_name: str,
    data: Union[BaseModel, Dict[str, Any]],
    database: Optional[Database] = None,
) -> str:
    database = db if database is None else database
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    now = utcnow()
    doc = dict(data)
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
) -> List[dict]:
    database = db if database is None else database
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
