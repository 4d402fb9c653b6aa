"""
MongoDB access for the TheraBook API.

The client is built once at import time from ``config`` and handed to route
handlers through the ``get_db`` dependency, so tests can swap in another
database with ``app.dependency_overrides``.
"""
import logging
from datetime import datetime, timezone
from typing import Union

from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from config import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client = None
db = None

try:
    client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=5000, tz_aware=False)
    db = client[DATABASE_NAME]
except Exception as e:
    logger.error(f"Failed to create MongoDB client: {e}")


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def ensure_indexes(database) -> None:
    """Create the unique and lookup indexes used by auth and booking."""
    database["user"].create_index([("email", ASCENDING)], unique=True)
    database["therapistprofile"].create_index([("user_id", ASCENDING)], unique=True)
    # slot_key only exists while a booking is pending/confirmed
    database["booking"].create_index([("slot_key", ASCENDING)], unique=True, sparse=True)
    database["booking"].create_index([("therapist_id", ASCENDING), ("appointment_date", ASCENDING)])
    database["booking"].create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    database["busyblock"].create_index(
        [("therapist_id", ASCENDING), ("date_key", ASCENDING), ("time", ASCENDING)], unique=True
    )


def create_document(database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a document with created/updated timestamps and return its id as a string."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc.setdefault("updated_at", now)
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)

