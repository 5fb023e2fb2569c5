"""
Database helpers for Kennel Messenger

Each collection is named after the lowercase schema class. Handlers never
import a global client: the Database handle is created once at startup
(see main.lifespan) and passed in explicitly.
"""
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "kennel_messenger")


def connect(url: str = DATABASE_URL, name: str = DATABASE_NAME) -> Database:
    client = MongoClient(url)
    return client[name]


def ensure_indexes(db: Database) -> None:
    """Create the indexes the messaging invariants rely on."""
    db["user"].create_index("email", unique=True)
    db["user"].create_index("username", unique=True)
    db["session"].create_index("token", unique=True)
    db["dog"].create_index("slug", unique=True)
    db["dog"].create_index("breeder_id")
    # one conversation per unordered pair and listing
    db["conversation"].create_index([("participants_key", ASCENDING), ("listing_id", ASCENDING)], unique=True)
    db["conversation"].create_index([("participants", ASCENDING), ("updated_at", DESCENDING)])
    db["message"].create_index([("conversation_id", ASCENDING), ("created_at", ASCENDING), ("seq", ASCENDING)])
    db["message"].create_index([("to_user_id", ASCENDING), ("read", ASCENDING)])
    db["block"].create_index([("blocker_id", ASCENDING), ("blocked_id", ASCENDING)], unique=True)
    db["auditlog"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: Any) -> Optional[ObjectId]:
    if id_str is None:
        return None
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def create_document(db: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump(mode="json")
    else:
        data_dict = dict(data)
    now = now_utc()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_document(db: Database, collection_name: str, id_str: Any) -> Optional[Dict[str, Any]]:
    _id = to_object_id(id_str)
    if _id is None:
        return None
    return db[collection_name].find_one({"_id": _id})


def next_sequence(db: Database, name: str) -> int:
    """Atomically increment and return the named counter."""
    doc = db["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"value": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return doc["value"]
