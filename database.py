"""
MongoDB access helpers

`db` is None until DATABASE_URL is configured. Collection names are the
lowercase schema class names.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

from settings import DATABASE_NAME, DATABASE_URL

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]
    logger.info("Connected to MongoDB database %s", DATABASE_NAME)


def get_db():
    if db is None:
        raise RuntimeError("Database is not configured (set DATABASE_URL)")
    return db


def use_database(database) -> None:
    """Swap the active database handle (used by tests and scripts)."""
    global db
    db = database


def to_object_id(value: Union[str, ObjectId, None]) -> Optional[ObjectId]:
    """Parse an id, returning None when it is not a valid ObjectId."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data = data.model_dump()
    doc = dict(data)
    now = datetime.utcnow()
    if doc.get("createdAt") is None:
        doc["createdAt"] = now
    doc["updatedAt"] = now
    result = get_db()[collection_name].insert_one(doc)
    return str(result.inserted_id)


def update_document(collection_name: str, doc_id: Union[str, ObjectId], update: Dict[str, Any]) -> Optional[dict]:
    oid = to_object_id(doc_id)
    if oid is None:
        return None
    update = {**update, "updatedAt": datetime.utcnow()}
    get_db()[collection_name].update_one({"_id": oid}, {"$set": update})
    return get_db()[collection_name].find_one({"_id": oid})


def serialize_doc(doc: Any) -> Any:
    """Convert a MongoDB document into JSON-friendly data (`_id` becomes `id`)."""
    if isinstance(doc, list):
        return [serialize_doc(v) for v in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if not isinstance(doc, dict):
        return doc
    d = {}
    for k, v in doc.items():
        if k == "_id":
            d["id"] = str(v)
        elif k == "password_hash":
            continue
        else:
            d[k] = serialize_doc(v)
    return d
