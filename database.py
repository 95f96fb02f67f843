"""
Database helpers

One pymongo client per process. Collection names are the lowercased schema
class names (User -> "user"). Rows read back from the store go through
`parse_document` so handlers only ever see validated records.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Type, TypeVar

import pydantic
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from errors import NotFoundError, UpstreamError

logger = logging.getLogger(__name__)

settings = get_settings()
client = MongoClient(settings.database_url)
db = client[settings.database_name]

ModelT = TypeVar("ModelT", bound=pydantic.BaseModel)


def get_db() -> Database:
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(id_str: str, what: str = "Document") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{what} not found")


def create_document(database: Database, collection_name: str, data: pydantic.BaseModel | Dict[str, Any]) -> str:
    if isinstance(data, pydantic.BaseModel):
        doc = data.model_dump(exclude={"id"})
    else:
        doc = dict(data)
    stamp = now()
    if doc.get("created_at") is None:
        doc["created_at"] = stamp
    doc["updated_at"] = stamp
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def parse_document(model: Type[ModelT], doc: Dict[str, Any]) -> ModelT:
    data = dict(doc)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        logger.error("Malformed %s row %s: %s", model.__name__, data.get("id"), e)
        raise UpstreamError()


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["order"].create_index("customer_id")
    database["order"].create_index("status")
    database["order"].create_index([("created_at", DESCENDING)])
    database["payment"].create_index("transaction_id", unique=True)
    database["payment"].create_index("order_id")
    database["chat_message"].create_index([("customer_id", ASCENDING), ("created_at", ASCENDING)])
    database["chat_message"].create_index([("created_at", DESCENDING)])
    database["chat_thread"].create_index([("last_message_at", DESCENDING)])
