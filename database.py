"""MongoDB access helpers.

Collections are named after the entity (``user``, ``project``, ``milestone``,
``task``, ``subtask``, ``task_request``, ``activity``).
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings
from errors import ValidationError

logger = logging.getLogger(__name__)

# Fields that must never leave the API.
PRIVATE_FIELDS = ("password",)


def connect(settings: Settings) -> Database:
    client = MongoClient(settings.database_url, tz_aware=True)
    logger.info("Using MongoDB database %s", settings.database_name)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    db["user"].create_index("email", unique=True)
    db["project"].create_index("customer_id")
    db["project"].create_index("assigned_team")
    db["project"].create_index([("created_at", DESCENDING)])
    db["milestone"].create_index([("project_id", ASCENDING), ("sequence", ASCENDING)], unique=True)
    db["task"].create_index("milestone_id")
    db["task"].create_index([("project_id", ASCENDING), ("status", ASCENDING)])
    db["task"].create_index("assigned_to")
    db["subtask"].create_index("task_id")
    db["activity"].create_index([("project_id", ASCENDING), ("created_at", DESCENDING)])


def now() -> datetime:
    return datetime.now(timezone.utc)


def oid(value: Any) -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except Exception:
        raise ValidationError("Invalid id")


def oids(values: Optional[List[Any]]) -> List[ObjectId]:
    return [oid(v) for v in (values or [])]


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return serialize(value)
    return value


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k in PRIVATE_FIELDS:
        d.pop(k, None)
    return {k: _plain(v) for k, v in d.items()}


def create_document(db: Database, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
    stamp = now()
    payload = {**data, "created_at": stamp, "updated_at": stamp}
    res = db[collection].insert_one(payload)
    payload["_id"] = res.inserted_id
    return payload


def page_params(page: int, limit: int) -> Tuple[int, int]:
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), 100)
    return page, limit


def get_documents(
    db: Database,
    collection: str,
    query: Dict[str, Any],
    page: int = 1,
    limit: int = 10,
    sort: Optional[List[Tuple[str, int]]] = None,
) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    """Return one page of documents plus the pagination block."""
    page, limit = page_params(page, limit)
    cursor = db[collection].find(query)
    if sort:
        cursor = cursor.sort(sort)
    docs = list(cursor.skip((page - 1) * limit).limit(limit))
    return docs, pagination_block(page, limit, db[collection].count_documents(query))


def pagination_block(page: int, limit: int, total: int) -> Dict[str, int]:
    return {
        "current": page,
        "pages": math.ceil(total / limit) if total else 0,
        "total": total,
        "limit": limit,
    }


def paginate(items: List[Any], page: int = 1, limit: int = 10) -> Tuple[List[Any], Dict[str, int]]:
    """Page an already-built list the same way ``get_documents`` pages a query."""
    page, limit = page_params(page, limit)
    start = (page - 1) * limit
    return items[start:start + limit], pagination_block(page, limit, len(items))


def sort_spec(sort_by: str, sort_order: str, allowed: Tuple[str, ...]) -> List[Tuple[str, int]]:
    if sort_by not in allowed:
        raise ValidationError(f"Cannot sort by '{sort_by}'")
    return [(sort_by, DESCENDING if sort_order == "desc" else ASCENDING)]
