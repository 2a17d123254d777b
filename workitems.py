"""Rules shared by milestones, tasks and subtasks."""
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database

from database import now, oid, oids
from errors import ValidationError

COMPLETED = "completed"


def validate_assignees(db: Database, project: Dict[str, Any], user_ids: Optional[List[Any]]) -> List[ObjectId]:
    ids = list(dict.fromkeys(oids(user_ids)))
    if not ids:
        return []
    found = db["user"].count_documents({
        "_id": {"$in": ids},
        "status": "active",
        "role": {"$in": ["employee", "pm"]},
    })
    if found != len(ids):
        raise ValidationError("One or more assigned users not found or inactive")
    team = {str(member) for member in project.get("assigned_team", [])}
    if any(str(user_id) not in team for user_id in ids):
        raise ValidationError("Assigned users must be part of the project team")
    return ids


def validate_team(db: Database, user_ids: Optional[List[Any]]) -> List[ObjectId]:
    ids = list(dict.fromkeys(oids(user_ids)))
    if not ids:
        return []
    found = db["user"].count_documents({
        "_id": {"$in": ids},
        "status": "active",
        "role": {"$in": ["employee", "pm"]},
    })
    if found != len(ids):
        raise ValidationError("Some assigned team members are invalid or inactive")
    return ids


def validate_customer(db: Database, customer_id: Any) -> ObjectId:
    customer = db["user"].find_one({"_id": oid(customer_id), "role": "customer"})
    if not customer:
        raise ValidationError("Invalid customer selected")
    return customer["_id"]


def completion_fields(old_status: Optional[str], new_status: str, user_id: Any) -> Dict[str, Any]:
    if new_status == COMPLETED and old_status != COMPLETED:
        return {"completed_at": now(), "completed_by": oid(user_id)}
    if new_status != COMPLETED and old_status == COMPLETED:
        return {"completed_at": None, "completed_by": None}
    return {}


def next_sequence(db: Database, collection: str, query: Dict[str, Any]) -> int:
    last = db[collection].find_one(query, sort=[("sequence", DESCENDING)])
    return (last.get("sequence") or 0) + 1 if last else 1


def milestone_in_project(db: Database, milestone_id: Any, project_id: Any) -> Optional[Dict[str, Any]]:
    milestone = db["milestone"].find_one({"_id": oid(milestone_id)})
    if not milestone or milestone["project_id"] != oid(project_id):
        return None
    return milestone


def status_counts(db: Database, collection: str, match: Dict[str, Any]) -> Dict[str, int]:
    counts: Dict[str, int] = {"total": 0, "pending": 0, "in-progress": 0, "completed": 0, "cancelled": 0}
    for row in db[collection].aggregate([{"$match": match}, {"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        counts[row["_id"]] = row["count"]
        counts["total"] += row["count"]
    return counts


def overdue_count(db: Database, collection: str, match: Dict[str, Any]) -> int:
    return db[collection].count_documents({
        **match,
        "due_date": {"$lt": now()},
        "status": {"$nin": [COMPLETED, "cancelled"]},
    })
