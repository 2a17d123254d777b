import logging
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from activity import activity
from database import create_document, get_documents, now, oid, serialize, sort_spec
from deps import get_db, require_roles
from effects import run_side_effects
from envelope import ok
from errors import NotFound, PermissionDenied, ValidationError
from schemas import UserCreate, UserUpdate
from security import generate_password, hash_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])

pm_only = require_roles("pm")


def _load(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotFound("User not found")
    return user


@router.get("")
async def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    role: str = "all",
    status: str = "all",
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    user=Depends(pm_only),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"full_name": pattern}, {"email": pattern}]
    if role != "all":
        query["role"] = role
    if status != "all":
        query["status"] = status
    sort = sort_spec(sort_by, sort_order, ("created_at", "full_name", "email", "role", "status", "last_login"))
    users, pagination = get_documents(db, "user", query, page, limit, sort)

    stats: Dict[str, int] = {
        "total": db["user"].count_documents({}),
        "active": db["user"].count_documents({"status": "active"}),
        "inactive": db["user"].count_documents({"status": "inactive"}),
    }
    for row in db["user"].aggregate([{"$group": {"_id": "$role", "count": {"$sum": 1}}}]):
        stats[row["_id"]] = row["count"]
    return ok({"users": [serialize(u) for u in users], "stats": stats}, pagination=pagination)


@router.get("/{user_id}")
async def get_user(user_id: str, user=Depends(pm_only), db: Database = Depends(get_db)):
    return ok(serialize(_load(db, user_id)))


@router.post("", status_code=201)
async def create_user(body: UserCreate, user=Depends(pm_only), db: Database = Depends(get_db)):
    email = body.email.lower()
    if db["user"].find_one({"email": email}):
        raise ValidationError("Email already registered")
    payload = body.model_dump()
    payload.update({"email": email, "password": hash_password(body.password), "last_login": None})
    try:
        doc = create_document(db, "user", payload)
    except DuplicateKeyError:
        raise ValidationError("Email already registered")
    logger.info("User %s (%s) created by %s", doc["_id"], doc["role"], user["id"])
    return ok(serialize(doc), "User created successfully")


@router.put("/{user_id}")
async def update_user(user_id: str, body: UserUpdate, user=Depends(pm_only), db: Database = Depends(get_db)):
    target = _load(db, user_id)
    update = body.model_dump(exclude_unset=True, exclude_none=True)
    is_self = str(target["_id"]) == user["id"]
    if is_self and "role" in update and update["role"] != target["role"]:
        raise PermissionDenied("You cannot change your own role")
    if is_self and update.get("status") == "inactive":
        raise PermissionDenied("You cannot deactivate your own account")
    if "email" in update:
        update["email"] = update["email"].lower()
        clash = db["user"].find_one({"email": update["email"], "_id": {"$ne": target["_id"]}})
        if clash:
            raise ValidationError("Email already registered")
    if not update:
        return ok(serialize(target))
    update["updated_at"] = now()
    db["user"].update_one({"_id": target["_id"]}, {"$set": update})

    if "role" in update and update["role"] != target["role"]:
        run_side_effects([
            activity(db, "user_role_changed", user["id"], target_type="user", target_id=target["_id"],
                     metadata={"old_role": target["role"], "new_role": update["role"]}),
        ])
    return ok(serialize(db["user"].find_one({"_id": target["_id"]})), "User updated successfully")


@router.delete("/{user_id}")
async def delete_user(user_id: str, user=Depends(pm_only), db: Database = Depends(get_db)):
    target = _load(db, user_id)
    if str(target["_id"]) == user["id"]:
        raise ValidationError("You cannot delete your own account")
    owned = db["project"].count_documents({"$or": [{"customer_id": target["_id"]}, {"project_manager_id": target["_id"]}]})
    if owned:
        raise ValidationError("User still owns or manages projects")
    db["project"].update_many({"assigned_team": target["_id"]}, {"$pull": {"assigned_team": target["_id"]}})
    db["user"].delete_one({"_id": target["_id"]})
    return ok(message="User deleted successfully")


@router.post("/{user_id}/reset-password")
async def reset_password(user_id: str, user=Depends(pm_only), db: Database = Depends(get_db)):
    target = _load(db, user_id)
    password = generate_password()
    db["user"].update_one({"_id": target["_id"]}, {"$set": {"password": hash_password(password), "updated_at": now()}})
    return ok({"temporary_password": password}, "Password reset successfully")
