from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pymongo import DESCENDING
from pymongo.database import Database

from access import accessible_project, check_access, project_scope
from database import get_documents, oid, serialize
from deps import get_current_user, get_db
from envelope import ok
from errors import NotFound, PermissionDenied
from routers.projects import user_summaries

router = APIRouter(prefix="/api/activities", tags=["activities"])


def activity_scope(db: Database, user: Dict[str, Any]) -> Dict[str, Any]:
    """Activities on projects the user can see, plus their own."""
    scope = project_scope(user)
    if not scope:
        return {}
    project_ids = [p["_id"] for p in db["project"].find(scope, {"_id": 1})]
    return {"$or": [{"project_id": {"$in": project_ids}}, {"actor_id": oid(user["id"])}]}


def with_actors(db: Database, docs) -> list:
    docs = list(docs)
    actors = {a["id"]: a for a in user_summaries(db, list({d["actor_id"] for d in docs if d.get("actor_id")}))}
    out = []
    for doc in docs:
        item = serialize(doc)
        item["actor"] = actors.get(str(doc.get("actor_id")))
        out.append(item)
    return out


@router.get("")
async def list_activities(
    type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query = activity_scope(db, user)
    if type:
        query["type"] = type
    docs, pagination = get_documents(db, "activity", query, page, limit, [("created_at", DESCENDING)])
    return ok(with_actors(db, docs), pagination=pagination)


@router.get("/stats")
async def activity_stats(user=Depends(get_current_user), db: Database = Depends(get_db)):
    match = activity_scope(db, user)
    by_type: Dict[str, int] = {}
    total = 0
    for row in db["activity"].aggregate([{"$match": match}, {"$group": {"_id": "$type", "count": {"$sum": 1}}}]):
        by_type[row["_id"]] = row["count"]
        total += row["count"]
    return ok({"total": total, "by_type": by_type})


@router.get("/project/{project_id}")
async def project_activities(
    project_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    project = accessible_project(db, project_id, user)
    docs, pagination = get_documents(
        db, "activity", {"project_id": project["_id"]}, page, limit, [("created_at", DESCENDING)],
    )
    return ok(with_actors(db, docs), pagination=pagination)


@router.get("/{activity_id}")
async def get_activity(activity_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db["activity"].find_one({"_id": oid(activity_id)})
    if not doc:
        raise NotFound("Activity not found")
    project = db["project"].find_one({"_id": doc["project_id"]}) if doc.get("project_id") else None
    if user.get("role") == "pm":
        allowed = True
    elif project:
        allowed = check_access(project, user["id"], user.get("role")).allowed
    else:
        allowed = str(doc.get("actor_id")) == user["id"]
    if not allowed:
        raise PermissionDenied("Access denied to this activity")
    item = with_actors(db, [doc])[0]
    item["project"] = {"id": str(project["_id"]), "name": project.get("name")} if project else None
    return ok(item)
