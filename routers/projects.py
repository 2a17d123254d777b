import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

from access import accessible_project, project_scope
from activity import activity
from database import create_document, get_documents, now, oid, serialize, sort_spec
from deps import get_current_user, get_db, get_rollup, get_storage, require_roles
from effects import SideEffect, run_side_effects
from envelope import ok
from errors import NotFound
from progress import ProgressRollup
from schemas import ProjectCreate, ProjectUpdate
from storage import StorageBackend
from subresources import blob_cleanup
from workitems import validate_customer, validate_team

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects", tags=["projects"])

pm_only = require_roles("pm")

USER_SUMMARY = {"full_name": 1, "email": 1, "role": 1, "department": 1, "job_title": 1, "company": 1}


def user_summaries(db: Database, ids: List[Any]) -> List[Dict[str, Any]]:
    if not ids:
        return []
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": list(ids)}}, USER_SUMMARY)}
    return [serialize(users[i]) for i in ids if i in users]


def populate_project(db: Database, project: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(project)
    people = user_summaries(db, [project.get("customer_id"), project.get("project_manager_id")])
    by_id = {p["id"]: p for p in people}
    out["customer"] = by_id.get(str(project.get("customer_id")))
    out["project_manager"] = by_id.get(str(project.get("project_manager_id")))
    out["team"] = user_summaries(db, project.get("assigned_team", []))
    return out


def cascade_delete_project(db: Database, storage: StorageBackend, project: Dict[str, Any]) -> List[SideEffect]:
    """Remove everything below a project; returns the blob deletions to run."""
    pid = project["_id"]
    milestones = list(db["milestone"].find({"project_id": pid}, {"attachments": 1}))
    tasks = list(db["task"].find({"project_id": pid}, {"attachments": 1}))
    subtasks = list(db["subtask"].find({"project_id": pid}, {"attachments": 1}))
    effects = blob_cleanup(storage, [project, *milestones, *tasks, *subtasks])

    db["subtask"].delete_many({"project_id": pid})
    db["task"].delete_many({"project_id": pid})
    db["milestone"].delete_many({"project_id": pid})
    db["task_request"].delete_many({"project_id": pid})
    db["project"].delete_one({"_id": pid})
    logger.info(
        "Deleted project %s with %d milestones, %d tasks, %d subtasks",
        pid, len(milestones), len(tasks), len(subtasks),
    )
    return effects


@router.post("", status_code=201)
async def create_project(body: ProjectCreate, user=Depends(pm_only), db: Database = Depends(get_db)):
    customer_id = validate_customer(db, body.customer_id)
    team = validate_team(db, body.assigned_team)
    doc = create_document(db, "project", {
        "name": body.name,
        "description": body.description,
        "customer_id": customer_id,
        "project_manager_id": oid(user["id"]),
        "assigned_team": team,
        "status": body.status,
        "priority": body.priority,
        "start_date": body.start_date or now(),
        "due_date": body.due_date,
        "tags": body.tags,
        "progress": 0,
        "attachments": [],
        "created_by": oid(user["id"]),
        "last_modified_by": oid(user["id"]),
    })
    run_side_effects([
        activity(db, "project_created", user["id"], project_id=doc["_id"], target_type="project",
                 target_id=doc["_id"], metadata={"project_name": doc["name"]}),
    ])
    return ok(populate_project(db, doc), "Project created successfully")


@router.get("")
async def list_projects(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    priority: Optional[str] = None,
    customer: Optional[str] = None,
    project_manager: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: str = "created_at",
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = dict(project_scope(user))
    if status:
        query["status"] = status
    if priority:
        query["priority"] = priority
    if customer and "customer_id" not in query:
        query["customer_id"] = oid(customer)
    if project_manager:
        query["project_manager_id"] = oid(project_manager)
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"description": pattern}]
    sort = sort_spec(sort_by, sort_order, ("created_at", "updated_at", "name", "due_date", "priority", "progress", "status"))
    projects, pagination = get_documents(db, "project", query, page, limit, sort)
    return ok([populate_project(db, p) for p in projects], pagination=pagination)


@router.get("/stats")
async def project_stats(user=Depends(get_current_user), db: Database = Depends(get_db)):
    scope = project_scope(user)
    result: Dict[str, Any] = {
        "total": 0, "planning": 0, "active": 0, "on-hold": 0, "completed": 0, "cancelled": 0,
        "low": 0, "normal": 0, "high": 0, "urgent": 0, "avg_progress": 0,
    }
    for row in db["project"].aggregate([{"$match": scope}, {"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        result[row["_id"]] = row["count"]
        result["total"] += row["count"]
    for row in db["project"].aggregate([{"$match": scope}, {"$group": {"_id": "$priority", "count": {"$sum": 1}}}]):
        result[row["_id"]] = row["count"]
    avg = list(db["project"].aggregate([{"$match": scope}, {"$group": {"_id": None, "avg": {"$avg": "$progress"}}}]))
    if avg and avg[0]["avg"] is not None:
        result["avg_progress"] = round(avg[0]["avg"], 1)
    return ok(result)


@router.get("/users")
async def users_for_assignment(user=Depends(pm_only), db: Database = Depends(get_db)):
    active = {"status": "active"}
    customers = db["user"].find({**active, "role": "customer"}, USER_SUMMARY).sort("full_name", 1)
    members = db["user"].find({**active, "role": {"$in": ["employee", "pm"]}}, USER_SUMMARY).sort("full_name", 1)
    return ok({
        "customers": [serialize(u) for u in customers],
        "team_members": [serialize(u) for u in members],
    })


@router.get("/{project_id}")
async def get_project(project_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    project = accessible_project(db, project_id, user)
    out = populate_project(db, project)
    out["milestone_count"] = db["milestone"].count_documents({"project_id": project["_id"]})
    out["task_count"] = db["task"].count_documents({"project_id": project["_id"]})
    return ok(out)


@router.put("/{project_id}")
async def update_project(project_id: str, body: ProjectUpdate, user=Depends(pm_only), db: Database = Depends(get_db)):
    project = db["project"].find_one({"_id": oid(project_id)})
    if not project:
        raise NotFound("Project not found")
    fields = body.model_dump(exclude_unset=True)
    update: Dict[str, Any] = {}
    for key in ("name", "description", "priority", "status", "start_date", "due_date", "tags"):
        if key in fields and (fields[key] is not None or key == "description"):
            update[key] = fields[key]
    if fields.get("customer_id") is not None:
        update["customer_id"] = validate_customer(db, fields["customer_id"])
    if fields.get("assigned_team") is not None:
        update["assigned_team"] = validate_team(db, fields["assigned_team"])
    update.update({"last_modified_by": oid(user["id"]), "updated_at": now()})
    db["project"].update_one({"_id": project["_id"]}, {"$set": update})

    kind, metadata = "project_updated", {}
    if "status" in update and update["status"] != project.get("status"):
        kind, metadata = "project_status_changed", {"old_status": project.get("status"), "new_status": update["status"]}
    elif "assigned_team" in update and set(map(str, update["assigned_team"])) != set(map(str, project.get("assigned_team", []))):
        kind, metadata = "team_member_added", {"assigned_team": [str(m) for m in update["assigned_team"]]}
    run_side_effects([
        activity(db, kind, user["id"], project_id=project["_id"], target_type="project",
                 target_id=project["_id"], metadata=metadata),
    ])
    updated = db["project"].find_one({"_id": project["_id"]})
    return ok(populate_project(db, updated), "Project updated successfully")


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
):
    project = db["project"].find_one({"_id": oid(project_id)})
    if not project:
        raise NotFound("Project not found")
    run_side_effects(cascade_delete_project(db, storage, project))
    return ok(message="Project deleted successfully")


@router.post("/{project_id}/recalculate-progress")
async def recalculate_progress(
    project_id: str,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    project = accessible_project(db, project_id, user)
    result = rollup.recalculate_project(project["_id"])
    run_side_effects([
        activity(db, "project_progress_recalculated", user["id"], project_id=project["_id"],
                 target_type="project", target_id=project["_id"], metadata={"progress": result["project_progress"]}),
    ])
    return ok(result, "Progress recalculated")
