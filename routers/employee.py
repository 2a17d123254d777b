"""Views for employees: their projects and the tasks assigned to them."""
import re
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from access import accessible_child, is_assignee, project_scope
from database import get_documents, oid, paginate, serialize, sort_spec
from deps import get_db, get_rollup, require_roles
from envelope import ok
from errors import NotFound
from progress import ProgressRollup
from routers.activities import activity_scope, with_actors
from routers.customer import entity_files
from routers.projects import populate_project
from routers.tasks import apply_task_update
from schemas import StatusUpdate
from workitems import overdue_count, status_counts

router = APIRouter(prefix="/api/employee", tags=["employee"])

employee_only = require_roles("employee")


def _assigned(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"assigned_to": oid(user["id"])}


@router.get("/dashboard")
async def dashboard(user=Depends(employee_only), db: Database = Depends(get_db)):
    mine = _assigned(user)
    tasks = status_counts(db, "task", mine)
    tasks["overdue"] = overdue_count(db, "task", mine)
    subtasks = status_counts(db, "subtask", mine)
    projects = list(db["project"].find(project_scope(user)).sort("updated_at", DESCENDING))
    upcoming = (
        db["task"].find({**mine, "status": {"$in": ["pending", "in-progress"]}})
        .sort("due_date", ASCENDING)
        .limit(5)
    )
    return ok({
        "statistics": {"projects": len(projects), "tasks": tasks, "subtasks": subtasks},
        "projects": [populate_project(db, p) for p in projects[:5]],
        "upcoming_tasks": [serialize(t) for t in upcoming],
    })


@router.get("/projects")
async def my_projects(
    status: str = "all",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(employee_only),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = dict(project_scope(user))
    if status != "all":
        query["status"] = status
    projects, pagination = get_documents(db, "project", query, page, limit, [("created_at", DESCENDING)])
    out = []
    for project in projects:
        item = populate_project(db, project)
        item["my_task_count"] = db["task"].count_documents({"project_id": project["_id"], **_assigned(user)})
        out.append(item)
    return ok(out, pagination=pagination)


@router.get("/tasks")
async def my_tasks(
    status: str = "all",
    priority: str = "all",
    project_id: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "due_date",
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    user=Depends(employee_only),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = _assigned(user)
    if status != "all":
        query["status"] = status
    if priority != "all":
        query["priority"] = priority
    if project_id:
        query["project_id"] = oid(project_id)
    if search:
        query["title"] = {"$regex": re.escape(search), "$options": "i"}
    sort = sort_spec(sort_by, sort_order, ("due_date", "created_at", "priority", "status", "title"))
    tasks, pagination = get_documents(db, "task", query, page, limit, sort)

    names = {p["_id"]: p.get("name") for p in db["project"].find({"_id": {"$in": [t["project_id"] for t in tasks]}}, {"name": 1})}
    out = []
    for task in tasks:
        item = serialize(task)
        item["project_name"] = names.get(task["project_id"])
        out.append(item)
    return ok(out, pagination=pagination)


@router.get("/tasks/{task_id}")
async def my_task(task_id: str, user=Depends(employee_only), db: Database = Depends(get_db)):
    task, project = accessible_child(db, "task", task_id, user, "Task")
    if not is_assignee(task, user["id"]):
        raise NotFound("Task not found or not assigned to you")
    out = serialize(task)
    out["project"] = {"id": str(project["_id"]), "name": project.get("name")}
    out["milestone"] = serialize(db["milestone"].find_one({"_id": task["milestone_id"]}, {"title": 1, "sequence": 1}))
    out["subtasks"] = [
        serialize(s) for s in db["subtask"].find({"task_id": task["_id"]}).sort("sequence", ASCENDING)
    ]
    return ok(out)


@router.patch("/tasks/{task_id}/status")
async def update_my_task_status(
    task_id: str,
    body: StatusUpdate,
    user=Depends(employee_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    task, project = accessible_child(db, "task", task_id, user, "Task")
    if not is_assignee(task, user["id"]):
        raise NotFound("Task not found or not assigned to you")
    updated = apply_task_update(db, rollup, task, project, {"status": body.status}, user)
    return ok(serialize(updated), "Task status updated successfully")


@router.get("/files")
async def my_files(
    project_id: Optional[str] = None,
    task_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(employee_only),
    db: Database = Depends(get_db),
):
    """Files on work assigned to me, or that I uploaded, across my projects."""
    me = oid(user["id"])
    project_ids = [p["_id"] for p in db["project"].find(project_scope(user), {"_id": 1})]
    if project_id:
        project_ids = [pid for pid in project_ids if pid == oid(project_id)]
    mine = {"$or": [{"assigned_to": me}, {"attachments.uploaded_by": me}]}

    files = []
    collections = ("task", "subtask") if task_id else ("milestone", "task", "subtask")
    for collection in collections:
        query: Dict[str, Any] = {"project_id": {"$in": project_ids}, **mine}
        if task_id:
            query["_id" if collection == "task" else "task_id"] = oid(task_id)
        for doc in db[collection].find(query, {"title": 1, "attachments": 1}):
            files += entity_files(doc, collection, doc.get("title"))
    files.sort(key=lambda f: f.get("uploaded_at") or "", reverse=True)
    page_items, pagination = paginate(files, page, limit)
    return ok({"files": page_items, "total": len(files)}, pagination=pagination)


@router.get("/activity")
async def my_activity(
    type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(employee_only),
    db: Database = Depends(get_db),
):
    query = activity_scope(db, user)
    if type:
        query["type"] = type
    docs, pagination = get_documents(db, "activity", query, page, limit, [("created_at", DESCENDING)])
    return ok(with_actors(db, docs), pagination=pagination)
