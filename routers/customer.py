"""Read-only views for the customer portal."""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from access import accessible_project, project_scope
from database import get_documents, oid, serialize
from deps import get_db, require_roles
from envelope import ok
from routers.projects import populate_project
from workitems import overdue_count, status_counts

router = APIRouter(prefix="/api/customer", tags=["customer"])

customer_only = require_roles("customer")


def _project_ids(db: Database, user: Dict[str, Any]) -> List[Any]:
    return [p["_id"] for p in db["project"].find(project_scope(user), {"_id": 1})]


@router.get("/dashboard")
async def dashboard(user=Depends(customer_only), db: Database = Depends(get_db)):
    scope = project_scope(user)
    project_ids = _project_ids(db, user)
    in_projects = {"project_id": {"$in": project_ids}}

    projects: Dict[str, Any] = {"total": 0, "planning": 0, "active": 0, "on-hold": 0, "completed": 0, "cancelled": 0}
    for row in db["project"].aggregate([{"$match": scope}, {"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        projects[row["_id"]] = row["count"]
        projects["total"] += row["count"]
    tasks = status_counts(db, "task", in_projects)
    tasks["overdue"] = overdue_count(db, "task", in_projects)
    milestones = status_counts(db, "milestone", in_projects)

    recent_projects = db["project"].find(scope).sort("created_at", DESCENDING).limit(5)
    recent_tasks = db["task"].find(in_projects).sort("updated_at", DESCENDING).limit(5)
    pending_requests = db["task_request"].count_documents({"requested_by": oid(user["id"]), "status": "pending"})
    return ok({
        "statistics": {"projects": projects, "milestones": milestones, "tasks": tasks},
        "recent_projects": [populate_project(db, p) for p in recent_projects],
        "recent_tasks": [serialize(t) for t in recent_tasks],
        "pending_requests": pending_requests,
    })


@router.get("/projects")
async def my_projects(
    status: str = "all",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(customer_only),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = dict(project_scope(user))
    if status != "all":
        query["status"] = status
    projects, pagination = get_documents(db, "project", query, page, limit, [("created_at", DESCENDING)])
    return ok([populate_project(db, p) for p in projects], pagination=pagination)


@router.get("/projects/{project_id}")
async def project_details(project_id: str, user=Depends(customer_only), db: Database = Depends(get_db)):
    project = accessible_project(db, project_id, user)
    milestones = list(db["milestone"].find({"project_id": project["_id"]}).sort("sequence", ASCENDING))
    tasks = list(db["task"].find({"project_id": project["_id"]}).sort("sequence", ASCENDING))
    by_milestone: Dict[Any, List[Dict[str, Any]]] = {}
    for task in tasks:
        by_milestone.setdefault(task["milestone_id"], []).append(serialize(task))

    out = []
    for milestone in milestones:
        item = serialize(milestone)
        item["tasks"] = by_milestone.get(milestone["_id"], [])
        out.append(item)
    return ok({
        "project": populate_project(db, project),
        "milestones": out,
        "task_count": len(tasks),
        "completed_task_count": sum(1 for t in tasks if t.get("status") == "completed"),
    })


@router.get("/files")
async def my_files(user=Depends(customer_only), db: Database = Depends(get_db)):
    project_ids = _project_ids(db, user)
    files = []
    for project in db["project"].find({"_id": {"$in": project_ids}}, {"name": 1, "attachments": 1}):
        files += entity_files(project, "project", project.get("name"))
    for collection in ("milestone", "task", "subtask"):
        for doc in db[collection].find({"project_id": {"$in": project_ids}}, {"title": 1, "attachments": 1}):
            files += entity_files(doc, collection, doc.get("title"))
    files.sort(key=lambda f: f.get("uploaded_at") or "", reverse=True)
    return ok({"files": files, "total": len(files)})


def entity_files(doc: Dict[str, Any], entity_type: str, title: Any) -> List[Dict[str, Any]]:
    return [
        {**serialize(a), "entity_type": entity_type, "entity_id": str(doc["_id"]), "entity_title": title}
        for a in doc.get("attachments") or []
    ]
