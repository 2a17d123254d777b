import logging
import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from access import accessible_child, accessible_project, is_assignee, project_scope
from activity import activity
from config import Settings
from database import create_document, get_documents, now, oid, serialize, sort_spec
from deps import get_current_user, get_db, get_rollup, get_settings, get_storage, require_roles
from effects import SideEffect, run_side_effects
from envelope import ok
from errors import NotFound, PermissionDenied
from progress import ProgressRollup
from schemas import StatusUpdate, TaskCopy, TaskCreate, TaskUpdate
from storage import StorageBackend
from subresources import blob_cleanup, read_payload, store_uploads
from workitems import (
    completion_fields,
    milestone_in_project,
    next_sequence,
    overdue_count,
    status_counts,
    validate_assignees,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tasks", tags=["tasks"])

pm_only = require_roles("pm")


def scoped_project_ids(db: Database, user: Dict[str, Any]) -> Optional[List[Any]]:
    """Ids of the projects a user may see, or None when unrestricted."""
    scope = project_scope(user)
    if not scope:
        return None
    return [p["_id"] for p in db["project"].find(scope, {"_id": 1})]


def apply_task_update(
    db: Database,
    rollup: ProgressRollup,
    task: Dict[str, Any],
    project: Dict[str, Any],
    fields: Dict[str, Any],
    user: Dict[str, Any],
) -> Dict[str, Any]:
    """Write a task change, then fire the rollup and activity follow-ups."""
    old_status = task.get("status")
    old_milestone = task["milestone_id"]
    if "milestone_id" in fields:
        milestone = milestone_in_project(db, fields["milestone_id"], project["_id"])
        if not milestone:
            raise NotFound("Milestone not found in this project")
        fields["milestone_id"] = milestone["_id"]
    if "assigned_to" in fields:
        fields["assigned_to"] = validate_assignees(db, project, fields["assigned_to"])
    if "status" in fields:
        fields.update(completion_fields(old_status, fields["status"], user["id"]))
    fields["updated_at"] = now()
    db["task"].update_one({"_id": task["_id"]}, {"$set": fields})
    updated = db["task"].find_one({"_id": task["_id"]})

    if updated["milestone_id"] != old_milestone:
        rollup.on_task_moved(updated, old_milestone)
    else:
        rollup.on_task_status_changed(updated, old_status, updated["status"])

    effects: List[SideEffect] = []
    target = {"project_id": project["_id"], "target_type": "task", "target_id": task["_id"]}
    if updated["status"] != old_status:
        effects.append(activity(db, "task_status_changed", user["id"], **target,
                                metadata={"title": updated["title"], "old_status": old_status,
                                          "new_status": updated["status"]}))
    if "assigned_to" in fields and set(map(str, fields["assigned_to"])) != set(map(str, task.get("assigned_to", []))):
        effects.append(activity(db, "task_assigned", user["id"], **target,
                                metadata={"assigned_to": [str(a) for a in fields["assigned_to"]]}))
    if not effects:
        effects.append(activity(db, "task_updated", user["id"], **target, metadata={"title": updated["title"]}))
    run_side_effects(effects)
    return updated


@router.post("", status_code=201)
async def create_task(
    request: Request,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
    storage: StorageBackend = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    body, files = await read_payload(request, TaskCreate)
    project = accessible_project(db, body.project_id, user)
    milestone = milestone_in_project(db, body.milestone_id, project["_id"])
    if not milestone:
        raise NotFound("Milestone not found in this project")
    assigned = validate_assignees(db, project, body.assigned_to)
    attachments = await store_uploads(storage, settings, files, user["id"], f"tasks/{project['_id']}")

    payload = {
        "project_id": project["_id"],
        "milestone_id": milestone["_id"],
        "title": body.title,
        "description": body.description,
        "status": body.status,
        "priority": body.priority,
        "assigned_to": assigned,
        "due_date": body.due_date,
        "sequence": body.sequence or next_sequence(db, "task", {"milestone_id": milestone["_id"]}),
        "completed_at": None,
        "completed_by": None,
        "comments": [],
        "attachments": attachments,
        "created_by": oid(user["id"]),
    }
    payload.update(completion_fields(None, body.status, user["id"]))
    try:
        task = create_document(db, "task", payload)
    except PyMongoError:
        run_side_effects(blob_cleanup(storage, [payload]))
        raise
    rollup.on_task_created(task)

    target = {"project_id": project["_id"], "target_type": "task", "target_id": task["_id"]}
    effects = [activity(db, "task_created", user["id"], **target,
                        metadata={"title": task["title"], "assigned_to": [str(a) for a in assigned]})]
    effects += [
        activity(db, "file_uploaded", user["id"], **target, metadata={"filename": a["original_name"], "size": a["size"]})
        for a in attachments
    ]
    run_side_effects(effects)
    return ok(serialize(task), "Task created successfully")


@router.get("")
async def list_tasks(
    project_id: Optional[str] = None,
    milestone_id: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: str = "sequence",
    sort_order: str = Query("asc", pattern="^(asc|desc)$"),
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if project_id:
        query["project_id"] = accessible_project(db, project_id, user)["_id"]
    else:
        allowed = scoped_project_ids(db, user)
        if allowed is not None:
            query["project_id"] = {"$in": allowed}
    if milestone_id:
        query["milestone_id"] = oid(milestone_id)
    if status:
        query["status"] = status
    if priority:
        query["priority"] = priority
    if assigned_to:
        query["assigned_to"] = oid(assigned_to)
    if search:
        query["title"] = {"$regex": re.escape(search), "$options": "i"}
    sort = sort_spec(sort_by, sort_order, ("sequence", "created_at", "due_date", "priority", "status", "title"))
    tasks, pagination = get_documents(db, "task", query, page, limit, sort)
    return ok([serialize(t) for t in tasks], pagination=pagination)


@router.get("/stats")
async def task_stats(project_id: Optional[str] = None, user=Depends(get_current_user), db: Database = Depends(get_db)):
    match: Dict[str, Any] = {}
    if project_id:
        match["project_id"] = accessible_project(db, project_id, user)["_id"]
    else:
        allowed = scoped_project_ids(db, user)
        if allowed is not None:
            match["project_id"] = {"$in": allowed}
    result: Dict[str, int] = status_counts(db, "task", match)
    result["overdue"] = overdue_count(db, "task", match)
    return ok(result)


@router.get("/{task_id}")
async def get_task(task_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    task, project = accessible_child(db, "task", task_id, user, "Task")
    out = serialize(task)
    milestone = db["milestone"].find_one({"_id": task["milestone_id"]}, {"title": 1, "sequence": 1, "progress": 1})
    out["milestone"] = serialize(milestone)
    out["subtasks"] = [
        serialize(s) for s in db["subtask"].find({"task_id": task["_id"]}, {"title": 1, "status": 1, "sequence": 1})
        .sort("sequence", ASCENDING)
    ]
    return ok(out)


@router.put("/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    task, project = accessible_child(db, "task", task_id, user, "Task")
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if user["role"] != "pm":
        if user["role"] != "employee" or not is_assignee(task, user["id"]):
            raise PermissionDenied("Only project managers can update tasks")
        if set(fields) - {"status"}:
            raise PermissionDenied("Employees can only update task status")
    updated = apply_task_update(db, rollup, task, project, fields, user)
    return ok(serialize(updated), "Task updated successfully")


@router.patch("/{task_id}/status")
async def update_task_status(
    task_id: str,
    body: StatusUpdate,
    user=Depends(require_roles("pm", "employee")),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    task, project = accessible_child(db, "task", task_id, user, "Task")
    if user["role"] != "pm" and not is_assignee(task, user["id"]):
        raise PermissionDenied("You do not have permission to update this task")
    updated = apply_task_update(db, rollup, task, project, {"status": body.status}, user)
    return ok(serialize(updated), "Task status updated successfully")


@router.post("/{task_id}/copy", status_code=201)
async def copy_task(
    task_id: str,
    body: TaskCopy,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    original, project = accessible_child(db, "task", task_id, user, "Task")
    milestone_id = original["milestone_id"]
    if body.milestone_id:
        milestone = milestone_in_project(db, body.milestone_id, project["_id"])
        if not milestone:
            raise NotFound("Milestone not found in this project")
        milestone_id = milestone["_id"]
    copy = create_document(db, "task", {
        "project_id": project["_id"],
        "milestone_id": milestone_id,
        "title": original["title"],
        "description": original.get("description", ""),
        "status": "pending",
        "priority": original.get("priority", "normal"),
        "assigned_to": original.get("assigned_to", []),
        "due_date": original.get("due_date"),
        "sequence": next_sequence(db, "task", {"milestone_id": milestone_id}),
        "completed_at": None,
        "completed_by": None,
        "comments": [],
        "attachments": [],
        "created_by": oid(user["id"]),
        "copied_from": original["_id"],
    })
    rollup.on_task_created(copy)
    run_side_effects([
        activity(db, "task_created", user["id"], project_id=project["_id"], target_type="task",
                 target_id=copy["_id"], metadata={"title": copy["title"], "copied_from": str(original["_id"])}),
    ])
    return ok(serialize(copy), "Task copied successfully")


@router.delete("/{task_id}")
async def delete_task(
    task_id: str,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
    storage: StorageBackend = Depends(get_storage),
):
    task, project = accessible_child(db, "task", task_id, user, "Task")
    subtasks = list(db["subtask"].find({"task_id": task["_id"]}, {"attachments": 1}))
    effects = blob_cleanup(storage, [task, *subtasks])
    db["subtask"].delete_many({"task_id": task["_id"]})
    db["task"].delete_one({"_id": task["_id"]})
    rollup.on_task_deleted(task)
    effects.append(activity(db, "task_deleted", user["id"], project_id=project["_id"], target_type="task",
                            target_id=task["_id"], metadata={"title": task["title"]}))
    run_side_effects(effects)
    return ok(message="Task and all associated subtasks deleted successfully")
