import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import PyMongoError

from access import accessible_child, is_assignee
from activity import activity
from config import Settings
from database import create_document, now, oid, serialize
from deps import get_current_user, get_db, get_rollup, get_settings, get_storage, require_roles
from effects import run_side_effects
from envelope import ok
from errors import PermissionDenied
from progress import ProgressRollup
from routers.tasks import scoped_project_ids
from schemas import StatusUpdate, SubtaskCreate, SubtaskUpdate
from storage import StorageBackend
from subresources import blob_cleanup, read_payload, store_uploads
from workitems import completion_fields, next_sequence, overdue_count, status_counts, validate_assignees

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/subtasks", tags=["subtasks"])

pm_only = require_roles("pm")


def _save(
    db: Database,
    rollup: ProgressRollup,
    subtask: Dict[str, Any],
    project: Dict[str, Any],
    fields: Dict[str, Any],
    user: Dict[str, Any],
) -> Dict[str, Any]:
    old_status = subtask.get("status")
    if "assigned_to" in fields:
        fields["assigned_to"] = validate_assignees(db, project, fields["assigned_to"])
    if "status" in fields:
        fields.update(completion_fields(old_status, fields["status"], user["id"]))
    fields["updated_at"] = now()
    db["subtask"].update_one({"_id": subtask["_id"]}, {"$set": fields})
    updated = db["subtask"].find_one({"_id": subtask["_id"]})
    rollup.on_subtask_status_changed(updated, old_status, updated["status"])

    kind, metadata = "subtask_updated", {"title": updated["title"]}
    if updated["status"] != old_status:
        kind = "subtask_status_changed"
        metadata.update({"old_status": old_status, "new_status": updated["status"]})
    run_side_effects([
        activity(db, kind, user["id"], project_id=project["_id"], target_type="subtask",
                 target_id=subtask["_id"], metadata=metadata),
    ])
    return updated


@router.post("", status_code=201)
async def create_subtask(
    request: Request,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    body, files = await read_payload(request, SubtaskCreate)
    task, project = accessible_child(db, "task", body.task_id, user, "Task")
    assigned = validate_assignees(db, project, body.assigned_to)
    attachments = await store_uploads(storage, settings, files, user["id"], f"subtasks/{project['_id']}")

    payload = {
        "task_id": task["_id"],
        "project_id": project["_id"],
        "customer_id": project.get("customer_id"),
        "title": body.title,
        "description": body.description,
        "status": body.status,
        "priority": body.priority,
        "assigned_to": assigned,
        "due_date": body.due_date,
        "sequence": body.sequence or next_sequence(db, "subtask", {"task_id": task["_id"]}),
        "completed_at": None,
        "completed_by": None,
        "comments": [],
        "attachments": attachments,
        "created_by": oid(user["id"]),
    }
    payload.update(completion_fields(None, body.status, user["id"]))
    try:
        subtask = create_document(db, "subtask", payload)
    except PyMongoError:
        run_side_effects(blob_cleanup(storage, [payload]))
        raise
    run_side_effects([
        activity(db, "subtask_created", user["id"], project_id=project["_id"], target_type="subtask",
                 target_id=subtask["_id"], metadata={"title": subtask["title"], "task_id": str(task["_id"])}),
    ])
    return ok(serialize(subtask), "Subtask created successfully")


@router.get("/task/{task_id}")
async def list_task_subtasks(
    task_id: str,
    status: Optional[str] = None,
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    task, _ = accessible_child(db, "task", task_id, user, "Task")
    query: Dict[str, Any] = {"task_id": task["_id"]}
    if status:
        query["status"] = status
    subtasks = db["subtask"].find(query).sort("sequence", ASCENDING)
    return ok([serialize(s) for s in subtasks])


@router.get("/stats")
async def subtask_stats(task_id: Optional[str] = None, user=Depends(get_current_user), db: Database = Depends(get_db)):
    match: Dict[str, Any] = {}
    if task_id:
        match["task_id"] = accessible_child(db, "task", task_id, user, "Task")[0]["_id"]
    elif user["role"] == "employee":
        match["assigned_to"] = oid(user["id"])
    else:
        allowed = scoped_project_ids(db, user)
        if allowed is not None:
            match["project_id"] = {"$in": allowed}
    result: Dict[str, int] = status_counts(db, "subtask", match)
    result["overdue"] = overdue_count(db, "subtask", match)
    return ok(result)


@router.get("/{subtask_id}")
async def get_subtask(subtask_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    subtask, _ = accessible_child(db, "subtask", subtask_id, user, "Subtask")
    out = serialize(subtask)
    out["task"] = serialize(db["task"].find_one({"_id": subtask["task_id"]}, {"title": 1, "status": 1, "milestone_id": 1}))
    return ok(out)


@router.put("/{subtask_id}")
async def update_subtask(
    subtask_id: str,
    body: SubtaskUpdate,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    subtask, project = accessible_child(db, "subtask", subtask_id, user, "Subtask")
    updated = _save(db, rollup, subtask, project, body.model_dump(exclude_unset=True, exclude_none=True), user)
    return ok(serialize(updated), "Subtask updated successfully")


@router.patch("/{subtask_id}/status")
async def update_subtask_status(
    subtask_id: str,
    body: StatusUpdate,
    user=Depends(require_roles("pm", "employee")),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    subtask, project = accessible_child(db, "subtask", subtask_id, user, "Subtask")
    if user["role"] != "pm" and not is_assignee(subtask, user["id"]):
        raise PermissionDenied("You do not have permission to update this subtask")
    updated = _save(db, rollup, subtask, project, {"status": body.status}, user)
    return ok(serialize(updated), "Subtask status updated successfully")


@router.post("/{subtask_id}/copy", status_code=201)
async def copy_subtask(subtask_id: str, user=Depends(pm_only), db: Database = Depends(get_db)):
    original, project = accessible_child(db, "subtask", subtask_id, user, "Subtask")
    fields = {
        k: original.get(k)
        for k in ("task_id", "project_id", "customer_id", "description", "priority", "assigned_to", "due_date")
    }
    copy = create_document(db, "subtask", {
        **fields,
        "title": f"{original['title']} (Copy)",
        "status": "pending",
        "sequence": next_sequence(db, "subtask", {"task_id": original["task_id"]}),
        "completed_at": None,
        "completed_by": None,
        "comments": [],
        "attachments": [],
        "created_by": oid(user["id"]),
        "copied_from": original["_id"],
    })
    run_side_effects([
        activity(db, "subtask_created", user["id"], project_id=project["_id"], target_type="subtask",
                 target_id=copy["_id"], metadata={"title": copy["title"], "copied_from": str(original["_id"])}),
    ])
    return ok(serialize(copy), "Subtask copied successfully")


@router.delete("/{subtask_id}")
async def delete_subtask(
    subtask_id: str,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
):
    subtask, project = accessible_child(db, "subtask", subtask_id, user, "Subtask")
    effects = blob_cleanup(storage, [subtask])
    db["subtask"].delete_one({"_id": subtask["_id"]})
    effects.append(activity(db, "subtask_deleted", user["id"], project_id=project["_id"], target_type="subtask",
                            target_id=subtask["_id"], metadata={"title": subtask["title"]}))
    run_side_effects(effects)
    return ok(message="Subtask deleted successfully")
