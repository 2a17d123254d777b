import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from pymongo import ASCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from access import accessible_child, accessible_project
from activity import activity
from config import Settings
from database import create_document, now, oid, serialize
from deps import get_current_user, get_db, get_rollup, get_settings, get_storage, require_roles
from effects import run_side_effects
from envelope import ok
from errors import ValidationError
from progress import ProgressRollup
from routers.projects import user_summaries
from schemas import MilestoneCreate, MilestoneUpdate
from storage import StorageBackend
from subresources import blob_cleanup, read_payload, store_uploads
from workitems import completion_fields, validate_assignees

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/milestones", tags=["milestones"])

pm_only = require_roles("pm")


def ensure_unique_sequence(db: Database, project_id: Any, sequence: int, exclude_id: Optional[Any] = None) -> None:
    query: Dict[str, Any] = {"project_id": oid(project_id), "sequence": sequence}
    if exclude_id is not None:
        query["_id"] = {"$ne": oid(exclude_id)}
    if db["milestone"].find_one(query, {"_id": 1}):
        raise ValidationError(f"Milestone with sequence number {sequence} already exists in this project")


def project_brief(db: Database, project_id: Any) -> Optional[Dict[str, Any]]:
    project = db["project"].find_one({"_id": oid(project_id)}, {"name": 1, "progress": 1})
    return serialize(project)


@router.post("", status_code=201)
async def create_milestone(
    request: Request,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
    storage: StorageBackend = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    body, files = await read_payload(request, MilestoneCreate)
    project = accessible_project(db, body.project_id, user)
    ensure_unique_sequence(db, project["_id"], body.sequence)
    assigned = validate_assignees(db, project, body.assigned_to)
    attachments = await store_uploads(storage, settings, files, user["id"], f"milestones/{project['_id']}")

    payload = {
        "project_id": project["_id"],
        "title": body.title,
        "description": body.description,
        "sequence": body.sequence,
        "due_date": body.due_date,
        "status": body.status,
        "priority": body.priority,
        "assigned_to": assigned,
        "progress": 0,
        "completed_at": None,
        "completed_by": None,
        "comments": [],
        "attachments": attachments,
        "created_by": oid(user["id"]),
    }
    payload.update(completion_fields(None, body.status, user["id"]))
    try:
        milestone = create_document(db, "milestone", payload)
    except DuplicateKeyError:
        run_side_effects(blob_cleanup(storage, [payload]))
        raise ValidationError(f"Milestone with sequence number {body.sequence} already exists in this project")

    rollup.on_milestone_saved(milestone)
    effects = [
        activity(db, "milestone_created", user["id"], project_id=project["_id"], target_type="milestone",
                 target_id=milestone["_id"], metadata={"title": milestone["title"]}),
    ]
    effects += [
        activity(db, "file_uploaded", user["id"], project_id=project["_id"], target_type="milestone",
                 target_id=milestone["_id"], metadata={"filename": a["original_name"], "size": a["size"]})
        for a in attachments
    ]
    run_side_effects(effects)
    milestone = db["milestone"].find_one({"_id": milestone["_id"]})
    return ok(
        {"milestone": serialize(milestone), "project": project_brief(db, project["_id"])},
        "Milestone created successfully",
    )


@router.get("/project/{project_id}")
async def list_project_milestones(
    project_id: str,
    status: Optional[str] = None,
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
):
    project = accessible_project(db, project_id, user)
    query: Dict[str, Any] = {"project_id": project["_id"]}
    if status:
        query["status"] = status
    milestones = db["milestone"].find(query).sort("sequence", ASCENDING)
    return ok([serialize(m) for m in milestones])


@router.get("/team/{project_id}")
async def milestone_team(project_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    project = accessible_project(db, project_id, user)
    return ok(user_summaries(db, project.get("assigned_team", [])))


@router.get("/{milestone_id}")
async def get_milestone(milestone_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    milestone, project = accessible_child(db, "milestone", milestone_id, user, "Milestone")
    out = serialize(milestone)
    out["task_count"] = db["task"].count_documents({"milestone_id": milestone["_id"]})
    out["completed_task_count"] = db["task"].count_documents({"milestone_id": milestone["_id"], "status": "completed"})
    out["project"] = project_brief(db, project["_id"])
    return ok(out)


@router.put("/{milestone_id}")
async def update_milestone(
    milestone_id: str,
    body: MilestoneUpdate,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    milestone, project = accessible_child(db, "milestone", milestone_id, user, "Milestone")
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if "sequence" in fields and fields["sequence"] != milestone["sequence"]:
        ensure_unique_sequence(db, project["_id"], fields["sequence"], exclude_id=milestone["_id"])
    if "assigned_to" in fields:
        fields["assigned_to"] = validate_assignees(db, project, fields["assigned_to"])
    if "status" in fields:
        fields.update(completion_fields(milestone.get("status"), fields["status"], user["id"]))
    fields["updated_at"] = now()
    try:
        db["milestone"].update_one({"_id": milestone["_id"]}, {"$set": fields})
    except DuplicateKeyError:
        raise ValidationError(f"Milestone with sequence number {fields['sequence']} already exists in this project")

    rollup.on_milestone_saved(milestone)
    kind, metadata = "milestone_updated", {"title": fields.get("title", milestone["title"])}
    if "status" in fields and fields["status"] != milestone.get("status"):
        kind = "milestone_status_changed"
        metadata.update({"old_status": milestone.get("status"), "new_status": fields["status"]})
    run_side_effects([
        activity(db, kind, user["id"], project_id=project["_id"], target_type="milestone",
                 target_id=milestone["_id"], metadata=metadata),
    ])
    return ok(
        {
            "milestone": serialize(db["milestone"].find_one({"_id": milestone["_id"]})),
            "project": project_brief(db, project["_id"]),
        },
        "Milestone updated successfully",
    )


@router.delete("/{milestone_id}")
async def delete_milestone(
    milestone_id: str,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
    storage: StorageBackend = Depends(get_storage),
):
    milestone, project = accessible_child(db, "milestone", milestone_id, user, "Milestone")
    tasks = list(db["task"].find({"milestone_id": milestone["_id"]}, {"attachments": 1}))
    task_ids = [t["_id"] for t in tasks]
    subtasks = list(db["subtask"].find({"task_id": {"$in": task_ids}}, {"attachments": 1}))
    effects = blob_cleanup(storage, [milestone, *tasks, *subtasks])

    db["subtask"].delete_many({"task_id": {"$in": task_ids}})
    db["task"].delete_many({"milestone_id": milestone["_id"]})
    db["milestone"].delete_one({"_id": milestone["_id"]})
    rollup.on_milestone_deleted(project["_id"])

    effects.append(
        activity(db, "milestone_deleted", user["id"], project_id=project["_id"], target_type="milestone",
                 target_id=milestone["_id"], metadata={"title": milestone["title"], "tasks_removed": len(task_ids)}),
    )
    run_side_effects(effects)
    return ok({"project": project_brief(db, project["_id"])}, "Milestone deleted successfully")
