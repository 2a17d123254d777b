"""Customer-submitted task requests and their review by project managers.

Statuses: ``pending`` -> ``approved`` | ``rejected`` (pm review) or
``cancelled`` (requesting customer). Only pending requests can change.
Approving a request creates a pending task in the requested milestone.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pymongo.database import Database

from access import accessible_project
from activity import activity
from database import create_document, get_documents, now, oid, serialize
from deps import get_current_user, get_db, get_rollup, require_roles
from effects import run_side_effects
from envelope import ok
from errors import NotFound, PermissionDenied, ValidationError
from progress import ProgressRollup
from schemas import TaskRequestCreate, TaskRequestReview, TaskRequestUpdate
from workitems import milestone_in_project, next_sequence

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/task-requests", tags=["task requests"])

customer_only = require_roles("customer")
pm_only = require_roles("pm")

PENDING = "pending"


def _editable(db: Database, request_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    doc = db["task_request"].find_one({"_id": oid(request_id), "requested_by": oid(user["id"]), "status": PENDING})
    if not doc:
        raise NotFound("Task request not found or cannot be modified")
    return doc


def _with_names(db: Database, doc: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize(doc)
    project = db["project"].find_one({"_id": doc["project_id"]}, {"name": 1})
    milestone = db["milestone"].find_one({"_id": doc["milestone_id"]}, {"title": 1})
    requester = db["user"].find_one({"_id": doc["requested_by"]}, {"full_name": 1, "email": 1})
    out["project_name"] = project.get("name") if project else None
    out["milestone_title"] = milestone.get("title") if milestone else None
    out["requested_by_user"] = serialize(requester)
    return out


@router.post("", status_code=201)
async def create_request(body: TaskRequestCreate, user=Depends(customer_only), db: Database = Depends(get_db)):
    project = accessible_project(db, body.project_id, user)
    milestone = milestone_in_project(db, body.milestone_id, project["_id"])
    if not milestone:
        raise NotFound("Milestone not found in this project")
    doc = create_document(db, "task_request", {
        "project_id": project["_id"],
        "milestone_id": milestone["_id"],
        "title": body.title,
        "description": body.description,
        "priority": body.priority,
        "due_date": body.due_date,
        "reason": body.reason,
        "status": PENDING,
        "requested_by": oid(user["id"]),
        "reviewed_by": None,
        "reviewed_at": None,
        "review_comments": None,
        "created_task_id": None,
    })
    run_side_effects([
        activity(db, "task_request_created", user["id"], project_id=project["_id"], target_type="task_request",
                 target_id=doc["_id"], metadata={"title": doc["title"], "reason": doc["reason"]}),
    ])
    return ok(_with_names(db, doc), "Task request submitted successfully")


@router.get("/mine")
async def my_requests(
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(customer_only),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {"requested_by": oid(user["id"])}
    if status:
        query["status"] = status
    docs, pagination = get_documents(db, "task_request", query, page, limit, [("created_at", -1)])
    return ok([_with_names(db, d) for d in docs], pagination=pagination)


@router.get("")
async def list_requests(
    status: Optional[str] = None,
    project_id: Optional[str] = None,
    customer: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user=Depends(pm_only),
    db: Database = Depends(get_db),
):
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if project_id:
        query["project_id"] = oid(project_id)
    if customer:
        query["requested_by"] = oid(customer)
    docs, pagination = get_documents(db, "task_request", query, page, limit, [("created_at", -1)])
    return ok([_with_names(db, d) for d in docs], pagination=pagination)


@router.get("/{request_id}")
async def get_request(request_id: str, user=Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db["task_request"].find_one({"_id": oid(request_id)})
    if not doc:
        raise NotFound("Task request not found")
    if user["role"] == "customer" and str(doc["requested_by"]) != user["id"]:
        raise PermissionDenied("Access denied")
    accessible_project(db, doc["project_id"], user)
    return ok(_with_names(db, doc))


@router.put("/{request_id}")
async def update_request(
    request_id: str,
    body: TaskRequestUpdate,
    user=Depends(customer_only),
    db: Database = Depends(get_db),
):
    doc = _editable(db, request_id, user)
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if fields:
        fields["updated_at"] = now()
        db["task_request"].update_one({"_id": doc["_id"]}, {"$set": fields})
    return ok(_with_names(db, db["task_request"].find_one({"_id": doc["_id"]})), "Task request updated successfully")


@router.delete("/{request_id}")
async def cancel_request(request_id: str, user=Depends(customer_only), db: Database = Depends(get_db)):
    doc = _editable(db, request_id, user)
    db["task_request"].update_one({"_id": doc["_id"]}, {"$set": {"status": "cancelled", "updated_at": now()}})
    return ok(message="Task request cancelled successfully")


@router.put("/{request_id}/review")
async def review_request(
    request_id: str,
    body: TaskRequestReview,
    user=Depends(pm_only),
    db: Database = Depends(get_db),
    rollup: ProgressRollup = Depends(get_rollup),
):
    doc = db["task_request"].find_one({"_id": oid(request_id)})
    if not doc:
        raise NotFound("Task request not found")
    if doc["status"] != PENDING:
        raise ValidationError("Task request has already been reviewed")

    update: Dict[str, Any] = {
        "status": "approved" if body.action == "approve" else "rejected",
        "reviewed_by": oid(user["id"]),
        "reviewed_at": now(),
        "review_comments": body.review_comments,
        "updated_at": now(),
    }
    task: Optional[Dict[str, Any]] = None
    if body.action == "approve":
        milestone = milestone_in_project(db, doc["milestone_id"], doc["project_id"])
        if not milestone:
            raise NotFound("Milestone not found in this project")
        task = create_document(db, "task", {
            "project_id": doc["project_id"],
            "milestone_id": milestone["_id"],
            "title": doc["title"],
            "description": doc["description"],
            "status": "pending",
            "priority": doc.get("priority", "normal"),
            "assigned_to": [],
            "due_date": doc["due_date"],
            "sequence": next_sequence(db, "task", {"milestone_id": milestone["_id"]}),
            "completed_at": None,
            "completed_by": None,
            "comments": [],
            "attachments": [],
            "created_by": oid(user["id"]),
            "task_request_id": doc["_id"],
        })
        update["created_task_id"] = task["_id"]
        rollup.on_task_created(task)
    db["task_request"].update_one({"_id": doc["_id"]}, {"$set": update})
    logger.info("Task request %s %s by %s", doc["_id"], update["status"], user["id"])

    effects = [
        activity(db, "task_request_reviewed", user["id"], project_id=doc["project_id"], target_type="task_request",
                 target_id=doc["_id"], metadata={"title": doc["title"], "decision": update["status"]}),
    ]
    if task is not None:
        effects.append(activity(db, "task_created", user["id"], project_id=doc["project_id"], target_type="task",
                                target_id=task["_id"], metadata={"title": task["title"],
                                                                 "task_request_id": str(doc["_id"])}))
    run_side_effects(effects)
    return ok(
        {"request": _with_names(db, db["task_request"].find_one({"_id": doc["_id"]})),
         "task": serialize(task) if task else None},
        f"Task request {update['status']} successfully",
    )
