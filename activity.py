import logging
from typing import Any, Dict, Optional

from pymongo.database import Database

from database import create_document, oid
from effects import SideEffect

logger = logging.getLogger(__name__)

ACTIVITY_TITLES = {
    "project_created": "Project created",
    "project_updated": "Project updated",
    "project_status_changed": "Project status changed",
    "project_progress_recalculated": "Project progress recalculated",
    "team_member_added": "Team updated",
    "milestone_created": "Milestone created",
    "milestone_updated": "Milestone updated",
    "milestone_status_changed": "Milestone status changed",
    "milestone_deleted": "Milestone deleted",
    "task_created": "Task created",
    "task_updated": "Task updated",
    "task_status_changed": "Task status changed",
    "task_assigned": "Task assigned",
    "task_deleted": "Task deleted",
    "subtask_created": "Subtask created",
    "subtask_updated": "Subtask updated",
    "subtask_status_changed": "Subtask status changed",
    "subtask_deleted": "Subtask deleted",
    "comment_added": "Comment added",
    "comment_deleted": "Comment deleted",
    "file_uploaded": "File uploaded",
    "file_deleted": "File deleted",
    "task_request_created": "Task requested",
    "task_request_reviewed": "Task request reviewed",
    "user_role_changed": "User role changed",
}


def record_activity(
    db: Database,
    type_: str,
    actor_id: Any,
    project_id: Optional[Any] = None,
    target_type: Optional[str] = None,
    target_id: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    if type_ not in ACTIVITY_TITLES:
        raise ValueError(f"Unknown activity type: {type_}")
    return create_document(db, "activity", {
        "type": type_,
        "title": ACTIVITY_TITLES[type_],
        "actor_id": oid(actor_id),
        "project_id": oid(project_id) if project_id else None,
        "target_type": target_type,
        "target_id": oid(target_id) if target_id else None,
        "metadata": metadata or {},
    })


def activity(db: Database, type_: str, actor_id: Any, **kwargs: Any) -> SideEffect:
    return SideEffect(f"record {type_} activity", record_activity, (db, type_, actor_id), kwargs)
