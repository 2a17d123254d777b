"""Comment and attachment endpoints shared by projects, milestones, tasks and subtasks."""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pymongo.database import Database

from access import accessible_child, accessible_project, is_assignee
from activity import activity
from config import Settings
from database import now, serialize
from deps import get_current_user, get_db, get_settings, get_storage
from effects import run_side_effects
from envelope import ok
from errors import PermissionDenied
from schemas import CommentCreate
from storage import StorageBackend
from subresources import add_comment, delete_comment, parse_metadata, remove_attachment, store_uploads


def subresource_router(prefix: str, collection: str, label: str, comments: bool = True) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[f"{collection} files"])

    def load(db: Database, doc_id: str, user: Dict[str, Any]):
        if collection == "project":
            project = accessible_project(db, doc_id, user)
            return project, project
        return accessible_child(db, collection, doc_id, user, label)

    def target(doc: Dict[str, Any], project: Dict[str, Any]) -> Dict[str, Any]:
        return {"project_id": project["_id"], "target_type": collection, "target_id": doc["_id"]}

    def reload(db: Database, doc: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return db[collection].find_one({"_id": doc["_id"]})

    if comments:

        @router.post("/{doc_id}/comments", status_code=201)
        async def create_comment(
            doc_id: str,
            body: CommentCreate,
            user=Depends(get_current_user),
            db: Database = Depends(get_db),
        ):
            doc, project = load(db, doc_id, user)
            comment = add_comment(db, collection, doc, user["id"], body.message)
            run_side_effects([
                activity(db, "comment_added", user["id"], **target(doc, project),
                         metadata={"comment_id": str(comment["_id"]), "preview": body.message[:100]}),
            ])
            return ok(serialize(comment), "Comment added successfully")

        @router.delete("/{doc_id}/comments/{comment_id}")
        async def remove_comment(
            doc_id: str,
            comment_id: str,
            user=Depends(get_current_user),
            db: Database = Depends(get_db),
        ):
            doc, project = load(db, doc_id, user)
            comment = delete_comment(db, collection, doc, comment_id, user["id"])
            run_side_effects([
                activity(db, "comment_deleted", user["id"], **target(doc, project),
                         metadata={"comment_id": str(comment["_id"])}),
            ])
            return ok(message="Comment deleted successfully")

    @router.post("/{doc_id}/attachments", status_code=201)
    async def upload_attachments(
        doc_id: str,
        files: List[UploadFile] = File(...),
        metadata: Optional[str] = Form(None),
        user=Depends(get_current_user),
        db: Database = Depends(get_db),
        storage: StorageBackend = Depends(get_storage),
        settings: Settings = Depends(get_settings),
    ):
        doc, project = load(db, doc_id, user)
        if user["role"] != "pm" and (collection == "project" or not is_assignee(doc, user["id"])):
            raise PermissionDenied("You do not have permission to upload files here")
        meta = parse_metadata(metadata)
        attachments = await store_uploads(
            storage, settings, files, user["id"], f"{collection}s/{project['_id']}", meta.get("description"),
        )
        db[collection].update_one(
            {"_id": doc["_id"]},
            {"$push": {"attachments": {"$each": attachments}}, "$set": {"updated_at": now()}},
        )
        run_side_effects([
            activity(db, "file_uploaded", user["id"], **target(doc, project),
                     metadata={"filename": a["original_name"], "size": a["size"]})
            for a in attachments
        ])
        return ok(
            {"attachments": [serialize(a) for a in attachments], collection: serialize(reload(db, doc))},
            f"{len(attachments)} file(s) uploaded successfully",
        )

    @router.delete("/{doc_id}/attachments/{attachment_id}")
    async def delete_attachment(
        doc_id: str,
        attachment_id: str,
        user=Depends(get_current_user),
        db: Database = Depends(get_db),
        storage: StorageBackend = Depends(get_storage),
    ):
        doc, project = load(db, doc_id, user)
        attachment, effects = remove_attachment(db, storage, collection, doc, attachment_id, user)
        effects.append(activity(db, "file_deleted", user["id"], **target(doc, project),
                                metadata={"filename": attachment.get("original_name")}))
        run_side_effects(effects)
        return ok(message="Attachment deleted successfully")

    return router


project_files = subresource_router("/api/projects", "project", "Project", comments=False)
milestone_files = subresource_router("/api/milestones", "milestone", "Milestone")
task_files = subresource_router("/api/tasks", "task", "Task")
subtask_files = subresource_router("/api/subtasks", "subtask", "Subtask")

ROUTERS: List[Any] = [project_files, milestone_files, task_files, subtask_files]
