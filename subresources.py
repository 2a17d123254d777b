"""Embedded comments and attachments, plus multipart payload parsing."""
import json
import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from bson import ObjectId
from fastapi import Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from pymongo.database import Database
from starlette.datastructures import UploadFile

from config import Settings
from database import now, oid
from effects import SideEffect
from errors import NotFound, PermissionDenied, ValidationError
from storage import StorageBackend

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_DOCUMENT_TYPES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument",
    "application/vnd.ms-excel",
    "application/vnd.ms-powerpoint",
    "application/zip",
    "text/",
)


def file_type(mimetype: str) -> str:
    mimetype = (mimetype or "").lower()
    if mimetype.startswith("image/"):
        return "image"
    if mimetype.startswith("video/"):
        return "video"
    if mimetype.startswith(_DOCUMENT_TYPES):
        return "document"
    return "other"


def safe_filename(name: str) -> str:
    name = name.replace("\\", "/").rsplit("/", 1)[-1]
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "file"


def _pydantic_errors(exc: PydanticValidationError) -> List[Dict[str, Any]]:
    return [{"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]} for e in exc.errors()]


async def read_payload(request: Request, schema: Type[M], field: str = "data") -> Tuple[M, List[UploadFile]]:
    """Accept a JSON body, or multipart with a JSON-encoded ``field`` and ``files`` parts."""
    content_type = request.headers.get("content-type", "")
    files: List[UploadFile] = []
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        raw = form.get(field)
        if raw is None or isinstance(raw, UploadFile):
            raise ValidationError(f"Missing '{field}' field")
        try:
            data = json.loads(raw)
        except ValueError:
            raise ValidationError(f"'{field}' must be valid JSON")
        files = [f for f in form.getlist("files") if isinstance(f, UploadFile)]
    else:
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Request body must be valid JSON")
    try:
        return schema.model_validate(data), files
    except PydanticValidationError as exc:
        raise ValidationError("Validation failed", _pydantic_errors(exc))


def parse_metadata(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        meta = json.loads(raw)
    except ValueError:
        raise ValidationError("'metadata' must be valid JSON")
    if not isinstance(meta, dict):
        raise ValidationError("'metadata' must be a JSON object")
    return meta


async def store_uploads(
    storage: StorageBackend,
    settings: Settings,
    files: Iterable[UploadFile],
    uploaded_by: Any,
    folder: str,
    description: Optional[str] = None,
    allowed_types: Optional[Iterable[str]] = None,
    max_size: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Validate every file first, then write them all to storage.

    ``allowed_types`` and ``max_size`` default to the attachment limits in settings.
    """
    allowed = set(allowed_types or settings.attachment_allowed_types)
    limit = max_size or settings.attachment_max_size_bytes
    staged = []
    for upload in files:
        if not upload.filename:
            continue
        data = await upload.read()
        mimetype = upload.content_type or "application/octet-stream"
        kind = file_type(mimetype)
        if kind not in allowed:
            raise ValidationError(f"File type not allowed: {upload.filename}")
        if len(data) > limit:
            raise ValidationError(f"File too large: {upload.filename}")
        staged.append((upload.filename, mimetype, kind, data))

    attachments = []
    for original_name, mimetype, kind, data in staged:
        attachment_id = ObjectId()
        filename = f"{attachment_id}-{safe_filename(original_name)}"
        key = f"{folder}/{filename}"
        url = storage.put(key, data, mimetype)
        attachments.append({
            "_id": attachment_id,
            "filename": filename,
            "original_name": original_name,
            "url": url,
            "storage_key": key,
            "size": len(data),
            "mimetype": mimetype,
            "file_type": kind,
            "description": description,
            "uploaded_by": oid(uploaded_by),
            "uploaded_at": now(),
        })
    return attachments


def blob_cleanup(storage: StorageBackend, docs: Iterable[Dict[str, Any]]) -> List[SideEffect]:
    effects = []
    for doc in docs:
        for attachment in doc.get("attachments") or []:
            key = attachment.get("storage_key")
            if key:
                effects.append(SideEffect(f"delete blob {key}", storage.delete, (key,)))
    return effects


def _find_embedded(doc: Dict[str, Any], field: str, item_id: Any) -> Optional[Dict[str, Any]]:
    wanted = oid(item_id)
    for item in doc.get(field) or []:
        if item.get("_id") == wanted:
            return item
    return None


def add_comment(db: Database, collection: str, doc: Dict[str, Any], author_id: Any, message: str) -> Dict[str, Any]:
    comment = {"_id": ObjectId(), "author_id": oid(author_id), "message": message, "timestamp": now()}
    db[collection].update_one({"_id": doc["_id"]}, {"$push": {"comments": comment}, "$set": {"updated_at": now()}})
    return comment


def delete_comment(db: Database, collection: str, doc: Dict[str, Any], comment_id: Any, user_id: Any) -> Dict[str, Any]:
    comment = _find_embedded(doc, "comments", comment_id)
    if comment is None:
        raise NotFound("Comment not found")
    if str(comment.get("author_id")) != str(user_id):
        raise PermissionDenied("You can only delete your own comments")
    db[collection].update_one(
        {"_id": doc["_id"]},
        {"$pull": {"comments": {"_id": comment["_id"]}}, "$set": {"updated_at": now()}},
    )
    return comment


def remove_attachment(
    db: Database,
    storage: StorageBackend,
    collection: str,
    doc: Dict[str, Any],
    attachment_id: Any,
    user: Dict[str, Any],
) -> Tuple[Dict[str, Any], List[SideEffect]]:
    attachment = _find_embedded(doc, "attachments", attachment_id)
    if attachment is None:
        raise NotFound("Attachment not found")
    if user.get("role") != "pm" and str(attachment.get("uploaded_by")) != str(user["id"]):
        raise PermissionDenied("Only the uploader or a project manager can remove this file")
    db[collection].update_one(
        {"_id": doc["_id"]},
        {"$pull": {"attachments": {"_id": attachment["_id"]}}, "$set": {"updated_at": now()}},
    )
    return attachment, blob_cleanup(storage, [{"attachments": [attachment]}])
