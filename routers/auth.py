import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, File, UploadFile
from pymongo.database import Database

from config import Settings
from database import now, oid, serialize
from deps import get_current_user, get_db, get_settings, get_storage
from effects import run_side_effects
from envelope import ok
from errors import AuthenticationError, ValidationError
from schemas import ChangePasswordRequest, LoginRequest, ProfileUpdate
from security import create_token, hash_password, verify_password
from storage import StorageBackend
from subresources import blob_cleanup, store_uploads

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login")
def login(body: LoginRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    user = db["user"].find_one({"email": body.email.lower()})
    if not user or not verify_password(body.password, user.get("password", "")):
        raise AuthenticationError("Invalid credentials")
    if user.get("status") != "active":
        raise AuthenticationError("Account is inactive")
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"last_login": now()}})
    token = create_token(settings, user)
    logger.info("User %s logged in", user["_id"])
    return ok({"token": token, "user": serialize(user)}, "Login successful")


@router.post("/logout")
async def logout(user=Depends(get_current_user)):
    # tokens are stateless; the client discards its copy
    return ok(message="Logged out successfully")


@router.get("/me")
async def me(user=Depends(get_current_user)):
    return ok(user)


@router.get("/validate")
async def validate_token(user=Depends(get_current_user)):
    return ok({"valid": True, "user": user})


@router.post("/refresh")
async def refresh_token(
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    doc = db["user"].find_one({"_id": oid(user["id"])})
    return ok({"token": create_token(settings, doc)}, "Token refreshed")


@router.put("/profile")
async def update_profile(body: ProfileUpdate, user=Depends(get_current_user), db: Database = Depends(get_db)):
    update: Dict[str, Any] = body.model_dump(exclude_unset=True, exclude_none=True)
    if not update:
        return ok(user)
    update["updated_at"] = now()
    db["user"].update_one({"_id": oid(user["id"])}, {"$set": update})
    return ok(serialize(db["user"].find_one({"_id": oid(user["id"])})), "Profile updated successfully")


@router.post("/profile/image")
async def upload_profile_image(
    image: UploadFile = File(...),
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
    settings: Settings = Depends(get_settings),
):
    stored = await store_uploads(
        storage, settings, [image], user["id"], f"avatars/{user['id']}",
        allowed_types=("image",), max_size=settings.avatar_max_size_bytes,
    )
    if not stored:
        raise ValidationError("No profile image file provided")
    doc = db["user"].find_one_and_update(
        {"_id": oid(user["id"])}, {"$set": {"avatar": stored[0], "updated_at": now()}},
    )
    # find_one_and_update hands back the pre-update document
    previous = doc.get("avatar")
    if previous:
        run_side_effects(blob_cleanup(storage, [{"attachments": [previous]}]))
    updated = db["user"].find_one({"_id": doc["_id"]})
    return ok({"user": serialize(updated), "image_url": stored[0]["url"]}, "Profile image uploaded successfully")


@router.delete("/profile/image")
async def delete_profile_image(
    user=Depends(get_current_user),
    db: Database = Depends(get_db),
    storage: StorageBackend = Depends(get_storage),
):
    doc = db["user"].find_one({"_id": oid(user["id"])})
    if not doc.get("avatar"):
        raise ValidationError("No profile image to delete")
    db["user"].update_one({"_id": doc["_id"]}, {"$set": {"avatar": None, "updated_at": now()}})
    run_side_effects(blob_cleanup(storage, [{"attachments": [doc["avatar"]]}]))
    updated = db["user"].find_one({"_id": doc["_id"]})
    return ok({"user": serialize(updated)}, "Profile image deleted successfully")


@router.put("/change-password")
async def change_password(body: ChangePasswordRequest, user=Depends(get_current_user), db: Database = Depends(get_db)):
    doc = db["user"].find_one({"_id": oid(user["id"])})
    if not verify_password(body.current_password, doc.get("password", "")):
        raise ValidationError("Current password is incorrect")
    if body.current_password == body.new_password:
        raise ValidationError("New password must differ from the current password")
    db["user"].update_one(
        {"_id": doc["_id"]},
        {"$set": {"password": hash_password(body.new_password), "updated_at": now()}},
    )
    return ok(message="Password changed successfully")
