"""FastAPI dependencies.

The database handle, settings, storage backend and rollup engine are built
once in ``create_app`` and kept on ``app.state``.
"""
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Depends, Header, Request
from pymongo.database import Database

from config import Settings
from database import serialize
from errors import AuthenticationError, PermissionDenied
from progress import ProgressRollup
from security import decode_token
from storage import StorageBackend


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> StorageBackend:
    return request.app.state.storage


def get_rollup(request: Request) -> ProgressRollup:
    return request.app.state.rollup


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("No token provided, authorization denied")
    return authorization.split(" ", 1)[1].strip()


async def get_current_user(
    token: str = Depends(bearer_token),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Dict[str, Any]:
    claims = decode_token(settings, token)
    try:
        user_id = ObjectId(claims["id"])
    except (InvalidId, TypeError):
        raise AuthenticationError("Token is not valid")
    user = db["user"].find_one({"_id": user_id})
    if not user:
        raise AuthenticationError("Token is not valid")
    if user.get("status") != "active":
        raise AuthenticationError("Account is inactive")
    return serialize(user)


def require_roles(*roles: str):
    async def _guard(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
        if user.get("role") not in roles:
            raise PermissionDenied("Access denied. Insufficient permissions")
        return user

    return _guard
