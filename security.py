import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict

from jose import JWTError, jwt

from config import Settings
from errors import AuthenticationError

_ITERATIONS = 260000


def hash_password(pw: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", pw.encode(), salt.encode(), _ITERATIONS).hex()
    return f"pbkdf2_sha256${_ITERATIONS}${salt}${digest}"


def verify_password(pw: str, stored: str) -> bool:
    try:
        _, iterations, salt, digest = stored.split("$", 3)
        rounds = int(iterations)
    except (AttributeError, ValueError):
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", pw.encode(), salt.encode(), rounds).hex()
    return hmac.compare_digest(candidate, digest)


def generate_password(length: int = 12) -> str:
    return secrets.token_urlsafe(length)[:length]


def create_token(settings: Settings, user: Dict[str, Any]) -> str:
    expires = datetime.now(timezone.utc) + timedelta(minutes=settings.jwt_expires_minutes)
    claims = {"id": str(user["_id"]), "role": user["role"], "exp": expires}
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise AuthenticationError("Token is not valid")
    if not claims.get("id"):
        raise AuthenticationError("Token is not valid")
    return claims
