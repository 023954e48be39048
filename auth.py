"""
Credential service: password hashing, bearer sessions and the FastAPI
dependencies that resolve the acting user.
"""
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from fastapi import Depends, Header

from config import SESSION_TTL_HOURS
from database import as_utc, create_document, is_object_id, require_db
from errors import AuthError, ForbiddenError, ValidationError
from schemas import Session

PBKDF2_ROUNDS = 120_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    try:
        salt, digest = stored.split("$")
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ROUNDS).hex()
    return secrets.compare_digest(candidate, digest)


def issue_token(user_id: str, ttl_hours: int = SESSION_TTL_HOURS) -> str:
    token = secrets.token_urlsafe(32)
    expires_at = datetime.now(timezone.utc) + timedelta(hours=ttl_hours)
    create_document("session", Session(user_id=user_id, token=token, expires_at=expires_at))
    return token


def revoke_token(token: str) -> bool:
    result = require_db()["session"].delete_one({"token": token})
    return result.deleted_count > 0


def revoke_user_sessions(user_id: str, keep_token: Optional[str] = None) -> int:
    filt: Dict[str, Any] = {"user_id": user_id}
    if keep_token:
        filt["token"] = {"$ne": keep_token}
    return require_db()["session"].delete_many(filt).deleted_count


def bearer_token(authorization: Optional[str] = Header(None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthError("Authentication required. Please log in.", code="AUTH_TOKEN_MISSING")
    token = authorization.split(" ")[-1].strip()
    if not token:
        raise AuthError("Authentication required. Please log in.", code="AUTH_TOKEN_MISSING")
    return token


def _session_and_user(token: str, invalid: AuthError, expired: AuthError) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    database = require_db()
    session = database["session"].find_one({"token": token})
    if not session:
        raise invalid
    expires_at = as_utc(session.get("expires_at"))
    if expires_at and expires_at < datetime.now(timezone.utc):
        database["session"].delete_one({"_id": session["_id"]})
        raise expired
    user_id = session.get("user_id")
    user = database["user"].find_one({"_id": ObjectId(user_id)}) if is_object_id(user_id) else None
    if not user:
        raise AuthError("Account not found. It may have been deleted.", code="AUTH_USER_NOT_FOUND")
    return session, user


def resolve_user(token: str) -> Dict[str, Any]:
    _, user = _session_and_user(
        token,
        AuthError("Invalid authentication token. Please log in again.", code="AUTH_TOKEN_INVALID"),
        AuthError("Your session has expired. Please log in again.", code="AUTH_TOKEN_EXPIRED"),
    )
    return user


def rotate_token(token: Optional[str]) -> Tuple[Dict[str, Any], str]:
    """Swap a still-valid session token for a fresh one with a new expiry."""
    if not token:
        raise ValidationError("Refresh token is required.", code="MISSING_REFRESH_TOKEN")
    message = "Invalid or expired refresh token. Please log in again."
    session, user = _session_and_user(
        token,
        AuthError(message, code="REFRESH_TOKEN_INVALID"),
        AuthError(message, code="REFRESH_TOKEN_EXPIRED"),
    )
    require_db()["session"].delete_one({"_id": session["_id"]})
    return user, issue_token(str(user["_id"]))


async def get_current_user(token: str = Depends(bearer_token)) -> Dict[str, Any]:
    return resolve_user(token)


async def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise ForbiddenError("This action requires admin privileges.", code="AUTH_ADMIN_REQUIRED")
    return user


def user_id_of(user: Dict[str, Any]) -> str:
    return str(user["_id"])
