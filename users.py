"""
User accounts: registration, login, prayer streaks and campus-leader verification.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from auth import hash_password, revoke_user_sessions, verify_password
from database import as_utc, create_document, require_db, serialize
from errors import AuthError, ConflictError, ValidationError
from schemas import User
from validation import normalize_email, strip_html

MIN_PASSWORD_LENGTH = 8
ACADEMIC_DOMAINS = (".ac.uk", ".edu", ".edu.au", ".ac.in", ".edu.ng")


def _users():
    return require_db()["user"]


def public_user(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    out = serialize(doc)
    out.pop("password_hash", None)
    return out


def _check_password(password: Any) -> str:
    if not isinstance(password, str) or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long.", code="WEAK_PASSWORD")
    return password


def register(name: str, email: str, password: str) -> Dict[str, Any]:
    email = normalize_email(email)
    _check_password(password)
    clean_name = strip_html(name or "")
    if len(clean_name) < 2 or len(clean_name) > 100:
        raise ValidationError("Name must be between 2 and 100 characters.", code="INVALID_NAME")

    if _users().find_one({"email": email}):
        raise ConflictError("An account with this email already exists.", code="USER_EXISTS")

    user = User(name=clean_name, email=email, password_hash=hash_password(password))
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise ConflictError("An account with this email already exists.", code="USER_EXISTS")
    return _users().find_one({"_id": ObjectId(user_id)})


def authenticate(email: str, password: str) -> Dict[str, Any]:
    email = normalize_email(email)
    if not password or not isinstance(password, str):
        raise ValidationError("Password is required.", code="MISSING_PASSWORD")
    doc = _users().find_one({"email": email})
    if not doc or not verify_password(password, doc.get("password_hash", "")):
        raise AuthError("Invalid email or password.", code="INVALID_CREDENTIALS")
    return doc


def change_password(user: Dict[str, Any], current_password: str, new_password: str, current_token: Optional[str] = None) -> None:
    if not verify_password(current_password or "", user.get("password_hash", "")):
        raise AuthError("Current password is incorrect.", code="INVALID_CREDENTIALS")
    _check_password(new_password)
    _users().update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(new_password), "updated_at": datetime.now(timezone.utc)}},
    )
    revoke_user_sessions(str(user["_id"]), keep_token=current_token)


def next_streak(streak: int, last_prayer: Optional[date], today: date) -> int:
    """Streak count after praying on `today`, given the previous prayer day."""
    if last_prayer is None:
        return 1
    gap = (today - last_prayer).days
    if gap <= 0:
        return max(streak, 1)
    if gap == 1:
        return streak + 1
    return 1


def update_streak(user: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    last = as_utc(user.get("lastPrayerDate"))
    streak = next_streak(user.get("streakCount", 0), last.date() if last else None, now.date())
    _users().update_one(
        {"_id": user["_id"]},
        {"$set": {"streakCount": streak, "lastPrayerDate": now, "updated_at": now}},
    )
    user["streakCount"] = streak
    user["lastPrayerDate"] = now
    return user


def verify_leader(user: Dict[str, Any], university_email: str) -> Dict[str, Any]:
    email = normalize_email(university_email, message="A valid university email address is required.")
    if not email.endswith(ACADEMIC_DOMAINS):
        raise ValidationError(
            "Verification requires an institutional email ending in one of: " + ", ".join(ACADEMIC_DOMAINS),
            code="NON_ACADEMIC_EMAIL",
        )
    _users().update_one(
        {"_id": user["_id"]},
        {"$set": {"isVerifiedLeader": True, "universityEmail": email, "updated_at": datetime.now(timezone.utc)}},
    )
    return _users().find_one({"_id": user["_id"]})


def get_user_names(user_ids) -> Dict[str, Dict[str, Any]]:
    ids = [ObjectId(u) for u in set(user_ids) if ObjectId.is_valid(u)]
    if not ids:
        return {}
    docs = _users().find({"_id": {"$in": ids}}, {"name": 1, "isVerifiedLeader": 1, "organization": 1})
    return {str(d["_id"]): {"id": str(d["_id"]), "name": d.get("name"), "isVerifiedLeader": d.get("isVerifiedLeader", False), "organization": d.get("organization")} for d in docs}
