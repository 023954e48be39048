"""
Prayer requests posted against a school.

A request moves from unanswered to answered exactly once. Answering is
allowed for its author or any verified campus leader; answering again is
accepted but leaves the first note and timestamp in place.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId

import schools
from auth import user_id_of
from database import create_document, require_db, serialize
from errors import ForbiddenError, NotFoundError, ValidationError
from schemas import PRAYER_CATEGORIES, PrayerRequest
from users import get_user_names
from validation import require_object_id, strip_html

MAX_CONTENT_LENGTH = 1000
MAX_NOTE_LENGTH = 500
LIST_LIMIT = 50


def _requests():
    return require_db()["prayerrequest"]


def _with_authors(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    authors = get_user_names(d["userId"] for d in docs)
    out = []
    for d in docs:
        item = serialize(d)
        item["user"] = authors.get(d["userId"])
        out.append(item)
    return out


def create_request(user: Dict[str, Any], school_id: Any, content: Optional[str], is_urgent: bool = False, category: Optional[str] = None) -> Dict[str, Any]:
    require_object_id(school_id, code="INVALID_SCHOOL_ID", message="A valid school ID is required.")
    text = strip_html(content or "")
    if not text:
        raise ValidationError("Prayer request content is required.", code="MISSING_CONTENT")
    if len(text) > MAX_CONTENT_LENGTH:
        raise ValidationError(f"Prayer requests cannot exceed {MAX_CONTENT_LENGTH} characters.", code="CONTENT_TOO_LONG")
    category = category or "Other"
    if category not in PRAYER_CATEGORIES:
        raise ValidationError("Category must be one of: " + ", ".join(PRAYER_CATEGORIES), code="INVALID_CATEGORY")
    if schools.find_school(school_id) is None:
        raise NotFoundError("School not found.", code="SCHOOL_NOT_FOUND")

    request = PrayerRequest(userId=user_id_of(user), schoolId=school_id, content=text, isUrgent=bool(is_urgent), category=category)
    request_id = create_document("prayerrequest", request)
    return _with_authors([_requests().find_one({"_id": ObjectId(request_id)})])[0]


def list_for_school(school_id: str) -> List[Dict[str, Any]]:
    docs = list(_requests().find({"schoolId": school_id}).sort([("created_at", -1), ("_id", -1)]).limit(LIST_LIMIT))
    return _with_authors(docs)


def mark_answered(request_id: Any, user: Dict[str, Any], note: Optional[str] = None) -> Dict[str, Any]:
    require_object_id(request_id, code="INVALID_REQUEST_ID", message="A valid prayer request ID is required.")
    oid = ObjectId(request_id)
    request = _requests().find_one({"_id": oid})
    if not request:
        raise NotFoundError("Prayer request not found.")

    is_owner = request.get("userId") == user_id_of(user)
    if not is_owner and not user.get("isVerifiedLeader"):
        raise ForbiddenError("Only the prayer request author or a verified leader can mark this as answered.")

    now = datetime.now(timezone.utc)
    changes: Dict[str, Any] = {"isAnswered": True, "answeredAt": now, "updated_at": now}
    clean_note = strip_html(note or "")
    if clean_note:
        changes["answerNote"] = clean_note[:MAX_NOTE_LENGTH]
    # only the first answer sticks
    _requests().update_one({"_id": oid, "isAnswered": False}, {"$set": changes})

    return _with_authors([_requests().find_one({"_id": oid})])[0]
