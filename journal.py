"""Prayer journal entries."""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId

import schools
from auth import user_id_of
from database import create_document, require_db, serialize
from errors import NotFoundError, ValidationError
from schemas import Journal
from users import update_streak
from validation import require_object_id, strip_html

logger = logging.getLogger(__name__)

MAX_ENTRY_LENGTH = 5000
DEFAULT_LIMIT = 50
MAX_LIMIT = 100


def _journal():
    return require_db()["journal"]


def _with_schools(entries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    summaries = schools.get_summaries(e["schoolId"] for e in entries if e.get("schoolId"))
    out = []
    for e in entries:
        item = serialize(e)
        item["school"] = summaries.get(e.get("schoolId")) if e.get("schoolId") else None
        out.append(item)
    return out


def create_entry(user: Dict[str, Any], entry_text: Optional[str], school_id: Optional[str] = None) -> Dict[str, Any]:
    text = strip_html(entry_text or "")
    if not text:
        raise ValidationError("Journal entry text is required.", code="MISSING_ENTRY_TEXT")
    if len(text) > MAX_ENTRY_LENGTH:
        raise ValidationError(f"Journal entries cannot exceed {MAX_ENTRY_LENGTH} characters.", code="ENTRY_TOO_LONG")
    if school_id:
        require_object_id(school_id, code="INVALID_SCHOOL_ID", message="A valid school ID is required.")

    entry_id = create_document("journal", Journal(userId=user_id_of(user), entryText=text, schoolId=school_id or None))

    try:
        update_streak(user)
    except Exception:
        logger.exception("Could not update prayer streak for user %s after journaling", user_id_of(user))

    return _with_schools([_journal().find_one({"_id": ObjectId(entry_id)})])[0]


def list_entries(user: Dict[str, Any], school_id: Optional[str] = None, limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"userId": user_id_of(user)}
    if school_id:
        query["schoolId"] = school_id
    limit = max(1, min(limit or DEFAULT_LIMIT, MAX_LIMIT))
    entries = list(_journal().find(query).sort([("date", -1), ("_id", -1)]).limit(limit))
    return _with_schools(entries)


def count_entries(user: Dict[str, Any]) -> int:
    return _journal().count_documents({"userId": user_id_of(user)})


def delete_entry(user: Dict[str, Any], entry_id: str) -> None:
    require_object_id(entry_id, message="The provided entry ID is not valid.")
    result = _journal().delete_one({"_id": ObjectId(entry_id), "userId": user_id_of(user)})
    if result.deleted_count == 0:
        raise NotFoundError("Journal entry not found.", code="ENTRY_NOT_FOUND")
