"""
Campus registry.

School documents embed their adopters list together with a denormalised
`adoptionCount` and per-type statistics. Every mutation of the adopters
list is a single conditional update on one document, so concurrent
adopters never overwrite each other and a user can appear at most once.

Reads go through `scoped()`, which hides archived schools unless the caller
explicitly asks for them.
"""
import logging
import random
import re
import string
import unicodedata
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents, is_object_id, require_db, serialize
from errors import (
    AdopterLimitExceededError,
    AlreadyAdoptedError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from schemas import ADOPTION_TYPES, SCHOOL_STATUSES, School, SchoolStats
from users import get_user_names

logger = logging.getLogger(__name__)

MAX_ADOPTERS = 500
MAX_PAGE_SIZE = 100
SLUG_SUFFIX_LENGTH = 4

SUMMARY_FIELDS = ("name", "slug", "address", "city", "lat", "lng", "image", "description", "status")

_NON_SLUG_RE = re.compile(r"[^\w\s-]", re.ASCII)
_SEPARATOR_RE = re.compile(r"[\s_-]+")


def _schools():
    return require_db()["school"]


def scoped(filt: Optional[Dict[str, Any]] = None, include_archived: bool = False) -> Dict[str, Any]:
    """Return a copy of `filt` that excludes archived schools unless opted in."""
    query = dict(filt or {})
    if include_archived:
        return query
    if "status" in query:
        return {"$and": [query, {"status": {"$ne": "archived"}}]}
    query["status"] = {"$ne": "archived"}
    return query


def make_slug(name: str) -> str:
    ascii_name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode()
    base = _NON_SLUG_RE.sub("", ascii_name.lower().strip())
    base = _SEPARATOR_RE.sub("-", base).strip("-")
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=SLUG_SUFFIX_LENGTH))
    return f"{base}-{suffix}" if base else suffix


def backfill_city(address: Optional[str]) -> Optional[str]:
    # Best effort: "<street>, <city>, <postcode>" -> "<city>"
    if not address:
        return None
    parts = address.split(",")
    if len(parts) < 2:
        return None
    return parts[-2].strip() or None


def _oid(school_id: str) -> ObjectId:
    if not is_object_id(school_id):
        raise ValidationError("A valid school ID is required.", code="INVALID_SCHOOL_ID")
    return ObjectId(school_id)


def counts_by_type(adopters: List[Dict[str, Any]]) -> Dict[str, int]:
    prayer = sum(1 for a in adopters if a.get("adoptionType") in ("prayer", "both"))
    revival = sum(1 for a in adopters if a.get("adoptionType") in ("revival", "both"))
    return {"prayer": prayer, "revival": revival}


def school_to_public(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Serialize a school and attach the derived adopter fields."""
    if not doc:
        return doc
    out = serialize(doc)
    adopters = doc.get("adopters") or []
    counts = counts_by_type(adopters)
    out["isAdopted"] = len(adopters) > 0
    out["prayerAdopterCount"] = counts["prayer"]
    out["revivalAdopterCount"] = counts["revival"]
    return out


def school_summary(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    out = {"id": str(doc["_id"])}
    for field in SUMMARY_FIELDS:
        if field in doc:
            out[field] = doc[field]
    return out


# ---------------------------
# Create / update
# ---------------------------

def create_school(data: Dict[str, Any], status: str = "active", submitted_by: Optional[str] = None) -> Dict[str, Any]:
    fields = dict(data)
    fields["status"] = status
    fields["slug"] = make_slug(fields["name"])
    if not fields.get("city"):
        fields["city"] = backfill_city(fields.get("address"))
    if submitted_by:
        fields["submittedBy"] = submitted_by
    school = School(**fields)
    try:
        school_id = create_document("school", school)
    except DuplicateKeyError:
        raise ConflictError("A school with this name already exists.", code="DUPLICATE_SCHOOL")
    logger.info("Created school %s (%s) with status %s", school.name, school_id, status)
    return _schools().find_one({"_id": ObjectId(school_id)})


def update_school(school_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    """Admin edit. Adopter fields are never writable here."""
    oid = _oid(school_id)
    current = _schools().find_one({"_id": oid})
    if not current:
        raise NotFoundError("School not found.", code="SCHOOL_NOT_FOUND")

    updates = {k: v for k, v in changes.items() if k not in ("adopters", "adoptionCount", "stats", "slug")}
    if "status" in updates and updates["status"] not in SCHOOL_STATUSES:
        raise ValidationError("Status must be one of: " + ", ".join(SCHOOL_STATUSES), code="INVALID_STATUS")
    if updates.get("name") and updates["name"] != current.get("name"):
        updates["slug"] = make_slug(updates["name"])
    if "address" in updates and not (updates.get("city") or current.get("city")):
        updates["city"] = backfill_city(updates["address"])
    if not updates:
        return current
    updates["updated_at"] = datetime.now(timezone.utc)
    try:
        return _schools().find_one_and_update({"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER)
    except DuplicateKeyError:
        raise ConflictError("A school with this name already exists.", code="DUPLICATE_SCHOOL")


# ---------------------------
# Reads
# ---------------------------

def get_school(school_id: str, include_archived: bool = False) -> Dict[str, Any]:
    doc = _schools().find_one(scoped({"_id": _oid(school_id)}, include_archived))
    if not doc:
        raise NotFoundError("School not found.", code="SCHOOL_NOT_FOUND")
    return doc


def find_school(school_id: str, include_archived: bool = False) -> Optional[Dict[str, Any]]:
    if not is_object_id(school_id):
        return None
    return _schools().find_one(scoped({"_id": ObjectId(school_id)}, include_archived))


def get_by_slug(slug: str) -> Dict[str, Any]:
    doc = _schools().find_one(scoped({"slug": slug}))
    if not doc:
        raise NotFoundError("School not found.", code="SCHOOL_NOT_FOUND")
    return doc


def get_summaries(school_ids, include_archived: bool = True) -> Dict[str, Dict[str, Any]]:
    ids = [ObjectId(s) for s in set(school_ids) if is_object_id(s)]
    if not ids:
        return {}
    docs = _schools().find(scoped({"_id": {"$in": ids}}, include_archived))
    return {str(d["_id"]): school_summary(d) for d in docs}


def list_schools(include_archived: bool = False) -> List[Dict[str, Any]]:
    return list(_schools().find(scoped({}, include_archived)).sort("name", 1))


def get_featured(limit: int = 10) -> List[Dict[str, Any]]:
    cursor = _schools().find(scoped({"featured": True, "status": "active"})).sort("adoptionCount", -1)
    return list(cursor.limit(max(1, min(limit, MAX_PAGE_SIZE))))


def get_most_adopted(limit: int = 10) -> List[Dict[str, Any]]:
    cursor = _schools().find(scoped({"status": "active"})).sort([("adoptionCount", -1), ("created_at", -1)])
    return list(cursor.limit(max(1, min(limit, MAX_PAGE_SIZE))))


def search(term: str, status: Optional[str] = None, page: int = 1, limit: int = 20, include_archived: bool = False) -> List[Dict[str, Any]]:
    """Case-insensitive literal substring match over name, city and address."""
    limit = max(1, min(limit or 20, MAX_PAGE_SIZE))
    page = max(page or 1, 1)
    pattern = re.escape(term or "")
    query = {
        "status": status or "active",
        "$or": [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"city": {"$regex": pattern, "$options": "i"}},
            {"address": {"$regex": pattern, "$options": "i"}},
        ],
    }
    cursor = _schools().find(scoped(query, include_archived)).sort([("adoptionCount", -1), ("name", 1)])
    return list(cursor.skip((page - 1) * limit).limit(limit))


# ---------------------------
# Adopter mutations
# ---------------------------

def add_adopter(school_id: str, user_id: str, adoption_type: str = "prayer") -> Dict[str, Any]:
    """Append `user_id` to the school's adopters and return the updated document.

    The membership test, capacity test, append and counter increments happen
    in one conditional update. When nothing matched, a fresh read tells us why.
    """
    if adoption_type not in ADOPTION_TYPES:
        raise ValidationError("Adoption type must be one of: " + ", ".join(ADOPTION_TYPES), code="INVALID_ADOPTION_TYPE")
    oid = _oid(school_id)
    now = datetime.now(timezone.utc)

    inc = {"adoptionCount": 1}
    if adoption_type in ("prayer", "both"):
        inc["stats.totalPrayerAdoptions"] = 1
    if adoption_type in ("revival", "both"):
        inc["stats.totalRevivalAdoptions"] = 1

    updated = _schools().find_one_and_update(
        scoped({
            "_id": oid,
            "adopters.userId": {"$ne": user_id},
            "adoptionCount": {"$lt": MAX_ADOPTERS},
            # the list itself is the bound when the counter has drifted
            f"adopters.{MAX_ADOPTERS - 1}": {"$exists": False},
        }),
        {
            "$push": {"adopters": {"userId": user_id, "adoptionType": adoption_type, "adoptedAt": now}},
            "$inc": inc,
            "$set": {"stats.lastAdoptedAt": now, "updated_at": now},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        return updated

    current = _schools().find_one(scoped({"_id": oid}))
    if current is None:
        raise NotFoundError("School not found.", code="SCHOOL_NOT_FOUND")
    if is_adopted_by(current, user_id):
        raise AlreadyAdoptedError()
    raise AdopterLimitExceededError(f"This school has reached the maximum number of adopters ({MAX_ADOPTERS}).")


def remove_adopter(school_id: str, user_id: str) -> bool:
    """Pull `user_id` from the adopters list. Returns False when it was not there."""
    updated = _schools().find_one_and_update(
        {"_id": _oid(school_id), "adopters.userId": user_id},
        {
            "$pull": {"adopters": {"userId": user_id}},
            "$inc": {"adoptionCount": -1},
            "$set": {"updated_at": datetime.now(timezone.utc)},
        },
    )
    return updated is not None


def is_adopted_by(school: Dict[str, Any], user_id: str) -> bool:
    return any(a.get("userId") == user_id for a in school.get("adopters") or [])


def adopters_view(school_id: str) -> Dict[str, Any]:
    school = get_school(school_id)
    adopters = school.get("adopters") or []
    names = get_user_names(a.get("userId") for a in adopters)
    listed = []
    for entry in adopters:
        item = serialize(entry)
        item["user"] = names.get(entry.get("userId"))
        listed.append(item)
    return {
        "school": {"id": str(school["_id"]), "name": school.get("name"), "address": school.get("address")},
        "adopters": listed,
        "totalAdopters": len(adopters),
        "adoptionCount": school.get("adoptionCount", 0),
    }


def reconcile(school_id: str) -> Dict[str, Any]:
    """Rebuild the adopters projection from the adoption ledger."""
    oid = _oid(school_id)
    school = _schools().find_one({"_id": oid})
    if not school:
        raise NotFoundError("School not found.", code="SCHOOL_NOT_FOUND")

    # ledger insertion order
    rows = sorted(get_documents("adoption", {"schoolId": school_id}), key=lambda row: row["_id"])
    adopters = [
        {"userId": row["userId"], "adoptionType": row.get("adoptionType", "prayer"), "adoptedAt": row.get("dateAdopted")}
        for row in rows[:MAX_ADOPTERS]
    ]
    counts = counts_by_type(adopters)
    stats = SchoolStats(**(school.get("stats") or {})).model_dump()
    stats["totalPrayerAdoptions"] = counts["prayer"]
    stats["totalRevivalAdoptions"] = counts["revival"]
    stats["lastAdoptedAt"] = adopters[-1]["adoptedAt"] if adopters else None

    updated = _schools().find_one_and_update(
        {"_id": oid},
        {"$set": {
            "adopters": adopters,
            "adoptionCount": len(adopters),
            "stats": stats,
            "updated_at": datetime.now(timezone.utc),
        }},
        return_document=ReturnDocument.AFTER,
    )
    logger.info(
        "Reconciled school %s: adoptionCount %s -> %s (ledger rows: %s)",
        school_id, school.get("adoptionCount", 0), len(adopters), len(rows),
    )
    return updated


def impact_report(school_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    school = get_school(school_id)
    now = now or datetime.now(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    # stored datetimes come back as naive UTC
    since = start.astimezone(timezone.utc).replace(tzinfo=None)
    database = require_db()
    sid = str(school["_id"])
    answered = list(database["prayerrequest"].find({"schoolId": sid, "isAnswered": True, "created_at": {"$gte": since}}))
    return {
        "month": start.strftime("%B %Y"),
        "newAdoptions": database["adoption"].count_documents({"schoolId": sid, "dateAdopted": {"$gte": since}}),
        "newJournals": database["journal"].count_documents({"schoolId": sid, "created_at": {"$gte": since}}),
        "answeredPrayers": len(answered),
        "highlights": [r["answerNote"] for r in answered if r.get("answerNote")],
    }
