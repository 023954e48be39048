"""
Adoption ledger and the adopt-a-school workflow.

The ledger (`adoption` collection) holds one row per (userId, schoolId),
guarded by a unique index, and is the source of truth for whether an
adoption happened. The school's embedded adopters list is a projection of
it. The two writes are not atomic together: the ledger is written first,
then the school. If the second write fails the caller gets a
PartialFailureError and an admin runs schools.reconcile(); nothing is
rolled back here.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

import schools
from auth import user_id_of
from database import create_document, is_object_id, require_db, serialize
from errors import (
    AdopterLimitExceededError,
    AlreadyAdoptedError,
    ApiError,
    DuplicateAdoptionError,
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from schemas import ADOPTION_TYPES, Adoption
from users import get_user_names, update_streak

logger = logging.getLogger(__name__)


def _adoptions():
    return require_db()["adoption"]


# ---------------------------
# Ledger
# ---------------------------

def create_adoption(user_id: str, school_id: str, adoption_type: str = "prayer") -> Dict[str, Any]:
    try:
        adoption_id = create_document("adoption", Adoption(userId=user_id, schoolId=school_id, adoptionType=adoption_type))
    except DuplicateKeyError:
        raise DuplicateAdoptionError()
    return _adoptions().find_one({"_id": ObjectId(adoption_id)})


def adoption_to_public(row: Dict[str, Any], school: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    out = serialize(row)
    out["school"] = school
    return out


def list_for_user(user_id: str) -> List[Dict[str, Any]]:
    rows = list(_adoptions().find({"userId": user_id}).sort([("dateAdopted", -1), ("_id", -1)]))
    summaries = schools.get_summaries(r["schoolId"] for r in rows)
    return [adoption_to_public(r, summaries.get(r["schoolId"])) for r in rows]


def recent_activity(limit: int = 10) -> List[Dict[str, Any]]:
    rows = list(_adoptions().find({}).sort([("dateAdopted", -1), ("_id", -1)]).limit(limit))
    names = get_user_names(r["userId"] for r in rows)
    summaries = schools.get_summaries(r["schoolId"] for r in rows)
    activity = []
    for r in rows:
        school = summaries.get(r["schoolId"]) or {}
        activity.append({
            "userName": (names.get(r["userId"]) or {}).get("name") or "Someone",
            "schoolName": school.get("name") or "a university",
            "city": school.get("city") or "the UK",
            "type": r.get("adoptionType"),
            "time": serialize(r)["dateAdopted"],
        })
    return activity


# ---------------------------
# Workflow
# ---------------------------

def adopt(user: Dict[str, Any], school_id: Any, adoption_type: Optional[str] = None) -> Dict[str, Any]:
    """Adopt `school_id` for the authenticated `user`.

    Raises ValidationError, NotFoundError, AlreadyAdoptedError or
    PartialFailureError. Returns the ledger row and the school's counts.
    """
    user_id = user_id_of(user)

    if not is_object_id(school_id):
        raise ValidationError("A valid school ID is required.", code="INVALID_SCHOOL_ID")
    adoption_type = adoption_type or "prayer"
    if adoption_type not in ADOPTION_TYPES:
        raise ValidationError("Adoption type must be one of: " + ", ".join(ADOPTION_TYPES), code="INVALID_ADOPTION_TYPE")

    school = schools.find_school(school_id)
    if school is None:
        raise NotFoundError("School not found.", code="SCHOOL_NOT_FOUND")

    if schools.is_adopted_by(school, user_id):
        raise AlreadyAdoptedError()

    try:
        adoption = create_adoption(user_id, school_id, adoption_type)
    except DuplicateAdoptionError:
        # lost the race to a concurrent identical request
        raise AlreadyAdoptedError()

    try:
        updated = schools.add_adopter(school_id, user_id, adoption_type)
    except AlreadyAdoptedError:
        # both collections already agree
        logger.warning("School %s already listed user %s when the ledger row was written", school_id, user_id)
        updated = schools.get_school(school_id, include_archived=True)
    except (AdopterLimitExceededError, NotFoundError, PyMongoError) as exc:
        logger.error(
            "Partial adoption: ledger row %s committed for user %s / school %s, school adopters not updated (%s)",
            adoption["_id"], user_id, school_id, getattr(exc, "code", type(exc).__name__),
        )
        message = None
        if isinstance(exc, ApiError):
            message = f"{PartialFailureError.message} Reason: {exc.message}"
        raise PartialFailureError(message, details={"adoptionId": str(adoption["_id"]), "committed": "ledger"})

    try:
        update_streak(user)
    except Exception:
        logger.exception("Could not update prayer streak for user %s after adopting %s", user_id, school_id)

    return {
        "message": "School adopted successfully!",
        "adoption": adoption_to_public(adoption, schools.school_summary(updated)),
        "schoolStats": {
            "totalAdopters": len(updated.get("adopters") or []),
            "adoptionCount": updated.get("adoptionCount", 0),
        },
    }
