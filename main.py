import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pydantic import BaseModel, Field

import adoptions
import journal
import prayer_requests
import schools
import users
from auth import bearer_token, get_current_user, issue_token, require_admin, revoke_token, rotate_token, user_id_of
from config import CORS_ORIGINS, LOG_LEVEL, PORT, RATE_LIMIT_BACKEND
from database import as_utc, db, ensure_indexes
from errors import install_error_handlers, success
from ratelimit import MemoryCounterStore, MongoCounterStore, RateLimiter, limit_by_ip, limit_by_user
from schemas import SchoolStatus
from validation import require_object_id, strip_html

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("campus_revival")

app = FastAPI(title="Campus Revival API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "HEAD", "PUT", "PATCH", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=86400,
)

install_error_handlers(app)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains; preload",
}


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


if db is not None:
    ensure_indexes(db)

if RATE_LIMIT_BACKEND == "mongo" and db is not None:
    rate_limiter = RateLimiter(MongoCounterStore(db["ratelimit"]))
else:
    rate_limiter = RateLimiter(MemoryCounterStore())

register_limit = limit_by_ip(rate_limiter, "register", 5, message="Too many registration attempts. Please try again later.")
login_limit = limit_by_ip(rate_limiter, "login", 10, message="Too many login attempts. Please try again later.")
adopt_limit = limit_by_user(rate_limiter, "adopt", 10, message="Too many adoption requests. Please try again later.")
prayer_limit = limit_by_user(rate_limiter, "prayer", 20, message="Too many prayer requests. Please try again later.")
submit_limit = limit_by_user(rate_limiter, "school-submit", 5, 60 * 60, message="Too many submissions. Please try again later.")


# ---------------------------
# Health & Test
# ---------------------------
@app.get("/")
def root():
    return {"message": "Campus Revival API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:20]
            except Exception as e:
                response["database"] = f"⚠️ Connected but error listing collections: {str(e)[:80]}"
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:120]}"
    return response


@app.get("/health")
def health():
    body = {"timestamp": datetime.now(timezone.utc).isoformat()}
    try:
        if db is None:
            raise RuntimeError("database not configured")
        db.list_collection_names()
    except Exception:
        logger.exception("Health check failed")
        body.update({
            "success": False,
            "status": "unhealthy",
            "error": {"code": "DB_CONNECTION_ERROR", "message": "Database is unreachable. Please try again later."},
        })
        return JSONResponse(status_code=503, content=body)
    body.update({"success": True, "status": "healthy", "database": "connected"})
    return body


# ---------------------------
# Auth Endpoints
# ---------------------------
class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class ChangePasswordRequest(BaseModel):
    currentPassword: str
    newPassword: str


class VerifyLeaderRequest(BaseModel):
    universityEmail: Optional[str] = None


class RefreshRequest(BaseModel):
    refreshToken: Optional[str] = None


def _session_payload(user: Dict[str, Any], token: str) -> Dict[str, Any]:
    return {
        "token": token,
        "token_type": "bearer",
        "user": {
            "id": str(user["_id"]),
            "email": user.get("email"),
            "name": user.get("name"),
            "role": user.get("role"),
            "isVerifiedLeader": user.get("isVerifiedLeader", False),
        },
    }


@app.post("/auth/register", status_code=201, dependencies=[Depends(register_limit)])
def register(body: RegisterRequest):
    user = users.register(body.name, body.email, body.password)
    token = issue_token(str(user["_id"]))
    return success({"message": "Account created successfully", **_session_payload(user, token)})


@app.post("/auth/login", dependencies=[Depends(login_limit)])
def login(body: LoginRequest):
    user = users.authenticate(body.email, body.password)
    token = issue_token(str(user["_id"]))
    return success({"message": "Login successful", **_session_payload(user, token)})


@app.post("/auth/logout")
def logout(token: str = Depends(bearer_token), user: Dict[str, Any] = Depends(get_current_user)):
    revoke_token(token)
    return success({"message": "Logged out successfully"})


@app.post("/auth/refresh")
def refresh(body: RefreshRequest):
    user, token = rotate_token(body.refreshToken)
    return success(_session_payload(user, token))


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(get_current_user)):
    return success({"user": users.public_user(user)})


@app.post("/auth/change-password")
def change_password(body: ChangePasswordRequest, token: str = Depends(bearer_token), user: Dict[str, Any] = Depends(get_current_user)):
    users.change_password(user, body.currentPassword, body.newPassword, current_token=token)
    return success({"message": "Password updated"})


@app.post("/auth/verify-leader")
def verify_leader(body: VerifyLeaderRequest, user: Dict[str, Any] = Depends(get_current_user)):
    updated = users.verify_leader(user, body.universityEmail)
    return success({"message": "You are now a Verified Campus Leader!", "user": users.public_user(updated)})


# ---------------------------
# Schools
# ---------------------------
class SchoolCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str = Field(..., min_length=5, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    country: Optional[str] = None
    featured: bool = False
    description: Optional[str] = Field(None, max_length=5000)
    website: Optional[str] = Field(None, pattern=r"^https?://.+\..+")
    image: Optional[str] = None
    status: SchoolStatus = "active"


class SchoolSubmit(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    address: str = Field(..., min_length=5, max_length=500)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    description: str = Field(..., min_length=10, max_length=5000)
    website: Optional[str] = Field(None, pattern=r"^https?://.+\..+")
    image: Optional[str] = None


class SchoolUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = Field(None, min_length=5, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    status: Optional[SchoolStatus] = None
    featured: Optional[bool] = None
    description: Optional[str] = Field(None, max_length=5000)
    website: Optional[str] = Field(None, pattern=r"^https?://.+\..+")
    image: Optional[str] = None


TEXT_FIELDS = ("name", "address", "city", "country", "description")


def _clean_school_fields(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: (strip_html(v) if k in TEXT_FIELDS else v) for k, v in data.items() if v is not None}


@app.get("/schools")
def list_schools(q: Optional[str] = None, status: Optional[str] = None, page: int = 1, limit: int = 20):
    if q:
        found = schools.search(q, status=status, page=page, limit=limit)
    else:
        found = schools.list_schools()
    items = [schools.school_to_public(s) for s in found]
    return success({"count": len(items), "schools": items})


@app.get("/schools/featured")
def featured_schools(limit: int = 10):
    return success({"schools": [schools.school_to_public(s) for s in schools.get_featured(limit)]})


@app.get("/schools/most-adopted")
def most_adopted_schools(limit: int = 10):
    return success({"schools": [schools.school_to_public(s) for s in schools.get_most_adopted(limit)]})


@app.get("/schools/slug/{slug}")
def school_by_slug(slug: str):
    return success({"school": schools.school_to_public(schools.get_by_slug(slug))})


@app.post("/schools", status_code=201)
def create_school(body: SchoolCreate, admin: Dict[str, Any] = Depends(require_admin)):
    data = _clean_school_fields(body.model_dump(exclude={"status"}))
    school = schools.create_school(data, status=body.status)
    return success({"message": "School created", "school": schools.school_to_public(school)})


@app.post("/schools/submit", status_code=201, dependencies=[Depends(submit_limit)])
def submit_school(body: SchoolSubmit, user: Dict[str, Any] = Depends(get_current_user)):
    data = _clean_school_fields(body.model_dump())
    school = schools.create_school(data, status="pending_review", submitted_by=user_id_of(user))
    return success({
        "message": "University submitted successfully! It will be reviewed by an admin.",
        "school": {"id": str(school["_id"]), "name": school["name"], "city": school.get("city"), "status": school["status"]},
    })


@app.get("/schools/{school_id}")
def get_school(school_id: str):
    return success({"school": schools.school_to_public(schools.get_school(school_id))})


@app.patch("/schools/{school_id}")
def update_school(school_id: str, body: SchoolUpdate, admin: Dict[str, Any] = Depends(require_admin)):
    updated = schools.update_school(school_id, _clean_school_fields(body.model_dump(exclude_unset=True)))
    return success({"school": schools.school_to_public(updated)})


@app.get("/schools/{school_id}/adopters")
def school_adopters(school_id: str):
    return success(schools.adopters_view(school_id))


@app.delete("/schools/{school_id}/adopters/{user_id}")
def remove_school_adopter(school_id: str, user_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    removed = schools.remove_adopter(school_id, user_id)
    return success({"removed": removed})


@app.post("/schools/{school_id}/reconcile")
def reconcile_school(school_id: str, admin: Dict[str, Any] = Depends(require_admin)):
    updated = schools.reconcile(school_id)
    return success({
        "school": schools.school_to_public(updated),
        "adoptionCount": updated.get("adoptionCount", 0),
        "totalAdopters": len(updated.get("adopters") or []),
    })


@app.get("/schools/{school_id}/impact")
def school_impact(school_id: str):
    return success({"report": schools.impact_report(school_id)})


# ---------------------------
# Adoptions
# ---------------------------
class AdoptRequest(BaseModel):
    schoolId: Optional[str] = None
    adoptionType: Optional[str] = None


@app.post("/adoptions", status_code=201)
def adopt_school(body: AdoptRequest, user: Dict[str, Any] = Depends(get_current_user), _limit: None = Depends(adopt_limit)):
    return success(adoptions.adopt(user, body.schoolId, body.adoptionType))


@app.get("/adoptions")
def my_adoptions(user: Dict[str, Any] = Depends(get_current_user)):
    rows = adoptions.list_for_user(user_id_of(user))
    return success({"count": len(rows), "adoptions": rows})


# ---------------------------
# Journal
# ---------------------------
class JournalCreate(BaseModel):
    entryText: Optional[str] = None
    schoolId: Optional[str] = None


@app.get("/journal")
def list_journal(schoolId: Optional[str] = None, limit: int = 50, user: Dict[str, Any] = Depends(get_current_user)):
    entries = journal.list_entries(user, school_id=schoolId, limit=limit)
    return success({"count": len(entries), "entries": entries})


@app.post("/journal", status_code=201)
def create_journal(body: JournalCreate, user: Dict[str, Any] = Depends(get_current_user)):
    entry = journal.create_entry(user, body.entryText, body.schoolId)
    return success({"message": "Journal entry created", "entry": entry})


@app.delete("/journal/{entry_id}")
def delete_journal(entry_id: str, user: Dict[str, Any] = Depends(get_current_user)):
    journal.delete_entry(user, entry_id)
    return success({"message": "Journal entry deleted"})


# ---------------------------
# Prayer requests
# ---------------------------
class PrayerRequestCreate(BaseModel):
    schoolId: Optional[str] = None
    content: Optional[str] = None
    isUrgent: bool = False
    category: Optional[str] = None


class AnswerRequest(BaseModel):
    requestId: Optional[str] = None
    answerNote: Optional[str] = None


@app.post("/prayer-requests", status_code=201)
def create_prayer_request(body: PrayerRequestCreate, user: Dict[str, Any] = Depends(get_current_user), _limit: None = Depends(prayer_limit)):
    request = prayer_requests.create_request(user, body.schoolId, body.content, body.isUrgent, body.category)
    return success({"request": request})


@app.api_route("/prayer-requests/answer", methods=["POST", "PATCH"])
def answer_prayer_request(body: AnswerRequest, user: Dict[str, Any] = Depends(get_current_user)):
    request = prayer_requests.mark_answered(body.requestId, user, body.answerNote)
    return success({"message": "Prayer request marked as answered! Praise God!", "request": request})


@app.get("/prayer-requests/{school_id}")
def school_prayer_requests(school_id: str):
    require_object_id(school_id, code="INVALID_SCHOOL_ID", message="A valid school ID is required.")
    requests = prayer_requests.list_for_school(school_id)
    return success({"count": len(requests), "requests": requests})


# ---------------------------
# Dashboard & public feed
# ---------------------------
@app.get("/dashboard")
def dashboard(user: Dict[str, Any] = Depends(get_current_user)):
    rows = adoptions.list_for_user(user_id_of(user))
    adopted = []
    for a in rows:
        school = a.get("school") or {}
        entries = a.get("journalEntries") or []
        adopted.append({
            "id": school.get("id") or a.get("schoolId"),
            "name": school.get("name", "Unknown"),
            "address": school.get("address", ""),
            "adoptionType": a.get("adoptionType"),
            "dateAdopted": a.get("dateAdopted"),
            "prayerCount": a.get("prayerCount", 0),
            "journalEntries": len(entries),
            "latestJournal": entries[-1] if entries else None,
        })

    created = as_utc(user.get("created_at"))
    days_active = max(0, (datetime.now(timezone.utc) - created).days) if created else 0

    return success({
        "dashboard": {
            "user": {
                "name": user.get("name"),
                "email": user.get("email"),
                "role": user.get("role"),
                "memberSince": created,
                "isVerifiedLeader": user.get("isVerifiedLeader", False),
            },
            "stats": {
                "schoolsCount": len(rows),
                "totalPrayers": sum(a.get("prayerCount", 0) for a in rows),
                "journalCount": journal.count_entries(user),
                "totalJournalEntries": sum(len(a.get("journalEntries") or []) for a in rows),
                "streakCount": user.get("streakCount", 0),
                "daysActive": days_active,
            },
            "adoptions": adopted,
            "recentJournals": journal.list_entries(user, limit=5),
        }
    })


@app.get("/public/activity")
def public_activity():
    return success({"activity": adoptions.recent_activity()})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
