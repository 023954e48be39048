"""
Database Schemas for Campus Revival

Each Pydantic model maps to a MongoDB collection using the lowercased class name.
Example: School -> "school" collection

Cross-collection references (userId, schoolId) are stored as id strings.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

AdoptionType = Literal["prayer", "revival", "both"]
SchoolStatus = Literal["active", "inactive", "pending_review", "archived"]
PrayerCategory = Literal["Exams", "Outreach", "Mental Health", "Revival", "Other"]

ADOPTION_TYPES = ("prayer", "revival", "both")
SCHOOL_STATUSES = ("active", "inactive", "pending_review", "archived")
PRAYER_CATEGORIES = ("Exams", "Outreach", "Mental Health", "Revival", "Other")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    email: EmailStr
    password_hash: str
    name: str = Field(..., min_length=2, max_length=100)
    role: Literal["adopter", "admin"] = "adopter"
    streakCount: int = Field(0, ge=0)
    lastPrayerDate: Optional[datetime] = None
    isVerifiedLeader: bool = False
    universityEmail: Optional[EmailStr] = None
    university: Optional[str] = None
    organization: Optional[str] = None


class Session(BaseModel):
    user_id: str
    token: str
    expires_at: datetime


class AdopterEntry(BaseModel):
    userId: str
    adoptionType: AdoptionType = "prayer"
    adoptedAt: datetime = Field(default_factory=utcnow)


class SchoolStats(BaseModel):
    totalPrayerAdoptions: int = Field(0, ge=0)
    totalRevivalAdoptions: int = Field(0, ge=0)
    lastAdoptedAt: Optional[datetime] = None
    totalJournalEntries: int = Field(0, ge=0)


class School(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    slug: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str = Field(..., min_length=5, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    country: str = "United Kingdom"
    status: SchoolStatus = "active"
    featured: bool = False
    description: Optional[str] = Field(None, max_length=5000)
    website: Optional[str] = None
    image: Optional[str] = None
    adopters: List[AdopterEntry] = Field(default_factory=list, max_length=500)
    adoptionCount: int = Field(0, ge=0)
    stats: SchoolStats = Field(default_factory=SchoolStats)
    submittedBy: Optional[str] = None


class JournalItem(BaseModel):
    """Legacy journal entry embedded in an adoption record."""
    text: str = Field(..., max_length=5000)
    date: datetime = Field(default_factory=utcnow)


class Adoption(BaseModel):
    userId: str
    schoolId: str
    adoptionType: AdoptionType = "prayer"
    dateAdopted: datetime = Field(default_factory=utcnow)
    journalEntries: List[JournalItem] = Field(default_factory=list)
    prayerCount: int = Field(0, ge=0)


class Journal(BaseModel):
    userId: str
    entryText: str = Field(..., min_length=1, max_length=5000)
    date: datetime = Field(default_factory=utcnow)
    schoolId: Optional[str] = None


class PrayerRequest(BaseModel):
    userId: str
    schoolId: str
    content: str = Field(..., min_length=1, max_length=1000)
    isUrgent: bool = False
    category: PrayerCategory = "Other"
    isAnswered: bool = False
    answeredAt: Optional[datetime] = None
    answerNote: Optional[str] = None

