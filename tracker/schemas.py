"""
schemas.py
----------
Pydantic models for roster records and request bodies.

Python attributes are snake_case; JSON (wire and snapshot file) uses the
camelCase aliases, e.g. ``has_custom_avatar`` <-> ``hasCustomAvatar``.
"""

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt
from pydantic.alias_generators import to_camel

MIN_POINTS = 0
MAX_POINTS = 20

DEFAULT_AVATAR_URL = "https://api.dicebear.com/7.x/avataaars/svg?seed={seed}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_points(value: int) -> int:
    """Clamp a point count into [MIN_POINTS, MAX_POINTS]."""
    return max(MIN_POINTS, min(MAX_POINTS, value))


def default_avatar(name: str) -> str:
    return DEFAULT_AVATAR_URL.format(seed=quote(name))


def new_student_id() -> str:
    return uuid.uuid4().hex


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------
class Student(CamelModel):
    id: str
    name: str = Field(min_length=1)
    points: int = Field(default=0, ge=MIN_POINTS, le=MAX_POINTS)
    avatar: str = ""
    has_custom_avatar: bool = False
    last_updated: datetime = Field(default_factory=utcnow)


class HistoryEntry(CamelModel):
    """Read-only {name, points} pair archived at a week boundary."""

    model_config = ConfigDict(frozen=True)

    name: str
    points: int


class ClassRecord(CamelModel):
    name: str
    students: List[Student] = Field(default_factory=list)
    current_week_key: Optional[str] = None
    weekly_history: Dict[str, List[HistoryEntry]] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=utcnow)

    def find_student(self, student_id: str) -> Optional[Student]:
        for student in self.students:
            if student.id == student_id:
                return student
        return None

    def index_of(self, student_id: str) -> int:
        """Position of a student in the roster, or -1."""
        for index, student in enumerate(self.students):
            if student.id == student_id:
                return index
        return -1


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------
class CreateClassRequest(CamelModel):
    class_name: str


class NewStudent(CamelModel):
    name: str
    avatar: Optional[str] = None
    has_custom_avatar: StrictBool = False


class AddStudentRequest(CamelModel):
    student: NewStudent


class PointsRequest(CamelModel):
    """Either an absolute ``points`` value or a signed ``change``."""

    points: Optional[StrictInt] = None
    change: Optional[StrictInt] = None


class StudentUpdateRequest(CamelModel):
    name: Optional[str] = None
    avatar: Optional[str] = None
    has_custom_avatar: Optional[StrictBool] = None


class AllPointsRequest(CamelModel):
    change: StrictInt
