# ABOUTME: Defines canonical data structures shared by the normalizer and the analytics engine.
# ABOUTME: Centralizes learning-event, enrollment, progress, catalog, and trend schema definitions.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

ENROLLMENT = "enrollment"
LESSON_START = "lesson_start"
LESSON_COMPLETE = "lesson_complete"
QUIZ_ATTEMPT = "quiz_attempt"
SESSION = "session"
COURSE_COMPLETE = "course_complete"
CERTIFICATE = "certificate"
PAYMENT = "payment"
REFUND = "refund"
REVIEW = "review"

KNOWN_KINDS = frozenset(
    {
        ENROLLMENT,
        LESSON_START,
        LESSON_COMPLETE,
        QUIZ_ATTEMPT,
        SESSION,
        COURSE_COMPLETE,
        CERTIFICATE,
        PAYMENT,
        REFUND,
        REVIEW,
    }
)
# Kinds that count as the student touching the course.
ACTIVITY_KINDS = frozenset({ENROLLMENT, LESSON_START, LESSON_COMPLETE, QUIZ_ATTEMPT, SESSION, COURSE_COMPLETE})


@dataclass(frozen=True)
class LearningEvent:
    """Canonical activity row produced by normalization."""

    subject_id: str
    course_id: str
    kind: str
    timestamp: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EnrollmentRecord:
    student_id: str
    course_id: str
    enrollment_date: datetime
    is_completed: bool = False
    certificate_issued: bool = False
    completion_date: Optional[datetime] = None


@dataclass(frozen=True)
class CourseProgress:
    """Per (student, course) progress summary recomputed on every query."""

    student_id: str
    course_id: str
    lessons_completed: int
    total_lessons: int
    quizzes_attempted: int
    quizzes_passed: int
    average_quiz_score: float
    total_time_spent: int  # seconds
    last_access_date: Optional[datetime]
    enrollment_date: Optional[datetime] = None
    is_completed: bool = False
    certificate_issued: bool = False
    completion_date: Optional[datetime] = None
    progress_percentage: float = 0.0
    engagement_score: float = 0.0


class EngagementLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class TrendPoint:
    """One zero-filled bucket of a time series."""

    bucket_label: str
    bucket_start: datetime
    values: Mapping[str, float] = field(default_factory=dict)
    granularity: str = "day"

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def to_dict(self) -> Dict[str, Any]:
        label_key = {"week": "week", "month": "month"}.get(self.granularity, "date")
        row: Dict[str, Any] = {label_key: self.bucket_label}
        row.update(self.values)
        return row


@dataclass(frozen=True)
class TimeWindow:
    """Inclusive [start, end] window a query is scoped to."""

    start: datetime
    end: datetime


@dataclass(frozen=True)
class CourseInfo:
    course_id: str
    title: str
    instructor_id: str
    instructor_name: str = ""
    category: str = "Uncategorized"
    total_lessons: int = 0
    lesson_titles: Mapping[str, str] = field(default_factory=dict)
    price: float = 0.0
    published: bool = True


@dataclass(frozen=True)
class UserInfo:
    user_id: str
    name: str
    role: str = "student"
    email: str = ""
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Identity:
    """Already-authenticated caller handed over by the identity provider."""

    role: str
    user_id: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class QueryFilters:
    course_id: Optional[str] = None
    instructor_id: Optional[str] = None

    def as_key(self) -> Tuple[Optional[str], Optional[str]]:
        return (self.course_id, self.instructor_id)
