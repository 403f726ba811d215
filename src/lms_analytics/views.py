# ABOUTME: Immutable aggregate views returned by the metrics façade, one per subject kind.
# ABOUTME: Each view serializes to a JSON-ready dict with stable camelCase keys.

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

import numpy as np

from src.common.schemas import CourseProgress, EngagementLevel, TrendPoint

from .insights import Insight


def camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def to_jsonable(value: Any) -> Any:
    """Recursively convert view objects into plain JSON types."""

    if isinstance(value, TrendPoint):
        return {key: to_jsonable(item) for key, item in value.to_dict().items()}
    if is_dataclass(value) and not isinstance(value, type):
        row = {camel(f.name): to_jsonable(getattr(value, f.name)) for f in fields(value)}
        kind = getattr(type(value), "subject_kind", None)
        if kind is not None:
            row = {"subjectKind": kind, **row}
        return row
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    if isinstance(value, np.generic):
        return value.item()
    return value


class _View:
    subject_kind: ClassVar[str] = ""

    def __post_init__(self) -> None:
        # frozen only guards attributes; mapping fields are wrapped read-only too
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, dict):
                object.__setattr__(self, f.name, MappingProxyType(dict(value)))

    def to_dict(self) -> Dict[str, Any]:
        return to_jsonable(self)


@dataclass(frozen=True)
class StudentSummary:
    """One enrolled student as seen from an instructor dashboard."""

    student_id: str
    name: str
    email: str
    enrolled_courses: int
    completed_courses: int
    average_progress: float
    total_time_spent: int
    average_quiz_score: float
    last_active_date: Optional[datetime]
    engagement_level: EngagementLevel
    engagement_score: float
    is_struggling: bool
    struggling_reasons: Tuple[str, ...] = ()
    is_inactive: bool = False
    is_top_performer: bool = False


@dataclass(frozen=True)
class StudentMetrics(_View):
    subject_kind: ClassVar[str] = "student"

    student_id: str
    student_name: str
    time_range: str
    courses_enrolled: int
    courses_completed: int
    completion_rate: float
    certificates_earned: int
    average_progress: float
    average_quiz_score: float
    quizzes_attempted: int
    quizzes_passed: int
    total_time_spent: int
    current_streak: int
    last_access_date: Optional[datetime]
    engagement_level: EngagementLevel
    engagement_score: float
    is_struggling: bool
    struggling_reasons: Tuple[str, ...]
    is_inactive: bool
    is_top_performer: bool
    course_progress: Tuple[CourseProgress, ...]
    activity_trend: Tuple[TrendPoint, ...]
    weekly_progress: Tuple[TrendPoint, ...]
    insights: Tuple[Insight, ...]
    generated_at: datetime


@dataclass(frozen=True)
class LessonStats:
    lesson_id: str
    lesson_title: str
    students_started: int
    students_completed: int
    completion_rate: float
    dropout_rate: float
    average_time_spent: float
    average_attempts: float


@dataclass(frozen=True)
class CourseAnalytics(_View):
    subject_kind: ClassVar[str] = "course"

    course_id: str
    course_name: str
    instructor_id: str
    instructor_name: str
    category: str
    time_range: str
    total_enrollments: int
    new_enrollments: int
    active_students: int
    completion_rate: float
    average_progress: float
    average_quiz_score: float
    average_rating: float
    total_ratings: int
    rating_distribution: Mapping[int, int]
    average_time_to_complete: float  # days
    revenue: float
    refunds: float
    net_revenue: float
    engagement_distribution: Mapping[str, int]
    enrollment_trend: Tuple[TrendPoint, ...]
    lesson_stats: Tuple[LessonStats, ...]
    top_performing_lessons: Tuple[LessonStats, ...]
    struggling_areas: Tuple[LessonStats, ...]
    insights: Tuple[Insight, ...]
    generated_at: datetime


@dataclass(frozen=True)
class InstructorMetrics(_View):
    subject_kind: ClassVar[str] = "instructor"

    instructor_id: str
    instructor_name: str
    time_range: str
    total_courses: int
    total_students: int
    total_revenue: float
    average_course_rating: float
    student_completion_rate: float
    engagement_rate: float
    struggling_students: int
    inactive_students: int
    courses: Tuple[CourseAnalytics, ...]
    monthly_stats: Tuple[TrendPoint, ...]
    students: Tuple[StudentSummary, ...]
    top_performers: Tuple[StudentSummary, ...]
    insights: Tuple[Insight, ...]
    generated_at: datetime


@dataclass(frozen=True)
class PlatformOverview:
    total_users: int
    total_courses: int
    total_revenue: float
    total_enrollments: int
    active_users: int
    completion_rate: float
    average_rating: float
    monthly_growth_rate: float


@dataclass(frozen=True)
class CategoryRevenue:
    category: str
    revenue: float
    enrollments: int
    average_price: float


@dataclass(frozen=True)
class RevenueAnalytics:
    total_revenue: float
    subscription_revenue: float
    one_time_revenue: float
    refunds: float
    net_revenue: float
    monthly_revenue: Tuple[TrendPoint, ...]
    revenue_by_category: Tuple[CategoryRevenue, ...]


@dataclass(frozen=True)
class CoursePerformance:
    course_id: str
    title: str
    instructor_name: str
    category: str
    enrollments: int
    revenue: float
    rating: float
    completion_rate: float


@dataclass(frozen=True)
class InstructorRanking:
    rank: int
    instructor_id: str
    name: str
    total_revenue: float
    total_students: int
    average_rating: float
    courses_count: int


@dataclass(frozen=True)
class AdminDashboardData(_View):
    subject_kind: ClassVar[str] = "admin"

    time_range: str
    overview: PlatformOverview
    user_growth: Tuple[TrendPoint, ...]
    revenue_analytics: RevenueAnalytics
    course_performance: Tuple[CoursePerformance, ...]
    instructor_rankings: Tuple[InstructorRanking, ...]
    engagement_distribution: Mapping[str, int] = field(default_factory=dict)
    insights: Tuple[Insight, ...] = ()
    generated_at: Optional[datetime] = None


AggregateView = Union[StudentMetrics, InstructorMetrics, CourseAnalytics, AdminDashboardData]

VIEW_TYPES: Dict[str, type] = {
    view.subject_kind: view for view in (StudentMetrics, InstructorMetrics, CourseAnalytics, AdminDashboardData)
}
SUBJECT_KINDS = tuple(VIEW_TYPES)
