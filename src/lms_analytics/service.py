# ABOUTME: Query façade that validates, authorizes, fetches, and assembles one aggregate view per call.
# ABOUTME: Dispatches on subject kind to the student, course, instructor, or admin dashboard builder.

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from src.common.data_pipeline import events_to_frame, normalize_records
from src.common.errors import AccessDenied, InvalidRange, NotFound, UpstreamTimeout
from src.common.schemas import (
    ACTIVITY_KINDS,
    COURSE_COMPLETE,
    ENROLLMENT,
    LESSON_COMPLETE,
    PAYMENT,
    QUIZ_ATTEMPT,
    REFUND,
    REVIEW,
    SESSION,
    CourseInfo,
    EngagementLevel,
    Identity,
    QueryFilters,
    TrendPoint,
    UserInfo,
)

from .classification import classify_student, engagement_level, engagement_score
from .config import DEFAULT_CONFIG, EngineConfig
from .insights import RULES_BY_KIND, generate_insights
from .rollup import (
    RawCounters,
    RollupScope,
    build_progress_frame,
    course_progress_rows,
    lesson_performance,
    ratio,
    restrict,
    rollup,
    student_lesson_dropout,
    to_datetime,
)
from .store import Catalog, EventStore
from .trends import (
    TIME_RANGES,
    WEEK,
    BucketRange,
    SeriesSpec,
    activity_streak,
    bucketize,
    dropout_trend,
    monthly_range,
    resolve_range,
    signup_growth,
    trailing_range,
    user_growth_trend,
)
from .views import (
    SUBJECT_KINDS,
    AdminDashboardData,
    AggregateView,
    CategoryRevenue,
    CourseAnalytics,
    CoursePerformance,
    InstructorMetrics,
    InstructorRanking,
    LessonStats,
    PlatformOverview,
    RevenueAnalytics,
    StudentMetrics,
    StudentSummary,
)

logger = logging.getLogger(__name__)

WEEKLY_PROGRESS_WEEKS = 8
TOP_LESSONS = 5


def _settled(frame: pd.DataFrame) -> pd.Series:
    return frame["status"].isna() | (frame["status"] == "completed")


STUDENT_ACTIVITY_SERIES = {
    "lessonsCompleted": SeriesSpec(kinds=(LESSON_COMPLETE,)),
    "quizzesTaken": SeriesSpec(kinds=(QUIZ_ATTEMPT,)),
    "timeSpent": SeriesSpec(kinds=(SESSION,), column="duration_seconds", how="sum"),
}
STUDENT_WEEKLY_SERIES = {
    "lessonsCompleted": SeriesSpec(kinds=(LESSON_COMPLETE,)),
    "quizzesPassed": SeriesSpec(kinds=(QUIZ_ATTEMPT,), predicate=lambda df: df["passed"].astype(bool)),
    "timeSpent": SeriesSpec(kinds=(SESSION,), column="duration_seconds", how="sum"),
}
COURSE_TREND_SERIES = {
    "enrollments": SeriesSpec(kinds=(ENROLLMENT,)),
    "completions": SeriesSpec(kinds=(COURSE_COMPLETE,)),
    "activeStudents": SeriesSpec(kinds=tuple(sorted(ACTIVITY_KINDS)), column="subject_id", how="nunique"),
    "revenue": SeriesSpec(kinds=(PAYMENT,), column="amount", how="sum", predicate=_settled),
}
INSTRUCTOR_MONTHLY_SERIES = {
    "enrollments": SeriesSpec(kinds=(ENROLLMENT,)),
    "completions": SeriesSpec(kinds=(COURSE_COMPLETE,)),
    "revenue": SeriesSpec(kinds=(PAYMENT,), column="amount", how="sum", predicate=_settled),
    "reviews": SeriesSpec(kinds=(REVIEW,)),
}
REVENUE_SERIES = {
    "revenue": SeriesSpec(kinds=(PAYMENT,), column="amount", how="sum", predicate=_settled),
    "subscriptions": SeriesSpec(
        kinds=(PAYMENT,),
        column="amount",
        how="sum",
        predicate=lambda df: _settled(df) & (df["payment_type"] == "subscription"),
    ),
    "oneTimePurchases": SeriesSpec(
        kinds=(PAYMENT,),
        column="amount",
        how="sum",
        predicate=lambda df: _settled(df) & (df["payment_type"] != "subscription"),
    ),
    "refunds": SeriesSpec(kinds=(REFUND,), column="amount", how="sum"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    ts = pd.Timestamp(value)
    ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
    return ts.to_pydatetime()


class MetricsService:
    """
    Read-only metrics façade over an event store and a catalog.

    Every call recomputes its view from the raw records; nothing is shared
    between queries apart from the store worker pool.
    """

    def __init__(
        self,
        store: EventStore,
        catalog: Catalog,
        config: EngineConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.catalog = catalog
        self.config = config
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=config.store_workers, thread_name_prefix="event-store")
        self._stuck_lock = threading.Lock()
        self._stuck_fetches = 0
        self._builders = {
            "student": self._student_metrics,
            "course": self._course_analytics,
            "instructor": self._instructor_metrics,
            "admin": self._admin_dashboard,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def get_metrics(
        self,
        subject_kind: str,
        subject_id: str,
        time_range: str,
        filters: Optional[QueryFilters] = None,
        identity: Optional[Identity] = None,
        now: Optional[datetime] = None,
    ) -> AggregateView:
        validate_query(subject_kind, time_range)
        filters = filters or QueryFilters()
        self.authorize(identity, subject_kind, subject_id)
        now = _as_utc(now if now is not None else self._clock())
        bucket_range = resolve_range(time_range, now)

        course_ids, subject_ids = self._scope(subject_kind, subject_id, filters, identity)
        records = self.fetch(course_ids, subject_ids)
        result = normalize_records(records)
        frame = events_to_frame(result.events)
        self._check_exists(subject_kind, subject_id, frame)

        logger.info(
            "Building %s view for %s over %s (%d events, %d rejected)",
            subject_kind,
            subject_id,
            time_range,
            len(frame),
            len(result.rejected),
        )
        query = _Query(subject_id, time_range, bucket_range, now, filters)
        return self._builders[subject_kind](query, frame)

    # ------------------------------------------------------------------
    # Boundary checks

    def authorize(self, identity: Optional[Identity], subject_kind: str, subject_id: str) -> None:
        """
        Admins read everything; instructors read their own dashboard, their
        courses and students enrolled in them; students read only themselves.
        ``None`` is a trusted in-process caller.
        """

        if identity is None or identity.is_admin:
            return
        if subject_kind == "student":
            if identity.user_id == subject_id:
                return
            if identity.role == "instructor":
                course_ids = self._instructor_course_ids(identity.user_id)
                if course_ids and self.fetch(course_ids, [subject_id]):
                    return
        elif subject_kind == "instructor":
            if identity.role == "instructor" and identity.user_id == subject_id:
                return
        elif subject_kind == "course":
            course = self.catalog.get_course(subject_id)
            if identity.role == "instructor" and course is not None and course.instructor_id == identity.user_id:
                return
        raise AccessDenied(identity.role, subject_kind, subject_id)

    def fetch(self, course_ids=None, subject_ids=None) -> List[Any]:
        """Read raw records on a worker thread, waiting at most ``store_timeout_seconds``."""

        future = self._executor.submit(self.store.fetch_records, course_ids, subject_ids)
        try:
            return future.result(timeout=self.config.store_timeout_seconds)
        except FutureTimeout as exc:
            if not future.cancel():
                self._track_stuck(future)
            logger.warning(
                "Event store did not answer within %.1fs (%d of %d store workers still busy)",
                self.config.store_timeout_seconds,
                self.stuck_fetches,
                self.config.store_workers,
            )
            raise UpstreamTimeout(
                f"Event store did not answer within {self.config.store_timeout_seconds:.1f}s"
            ) from exc

    @property
    def stuck_fetches(self) -> int:
        """Timed-out fetches whose worker is still waiting on the store."""
        with self._stuck_lock:
            return self._stuck_fetches

    def _track_stuck(self, future) -> None:
        with self._stuck_lock:
            self._stuck_fetches += 1
        future.add_done_callback(self._release_stuck)

    def _release_stuck(self, _future) -> None:
        with self._stuck_lock:
            self._stuck_fetches -= 1

    def _scope(
        self, subject_kind: str, subject_id: str, filters: QueryFilters, identity: Optional[Identity]
    ) -> Tuple[Optional[List[str]], Optional[List[str]]]:
        if subject_kind == "student":
            course_ids = None
            if identity is not None and identity.role == "instructor" and identity.user_id != subject_id:
                course_ids = self._instructor_course_ids(identity.user_id)
            return _narrow(course_ids, filters.course_id), [subject_id]
        if subject_kind == "course":
            return [subject_id], None
        if subject_kind == "instructor":
            return self._instructor_courses(subject_id, filters), None
        course_ids = None
        if filters.instructor_id is not None:
            course_ids = self._instructor_course_ids(filters.instructor_id)
        return _narrow(course_ids, filters.course_id), None

    def _check_exists(self, subject_kind: str, subject_id: str, frame: pd.DataFrame) -> None:
        if subject_kind == "student":
            if self.catalog.get_user(subject_id) is None and not (frame["subject_id"] == subject_id).any():
                raise NotFound(subject_kind, subject_id)
        elif subject_kind == "course":
            if self.catalog.get_course(subject_id) is None and frame.empty:
                raise NotFound(subject_kind, subject_id)
        elif subject_kind == "instructor":
            user = self.catalog.get_user(subject_id)
            is_instructor = user is not None and user.role == "instructor"
            if not is_instructor and not self.catalog.list_courses(instructor_id=subject_id):
                raise NotFound(subject_kind, subject_id)

    def _instructor_course_ids(self, instructor_id: str) -> List[str]:
        return [course.course_id for course in self.catalog.list_courses(instructor_id=instructor_id)]

    def _instructor_courses(self, instructor_id: str, filters: QueryFilters) -> List[str]:
        course_ids = self._instructor_course_ids(instructor_id)
        if filters.course_id is not None:
            course_ids = [c for c in course_ids if c == filters.course_id]
        return course_ids

    def _lesson_totals(self, course_ids) -> Dict[str, int]:
        totals = {}
        for course_id in course_ids:
            course = self.catalog.get_course(course_id)
            if course is not None and course.total_lessons > 0:
                totals[course_id] = course.total_lessons
        return totals

    def _insights(self, kind: str, metrics: Mapping[str, float]):
        rules = RULES_BY_KIND[kind](self.config.insights)
        return generate_insights(metrics, rules, self.config.insights.max_insights)

    # ------------------------------------------------------------------
    # Builders

    def _student_metrics(self, query: "_Query", frame: pd.DataFrame) -> StudentMetrics:
        cfg = self.config.classification
        frame = restrict(frame, RollupScope(subject_id=query.subject_id))
        totals = self._lesson_totals(frame["course_id"].unique())
        window = query.bucket_range.window

        counters = rollup(frame, None, totals, window)
        progress = build_progress_frame(frame, totals, window)
        dropout = student_lesson_dropout(frame[frame["timestamp"] <= pd.Timestamp(query.now)], query.subject_id)
        classification = classify_student(counters, query.now, dropout, cfg)

        scores = {
            (row["subject_id"], row["course_id"]): engagement_score(
                row["progress_percentage"],
                row["average_quiz_score"],
                row["total_time_spent"],
                to_datetime(row["last_access_date"]),
                query.now,
                cfg,
            )
            for row in progress.to_dict("records")
        }
        user = self.catalog.get_user(query.subject_id)
        idle = _days_inactive(counters, query.now)
        metrics = {
            "is_inactive": classification.is_inactive,
            "courses_enrolled": counters.enrollments,
            "days_inactive": idle,
            "is_struggling": classification.struggling.is_struggling,
            "average_quiz_score": counters.average_quiz_score,
            "completion_rate": counters.completion_rate,
            "is_top_performer": classification.is_top_performer,
            "average_progress": counters.average_progress,
            "certificates_earned": counters.certificates,
        }
        weekly_range = trailing_range(query.now, WEEK, WEEKLY_PROGRESS_WEEKS)
        return StudentMetrics(
            student_id=query.subject_id,
            student_name=user.name if user is not None else query.subject_id,
            time_range=query.time_range,
            courses_enrolled=counters.enrollments,
            courses_completed=counters.completions,
            completion_rate=round(counters.completion_rate, 2),
            certificates_earned=counters.certificates,
            average_progress=round(counters.average_progress, 2),
            average_quiz_score=round(counters.average_quiz_score, 2),
            quizzes_attempted=counters.quizzes_attempted,
            quizzes_passed=counters.quizzes_passed,
            total_time_spent=counters.time_spent_seconds,
            current_streak=activity_streak(frame, query.now),
            last_access_date=counters.last_access,
            engagement_level=classification.engagement_level,
            engagement_score=classification.engagement_score,
            is_struggling=classification.struggling.is_struggling,
            struggling_reasons=classification.struggling.reasons,
            is_inactive=classification.is_inactive,
            is_top_performer=classification.is_top_performer,
            course_progress=tuple(course_progress_rows(progress, scores)),
            activity_trend=tuple(bucketize(frame, query.bucket_range, STUDENT_ACTIVITY_SERIES)),
            weekly_progress=tuple(bucketize(frame, weekly_range, STUDENT_WEEKLY_SERIES)),
            insights=self._insights("student", metrics),
            generated_at=query.now,
        )

    def _course_analytics(self, query: "_Query", frame: pd.DataFrame) -> CourseAnalytics:
        course = self.catalog.get_course(query.subject_id) or CourseInfo(
            course_id=query.subject_id, title=query.subject_id, instructor_id=""
        )
        return self._build_course(course, frame, query)

    def _build_course(self, course: CourseInfo, frame: pd.DataFrame, query: "_Query") -> CourseAnalytics:
        cfg = self.config.classification
        frame = restrict(frame, RollupScope(course_id=course.course_id))
        totals = {course.course_id: course.total_lessons} if course.total_lessons > 0 else {}
        window = query.bucket_range.window

        counters = rollup(frame, None, totals, window)
        progress = build_progress_frame(frame, totals, window)
        levels = _level_counts(
            engagement_level(row["progress_percentage"], to_datetime(row["last_access_date"]), query.now, cfg)
            for row in progress.to_dict("records")
        )

        lessons = tuple(
            LessonStats(
                lesson_id=str(row["lesson_id"]),
                lesson_title=str(row["lesson_title"]),
                students_started=int(row["students_started"]),
                students_completed=int(row["students_completed"]),
                completion_rate=round(float(row["completion_rate"]), 2),
                dropout_rate=round(float(row["dropout_rate"]), 2),
                average_time_spent=round(float(row["average_time_spent"]), 2),
                average_attempts=round(float(row["average_attempts"]), 2),
            )
            for row in lesson_performance(
                frame[frame["timestamp"] <= pd.Timestamp(query.now)], course.course_id, course.lesson_titles
            ).to_dict("records")
        )
        top_lessons = sorted(lessons, key=lambda lesson: (-lesson.completion_rate, lesson.lesson_id))[:TOP_LESSONS]
        struggling = sorted(
            (lesson for lesson in lessons if lesson.dropout_rate > cfg.dropout_threshold),
            key=lambda lesson: (-lesson.dropout_rate, lesson.lesson_id),
        )

        trend = bucketize(frame, query.bucket_range, COURSE_TREND_SERIES)
        dropouts = dropout_trend(frame, query.bucket_range, self.config.dropout_inactivity_days)
        trend = [
            TrendPoint(point.bucket_label, point.bucket_start, {**point.values, "dropouts": count}, point.granularity)
            for point, count in zip(trend, dropouts)
        ]

        metrics = {
            "struggling_lessons": len(struggling),
            "total_enrollments": counters.enrollments,
            "completion_rate": counters.completion_rate,
            "revenue": counters.revenue,
            "refunds": counters.refunds,
            "total_ratings": counters.ratings_count,
            "average_rating": counters.average_rating,
        }
        return CourseAnalytics(
            course_id=course.course_id,
            course_name=course.title,
            instructor_id=course.instructor_id,
            instructor_name=course.instructor_name,
            category=course.category,
            time_range=query.time_range,
            total_enrollments=counters.enrollments,
            new_enrollments=counters.new_enrollments,
            active_students=_active_subjects(frame, query.now, self.config.active_window_days),
            completion_rate=round(counters.completion_rate, 2),
            average_progress=round(counters.average_progress, 2),
            average_quiz_score=round(counters.average_quiz_score, 2),
            average_rating=round(counters.average_rating, 2),
            total_ratings=counters.ratings_count,
            rating_distribution=dict(counters.rating_distribution),
            average_time_to_complete=_average_days_to_complete(progress),
            revenue=counters.revenue,
            refunds=counters.refunds,
            net_revenue=counters.net_revenue,
            engagement_distribution=levels,
            enrollment_trend=tuple(trend),
            lesson_stats=lessons,
            top_performing_lessons=tuple(top_lessons),
            struggling_areas=tuple(struggling),
            insights=self._insights("course", metrics),
            generated_at=query.now,
        )

    def _instructor_metrics(self, query: "_Query", frame: pd.DataFrame) -> InstructorMetrics:
        cfg = self.config.classification
        instructor_id = query.subject_id
        courses = [c for c in self.catalog.list_courses(instructor_id=instructor_id)
                   if query.filters.course_id is None or c.course_id == query.filters.course_id]
        totals = self._lesson_totals(course.course_id for course in courses)
        window = query.bucket_range.window
        user = self.catalog.get_user(instructor_id)

        course_views = tuple(self._build_course(course, frame, query) for course in courses)
        counters = rollup(frame, None, totals, window)
        visible = frame[frame["timestamp"] <= pd.Timestamp(query.now)]

        students = []
        for student_id in sorted(frame.loc[frame["kind"].isin(ACTIVITY_KINDS), "subject_id"].unique()):
            student_counters = rollup(frame, RollupScope(subject_id=student_id), totals, window)
            if student_counters.enrollments == 0:
                continue
            classification = classify_student(
                student_counters, query.now, student_lesson_dropout(visible, student_id), cfg
            )
            students.append(_student_summary(student_id, self.catalog.get_user(student_id), student_counters, classification))

        top_performers = sorted(
            (student for student in students if student.is_top_performer),
            key=lambda student: (-student.engagement_score, student.student_id),
        )
        struggling = sum(1 for student in students if student.is_struggling)
        inactive = sum(1 for student in students if student.is_inactive)
        months = 12 if query.time_range == "1year" else self.config.revenue_months
        metrics = {
            "struggling_students": struggling,
            "inactive_students": inactive,
            "total_students": len(students),
            "student_completion_rate": counters.completion_rate,
            "average_course_rating": counters.average_rating,
            "top_performers": len(top_performers),
        }
        return InstructorMetrics(
            instructor_id=instructor_id,
            instructor_name=user.name if user is not None else _instructor_name(courses, instructor_id),
            time_range=query.time_range,
            total_courses=len(courses),
            total_students=len(students),
            total_revenue=round(sum(view.revenue for view in course_views), 2),
            average_course_rating=round(counters.average_rating, 2),
            student_completion_rate=round(counters.completion_rate, 2),
            engagement_rate=round(ratio((len(students) - inactive) * 100.0, len(students)), 2),
            struggling_students=struggling,
            inactive_students=inactive,
            courses=course_views,
            monthly_stats=tuple(bucketize(frame, monthly_range(query.now, months), INSTRUCTOR_MONTHLY_SERIES)),
            students=tuple(students),
            top_performers=tuple(top_performers),
            insights=self._insights("instructor", metrics),
            generated_at=query.now,
        )

    def _admin_dashboard(self, query: "_Query", frame: pd.DataFrame) -> AdminDashboardData:
        cfg = self.config.classification
        filtered = query.filters.course_id is not None or query.filters.instructor_id is not None
        courses = self.catalog.list_courses(instructor_id=query.filters.instructor_id)
        if query.filters.course_id is not None:
            courses = [c for c in courses if c.course_id == query.filters.course_id]
        catalogued = {course.course_id for course in courses}
        if not filtered:
            for course_id in sorted(set(frame["course_id"].unique()) - catalogued):
                courses.append(CourseInfo(course_id=course_id, title=course_id, instructor_id=""))
        totals = self._lesson_totals(course.course_id for course in courses)
        window = query.bucket_range.window

        counters = rollup(frame, None, totals, window)
        progress = build_progress_frame(frame, totals, window)
        users = _platform_users(self.catalog.list_users(), frame, filtered)
        signups = pd.Series(
            [pd.Timestamp(user.created_at) for user in users if user.created_at is not None], dtype="object"
        )
        signups = pd.to_datetime(signups, utc=True)

        start, end = pd.Timestamp(window.start), pd.Timestamp(window.end)
        in_window = frame[(frame["timestamp"] >= start) & (frame["timestamp"] <= end)]
        active_users = int(in_window.loc[in_window["kind"].isin(ACTIVITY_KINDS), "subject_id"].nunique())

        performance = []
        for course in courses:
            course_counters = rollup(frame, RollupScope(course_id=course.course_id), totals, window)
            performance.append((course, course_counters))
        course_rows = sorted(
            (
                CoursePerformance(
                    course_id=course.course_id,
                    title=course.title,
                    instructor_name=course.instructor_name,
                    category=course.category,
                    enrollments=c.enrollments,
                    revenue=c.revenue,
                    rating=round(c.average_rating, 2),
                    completion_rate=round(c.completion_rate, 2),
                )
                for course, c in performance
            ),
            key=lambda row: (-row.revenue, -row.enrollments, row.course_id),
        )

        student_levels = _level_counts(
            engagement_level(row["progress_percentage"], to_datetime(row["last_access_date"]), query.now, cfg)
            for row in progress.groupby("subject_id")
            .agg(progress_percentage=("progress_percentage", "mean"), last_access_date=("last_access_date", "max"))
            .to_dict("records")
        )
        overview = PlatformOverview(
            total_users=len(users),
            total_courses=len(courses),
            total_revenue=counters.revenue,
            total_enrollments=counters.enrollments,
            active_users=active_users,
            completion_rate=round(counters.completion_rate, 2),
            average_rating=round(counters.average_rating, 2),
            monthly_growth_rate=signup_growth(signups, query.now),
        )
        metrics = {
            "monthly_growth_rate": overview.monthly_growth_rate,
            "growth_decline": max(-overview.monthly_growth_rate, 0.0),
            "total_revenue": counters.revenue,
            "refunds": counters.refunds,
            "total_enrollments": counters.enrollments,
            "completion_rate": counters.completion_rate,
            "average_rating": counters.average_rating,
        }
        return AdminDashboardData(
            time_range=query.time_range,
            overview=overview,
            user_growth=tuple(user_growth_trend(frame, users, query.bucket_range, self.config.churn_window_days)),
            revenue_analytics=self._revenue_analytics(frame, courses, counters, query),
            course_performance=tuple(course_rows[: self.config.top_courses_limit]),
            instructor_rankings=tuple(_rank_instructors(performance, frame)),
            engagement_distribution=student_levels,
            insights=self._insights("admin", metrics),
            generated_at=query.now,
        )

    def _revenue_analytics(
        self, frame: pd.DataFrame, courses: Sequence[CourseInfo], counters: RawCounters, query: "_Query"
    ) -> RevenueAnalytics:
        window = query.bucket_range.window
        start, end = pd.Timestamp(window.start), pd.Timestamp(window.end)
        flow = frame[(frame["timestamp"] >= start) & (frame["timestamp"] <= end)]
        payments = flow[(flow["kind"] == PAYMENT)]
        payments = payments[_settled(payments)]
        subscriptions = float(payments.loc[payments["payment_type"] == "subscription", "amount"].fillna(0.0).sum())

        categories = {course.course_id: course.category for course in courses}
        by_category: Dict[str, Dict[str, float]] = {}
        for course_id, group in payments.groupby("course_id"):
            entry = by_category.setdefault(categories.get(course_id, "Uncategorized"), {"revenue": 0.0, "purchases": 0})
            entry["revenue"] += float(group["amount"].fillna(0.0).sum())
            entry["purchases"] += len(group)
        enrollments = flow[flow["kind"] == ENROLLMENT][["subject_id", "course_id"]].drop_duplicates()
        enrollment_counts: Dict[str, int] = {}
        for course_id in enrollments["course_id"]:
            category = categories.get(course_id, "Uncategorized")
            enrollment_counts[category] = enrollment_counts.get(category, 0) + 1

        category_rows = sorted(
            (
                CategoryRevenue(
                    category=category,
                    revenue=round(entry["revenue"], 2),
                    enrollments=enrollment_counts.get(category, 0),
                    average_price=round(ratio(entry["revenue"], entry["purchases"]), 2),
                )
                for category, entry in by_category.items()
            ),
            key=lambda row: (-row.revenue, row.category),
        )
        months = 12 if query.time_range == "1year" else self.config.revenue_months
        money = frame.assign(amount=frame["amount"].abs())
        return RevenueAnalytics(
            total_revenue=counters.revenue,
            subscription_revenue=round(subscriptions, 2),
            one_time_revenue=round(counters.revenue - subscriptions, 2),
            refunds=counters.refunds,
            net_revenue=counters.net_revenue,
            monthly_revenue=tuple(bucketize(money, monthly_range(query.now, months), REVENUE_SERIES)),
            revenue_by_category=tuple(category_rows),
        )


@dataclass(frozen=True)
class _Query:
    subject_id: str
    time_range: str
    bucket_range: BucketRange
    now: datetime
    filters: QueryFilters


def _narrow(course_ids: Optional[List[str]], course_id: Optional[str]) -> Optional[List[str]]:
    if course_id is None:
        return course_ids
    if course_ids is None:
        return [course_id]
    return [c for c in course_ids if c == course_id]


def validate_query(subject_kind: str, time_range: str) -> None:
    if time_range not in TIME_RANGES:
        raise InvalidRange(f"Unsupported time range '{time_range}'. Expected one of: {', '.join(TIME_RANGES)}.")
    if subject_kind not in SUBJECT_KINDS:
        raise InvalidRange(f"Unsupported subject kind '{subject_kind}'. Expected one of: {', '.join(SUBJECT_KINDS)}.")


def _days_inactive(counters: RawCounters, now: datetime) -> float:
    if counters.last_access is None:
        return 0.0
    return max((pd.Timestamp(now) - pd.Timestamp(counters.last_access)).total_seconds() / 86400.0, 0.0)


def _level_counts(levels) -> Dict[str, int]:
    counts = {level.value: 0 for level in EngagementLevel}
    for level in levels:
        counts[level.value] += 1
    return counts


def _active_subjects(frame: pd.DataFrame, now: datetime, days: int) -> int:
    end = pd.Timestamp(now)
    recent = frame[
        frame["kind"].isin(ACTIVITY_KINDS) & (frame["timestamp"] <= end) & (frame["timestamp"] > end - pd.Timedelta(days=days))
    ]
    return int(recent["subject_id"].nunique())


def _average_days_to_complete(progress: pd.DataFrame) -> float:
    done = progress[progress["is_completed"]]
    if done.empty:
        return 0.0
    spans = (done["completion_date"] - done["enrollment_date"]).dt.total_seconds() / 86400.0
    return round(float(spans.clip(lower=0).mean()), 2)


def _student_summary(student_id: str, user: Optional[UserInfo], counters: RawCounters, classification) -> StudentSummary:
    return StudentSummary(
        student_id=student_id,
        name=user.name if user is not None else student_id,
        email=user.email if user is not None else "",
        enrolled_courses=counters.enrollments,
        completed_courses=counters.completions,
        average_progress=round(counters.average_progress, 2),
        total_time_spent=counters.time_spent_seconds,
        average_quiz_score=round(counters.average_quiz_score, 2),
        last_active_date=counters.last_access,
        engagement_level=classification.engagement_level,
        engagement_score=classification.engagement_score,
        is_struggling=classification.struggling.is_struggling,
        struggling_reasons=classification.struggling.reasons,
        is_inactive=classification.is_inactive,
        is_top_performer=classification.is_top_performer,
    )


def _instructor_name(courses: Sequence[CourseInfo], instructor_id: str) -> str:
    for course in courses:
        if course.instructor_name:
            return course.instructor_name
    return instructor_id


def _platform_users(users: Sequence[UserInfo], frame: pd.DataFrame, filtered: bool) -> List[UserInfo]:
    """Catalog users (restricted to active subjects under a filter), plus subjects only seen in events."""

    activity = frame[frame["kind"].isin(ACTIVITY_KINDS)]
    first_seen = activity.groupby("subject_id")["timestamp"].min()
    known = {user.user_id for user in users}
    if filtered:
        users = [user for user in users if user.user_id in first_seen.index]
    extra = [
        UserInfo(user_id=subject_id, name=subject_id, created_at=to_datetime(seen))
        for subject_id, seen in first_seen.items()
        if subject_id not in known
    ]
    return list(users) + extra


def _rank_instructors(
    performance: Sequence[Tuple[CourseInfo, RawCounters]], frame: pd.DataFrame
) -> List[InstructorRanking]:
    grouped: Dict[str, Dict[str, Any]] = {}
    for course, counters in performance:
        if not course.instructor_id:
            continue
        entry = grouped.setdefault(
            course.instructor_id,
            {"name": course.instructor_name or course.instructor_id, "revenue": 0.0, "courses": [], "ratings": []},
        )
        entry["revenue"] += counters.revenue
        entry["courses"].append(course.course_id)
        if counters.ratings_count:
            entry["ratings"].append(counters.average_rating)

    activity = frame[frame["kind"].isin(ACTIVITY_KINDS)]
    rows = []
    for instructor_id, entry in grouped.items():
        students = int(activity.loc[activity["course_id"].isin(entry["courses"]), "subject_id"].nunique())
        rating = ratio(sum(entry["ratings"]), len(entry["ratings"]))
        rows.append((instructor_id, entry, students, rating))
    rows.sort(key=lambda row: (-row[1]["revenue"], -row[2], row[0]))
    return [
        InstructorRanking(
            rank=position,
            instructor_id=instructor_id,
            name=entry["name"],
            total_revenue=round(entry["revenue"], 2),
            total_students=students,
            average_rating=round(rating, 2),
            courses_count=len(entry["courses"]),
        )
        for position, (instructor_id, entry, students, rating) in enumerate(rows, start=1)
    ]
