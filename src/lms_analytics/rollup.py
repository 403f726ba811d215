# ABOUTME: Folds canonical learning events into per-(student, course) progress and scope counters.
# ABOUTME: Also derives lesson-level completion and dropout tables used by course and student views.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Union

import numpy as np
import pandas as pd

from src.common.data_pipeline import events_to_frame
from src.common.schemas import (
    ACTIVITY_KINDS,
    CERTIFICATE,
    COURSE_COMPLETE,
    ENROLLMENT,
    LESSON_COMPLETE,
    LESSON_START,
    PAYMENT,
    QUIZ_ATTEMPT,
    REFUND,
    REVIEW,
    SESSION,
    CourseProgress,
    LearningEvent,
    TimeWindow,
)

KEYS = ["subject_id", "course_id"]
PROGRESS_COLUMNS = [
    "subject_id",
    "course_id",
    "enrollment_date",
    "last_access_date",
    "lessons_started",
    "lessons_completed",
    "total_lessons",
    "quiz_attempts",
    "quizzes_attempted",
    "quizzes_passed",
    "quiz_score_total",
    "average_quiz_score",
    "total_time_spent",
    "is_completed",
    "completion_date",
    "certificate_issued",
    "progress_percentage",
]
LESSON_COLUMNS = [
    "lesson_id",
    "lesson_title",
    "students_started",
    "students_completed",
    "starts",
    "completion_rate",
    "dropout_rate",
    "average_time_spent",
    "average_attempts",
]
_UNKNOWN_QUIZ = "__unknown_quiz__"

EventsLike = Union[pd.DataFrame, Iterable[LearningEvent]]


@dataclass(frozen=True)
class RollupScope:
    subject_id: Optional[str] = None
    course_id: Optional[str] = None


@dataclass(frozen=True)
class RawCounters:
    """Summary counters for one scope; every ratio is guarded against empty denominators."""

    enrollments: int = 0
    new_enrollments: int = 0
    completions: int = 0
    certificates: int = 0
    lessons_started: int = 0
    lessons_completed: int = 0
    total_lessons: int = 0
    quiz_attempts: int = 0
    quizzes_attempted: int = 0
    quizzes_passed: int = 0
    average_quiz_score: float = 0.0
    average_progress: float = 0.0
    completion_rate: float = 0.0
    time_spent_seconds: int = 0
    revenue: float = 0.0
    refunds: float = 0.0
    net_revenue: float = 0.0
    ratings_count: int = 0
    average_rating: float = 0.0
    rating_distribution: Mapping[int, int] = field(default_factory=lambda: {star: 0 for star in range(1, 6)})
    first_access: Optional[datetime] = None
    last_access: Optional[datetime] = None

    @property
    def has_activity(self) -> bool:
        return self.last_access is not None


def as_frame(events: EventsLike) -> pd.DataFrame:
    if isinstance(events, pd.DataFrame):
        return events
    return events_to_frame(events)


def restrict(frame: pd.DataFrame, scope: Optional[RollupScope] = None) -> pd.DataFrame:
    if scope is None:
        return frame
    mask = pd.Series(True, index=frame.index)
    if scope.subject_id is not None:
        mask &= frame["subject_id"] == scope.subject_id
    if scope.course_id is not None:
        mask &= frame["course_id"] == scope.course_id
    return frame[mask]


def split_window(frame: pd.DataFrame, window: Optional[TimeWindow]) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Return (state, flow) frames.

    State covers everything up to the window end (progress is cumulative); flow
    covers only the window itself (time, money, new enrollments).
    """

    if window is None:
        return frame, frame
    end = pd.Timestamp(window.end)
    start = pd.Timestamp(window.start)
    state = frame[frame["timestamp"] <= end]
    flow = state[state["timestamp"] >= start]
    return state, flow


def build_progress_frame(
    events: EventsLike,
    lesson_totals: Optional[Mapping[str, int]] = None,
    window: Optional[TimeWindow] = None,
) -> pd.DataFrame:
    """
    One row per (subject, course) pair that shows any learning activity.

    Distinct-count reductions and min/max timestamps keep the result independent
    of input order. Completed lessons are capped at the course lesson total and
    passed quizzes are a subset of attempted quizzes.
    """

    frame = as_frame(events)
    state, flow = split_window(frame, window)
    activity = state[state["kind"].isin(ACTIVITY_KINDS)]
    if activity.empty:
        return _empty_progress_frame()

    progress = (
        activity.groupby(KEYS)
        .agg(first_seen=("timestamp", "min"), last_access_date=("timestamp", "max"))
        .reset_index()
    )

    enrolled = state[state["kind"] == ENROLLMENT].groupby(KEYS)["timestamp"].min().rename("enrolled_at")
    progress = progress.merge(enrolled.reset_index(), on=KEYS, how="left")
    progress["enrollment_date"] = progress["enrolled_at"].fillna(progress["first_seen"])

    lessons = state[state["kind"].isin([LESSON_START, LESSON_COMPLETE]) & state["lesson_id"].notna()]
    completed = lessons[lessons["kind"] == LESSON_COMPLETE]
    progress = _merge_count(progress, lessons.groupby(KEYS)["lesson_id"].nunique(), "lessons_started")
    progress = _merge_count(progress, completed.groupby(KEYS)["lesson_id"].nunique(), "lessons_completed")

    observed_totals = lessons.groupby("course_id")["lesson_id"].nunique()
    totals = {course: int(count) for course, count in observed_totals.items()}
    for course, count in (lesson_totals or {}).items():
        if count and count > 0:
            totals[course] = int(count)
    progress["total_lessons"] = progress["course_id"].map(totals).fillna(0).astype("int64")
    progress["lessons_completed"] = np.minimum(progress["lessons_completed"], progress["total_lessons"])

    quizzes = state[state["kind"] == QUIZ_ATTEMPT].copy()
    quizzes["quiz_id"] = quizzes["quiz_id"].fillna(_UNKNOWN_QUIZ)
    quizzes["score"] = quizzes["score"].fillna(0.0)
    progress = _merge_count(progress, quizzes.groupby(KEYS).size(), "quiz_attempts")
    progress = _merge_count(progress, quizzes.groupby(KEYS)["quiz_id"].nunique(), "quizzes_attempted")
    passed = quizzes[quizzes["passed"]]
    progress = _merge_count(progress, passed.groupby(KEYS)["quiz_id"].nunique(), "quizzes_passed")
    score_total = quizzes.groupby(KEYS)["score"].sum().rename("quiz_score_total").reset_index()
    progress = progress.merge(score_total, on=KEYS, how="left")
    progress["quiz_score_total"] = progress["quiz_score_total"].fillna(0.0)

    sessions = flow[flow["kind"] == SESSION]
    time_spent = sessions.groupby(KEYS)["duration_seconds"].sum().rename("total_time_spent").reset_index()
    progress = progress.merge(time_spent, on=KEYS, how="left")
    progress["total_time_spent"] = progress["total_time_spent"].fillna(0.0).round().astype("int64")

    completions = state[state["kind"] == COURSE_COMPLETE].groupby(KEYS)["timestamp"].min().rename("completion_date")
    progress = progress.merge(completions.reset_index(), on=KEYS, how="left")
    progress["is_completed"] = progress["completion_date"].notna()

    certified = state[state["kind"] == CERTIFICATE][KEYS].drop_duplicates()
    certified["certificate_issued"] = True
    progress = progress.merge(certified, on=KEYS, how="left")
    progress["certificate_issued"] = progress["certificate_issued"].fillna(False).astype(bool)

    progress["average_quiz_score"] = _safe_ratio(progress["quiz_score_total"], progress["quiz_attempts"])
    pct = _safe_ratio(progress["lessons_completed"] * 100.0, progress["total_lessons"])
    # A completed course with no known lessons is still 100% done.
    progress["progress_percentage"] = np.where(
        (progress["total_lessons"] == 0) & progress["is_completed"], 100.0, pct
    )

    progress = progress.sort_values(KEYS, kind="mergesort").reset_index(drop=True)
    return progress[PROGRESS_COLUMNS]


def rollup(
    events: EventsLike,
    scope: Optional[RollupScope] = None,
    lesson_totals: Optional[Mapping[str, int]] = None,
    window: Optional[TimeWindow] = None,
) -> RawCounters:
    """
    Fold the events of ``scope`` into RawCounters.

    Ratios are computed once at the end; a scope without events returns the
    all-zero counters rather than raising.
    """

    frame = restrict(as_frame(events), scope)
    if frame.empty:
        return RawCounters()

    progress = build_progress_frame(frame, lesson_totals=lesson_totals, window=window)
    state, flow = split_window(frame, window)

    payments = flow[flow["kind"] == PAYMENT]
    settled = payments[payments["status"].isna() | (payments["status"] == "completed")]
    revenue = float(settled["amount"].fillna(0.0).sum())
    refunds = float(flow[flow["kind"] == REFUND]["amount"].fillna(0.0).abs().sum())

    reviews = state[state["kind"] == REVIEW]["rating"].dropna()
    distribution = {star: 0 for star in range(1, 6)}
    for star, count in reviews.round().clip(1, 5).astype(int).value_counts().items():
        distribution[int(star)] = int(count)

    new_enrollments = flow[flow["kind"] == ENROLLMENT][KEYS].drop_duplicates()
    activity = state[state["kind"].isin(ACTIVITY_KINDS)]

    enrollments = int(len(progress))
    completions = int(progress["is_completed"].sum())
    quiz_attempts = int(progress["quiz_attempts"].sum())
    return RawCounters(
        enrollments=enrollments,
        new_enrollments=int(len(new_enrollments)),
        completions=completions,
        certificates=int(progress["certificate_issued"].sum()),
        lessons_started=int(progress["lessons_started"].sum()),
        lessons_completed=int(progress["lessons_completed"].sum()),
        total_lessons=int(progress["total_lessons"].sum()),
        quiz_attempts=quiz_attempts,
        quizzes_attempted=int(progress["quizzes_attempted"].sum()),
        quizzes_passed=int(progress["quizzes_passed"].sum()),
        average_quiz_score=ratio(float(progress["quiz_score_total"].sum()), quiz_attempts),
        average_progress=float(progress["progress_percentage"].mean()) if enrollments else 0.0,
        completion_rate=ratio(completions * 100.0, enrollments),
        time_spent_seconds=int(progress["total_time_spent"].sum()),
        revenue=round(revenue, 2),
        refunds=round(refunds, 2),
        net_revenue=round(revenue - refunds, 2),
        ratings_count=int(len(reviews)),
        average_rating=ratio(float(reviews.sum()), len(reviews)),
        rating_distribution=distribution,
        first_access=to_datetime(activity["timestamp"].min()) if not activity.empty else None,
        last_access=to_datetime(activity["timestamp"].max()) if not activity.empty else None,
    )


def course_progress_rows(
    progress: pd.DataFrame, engagement_scores: Optional[Mapping[tuple, float]] = None
) -> List[CourseProgress]:
    rows = []
    for record in progress.to_dict("records"):
        key = (record["subject_id"], record["course_id"])
        rows.append(
            CourseProgress(
                student_id=record["subject_id"],
                course_id=record["course_id"],
                lessons_completed=int(record["lessons_completed"]),
                total_lessons=int(record["total_lessons"]),
                quizzes_attempted=int(record["quizzes_attempted"]),
                quizzes_passed=int(record["quizzes_passed"]),
                average_quiz_score=round(float(record["average_quiz_score"]), 2),
                total_time_spent=int(record["total_time_spent"]),
                last_access_date=to_datetime(record["last_access_date"]),
                enrollment_date=to_datetime(record["enrollment_date"]),
                is_completed=bool(record["is_completed"]),
                certificate_issued=bool(record["certificate_issued"]),
                completion_date=to_datetime(record["completion_date"]),
                progress_percentage=round(float(record["progress_percentage"]), 2),
                engagement_score=float((engagement_scores or {}).get(key, 0.0)),
            )
        )
    return rows


def lesson_performance(
    events: EventsLike,
    course_id: str,
    lesson_titles: Optional[Mapping[str, str]] = None,
) -> pd.DataFrame:
    """Per-lesson starts, completions, completion rate and dropout rate for one course."""

    frame = restrict(as_frame(events), RollupScope(course_id=course_id))
    lessons = frame[frame["kind"].isin([LESSON_START, LESSON_COMPLETE]) & frame["lesson_id"].notna()]
    if lessons.empty:
        return pd.DataFrame(columns=LESSON_COLUMNS)

    touched = lessons.groupby("lesson_id")["subject_id"].nunique().rename("students_started")
    finished = (
        lessons[lessons["kind"] == LESSON_COMPLETE].groupby("lesson_id")["subject_id"].nunique().rename("students_completed")
    )
    starts = lessons[lessons["kind"] == LESSON_START].groupby("lesson_id").size().rename("starts")
    avg_time = (
        lessons[lessons["kind"] == LESSON_COMPLETE].groupby("lesson_id")["time_spent_seconds"].mean().rename("average_time_spent")
    )

    table = pd.concat([touched, finished, starts, avg_time], axis=1).reset_index()
    table = table.rename(columns={"index": "lesson_id"})
    table["students_completed"] = table["students_completed"].fillna(0).astype("int64")
    table["starts"] = table["starts"].fillna(0).astype("int64")
    table["average_time_spent"] = table["average_time_spent"].fillna(0.0)
    table["completion_rate"] = _safe_ratio(table["students_completed"] * 100.0, table["students_started"])
    table["dropout_rate"] = _safe_ratio(
        (table["students_started"] - table["students_completed"]) * 100.0, table["students_started"]
    )
    table["average_attempts"] = _safe_ratio(np.maximum(table["starts"], table["students_started"]), table["students_started"])
    titles = lesson_titles or {}
    table["lesson_title"] = table["lesson_id"].map(lambda lesson: titles.get(lesson, lesson))
    table = table.sort_values("lesson_id", kind="mergesort").reset_index(drop=True)
    return table[LESSON_COLUMNS]


def student_lesson_dropout(events: EventsLike, subject_id: str) -> Dict[tuple, float]:
    """
    Dropout rate per (course, lesson) for one student.

    Every lesson start that did not lead to a completion counts as dropped; a
    lesson started and never completed is 100%.
    """

    frame = restrict(as_frame(events), RollupScope(subject_id=subject_id))
    lessons = frame[frame["kind"].isin([LESSON_START, LESSON_COMPLETE]) & frame["lesson_id"].notna()]
    rates: Dict[tuple, float] = {}
    for (course_id, lesson_id), group in lessons.groupby(["course_id", "lesson_id"]):
        starts = int((group["kind"] == LESSON_START).sum())
        completed = bool((group["kind"] == LESSON_COMPLETE).any())
        attempts = max(starts, 1)
        dropped = attempts - 1 if completed else attempts
        rates[(course_id, lesson_id)] = round(dropped * 100.0 / attempts, 2)
    return rates


def ratio(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return float(numerator) / float(denominator)


def to_datetime(value) -> Optional[datetime]:
    if value is None or pd.isna(value):
        return None
    return pd.Timestamp(value).to_pydatetime()


def _safe_ratio(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    denominator = pd.Series(denominator, dtype="float64")
    result = pd.Series(numerator, dtype="float64") / denominator.replace(0, np.nan)
    return result.fillna(0.0)


def _merge_count(progress: pd.DataFrame, counts: pd.Series, name: str) -> pd.DataFrame:
    merged = progress.merge(counts.rename(name).reset_index(), on=KEYS, how="left")
    merged[name] = merged[name].fillna(0).astype("int64")
    return merged


def _empty_progress_frame() -> pd.DataFrame:
    frame = pd.DataFrame({column: pd.Series(dtype="float64") for column in PROGRESS_COLUMNS})
    for column in ("subject_id", "course_id"):
        frame[column] = pd.Series(dtype="object")
    for column in ("enrollment_date", "last_access_date", "completion_date"):
        frame[column] = pd.Series(dtype="datetime64[ns, UTC]")
    for column in ("is_completed", "certificate_issued"):
        frame[column] = pd.Series(dtype="bool")
    return frame


__all__ = [
    "RawCounters",
    "RollupScope",
    "build_progress_frame",
    "course_progress_rows",
    "lesson_performance",
    "rollup",
    "student_lesson_dropout",
]
