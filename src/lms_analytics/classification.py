# ABOUTME: Rule-based engagement, struggling, inactivity, and top-performer classification.
# ABOUTME: Every rule is a pure function of rollup counters and an injected "now".

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Tuple

from src.common.schemas import EngagementLevel

from .rollup import RawCounters
from .trends import utc_timestamp


@dataclass(frozen=True)
class ClassificationConfig:
    high_progress_threshold: float = 70.0
    stale_days_high: int = 3
    stale_days_low: int = 7
    low_progress_threshold: float = 20.0
    struggling_quiz_threshold: float = 50.0
    dropout_threshold: float = 40.0
    inactive_days: int = 7
    top_performer_quiz_score: float = 80.0
    # engagement score: progress, quiz, time, recency weights and the hours that saturate the time term
    engagement_weights: Tuple[float, float, float, float] = (0.3, 0.3, 0.2, 0.2)
    engagement_time_hours: float = 20.0


DEFAULT_CLASSIFICATION = ClassificationConfig()


@dataclass(frozen=True)
class StrugglingAssessment:
    is_struggling: bool
    reasons: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StudentClassification:
    engagement_level: EngagementLevel
    engagement_score: float
    struggling: StrugglingAssessment
    is_inactive: bool
    is_top_performer: bool


def days_since(last_access: Optional[datetime], now: datetime) -> Optional[float]:
    """Days between ``last_access`` and ``now``; naive values are read as UTC."""
    if last_access is None:
        return None
    delta = utc_timestamp(now) - utc_timestamp(last_access)
    return max(delta.total_seconds() / 86400.0, 0.0)


def engagement_level(
    average_progress: float,
    last_access: Optional[datetime],
    now: datetime,
    config: ClassificationConfig = DEFAULT_CLASSIFICATION,
) -> EngagementLevel:
    """
    high: progress at or above the high threshold and seen within ``stale_days_high``.
    low: never seen, not seen for more than ``stale_days_low``, or progress under the low threshold.
    medium: everything else.
    """

    idle = days_since(last_access, now)
    if idle is None:
        return EngagementLevel.LOW
    if average_progress >= config.high_progress_threshold and idle <= config.stale_days_high:
        return EngagementLevel.HIGH
    if idle > config.stale_days_low or average_progress < config.low_progress_threshold:
        return EngagementLevel.LOW
    return EngagementLevel.MEDIUM


def assess_struggling(
    average_quiz_score: float,
    quiz_attempts: int,
    lesson_dropout_rates: Optional[Mapping[tuple, float]] = None,
    config: ClassificationConfig = DEFAULT_CLASSIFICATION,
) -> StrugglingAssessment:
    """Any single trigger flags the student; every trigger that fired is kept as a reason."""

    reasons = []
    if quiz_attempts > 0 and average_quiz_score < config.struggling_quiz_threshold:
        reasons.append(
            f"Average quiz score {average_quiz_score:.1f}% is below {config.struggling_quiz_threshold:.0f}%"
        )
    for key, rate in sorted((lesson_dropout_rates or {}).items(), key=lambda item: (-item[1], item[0])):
        if rate > config.dropout_threshold:
            course_id, lesson_id = key
            reasons.append(
                f"Lesson {lesson_id} in course {course_id} has a {rate:.0f}% dropout rate "
                f"(threshold {config.dropout_threshold:.0f}%)"
            )
            break
    return StrugglingAssessment(is_struggling=bool(reasons), reasons=tuple(reasons))


def is_inactive(
    last_access: Optional[datetime], now: datetime, config: ClassificationConfig = DEFAULT_CLASSIFICATION
) -> bool:
    idle = days_since(last_access, now)
    return idle is None or idle > config.inactive_days


def is_top_performer(
    level: EngagementLevel, average_quiz_score: float, config: ClassificationConfig = DEFAULT_CLASSIFICATION
) -> bool:
    return level == EngagementLevel.HIGH and average_quiz_score >= config.top_performer_quiz_score


def engagement_score(
    progress_percentage: float,
    average_quiz_score: float,
    time_spent_seconds: float,
    last_access: Optional[datetime],
    now: datetime,
    config: ClassificationConfig = DEFAULT_CLASSIFICATION,
) -> float:
    """Weighted 0-100 blend of progress, quiz performance, study time and recency."""

    w_progress, w_quiz, w_time, w_recency = config.engagement_weights
    hours = time_spent_seconds / 3600.0
    time_term = min(hours / config.engagement_time_hours, 1.0) * 100.0 if config.engagement_time_hours > 0 else 0.0
    idle = days_since(last_access, now)
    recency = 0.0 if idle is None else max(0.0, 100.0 - idle)
    score = (
        progress_percentage * w_progress
        + average_quiz_score * w_quiz
        + time_term * w_time
        + recency * w_recency
    )
    return round(min(max(score, 0.0), 100.0), 1)


def classify_student(
    counters: RawCounters,
    now: datetime,
    lesson_dropout_rates: Optional[Mapping[tuple, float]] = None,
    config: ClassificationConfig = DEFAULT_CLASSIFICATION,
) -> StudentClassification:
    level = engagement_level(counters.average_progress, counters.last_access, now, config)
    return StudentClassification(
        engagement_level=level,
        engagement_score=engagement_score(
            counters.average_progress,
            counters.average_quiz_score,
            counters.time_spent_seconds,
            counters.last_access,
            now,
            config,
        ),
        struggling=assess_struggling(
            counters.average_quiz_score, counters.quiz_attempts, lesson_dropout_rates, config
        ),
        is_inactive=is_inactive(counters.last_access, now, config),
        is_top_performer=is_top_performer(level, counters.average_quiz_score, config),
    )
