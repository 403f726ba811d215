# ABOUTME: Ordered rule -> message tables that turn aggregate metrics into dashboard insights.
# ABOUTME: Rules run in priority order and only the first few matches are surfaced.

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Tuple


@dataclass(frozen=True)
class InsightConfig:
    low_completion_threshold: float = 30.0
    high_rating_threshold: float = 4.5
    high_refund_ratio: float = 10.0
    max_insights: int = 3


DEFAULT_INSIGHTS = InsightConfig()


@dataclass(frozen=True)
class Insight:
    code: str
    severity: str
    message: str


@dataclass(frozen=True)
class InsightRule:
    code: str
    severity: str
    condition: Callable[[Mapping[str, float]], bool]
    template: str


class _Metrics(dict):
    def __missing__(self, key):
        return 0


def generate_insights(metrics: Mapping[str, float], rules: List[InsightRule], limit: int) -> Tuple[Insight, ...]:
    """Evaluate ``rules`` in order and return at most ``limit`` matching insights."""

    values = _Metrics(metrics)
    found: List[Insight] = []
    for rule in rules:
        if len(found) >= limit:
            break
        if rule.condition(values):
            found.append(Insight(code=rule.code, severity=rule.severity, message=rule.template.format_map(values)))
    return tuple(found)


def student_rules(config: InsightConfig = DEFAULT_INSIGHTS) -> List[InsightRule]:
    return [
        InsightRule(
            "re-engage",
            "high",
            lambda m: bool(m["is_inactive"]) and m["courses_enrolled"] > 0,
            "No learning activity for {days_inactive:.0f} days. Pick up where you left off.",
        ),
        InsightRule(
            "needs-help",
            "high",
            lambda m: bool(m["is_struggling"]),
            "Quiz average is {average_quiz_score:.1f}%. Review the lessons behind your weakest quizzes.",
        ),
        InsightRule(
            "needs-attention",
            "medium",
            lambda m: m["courses_enrolled"] > 0 and m["completion_rate"] < config.low_completion_threshold,
            "Only {completion_rate:.0f}% of enrolled courses are completed.",
        ),
        InsightRule(
            "top-performer",
            "info",
            lambda m: bool(m["is_top_performer"]),
            "Strong momentum: {average_progress:.0f}% average progress with a {average_quiz_score:.1f}% quiz average.",
        ),
        InsightRule(
            "certificates",
            "info",
            lambda m: m["certificates_earned"] > 0,
            "{certificates_earned} certificate(s) earned so far.",
        ),
    ]


def instructor_rules(config: InsightConfig = DEFAULT_INSIGHTS) -> List[InsightRule]:
    return [
        InsightRule(
            "needs-attention",
            "high",
            lambda m: m["struggling_students"] > 0,
            "{struggling_students} student(s) need help. Reach out before they drop off.",
        ),
        InsightRule(
            "re-engage",
            "medium",
            lambda m: m["inactive_students"] > 0,
            "{inactive_students} student(s) have been inactive for more than a week.",
        ),
        InsightRule(
            "low-completion",
            "medium",
            lambda m: m["total_students"] > 0 and m["student_completion_rate"] < config.low_completion_threshold,
            "Completion rate is {student_completion_rate:.0f}%. Review course pacing and content.",
        ),
        InsightRule(
            "top-performer",
            "info",
            lambda m: m["average_course_rating"] >= config.high_rating_threshold,
            "Courses are rated {average_course_rating:.1f}/5 on average.",
        ),
        InsightRule(
            "recognize",
            "info",
            lambda m: m["top_performers"] > 0,
            "Acknowledge {top_performers} high-achieving student(s) to maintain motivation.",
        ),
    ]


def course_rules(config: InsightConfig = DEFAULT_INSIGHTS) -> List[InsightRule]:
    return [
        InsightRule(
            "review-content",
            "high",
            lambda m: m["struggling_lessons"] > 0,
            "{struggling_lessons} lesson(s) lose more students than the dropout threshold allows.",
        ),
        InsightRule(
            "needs-attention",
            "medium",
            lambda m: m["total_enrollments"] > 0 and m["completion_rate"] < config.low_completion_threshold,
            "Only {completion_rate:.0f}% of enrolled students complete this course.",
        ),
        InsightRule(
            "refunds",
            "medium",
            lambda m: m["revenue"] > 0 and m["refunds"] * 100.0 / m["revenue"] > config.high_refund_ratio,
            "Refunds amount to {refunds:.2f} against {revenue:.2f} revenue.",
        ),
        InsightRule(
            "top-performer",
            "info",
            lambda m: m["total_ratings"] > 0 and m["average_rating"] >= config.high_rating_threshold,
            "Students rate this course {average_rating:.1f}/5.",
        ),
    ]


def admin_rules(config: InsightConfig = DEFAULT_INSIGHTS) -> List[InsightRule]:
    return [
        InsightRule(
            "growth-decline",
            "high",
            lambda m: m["monthly_growth_rate"] < 0,
            "New sign-ups fell {growth_decline:.0f}% compared with last month.",
        ),
        InsightRule(
            "refunds",
            "high",
            lambda m: m["total_revenue"] > 0 and m["refunds"] * 100.0 / m["total_revenue"] > config.high_refund_ratio,
            "Refunds are {refunds:.2f} against {total_revenue:.2f} gross revenue.",
        ),
        InsightRule(
            "needs-attention",
            "medium",
            lambda m: m["total_enrollments"] > 0 and m["completion_rate"] < config.low_completion_threshold,
            "Platform completion rate is {completion_rate:.0f}%.",
        ),
        InsightRule(
            "top-performer",
            "info",
            lambda m: m["average_rating"] >= config.high_rating_threshold,
            "Courses average {average_rating:.1f}/5 across the platform.",
        ),
    ]


RULES_BY_KIND: Dict[str, Callable[[InsightConfig], List[InsightRule]]] = {
    "student": student_rules,
    "instructor": instructor_rules,
    "course": course_rules,
    "admin": admin_rules,
}
