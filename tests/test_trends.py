# ABOUTME: Tests calendar bucketing, range resolution, and the dropout and growth series.
# ABOUTME: Series must be contiguous, zero-filled, and deterministic for a fixed clock.

from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from src.common.errors import InvalidRange
from src.common.schemas import ACTIVITY_KINDS, ENROLLMENT, LESSON_COMPLETE, SESSION, LearningEvent, UserInfo
from src.lms_analytics.trends import (
    DAY,
    MONTH,
    WEEK,
    SeriesSpec,
    activity_streak,
    bucket_bounds,
    bucketize,
    dropout_trend,
    monthly_range,
    resolve_range,
    signup_growth,
    trailing_range,
    user_growth_trend,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)
COUNTS = {"events": SeriesSpec(kinds=tuple(sorted(ACTIVITY_KINDS)))}


def _ev(subject, kind, ts, course="c1", **payload):
    return LearningEvent(subject, course, kind, ts, payload)


@pytest.mark.parametrize(
    "time_range,granularity,buckets",
    [("7days", DAY, 7), ("30days", DAY, 30), ("90days", DAY, 90), ("1year", MONTH, 12)],
)
def test_resolve_range_bucket_counts(time_range, granularity, buckets):
    bucket_range = resolve_range(time_range, NOW)
    assert bucket_range.granularity == granularity
    assert len(bucketize([], bucket_range, COUNTS)) == buckets


def test_unknown_range_rejected():
    with pytest.raises(InvalidRange):
        resolve_range("2weeks", NOW)


def test_empty_thirty_days_is_thirty_zero_buckets():
    points = bucketize([], resolve_range("30days", NOW), COUNTS)
    assert len(points) == 30
    assert all(point.values["events"] == 0 for point in points)
    assert points[0].bucket_label == "2024-02-15"
    assert points[-1].bucket_label == "2024-03-15"
    assert points[-1].to_dict() == {"date": "2024-03-15", "events": 0}


def test_boundary_timestamp_belongs_to_bucket_it_opens():
    midnight = datetime(2024, 3, 10, tzinfo=timezone.utc)
    events = [
        _ev("s1", SESSION, midnight, duration_seconds=60.0),
        _ev("s1", SESSION, midnight - timedelta(microseconds=1), duration_seconds=30.0),
    ]
    series = {"time": SeriesSpec(kinds=(SESSION,), column="duration_seconds", how="sum")}
    points = {p.bucket_label: p.values["time"] for p in bucketize(events, resolve_range("7days", NOW), series)}
    assert points["2024-03-10"] == 60.0
    assert points["2024-03-09"] == 30.0


def test_events_outside_range_ignored_and_nunique():
    events = [
        _ev("s1", LESSON_COMPLETE, NOW - timedelta(days=60), lesson_id="L1"),
        _ev("s1", LESSON_COMPLETE, NOW - timedelta(hours=1), lesson_id="L2"),
        _ev("s2", LESSON_COMPLETE, NOW - timedelta(hours=2), lesson_id="L2"),
        _ev("s2", LESSON_COMPLETE, NOW + timedelta(hours=1), lesson_id="L3"),
    ]
    series = {
        "lessons": SeriesSpec(kinds=(LESSON_COMPLETE,)),
        "learners": SeriesSpec(kinds=(LESSON_COMPLETE,), column="subject_id", how="nunique"),
    }
    points = bucketize(events, resolve_range("7days", NOW), series)
    assert sum(p.values["lessons"] for p in points) == 2
    assert points[-1].values == {"lessons": 2, "learners": 2}


def test_bucketize_is_idempotent():
    events = [_ev("s1", SESSION, NOW - timedelta(days=d), duration_seconds=10.0 * d) for d in range(10)]
    bucket_range = resolve_range("30days", NOW)
    assert bucketize(events, bucket_range, COUNTS) == bucketize(events, bucket_range, COUNTS)


def test_monthly_and_weekly_labels():
    months = bucketize([], monthly_range(NOW, 12), COUNTS)
    assert [p.bucket_label for p in months][0] == "2023-04"
    assert months[-1].bucket_label == "2024-03"
    assert months[-1].to_dict()["month"] == "2024-03"

    weeks = bucketize([], trailing_range(NOW, WEEK, 4), COUNTS)
    assert [p.bucket_label for p in weeks] == ["2024-W08", "2024-W09", "2024-W10", "2024-W11"]
    assert weeks[0].bucket_start == datetime(2024, 2, 19, tzinfo=timezone.utc)
    assert "week" in weeks[0].to_dict()


def test_last_bucket_is_clipped_to_now():
    bounds = bucket_bounds(resolve_range("7days", NOW))
    assert len(bounds) == 7
    assert bounds[-1][1] == pd.Timestamp(NOW) + pd.Timedelta(microseconds=1)
    assert bounds[0][1] == bounds[1][0]


def test_dropout_trend_counts_idle_unfinished_enrollments():
    events = [
        _ev("s1", ENROLLMENT, datetime(2024, 2, 1, tzinfo=timezone.utc)),
        _ev("s1", SESSION, datetime(2024, 2, 20, tzinfo=timezone.utc), duration_seconds=60.0),
        _ev("s2", ENROLLMENT, datetime(2024, 2, 1, tzinfo=timezone.utc)),
        _ev("s2", SESSION, datetime(2024, 3, 14, tzinfo=timezone.utc), duration_seconds=60.0),
        _ev("s3", ENROLLMENT, datetime(2024, 3, 10, tzinfo=timezone.utc)),
    ]
    counts = dropout_trend(events, resolve_range("7days", NOW), inactivity_days=14)
    assert len(counts) == 7
    # s1 went quiet after Feb 20, s2 is active, s3 enrolled too recently
    assert counts[-1] == 1


def test_user_growth_trend():
    users = [
        UserInfo("s1", "A", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
        UserInfo("s2", "B", created_at=datetime(2024, 3, 14, 9, tzinfo=timezone.utc)),
    ]
    events = [_ev("s2", SESSION, datetime(2024, 3, 14, 10, tzinfo=timezone.utc), duration_seconds=5.0)]
    points = user_growth_trend(events, users, resolve_range("7days", NOW), churn_window_days=30)
    by_label = {p.bucket_label: p.values for p in points}
    assert by_label["2024-03-13"] == {"totalUsers": 1, "newUsers": 0, "activeUsers": 0, "churnRate": 1.0}
    assert by_label["2024-03-14"]["totalUsers"] == 2
    assert by_label["2024-03-14"]["newUsers"] == 1
    assert by_label["2024-03-14"]["activeUsers"] == 1
    assert by_label["2024-03-15"]["churnRate"] == 0.5


def test_activity_streak():
    days = [NOW - timedelta(days=d) for d in (1, 2, 3, 5)]
    events = [_ev("s1", SESSION, ts, duration_seconds=1.0) for ts in days]
    assert activity_streak(events, NOW) == 3
    assert activity_streak(events + [_ev("s1", SESSION, NOW, duration_seconds=1.0)], NOW) == 4
    assert activity_streak([], NOW) == 0


def test_signup_growth():
    feb = [pd.Timestamp("2024-02-03", tz="UTC"), pd.Timestamp("2024-02-20", tz="UTC")]
    mar = [pd.Timestamp("2024-03-01", tz="UTC")]
    assert signup_growth(pd.Series(feb + mar), NOW) == -50.0
    assert signup_growth(pd.Series(mar), NOW) == 0.0
