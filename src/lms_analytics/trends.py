# ABOUTME: Groups canonical events into contiguous, zero-filled calendar buckets for charting.
# ABOUTME: Resolves dashboard time ranges to bucket ranges and builds dropout and user-growth series.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from src.common.errors import InvalidRange
from src.common.schemas import ACTIVITY_KINDS, COURSE_COMPLETE, ENROLLMENT, TimeWindow, TrendPoint, UserInfo

from .rollup import KEYS, EventsLike, as_frame

DAY = "day"
WEEK = "week"
MONTH = "month"
GRANULARITIES = (DAY, WEEK, MONTH)

# time range -> (granularity, number of buckets)
TIME_RANGES: Dict[str, Tuple[str, int]] = {
    "7days": (DAY, 7),
    "30days": (DAY, 30),
    "90days": (DAY, 90),
    "1year": (MONTH, 12),
}
_FREQ = {DAY: "D", WEEK: "7D", MONTH: "MS"}


@dataclass(frozen=True)
class BucketRange:
    start: datetime
    end: datetime
    granularity: str

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(start=self.start, end=self.end)


@dataclass(frozen=True)
class SeriesSpec:
    """How one named series is computed from the events of each bucket."""

    kinds: Tuple[str, ...]
    column: Optional[str] = None
    how: str = "count"  # count | sum | nunique
    predicate: Optional[Callable[[pd.DataFrame], pd.Series]] = None


def resolve_range(time_range: str, now: datetime) -> BucketRange:
    """Map a dashboard time range onto an aligned bucket range ending at ``now``."""

    if time_range not in TIME_RANGES:
        raise InvalidRange(f"Unsupported time range '{time_range}'. Expected one of: {', '.join(TIME_RANGES)}.")
    granularity, count = TIME_RANGES[time_range]
    return trailing_range(now, granularity, count)


def trailing_range(now: datetime, granularity: str, count: int) -> BucketRange:
    if granularity not in GRANULARITIES:
        raise InvalidRange(f"Unsupported granularity '{granularity}'.")
    if count < 1:
        raise InvalidRange("A bucket range needs at least one bucket.")
    end = utc_timestamp(now)
    first = align(end, granularity)
    if granularity == MONTH:
        first = first - pd.DateOffset(months=count - 1)
    elif granularity == WEEK:
        first = first - pd.Timedelta(weeks=count - 1)
    else:
        first = first - pd.Timedelta(days=count - 1)
    return BucketRange(start=first.to_pydatetime(), end=end.to_pydatetime(), granularity=granularity)


def monthly_range(now: datetime, months: int) -> BucketRange:
    return trailing_range(now, MONTH, months)


def align(ts, granularity: str) -> pd.Timestamp:
    """Truncate one timestamp to the start of its calendar bucket."""

    day = utc_timestamp(ts).normalize()
    if granularity == WEEK:
        return day - pd.Timedelta(days=day.weekday())
    if granularity == MONTH:
        return day.replace(day=1)
    return day


def truncate(timestamps: pd.Series, granularity: str) -> pd.Series:
    day = timestamps.dt.normalize()
    if granularity == WEEK:
        return day - pd.to_timedelta(day.dt.weekday, unit="D")
    if granularity == MONTH:
        return day - pd.to_timedelta(day.dt.day - 1, unit="D")
    return day


def bucket_starts(bucket_range: BucketRange) -> pd.DatetimeIndex:
    first = align(bucket_range.start, bucket_range.granularity)
    last = align(bucket_range.end, bucket_range.granularity)
    return pd.date_range(first, last, freq=_FREQ[bucket_range.granularity])


def bucket_bounds(bucket_range: BucketRange) -> List[Tuple[pd.Timestamp, pd.Timestamp]]:
    """(start, exclusive end) per bucket; the last bucket stops just after the range end."""

    starts = list(bucket_starts(bucket_range))
    range_end = utc_timestamp(bucket_range.end) + pd.Timedelta(microseconds=1)
    bounds = []
    for index, start in enumerate(starts):
        if index + 1 < len(starts):
            stop = starts[index + 1]
        else:
            stop = _next_start(start, bucket_range.granularity)
        bounds.append((start, min(stop, range_end)))
    return bounds


def bucket_labels(starts: Iterable[pd.Timestamp], granularity: str) -> List[str]:
    return [_label(pd.Timestamp(ts), granularity) for ts in starts]


def label_key(granularity: str) -> str:
    return {DAY: "date", WEEK: "week", MONTH: "month"}[granularity]


def bucketize(
    events: EventsLike,
    bucket_range: BucketRange,
    series: Mapping[str, SeriesSpec],
) -> List[TrendPoint]:
    """
    Produce one TrendPoint per bucket in ``bucket_range``, zero-filled.

    Each event lands in the bucket obtained by truncating its timestamp, so an
    event exactly on a boundary belongs to the bucket that boundary opens.
    """

    frame = as_frame(events)
    granularity = bucket_range.granularity
    starts = bucket_starts(bucket_range)
    labels = bucket_labels(starts, granularity)

    lower = starts[0]
    upper = utc_timestamp(bucket_range.end)
    in_range = frame[(frame["timestamp"] >= lower) & (frame["timestamp"] <= upper)]
    keys = pd.Series(
        [_label(ts, granularity) for ts in truncate(in_range["timestamp"], granularity)],
        index=in_range.index,
        dtype="object",
    )

    columns: Dict[str, pd.Series] = {}
    for name, spec in series.items():
        subset = in_range[in_range["kind"].isin(spec.kinds)]
        if spec.predicate is not None and not subset.empty:
            subset = subset[spec.predicate(subset)]
        subset_keys = keys.loc[subset.index]
        if spec.how == "count":
            values = subset.groupby(subset_keys).size()
        elif spec.how == "sum":
            values = subset[spec.column].fillna(0.0).groupby(subset_keys).sum()
        elif spec.how == "nunique":
            values = subset[spec.column].groupby(subset_keys).nunique()
        else:
            raise ValueError(f"Unsupported series aggregation '{spec.how}'")
        columns[name] = values.reindex(labels, fill_value=0)

    points = []
    for position, (label, start) in enumerate(zip(labels, starts)):
        values = {name: _number(columns[name].iloc[position], series[name].how) for name in series}
        points.append(
            TrendPoint(bucket_label=label, bucket_start=start.to_pydatetime(), values=values, granularity=granularity)
        )
    return points


def dropout_trend(events: EventsLike, bucket_range: BucketRange, inactivity_days: int = 14) -> List[int]:
    """
    Per bucket, enrollments older than ``inactivity_days`` that are not completed
    and saw no activity during the trailing ``inactivity_days``.
    """

    frame = as_frame(events)
    enrolled = frame[frame["kind"] == ENROLLMENT].groupby(KEYS)["timestamp"].min()
    completed = frame[frame["kind"] == COURSE_COMPLETE].groupby(KEYS)["timestamp"].min()
    activity = frame[frame["kind"].isin(ACTIVITY_KINDS - {ENROLLMENT})]
    gap = pd.Timedelta(days=inactivity_days)

    counts = []
    for _, stop in bucket_bounds(bucket_range):
        cutoff = stop - gap
        eligible = set(enrolled[enrolled < cutoff].index)
        eligible -= set(completed[completed < stop].index)
        if not eligible:
            counts.append(0)
            continue
        recent = activity[(activity["timestamp"] >= cutoff) & (activity["timestamp"] < stop)]
        active = set(zip(recent["subject_id"], recent["course_id"]))
        counts.append(len(eligible - active))
    return counts


def user_growth_trend(
    events: EventsLike,
    users: Sequence[UserInfo],
    bucket_range: BucketRange,
    churn_window_days: int = 30,
) -> List[TrendPoint]:
    """Total, new and active users per bucket plus the share of users idle for ``churn_window_days``."""

    frame = as_frame(events)
    activity = frame[frame["kind"].isin(ACTIVITY_KINDS)]
    created = pd.Series(
        [utc_timestamp(user.created_at) if user.created_at is not None else pd.NaT for user in users],
        index=[user.user_id for user in users],
        dtype="datetime64[ns, UTC]",
    )
    window = pd.Timedelta(days=churn_window_days)

    points = []
    for start, stop in bucket_bounds(bucket_range):
        existing = created[created.isna() | (created < stop)]
        new_users = int(((created >= start) & (created < stop)).sum())
        in_bucket = activity[(activity["timestamp"] >= start) & (activity["timestamp"] < stop)]
        recent = activity[(activity["timestamp"] >= stop - window) & (activity["timestamp"] < stop)]
        seasoned = existing[existing.isna() | (existing < stop - window)]
        churned = len(set(seasoned.index) - set(recent["subject_id"]))
        total = int(len(existing))
        points.append(
            TrendPoint(
                bucket_label=_label(start, bucket_range.granularity),
                bucket_start=start.to_pydatetime(),
                granularity=bucket_range.granularity,
                values={
                    "totalUsers": total,
                    "newUsers": new_users,
                    "activeUsers": int(in_bucket["subject_id"].nunique()),
                    "churnRate": round(churned / total, 4) if total else 0.0,
                },
            )
        )
    return points


def activity_streak(events: EventsLike, now: datetime) -> int:
    """Consecutive active days ending today, or yesterday when today has no activity yet."""

    frame = as_frame(events)
    today = align(now, DAY)
    activity = frame[frame["kind"].isin(ACTIVITY_KINDS) & (frame["timestamp"] <= utc_timestamp(now))]
    days = set(truncate(activity["timestamp"], DAY))
    day = today if today in days else today - pd.Timedelta(days=1)
    streak = 0
    while day in days:
        streak += 1
        day = day - pd.Timedelta(days=1)
    return streak


def signup_growth(signups: pd.Series, now: datetime) -> float:
    """Percent change of sign-ups this calendar month against the previous one; 0 without a baseline."""

    end = utc_timestamp(now)
    this_start = align(end, MONTH)
    last_start = this_start - pd.DateOffset(months=1)
    this_month = int(((signups >= this_start) & (signups <= end)).sum())
    last_month = int(((signups >= last_start) & (signups < this_start)).sum())
    if last_month == 0:
        return 0.0
    return round((this_month - last_month) * 100.0 / last_month, 2)


def utc_timestamp(value) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        return ts.tz_localize("UTC")
    return ts.tz_convert("UTC")


def _next_start(start: pd.Timestamp, granularity: str) -> pd.Timestamp:
    if granularity == MONTH:
        return start + pd.DateOffset(months=1)
    if granularity == WEEK:
        return start + pd.Timedelta(weeks=1)
    return start + pd.Timedelta(days=1)


def _label(ts: pd.Timestamp, granularity: str) -> str:
    if granularity == MONTH:
        return ts.strftime("%Y-%m")
    if granularity == WEEK:
        iso = ts.isocalendar()
        return f"{iso[0]}-W{iso[1]:02d}"
    return ts.strftime("%Y-%m-%d")


def _number(value, how: str):
    if how in ("count", "nunique"):
        return int(value)
    return round(float(value), 2)
