# ABOUTME: Builds canonical learning events from heterogeneous raw activity records.
# ABOUTME: Provides the record normalizer, the columnar event frame, and a CLI to emit canonical parquet.

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd
import pyarrow.csv as pv
import typer

from .errors import MalformedRecord
from .schemas import (
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
    LearningEvent,
)

logger = logging.getLogger(__name__)

SUBJECT_FIELDS = ("subject_id", "subjectId", "user_id", "userId", "student_id", "studentId")
COURSE_FIELDS = ("course_id", "courseId")
KIND_FIELDS = ("kind", "event_type", "eventType")
DEFAULT_PASSING_SCORE = 70.0

EVENT_COLUMNS = [
    "subject_id",
    "course_id",
    "kind",
    "timestamp",
    "lesson_id",
    "quiz_id",
    "score",
    "passed",
    "duration_seconds",
    "time_spent_seconds",
    "amount",
    "payment_type",
    "status",
    "rating",
]
_PAYLOAD_COLUMNS = EVENT_COLUMNS[4:]
_FLOAT_PAYLOAD = {"score", "duration_seconds", "time_spent_seconds", "amount", "rating"}

app = typer.Typer(help="Normalize raw activity exports into canonical learning events.")


@dataclass
class NormalizationResult:
    events: List[LearningEvent] = field(default_factory=list)
    rejected: List[Tuple[int, str]] = field(default_factory=list)


def normalize(raw_record: Any) -> LearningEvent:
    """
    Map one raw record onto the canonical LearningEvent.

    Enrollment rows that also carry completion or certificate data expand to
    several events; this returns the primary one. Use ``normalize_records`` to
    keep all of them.
    """

    return _expand(raw_record)[0]


def normalize_records(records: Iterable[Any]) -> NormalizationResult:
    """
    Normalize a batch, isolating failures.

    A malformed record is logged and reported with its position; it never
    prevents the remaining records from being normalized.
    """

    result = NormalizationResult()
    for index, record in enumerate(records):
        try:
            result.events.extend(_expand(record))
        except MalformedRecord as exc:
            logger.warning("Skipping malformed record #%d: %s", index, exc.reason)
            result.rejected.append((index, exc.reason))
        except (TypeError, ValueError) as exc:
            reason = f"unparseable field: {exc}"
            logger.warning("Skipping malformed record #%d: %s", index, reason)
            result.rejected.append((index, reason))
    return result


def record_key(raw_record: Any) -> Tuple[Optional[str], Optional[str]]:
    """(subject id, course id) of a raw record without normalizing it; missing parts are None."""

    if isinstance(raw_record, LearningEvent):
        return raw_record.subject_id, raw_record.course_id
    if isinstance(raw_record, Mapping):
        record = raw_record
    elif is_dataclass(raw_record) and not isinstance(raw_record, type):
        record = asdict(raw_record)
    else:
        return None, None
    subject_id = _first(record, SUBJECT_FIELDS)
    course_id = _first(record, COURSE_FIELDS)
    return (
        None if subject_id is None else str(subject_id),
        None if course_id is None else str(course_id),
    )


def events_to_frame(events: Iterable[LearningEvent]) -> pd.DataFrame:
    """Flatten events into one row per event with the known payload keys as columns."""

    rows = []
    for event in events:
        row: Dict[str, Any] = {
            "subject_id": event.subject_id,
            "course_id": event.course_id,
            "kind": event.kind,
            "timestamp": event.timestamp,
        }
        for key in _PAYLOAD_COLUMNS:
            row[key] = event.payload.get(key)
        rows.append(row)

    if not rows:
        return empty_event_frame()

    frame = pd.DataFrame(rows, columns=EVENT_COLUMNS)
    frame["timestamp"] = pd.to_datetime(frame["timestamp"], utc=True)
    for column in _FLOAT_PAYLOAD:
        frame[column] = pd.to_numeric(frame[column], errors="coerce")
    frame["passed"] = frame["passed"].fillna(False).astype(bool)
    return frame


def empty_event_frame() -> pd.DataFrame:
    frame = pd.DataFrame({column: pd.Series(dtype="object") for column in EVENT_COLUMNS})
    frame["timestamp"] = pd.Series(dtype="datetime64[ns, UTC]")
    for column in _FLOAT_PAYLOAD:
        frame[column] = pd.Series(dtype="float64")
    frame["passed"] = pd.Series(dtype="bool")
    return frame


def load_raw_records(path: Path) -> List[Dict[str, Any]]:
    """Read a CSV, JSON/JSONL, or parquet export into plain dict records."""

    suffix = path.suffix.lower()
    if suffix == ".csv":
        df = pv.read_csv(path, read_options=pv.ReadOptions(block_size=1 << 22)).to_pandas()
    elif suffix == ".parquet":
        df = pd.read_parquet(path)
    elif suffix == ".jsonl":
        df = pd.read_json(path, lines=True)
    elif suffix == ".json":
        df = pd.read_json(path)
    else:
        raise ValueError(f"Unsupported raw record format '{suffix}'. Expected .csv, .json, .jsonl or .parquet.")
    df = df.astype(object).where(df.notna(), None)
    return df.to_dict("records")


@app.command()
def build(
    raw_path: Path = typer.Option(..., exists=True, dir_okay=False, help="Raw activity export (csv/json/jsonl/parquet)."),
    events_out: Path = typer.Option(..., help="Output parquet for canonical events."),
    rejected_out: Optional[Path] = typer.Option(None, help="Optional JSON report of rejected records."),
) -> None:
    typer.echo(f"[data] Normalizing raw records from {raw_path}")
    try:
        records = load_raw_records(raw_path)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--raw-path") from exc

    result = normalize_records(records)
    frame = events_to_frame(result.events)
    frame = frame.sort_values(["subject_id", "timestamp"], kind="mergesort").reset_index(drop=True)

    events_out.parent.mkdir(parents=True, exist_ok=True)
    typer.echo(f"[data] Writing {len(frame)} events to {events_out} ({len(result.rejected)} rejected)")
    frame.to_parquet(events_out, index=False)

    if rejected_out is not None:
        rejected_out.parent.mkdir(parents=True, exist_ok=True)
        report = [{"index": index, "reason": reason} for index, reason in result.rejected]
        rejected_out.write_text(json.dumps(report, indent=2), encoding="utf-8")


def _expand(raw_record: Any) -> List[LearningEvent]:
    if isinstance(raw_record, LearningEvent):
        _require_core(raw_record.subject_id, raw_record.course_id, raw_record.timestamp)
        return [raw_record]

    record = _as_mapping(raw_record)
    subject_id = _first(record, SUBJECT_FIELDS)
    course_id = _first(record, COURSE_FIELDS)
    kind = _first(record, KIND_FIELDS)

    if kind is not None:
        timestamp = _parse_timestamp(_first(record, ("timestamp", "created_at", "createdAt")))
        _require_core(subject_id, course_id, timestamp)
        payload = record.get("payload")
        if not isinstance(payload, Mapping):
            skip = set(SUBJECT_FIELDS) | set(COURSE_FIELDS) | set(KIND_FIELDS) | {"timestamp", "payload"}
            payload = {k: v for k, v in record.items() if k not in skip and not _missing(v)}
        return [_event(subject_id, course_id, str(kind), timestamp, _coerce_payload(payload))]

    for detect, build_events in _SHAPES:
        if detect(record):
            return build_events(record, subject_id, course_id)
    raise MalformedRecord("unrecognized record shape", record)


def _as_mapping(raw_record: Any) -> Mapping[str, Any]:
    if isinstance(raw_record, Mapping):
        return raw_record
    if is_dataclass(raw_record) and not isinstance(raw_record, type):
        return asdict(raw_record)
    raise MalformedRecord(f"expected a mapping, got {type(raw_record).__name__}", raw_record)


def _event(subject_id: Any, course_id: Any, kind: str, timestamp: datetime, payload: Mapping[str, Any]) -> LearningEvent:
    return LearningEvent(
        subject_id=str(subject_id),
        course_id=str(course_id),
        kind=kind,
        timestamp=timestamp,
        payload=dict(payload),
    )


def _require_core(subject_id: Any, course_id: Any, timestamp: Optional[datetime]) -> None:
    if _missing(subject_id):
        raise MalformedRecord("missing subject id")
    if _missing(course_id):
        raise MalformedRecord("missing course id")
    if timestamp is None:
        raise MalformedRecord("missing or unparseable timestamp")


def _missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    if isinstance(value, str) and not value.strip():
        return True
    return value is pd.NaT or value is pd.NA


def _first(record: Mapping[str, Any], fields: Sequence[str]) -> Any:
    for name in fields:
        value = record.get(name)
        if not _missing(value):
            return value
    return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if _missing(value):
        return None
    try:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            ts = pd.to_datetime(value, unit="s", utc=True)
        else:
            ts = pd.to_datetime(value, utc=True)
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(ts):
        return None
    return ts.to_pydatetime()


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "y", "t"}
    return False if _missing(value) else bool(value)


def _coerce_payload(payload: Mapping[str, Any]) -> Dict[str, Any]:
    coerced = dict(payload)
    for key in _FLOAT_PAYLOAD:
        if key in coerced:
            try:
                coerced[key] = float(coerced[key])
            except (TypeError, ValueError):
                coerced.pop(key)
    if "passed" in coerced:
        coerced["passed"] = _truthy(coerced["passed"])
    for key in ("lesson_id", "quiz_id"):
        if key in coerced and not _missing(coerced[key]):
            coerced[key] = str(coerced[key])
    return coerced


def _core(record: Mapping[str, Any], subject_id: Any, course_id: Any, ts_fields: Sequence[str]) -> datetime:
    timestamp = _parse_timestamp(_first(record, ts_fields))
    _require_core(subject_id, course_id, timestamp)
    return timestamp


def _review_events(record, subject_id, course_id) -> List[LearningEvent]:
    timestamp = _core(record, subject_id, course_id, ("created_at", "createdAt", "timestamp"))
    return [_event(subject_id, course_id, REVIEW, timestamp, _coerce_payload({"rating": record.get("rating")}))]


def _payment_events(record, subject_id, course_id) -> List[LearningEvent]:
    timestamp = _core(record, subject_id, course_id, ("created_at", "createdAt", "paid_at", "timestamp"))
    try:
        if not _missing(record.get("amount")):
            amount = float(record["amount"])
        else:
            amount = float(record["amount_cents"]) / 100.0
    except (TypeError, ValueError) as exc:
        raise MalformedRecord(f"unparseable payment amount: {exc}", record) from exc
    status = str(_first(record, ("status",)) or "completed").lower()
    payload = {
        "amount": amount,
        "payment_type": _first(record, ("payment_type", "paymentType", "type")) or "one_time",
        "status": status,
    }
    kind = REFUND if status == "refunded" else PAYMENT
    return [_event(subject_id, course_id, kind, timestamp, _coerce_payload(payload))]


def _quiz_events(record, subject_id, course_id) -> List[LearningEvent]:
    timestamp = _core(record, subject_id, course_id, ("attempted_at", "completed_at", "created_at", "createdAt", "timestamp"))
    try:
        score = float(_first(record, ("score",)) or 0.0)
        passing_score = float(_first(record, ("passing_score",)) or DEFAULT_PASSING_SCORE)
    except (TypeError, ValueError) as exc:
        raise MalformedRecord(f"unparseable quiz score: {exc}", record) from exc
    passed = record.get("passed")
    if _missing(passed):
        passed = score >= passing_score
    payload = {"quiz_id": _first(record, ("quiz_id", "quizId")), "score": score, "passed": passed}
    return [_event(subject_id, course_id, QUIZ_ATTEMPT, timestamp, _coerce_payload(payload))]


def _session_events(record, subject_id, course_id) -> List[LearningEvent]:
    timestamp = _core(record, subject_id, course_id, ("start_time", "startTime", "timestamp"))
    duration = _first(record, ("duration_seconds",))
    if duration is None:
        end = _parse_timestamp(_first(record, ("end_time", "endTime")))
        # Open sessions contribute no time.
        duration = max((end - timestamp).total_seconds(), 0.0) if end is not None else 0.0
    return [_event(subject_id, course_id, SESSION, timestamp, _coerce_payload({"duration_seconds": duration}))]


def _lesson_events(record, subject_id, course_id) -> List[LearningEvent]:
    lesson_id = _first(record, ("lesson_id", "lessonId"))
    payload: Dict[str, Any] = {"lesson_id": lesson_id}
    time_spent = _first(record, ("time_spent_seconds", "watch_time", "watchTime"))
    if time_spent is not None:
        payload["time_spent_seconds"] = time_spent
    if _truthy(record.get("completed")):
        timestamp = _core(record, subject_id, course_id, ("completed_at", "completedAt", "updated_at", "timestamp"))
        return [_event(subject_id, course_id, LESSON_COMPLETE, timestamp, _coerce_payload(payload))]
    timestamp = _core(record, subject_id, course_id, ("started_at", "startedAt", "created_at", "createdAt", "timestamp"))
    return [_event(subject_id, course_id, LESSON_START, timestamp, _coerce_payload(payload))]


def _enrollment_events(record, subject_id, course_id) -> List[LearningEvent]:
    enrolled_at = _core(
        record, subject_id, course_id, ("enrollment_date", "enrollmentDate", "enrolled_at", "enrolledAt", "timestamp")
    )
    events = [_event(subject_id, course_id, ENROLLMENT, enrolled_at, {})]
    completed_at = _parse_timestamp(_first(record, ("completion_date", "completionDate", "completed_at", "completedAt")))
    if completed_at is None and _truthy(_first(record, ("is_completed", "isCompleted"))):
        completed_at = enrolled_at
    if completed_at is not None:
        events.append(_event(subject_id, course_id, COURSE_COMPLETE, completed_at, {}))
    if _truthy(_first(record, ("certificate_issued", "certificateIssued"))):
        events.append(_event(subject_id, course_id, CERTIFICATE, completed_at or enrolled_at, {}))
    return events


def _has_any(*names: str):
    return lambda record: any(not _missing(record.get(name)) for name in names)


# Evaluated in order; the first matching detector decides the record shape.
_SHAPES = (
    (_has_any("rating"), _review_events),
    (_has_any("amount", "amount_cents"), _payment_events),
    (_has_any("quiz_id", "quizId"), _quiz_events),
    (_has_any("start_time", "startTime", "duration_seconds"), _session_events),
    (_has_any("lesson_id", "lessonId"), _lesson_events),
    (
        _has_any("enrollment_date", "enrollmentDate", "enrolled_at", "enrolledAt", "student_id", "studentId"),
        _enrollment_events,
    ),
)


def main():
    app()


if __name__ == "__main__":
    main()
