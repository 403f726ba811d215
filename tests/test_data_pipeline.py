# ABOUTME: Validates the normalizer that maps raw LMS records onto canonical learning events.
# ABOUTME: Covers record shapes, field aliases, malformed-record isolation, and the build CLI.

import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
from typer.testing import CliRunner

from src.common.data_pipeline import (
    EVENT_COLUMNS,
    app,
    events_to_frame,
    normalize,
    normalize_records,
    record_key,
)
from src.common.errors import MalformedRecord
from src.common.schemas import (
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


class NormalizeShapesTest(unittest.TestCase):
    def test_explicit_kind_row_keeps_payload(self):
        event = normalize(
            {
                "userId": "u1",
                "courseId": "c1",
                "event_type": "quiz_attempt",
                "timestamp": "2024-03-01T10:00:00Z",
                "payload": {"quiz_id": 7, "score": "88", "passed": "true"},
            }
        )
        self.assertEqual(event.subject_id, "u1")
        self.assertEqual(event.course_id, "c1")
        self.assertEqual(event.kind, QUIZ_ATTEMPT)
        self.assertEqual(event.payload["quiz_id"], "7")
        self.assertEqual(event.payload["score"], 88.0)
        self.assertTrue(event.payload["passed"])
        self.assertEqual(event.timestamp, datetime(2024, 3, 1, 10, tzinfo=timezone.utc))

    def test_unknown_kind_is_preserved_verbatim(self):
        event = normalize({"user_id": "u1", "course_id": "c1", "kind": "badge_awarded", "timestamp": 1709287200})
        self.assertEqual(event.kind, "badge_awarded")
        self.assertEqual(event.timestamp.tzinfo, timezone.utc)

    def test_quiz_row_derives_passed_from_score(self):
        failed = normalize({"user_id": "u1", "course_id": "c1", "quiz_id": "q", "score": 65, "attempted_at": "2024-03-01"})
        passed = normalize({"user_id": "u1", "course_id": "c1", "quiz_id": "q", "score": 70, "attempted_at": "2024-03-01"})
        self.assertFalse(failed.payload["passed"])
        self.assertTrue(passed.payload["passed"])

    def test_lesson_rows_split_into_start_and_complete(self):
        started = normalize({"user_id": "u1", "course_id": "c1", "lesson_id": "L1", "started_at": "2024-03-01"})
        finished = normalize(
            {"user_id": "u1", "course_id": "c1", "lesson_id": "L1", "completed": True,
             "completed_at": "2024-03-02", "watch_time": 300}
        )
        self.assertEqual(started.kind, LESSON_START)
        self.assertEqual(finished.kind, LESSON_COMPLETE)
        self.assertEqual(finished.payload["time_spent_seconds"], 300.0)

    def test_session_duration_from_start_and_end(self):
        event = normalize(
            {"user_id": "u1", "course_id": "c1", "start_time": "2024-03-01T10:00:00Z", "end_time": "2024-03-01T10:45:00Z"}
        )
        self.assertEqual(event.kind, SESSION)
        self.assertEqual(event.payload["duration_seconds"], 2700.0)

    def test_open_session_counts_no_time(self):
        event = normalize({"user_id": "u1", "course_id": "c1", "start_time": "2024-03-01T10:00:00Z"})
        self.assertEqual(event.payload["duration_seconds"], 0.0)

    def test_payment_status_decides_payment_or_refund(self):
        paid = normalize({"user_id": "u1", "course_id": "c1", "amount_cents": 4999, "created_at": "2024-03-01"})
        refunded = normalize(
            {"user_id": "u1", "course_id": "c1", "amount": 49.99, "status": "REFUNDED", "created_at": "2024-03-02"}
        )
        self.assertEqual(paid.kind, PAYMENT)
        self.assertAlmostEqual(paid.payload["amount"], 49.99)
        self.assertEqual(paid.payload["status"], "completed")
        self.assertEqual(refunded.kind, REFUND)

    def test_review_row(self):
        event = normalize({"user_id": "u1", "course_id": "c1", "rating": "4", "created_at": "2024-03-01"})
        self.assertEqual(event.kind, REVIEW)
        self.assertEqual(event.payload["rating"], 4.0)

    def test_enrollment_row_expands_completion_and_certificate(self):
        result = normalize_records(
            [
                {"student_id": "u1", "course_id": "c1", "enrollment_date": "2024-01-01",
                 "is_completed": True, "certificate_issued": "yes"},
            ]
        )
        kinds = [event.kind for event in result.events]
        self.assertEqual(kinds, [ENROLLMENT, COURSE_COMPLETE, CERTIFICATE])
        # completion falls back to the enrollment date when no completion date is given
        self.assertEqual(result.events[1].timestamp, result.events[0].timestamp)

    def test_learning_event_passes_through(self):
        event = LearningEvent("u1", "c1", SESSION, datetime(2024, 3, 1, tzinfo=timezone.utc), {"duration_seconds": 5})
        self.assertIs(normalize(event), event)


class MalformedRecordTest(unittest.TestCase):
    def test_missing_core_fields_raise(self):
        cases = [
            {"course_id": "c1", "kind": "session", "timestamp": "2024-03-01"},
            {"user_id": "u1", "kind": "session", "timestamp": "2024-03-01"},
            {"user_id": "u1", "course_id": "c1", "kind": "session"},
            {"user_id": "u1", "course_id": "c1", "kind": "session", "timestamp": "not a date"},
        ]
        for raw in cases:
            with self.subTest(raw=raw):
                with self.assertRaises(MalformedRecord):
                    normalize(raw)

    def test_unrecognized_shape_and_non_mapping_raise(self):
        with self.assertRaises(MalformedRecord):
            normalize({"user_id": "u1", "course_id": "c1", "something": 1})
        with self.assertRaises(MalformedRecord):
            normalize(["u1", "c1"])

    def test_unparseable_amount_raises(self):
        with self.assertRaises(MalformedRecord):
            normalize({"user_id": "u1", "course_id": "c1", "amount": "lots", "created_at": "2024-03-01"})

    def test_unparseable_passing_score_is_rejected(self):
        bad_quiz = {"user_id": "u1", "course_id": "c1", "quiz_id": "q1", "score": 80,
                    "passing_score": "seventy", "attempted_at": "2024-03-01"}
        with self.assertRaises(MalformedRecord):
            normalize(bad_quiz)

        session = {"user_id": "u1", "course_id": "c1", "start_time": "2024-03-01T08:00:00Z",
                   "end_time": "2024-03-01T09:00:00Z"}
        with self.assertLogs("src.common.data_pipeline", level="WARNING"):
            result = normalize_records([bad_quiz, session])
        self.assertEqual([event.kind for event in result.events], ["session"])
        self.assertEqual([index for index, _ in result.rejected], [0])

    def test_batch_isolates_failures(self):
        records = [
            {"user_id": "u1", "course_id": "c1", "enrollment_date": "2024-03-01"},
            {"user_id": "u1", "kind": "session", "timestamp": "2024-03-01"},
            {"user_id": "u2", "course_id": "c1", "enrollment_date": "2024-03-02"},
        ]
        with self.assertLogs("src.common.data_pipeline", level="WARNING") as logs:
            result = normalize_records(records)
        self.assertEqual(len(result.events), 2)
        self.assertEqual(result.rejected, [(1, "missing course id")])
        self.assertIn("Skipping malformed record #1", logs.output[0])


class EventFrameTest(unittest.TestCase):
    def test_frame_columns_and_types(self):
        events = normalize_records(
            [
                {"user_id": "u1", "course_id": "c1", "quiz_id": "q1", "score": 90, "attempted_at": "2024-03-01"},
                {"user_id": "u1", "course_id": "c1", "enrollment_date": "2024-02-01"},
            ]
        ).events
        frame = events_to_frame(events)
        self.assertEqual(list(frame.columns), EVENT_COLUMNS)
        self.assertEqual(str(frame["timestamp"].dt.tz), "UTC")
        self.assertEqual(frame["passed"].dtype, bool)
        self.assertTrue(pd.isna(frame.loc[1, "score"]))

    def test_empty_frame_has_schema(self):
        frame = events_to_frame([])
        self.assertTrue(frame.empty)
        self.assertEqual(list(frame.columns), EVENT_COLUMNS)

    def test_record_key_reads_aliases(self):
        self.assertEqual(record_key({"studentId": 5, "courseId": "c"}), ("5", "c"))
        self.assertEqual(record_key({"foo": 1}), (None, None))


class BuildCommandTest(unittest.TestCase):
    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)

    def tearDown(self) -> None:
        self.tmpdir.cleanup()

    def test_build_writes_events_and_rejections(self):
        raw_path = self.root / "raw.jsonl"
        rows = [
            {"user_id": "u1", "course_id": "c1", "enrollment_date": "2024-03-01T00:00:00Z"},
            {"user_id": "u1", "course_id": "c1", "quiz_id": "q1", "score": 40, "attempted_at": "2024-03-02T00:00:00Z"},
            {"user_id": "u2", "quiz_id": "q1", "score": 40, "attempted_at": "2024-03-02T00:00:00Z"},
        ]
        raw_path.write_text("\n".join(json.dumps(row) for row in rows) + "\n", encoding="utf-8")
        events_out = self.root / "out" / "events.parquet"
        rejected_out = self.root / "out" / "rejected.json"

        result = CliRunner().invoke(
            app,
            ["--raw-path", str(raw_path), "--events-out", str(events_out), "--rejected-out", str(rejected_out)],
        )

        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("[data] Writing 2 events", result.output)
        frame = pd.read_parquet(events_out)
        self.assertEqual(sorted(frame["kind"]), [ENROLLMENT, QUIZ_ATTEMPT])
        report = json.loads(rejected_out.read_text(encoding="utf-8"))
        self.assertEqual(report, [{"index": 2, "reason": "missing course id"}])


if __name__ == "__main__":
    unittest.main()
