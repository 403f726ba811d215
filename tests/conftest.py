# ABOUTME: Shared fixtures: a small LMS catalog, mixed-shape raw activity records, and a fixed clock.
# ABOUTME: The same records back the façade, cache, export, and CLI tests.

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from src.common.schemas import CourseInfo, UserInfo
from src.lms_analytics.service import MetricsService
from src.lms_analytics.store import InMemoryStore

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def sample_courses():
    return [
        CourseInfo(
            course_id="C1",
            title="Python 101",
            instructor_id="I1",
            instructor_name="Ada",
            category="Programming",
            total_lessons=4,
            lesson_titles={"L1": "Intro", "L2": "Types", "L3": "Loops", "L4": "Functions"},
            price=50.0,
        ),
        CourseInfo(course_id="C2", title="Data Science", instructor_id="I1", instructor_name="Ada",
                   category="Data", total_lessons=2, price=80.0),
        CourseInfo(course_id="C3", title="Design", instructor_id="I2", instructor_name="Grace",
                   category="Design", total_lessons=3, price=30.0),
    ]


def sample_users():
    return [
        UserInfo("S1", "Sam", "student", "sam@example.com", datetime(2024, 1, 10, tzinfo=timezone.utc)),
        UserInfo("S2", "Kim", "student", "kim@example.com", datetime(2024, 2, 20, tzinfo=timezone.utc)),
        UserInfo("S3", "Lee", "student", "lee@example.com", datetime(2024, 3, 5, tzinfo=timezone.utc)),
        UserInfo("I1", "Ada", "instructor", "ada@example.com", datetime(2023, 6, 1, tzinfo=timezone.utc)),
        UserInfo("I2", "Grace", "instructor", "grace@example.com", datetime(2023, 7, 1, tzinfo=timezone.utc)),
        UserInfo("A1", "Root", "admin", "root@example.com", datetime(2023, 1, 1, tzinfo=timezone.utc)),
    ]


def sample_records():
    """
    S1: strong learner in C1 (2/4 lessons) and C2 (completed with certificate).
    S2: enrolled in C1, keeps restarting L3, failed a quiz, idle since Feb 28, refunded.
    S3: new in C3.
    """

    return [
        # S1 / C1
        {"user_id": "S1", "course_id": "C1", "enrollment_date": "2024-03-01T09:00:00Z"},
        {"user_id": "S1", "course_id": "C1", "lesson_id": "L1", "completed": True, "completed_at": "2024-03-05T10:00:00Z", "watch_time": 600},
        {"user_id": "S1", "course_id": "C1", "lesson_id": "L2", "completed": True, "completed_at": "2024-03-10T10:00:00Z", "watch_time": 900},
        {"user_id": "S1", "course_id": "C1", "quiz_id": "Q1", "score": 90, "attempted_at": "2024-03-10T11:00:00Z"},
        {"user_id": "S1", "course_id": "C1", "start_time": "2024-03-14T08:00:00Z", "end_time": "2024-03-14T09:00:00Z"},
        {"user_id": "S1", "course_id": "C1", "amount": 50, "status": "completed", "created_at": "2024-03-01T09:00:00Z"},
        {"user_id": "S1", "course_id": "C1", "rating": 5, "created_at": "2024-03-12T09:00:00Z"},
        # S1 / C2
        {"student_id": "S1", "course_id": "C2", "enrollment_date": "2024-02-01T09:00:00Z",
         "completion_date": "2024-03-02T09:00:00Z", "certificate_issued": True},
        {"user_id": "S1", "course_id": "C2", "lesson_id": "L1", "completed": True, "completed_at": "2024-02-15T10:00:00Z"},
        {"user_id": "S1", "course_id": "C2", "lesson_id": "L2", "completed": True, "completed_at": "2024-02-15T12:00:00Z"},
        {"user_id": "S1", "course_id": "C2", "quiz_id": "Q9", "score": 80, "attempted_at": "2024-02-16T11:00:00Z"},
        # S2 / C1
        {"user_id": "S2", "course_id": "C1", "enrollment_date": "2024-02-25T09:00:00Z"},
        {"user_id": "S2", "course_id": "C1", "lesson_id": "L3", "started_at": "2024-02-26T10:00:00Z"},
        {"user_id": "S2", "course_id": "C1", "lesson_id": "L3", "started_at": "2024-02-27T10:00:00Z"},
        {"user_id": "S2", "course_id": "C1", "lesson_id": "L3", "started_at": "2024-02-28T10:00:00Z"},
        {"user_id": "S2", "course_id": "C1", "quiz_id": "Q1", "score": 30, "attempted_at": "2024-02-28T11:00:00Z"},
        {"user_id": "S2", "course_id": "C1", "amount_cents": 5000, "status": "completed", "created_at": "2024-02-25T09:00:00Z"},
        {"user_id": "S2", "course_id": "C1", "amount": 50, "status": "refunded", "created_at": "2024-03-03T09:00:00Z"},
        # S3 / C3
        {"user_id": "S3", "course_id": "C3", "enrollment_date": "2024-03-10T09:00:00Z"},
        {"user_id": "S3", "course_id": "C3", "lesson_id": "L1", "completed": True, "completed_at": "2024-03-14T10:00:00Z"},
        {"user_id": "S3", "course_id": "C3", "rating": 4, "created_at": "2024-03-14T11:00:00Z"},
        {"user_id": "S3", "course_id": "C3", "amount": 30, "payment_type": "subscription", "status": "completed",
         "created_at": "2024-03-10T09:00:00Z"},
        # junk that must be skipped
        {"course_id": "C1", "lesson_id": "L1", "completed": True, "completed_at": "2024-03-05T10:00:00Z"},
    ]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(sample_records(), sample_courses(), sample_users())


@pytest.fixture
def service(store):
    svc = MetricsService(store, store, clock=lambda: NOW)
    yield svc
    svc.close()


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    root = tmp_path / "lms"
    root.mkdir()
    with open(root / "events.jsonl", "w", encoding="utf-8") as f:
        for record in sample_records():
            if "user_id" not in record and "student_id" not in record:
                continue
            f.write(json.dumps(record) + "\n")
    courses = [
        {
            "course_id": c.course_id,
            "title": c.title,
            "instructor_id": c.instructor_id,
            "instructor_name": c.instructor_name,
            "category": c.category,
            "total_lessons": c.total_lessons,
            "price": c.price,
        }
        for c in sample_courses()
    ]
    (root / "courses.json").write_text(json.dumps(courses), encoding="utf-8")
    users = [
        {"user_id": u.user_id, "name": u.name, "role": u.role, "email": u.email, "created_at": u.created_at.isoformat()}
        for u in sample_users()
    ]
    (root / "users.json").write_text(json.dumps(users), encoding="utf-8")
    return root
