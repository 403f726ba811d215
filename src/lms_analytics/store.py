# ABOUTME: Read-only event store and catalog boundaries consumed by the metrics façade.
# ABOUTME: Ships an in-memory implementation and a directory-backed one reading csv/json/parquet exports.

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Collection, Dict, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from src.common.data_pipeline import load_raw_records, record_key
from src.common.schemas import CourseInfo, UserInfo

logger = logging.getLogger(__name__)

_SUFFIXES = (".parquet", ".csv", ".jsonl", ".json")


class EventStore(ABC):
    @abstractmethod
    def fetch_records(
        self,
        course_ids: Optional[Collection[str]] = None,
        subject_ids: Optional[Collection[str]] = None,
    ) -> List[Any]:
        """
        Raw activity records, optionally restricted to some courses or subjects.

        A record matches when it belongs to one of ``course_ids`` (if given) and
        to one of ``subject_ids`` (if given).
        """


class Catalog(ABC):
    @abstractmethod
    def get_course(self, course_id: str) -> Optional[CourseInfo]:
        ...

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[UserInfo]:
        ...

    @abstractmethod
    def list_courses(self, instructor_id: Optional[str] = None) -> List[CourseInfo]:
        ...

    @abstractmethod
    def list_users(self, role: Optional[str] = None) -> List[UserInfo]:
        ...


def filter_records(
    records: Iterable[Any],
    course_ids: Optional[Collection[str]] = None,
    subject_ids: Optional[Collection[str]] = None,
) -> List[Any]:
    courses = None if course_ids is None else set(course_ids)
    subjects = None if subject_ids is None else set(subject_ids)
    kept = []
    for record in records:
        subject_id, course_id = record_key(record)
        if courses is not None and course_id not in courses:
            continue
        if subjects is not None and subject_id not in subjects:
            continue
        kept.append(record)
    return kept


class InMemoryStore(EventStore, Catalog):
    """Holds raw records and catalog entries in plain lists; handy for tests and small exports."""

    def __init__(
        self,
        records: Sequence[Any] = (),
        courses: Sequence[CourseInfo] = (),
        users: Sequence[UserInfo] = (),
    ):
        self._records = list(records)
        self._courses: Dict[str, CourseInfo] = {course.course_id: course for course in courses}
        self._users: Dict[str, UserInfo] = {user.user_id: user for user in users}

    def fetch_records(self, course_ids=None, subject_ids=None) -> List[Any]:
        return filter_records(self._records, course_ids, subject_ids)

    def get_course(self, course_id: str) -> Optional[CourseInfo]:
        return self._courses.get(course_id)

    def get_user(self, user_id: str) -> Optional[UserInfo]:
        return self._users.get(user_id)

    def list_courses(self, instructor_id: Optional[str] = None) -> List[CourseInfo]:
        courses = sorted(self._courses.values(), key=lambda course: course.course_id)
        if instructor_id is None:
            return courses
        return [course for course in courses if course.instructor_id == instructor_id]

    def list_users(self, role: Optional[str] = None) -> List[UserInfo]:
        users = sorted(self._users.values(), key=lambda user: user.user_id)
        if role is None:
            return users
        return [user for user in users if user.role == role]


class DirectoryStore(InMemoryStore):
    """
    Loads ``events``, ``courses`` and ``users`` exports from one directory.

    Each table may be stored as parquet, csv, jsonl or json; the first suffix
    found wins. Missing catalog tables leave the catalog empty.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        events_path = _find_table(self.root, "events")
        if events_path is None:
            raise FileNotFoundError(f"No events table (events.parquet/csv/jsonl/json) under {self.root}")
        records = load_raw_records(events_path)
        courses_path = _find_table(self.root, "courses")
        users_path = _find_table(self.root, "users")
        courses = [course_from_record(row) for row in load_raw_records(courses_path)] if courses_path else []
        users = [user_from_record(row) for row in load_raw_records(users_path)] if users_path else []
        logger.info(
            "Loaded %d raw records, %d courses, %d users from %s", len(records), len(courses), len(users), self.root
        )
        super().__init__(records=records, courses=courses, users=users)


def course_from_record(row: Mapping[str, Any]) -> CourseInfo:
    titles = row.get("lesson_titles") or {}
    if not isinstance(titles, Mapping):
        titles = {}
    return CourseInfo(
        course_id=str(row.get("course_id") or row.get("id")),
        title=str(row.get("title") or ""),
        instructor_id=str(row.get("instructor_id") or ""),
        instructor_name=str(row.get("instructor_name") or ""),
        category=str(row.get("category") or "Uncategorized"),
        total_lessons=int(_number(row.get("total_lessons"))),
        lesson_titles={str(key): str(value) for key, value in titles.items()},
        price=float(_number(row.get("price"))),
        published=row.get("published") is None or bool(row.get("published")),
    )


def user_from_record(row: Mapping[str, Any]) -> UserInfo:
    created = row.get("created_at")
    return UserInfo(
        user_id=str(row.get("user_id") or row.get("id")),
        name=str(row.get("name") or ""),
        role=str(row.get("role") or "student"),
        email=str(row.get("email") or ""),
        created_at=None if created is None else pd.Timestamp(created).to_pydatetime(),
    )


def _find_table(root: Path, name: str) -> Optional[Path]:
    for suffix in _SUFFIXES:
        path = root / f"{name}{suffix}"
        if path.exists():
            return path
    return None


def _number(value: Any) -> float:
    if value is None or pd.isna(value):
        return 0.0
    return float(value)
