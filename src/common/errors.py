# ABOUTME: Typed error taxonomy raised by normalization and the metrics query path.
# ABOUTME: Lets callers tell "query failed" apart from a valid, empty aggregate.

from __future__ import annotations

from typing import Any, Optional


class AnalyticsError(Exception):
    """Base class for every error the analytics engine raises on purpose."""


class MalformedRecord(AnalyticsError):
    """A raw record could not be mapped onto a LearningEvent."""

    def __init__(self, reason: str, record: Optional[Any] = None):
        super().__init__(reason)
        self.reason = reason
        self.record = record


class NotFound(AnalyticsError):
    def __init__(self, subject_kind: str, subject_id: str):
        super().__init__(f"No {subject_kind} with id '{subject_id}'")
        self.subject_kind = subject_kind
        self.subject_id = subject_id


class InvalidRange(AnalyticsError):
    """Rejected query parameter (time range or subject kind)."""


class UpstreamTimeout(AnalyticsError):
    """The event store did not answer in time. Retryable by the caller."""

    retryable = True


class AccessDenied(AnalyticsError):
    def __init__(self, role: str, subject_kind: str, subject_id: str):
        super().__init__(f"Role '{role}' may not read {subject_kind} '{subject_id}'")
        self.role = role
        self.subject_kind = subject_kind
        self.subject_id = subject_id


class ConfigError(AnalyticsError):
    pass
