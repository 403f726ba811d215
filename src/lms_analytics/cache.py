# ABOUTME: Optional TTL cache layered in front of the metrics façade.
# ABOUTME: Authorization still runs on every call; only the assembled view is reused.

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Hashable, Optional, Tuple

from cachetools import TTLCache

from src.common.schemas import Identity, QueryFilters

from .service import MetricsService, validate_query
from .views import AggregateView

logger = logging.getLogger(__name__)


class CachedMetricsService:
    """
    Wraps a MetricsService with a bounded TTL cache keyed on
    ``(subject_kind, subject_id, time_range, filters, now)``.

    Views are immutable, so a hit hands back the very object built by the
    first call. Errors are never cached.
    """

    def __init__(self, service: MetricsService, ttl_seconds: Optional[float] = None, maxsize: Optional[int] = None):
        self.service = service
        config = service.config
        self._cache: TTLCache = TTLCache(
            maxsize=maxsize if maxsize is not None else config.cache_maxsize,
            ttl=ttl_seconds if ttl_seconds is not None else config.cache_ttl_seconds,
        )
        self._lock = threading.Lock()

    def get_metrics(
        self,
        subject_kind: str,
        subject_id: str,
        time_range: str,
        filters: Optional[QueryFilters] = None,
        identity: Optional[Identity] = None,
        now: Optional[datetime] = None,
    ) -> AggregateView:
        validate_query(subject_kind, time_range)
        filters = filters or QueryFilters()
        self.service.authorize(identity, subject_kind, subject_id)

        key = self._key(subject_kind, subject_id, time_range, filters, now, identity)
        with self._lock:
            view = self._cache.get(key)
        if view is not None:
            logger.debug("Cache hit for %s", key)
            return view

        view = self.service.get_metrics(subject_kind, subject_id, time_range, filters, identity=identity, now=now)
        with self._lock:
            self._cache[key] = view
        return view

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def _key(subject_kind, subject_id, time_range, filters, now, identity) -> Tuple[Hashable, ...]:
        # An instructor reading a student sees only their own courses, so that scope is part of the key.
        scope = None
        if identity is not None and identity.role == "instructor" and subject_kind == "student":
            scope = identity.user_id
        return (subject_kind, subject_id, time_range, filters.as_key(), now, scope)
