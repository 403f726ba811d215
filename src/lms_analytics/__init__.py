# ABOUTME: Learning-analytics engine: rollups, trends, classification, insights, and the metrics façade.
# ABOUTME: Re-exports the entry points most callers need.

from .cache import CachedMetricsService
from .config import EngineConfig, load_config
from .service import MetricsService
from .store import Catalog, DirectoryStore, EventStore, InMemoryStore
from .views import AdminDashboardData, CourseAnalytics, InstructorMetrics, StudentMetrics

__all__ = [
    "AdminDashboardData",
    "CachedMetricsService",
    "Catalog",
    "CourseAnalytics",
    "DirectoryStore",
    "EngineConfig",
    "EventStore",
    "InMemoryStore",
    "InstructorMetrics",
    "MetricsService",
    "StudentMetrics",
    "load_config",
]
