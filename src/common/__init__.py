# ABOUTME: Makes the shared common package importable across the analytics engine and CLIs.
# ABOUTME: Re-exports the canonical event schema, the normalizer, and the error taxonomy.

from .data_pipeline import normalize, normalize_records
from .errors import AnalyticsError, InvalidRange, MalformedRecord, NotFound, UpstreamTimeout
from .schemas import LearningEvent

__all__ = [
    "AnalyticsError",
    "InvalidRange",
    "LearningEvent",
    "MalformedRecord",
    "NotFound",
    "UpstreamTimeout",
    "normalize",
    "normalize_records",
]
