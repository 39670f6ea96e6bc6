"""
Metrics package for the hwtelemetry service.

Components:
- source: OS metrics acquisition (psutil, optional NVML)
- sampler: normalization of raw readings into Readings
- storage: SQLite time-series store
- history: validated history queries and cleanup
- retention: periodic purge of old rows
- thresholds: simple per-column threshold comparison
"""

from hwtelemetry.metrics.columns import ALLOWED_COLUMNS, MetricColumn
from hwtelemetry.metrics.history import HistoryQueryService
from hwtelemetry.metrics.reading import PersistedRow, Reading
from hwtelemetry.metrics.sampler import Sampler
from hwtelemetry.metrics.source import PsutilSource
from hwtelemetry.metrics.storage import HistoryPoint, MetricsStore

__all__ = [
    "ALLOWED_COLUMNS",
    "HistoryPoint",
    "HistoryQueryService",
    "MetricColumn",
    "MetricsStore",
    "PersistedRow",
    "PsutilSource",
    "Reading",
    "Sampler",
]
