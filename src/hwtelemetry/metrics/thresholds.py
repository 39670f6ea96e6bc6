"""
Simple threshold comparison over persisted metric columns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from hwtelemetry.metrics.columns import ALLOWED_COLUMNS

if TYPE_CHECKING:
    from hwtelemetry.config import ThresholdConfig
    from hwtelemetry.metrics.reading import PersistedRow


@dataclass(frozen=True)
class ThresholdBreach:
    """A metric value above its configured ceiling."""

    column: str
    value: float
    limit: float

    def to_dict(self) -> dict[str, Any]:
        return {"column": self.column, "value": self.value, "limit": self.limit}


def check_thresholds(row: PersistedRow, config: ThresholdConfig) -> list[ThresholdBreach]:
    """
    Compare each metric column of a row with its ceiling.

    A column breaches when its value is strictly greater than the limit;
    columns whose limit is None are skipped.
    """
    values = row.metric_values()
    breaches = []
    for column in ALLOWED_COLUMNS:
        limit = getattr(config, column)
        if limit is None:
            continue
        if values[column] > limit:
            breaches.append(
                ThresholdBreach(column=column, value=values[column], limit=float(limit))
            )
    return breaches
