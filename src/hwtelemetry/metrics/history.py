"""
History query service.

Thin validation layer in front of MetricsStore: resolves the requested
column (strict) or dashboard metric key (lenient, see
``columns.resolve_metric_key``), resolves the time window and limit, and
returns the store's ordered points unchanged. Also exposes the retention
cleanup used by the HTTP cleanup endpoint.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from hwtelemetry.errors import InvalidRangeError
from hwtelemetry.logging import get_logger
from hwtelemetry.metrics.columns import (
    MetricColumn,
    parse_column,
    resolve_metric_key,
)
from hwtelemetry.metrics.storage import (
    HistoryPoint,
    MetricsStore,
    clamp_limit,
    clamp_window,
    coerce_int,
)

if TYPE_CHECKING:
    from hwtelemetry.config import HistoryConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class HistoryQuery:
    """A fully resolved history request."""

    since_ms: int
    until_ms: int
    limit: int
    column: MetricColumn

    def to_dict(self) -> dict[str, Any]:
        return {
            "since": self.since_ms,
            "until": self.until_ms,
            "limit": self.limit,
            "column": self.column.value,
        }


@dataclass(frozen=True)
class CleanupResult:
    """Outcome of a retention cleanup."""

    deleted: int
    cutoff_ms: int

    @property
    def cutoff_iso(self) -> str:
        return datetime.fromtimestamp(self.cutoff_ms / 1000, UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        return {
            "deleted": self.deleted,
            "before": self.cutoff_iso,
            "cutoff": self.cutoff_ms,
        }


class HistoryQueryService:
    """
    Validates history requests and delegates them to the store.

    Example:
        >>> service = HistoryQueryService(store)
        >>> points = await service.query(since="1700000000000", column="mem_usage")
    """

    def __init__(
        self,
        store: MetricsStore,
        config: HistoryConfig | None = None,
        *,
        clock_ms: Callable[[], int] | None = None,
    ) -> None:
        self._store = store
        self._default_limit = config.default_limit if config else 500
        self._max_limit = config.max_limit if config else 2000
        self._default_window_ms = config.default_window_ms if config else 3_600_000
        self._default_max_age_ms = (
            config.default_cleanup_max_age_ms if config else 30 * 24 * 3_600_000
        )
        self._strict_keys = config.strict_metric_keys if config else False
        self._clock_ms = clock_ms or (lambda: int(time.time() * 1000))

    def resolve_column(
        self,
        column: str | None = None,
        metric: str | None = None,
    ) -> MetricColumn:
        """
        Pick the column for a request.

        An explicit ``column`` is validated strictly. Otherwise ``metric`` is
        routed through the metric-key table. With neither, cpu_load.
        """
        if column is not None and str(column).strip():
            return parse_column(column)
        return resolve_metric_key(metric, strict=self._strict_keys)

    def build_query(
        self,
        since: Any = None,
        until: Any = None,
        limit: Any = None,
        column: str | None = None,
        metric: str | None = None,
    ) -> HistoryQuery:
        """
        Resolve raw request arguments into a HistoryQuery.

        Raises:
            InvalidColumnError: If ``column`` is not an allowed column, or
                ``metric`` is unknown in strict mode.
            InvalidRangeError: If the resolved window is inverted.
        """
        resolved = self.resolve_column(column, metric)
        since_ms, until_ms = clamp_window(
            since,
            until,
            now_ms=self._clock_ms(),
            default_window_ms=self._default_window_ms,
        )
        if since_ms > until_ms:
            raise InvalidRangeError(
                "since must not be later than until",
                details={"since": since_ms, "until": until_ms},
            )
        return HistoryQuery(
            since_ms=since_ms,
            until_ms=until_ms,
            limit=clamp_limit(
                limit, default=self._default_limit, maximum=self._max_limit
            ),
            column=resolved,
        )

    async def query(
        self,
        since: Any = None,
        until: Any = None,
        limit: Any = None,
        column: str | None = None,
        metric: str | None = None,
    ) -> list[HistoryPoint]:
        """
        Run a history query.

        Returns:
            Points in ascending timestamp order, exactly as the store
            returned them.
        """
        query = self.build_query(since, until, limit, column, metric)
        logger.debug("History query", extra={"query": query.to_dict()})
        return await self._store.query_range(
            query.since_ms, query.until_ms, query.limit, query.column
        )

    async def cleanup(self, max_age_ms: Any = None) -> CleanupResult:
        """
        Delete rows older than now - max_age.

        Args:
            max_age_ms: Age in milliseconds; absent, malformed or
                non-positive values use the configured default (30 days).
        """
        max_age = coerce_int(max_age_ms)
        if max_age is None or max_age <= 0:
            max_age = self._default_max_age_ms

        cutoff_ms = max(0, self._clock_ms() - max_age)
        deleted = await self._store.purge_before(cutoff_ms)
        result = CleanupResult(deleted=deleted, cutoff_ms=cutoff_ms)
        logger.info(
            "Metrics cleanup finished",
            extra={"deleted": deleted, "before": result.cutoff_iso},
        )
        return result
