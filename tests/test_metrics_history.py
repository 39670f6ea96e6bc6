"""
Tests for the history query service.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from hwtelemetry.config import HistoryConfig
from hwtelemetry.errors import InvalidColumnError, InvalidRangeError
from hwtelemetry.metrics.columns import MetricColumn
from hwtelemetry.metrics.history import CleanupResult, HistoryQueryService
from hwtelemetry.metrics.reading import PersistedRow
from hwtelemetry.metrics.storage import MetricsStore

NOW_MS = 1_700_000_000_000
DAY_MS = 24 * 3_600_000


class FakeClock:
    def __init__(self, now_ms: int = NOW_MS) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(temp_db_path: Path, clock: FakeClock) -> MetricsStore:
    store = MetricsStore(temp_db_path, clock_ms=clock)
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def service(store: MetricsStore, clock: FakeClock) -> HistoryQueryService:
    return HistoryQueryService(store, HistoryConfig(), clock_ms=clock)


class TestResolveColumn:
    """Tests for column and metric-key resolution."""

    def test_default_column(self, service: HistoryQueryService) -> None:
        """Test neither column nor metric selects cpu_load."""
        assert service.resolve_column() == MetricColumn.CPU_LOAD

    def test_explicit_column(self, service: HistoryQueryService) -> None:
        """Test an explicit column is used."""
        assert service.resolve_column(column="disk_write") == MetricColumn.DISK_WRITE

    def test_column_wins_over_metric(self, service: HistoryQueryService) -> None:
        """Test column takes precedence over metric."""
        assert (
            service.resolve_column(column="net_tx", metric="memUsage") == MetricColumn.NET_TX
        )

    def test_explicit_column_is_strict(self, service: HistoryQueryService) -> None:
        """Test an invalid explicit column is rejected."""
        with pytest.raises(InvalidColumnError):
            service.resolve_column(column="memUsage")

    def test_blank_column_uses_metric(self, service: HistoryQueryService) -> None:
        """Test an empty column value does not override metric."""
        assert service.resolve_column(column="", metric="netRx") == MetricColumn.NET_RX
        assert service.resolve_column(column=" ") == MetricColumn.CPU_LOAD

    def test_metric_key(self, service: HistoryQueryService) -> None:
        """Test metric keys are routed through the key table."""
        assert service.resolve_column(metric="gpu1Temp") == MetricColumn.GPU_TEMP

    def test_unknown_metric_falls_back(self, service: HistoryQueryService) -> None:
        """Test unknown metric keys fall back to cpu_load by default."""
        assert service.resolve_column(metric="batteryLevel") == MetricColumn.CPU_LOAD

    def test_unknown_metric_strict(self, store: MetricsStore, clock: FakeClock) -> None:
        """Test strict mode rejects unknown metric keys."""
        service = HistoryQueryService(
            store, HistoryConfig(strict_metric_keys=True), clock_ms=clock
        )

        with pytest.raises(InvalidColumnError):
            service.resolve_column(metric="batteryLevel")


class TestBuildQuery:
    """Tests for argument resolution."""

    def test_defaults(self, service: HistoryQueryService) -> None:
        """Test the default window, limit and column."""
        query = service.build_query()

        assert query.since_ms == NOW_MS - 3_600_000
        assert query.until_ms == NOW_MS
        assert query.limit == 500
        assert query.column == MetricColumn.CPU_LOAD

    def test_string_arguments(self, service: HistoryQueryService) -> None:
        """Test query-string arguments are parsed."""
        query = service.build_query(since="1000", until="2000", limit="25")

        assert (query.since_ms, query.until_ms, query.limit) == (1000, 2000, 25)

    def test_limit_clamped(self, service: HistoryQueryService) -> None:
        """Test the limit is clamped to the configured maximum."""
        assert service.build_query(limit="999999").limit == 2000
        assert service.build_query(limit="0").limit == 1

    def test_inverted_window(self, service: HistoryQueryService) -> None:
        """Test since after until is rejected."""
        with pytest.raises(InvalidRangeError):
            service.build_query(since=NOW_MS, until=NOW_MS - 1)

    def test_future_since_is_inverted(self, service: HistoryQueryService) -> None:
        """Test a since in the future is rejected once until is capped at now."""
        with pytest.raises(InvalidRangeError):
            service.build_query(since=NOW_MS + 60_000)

    def test_until_only(self, service: HistoryQueryService) -> None:
        """Test since defaults to one window before an explicit until."""
        query = service.build_query(until=NOW_MS - DAY_MS)

        assert query.since_ms == NOW_MS - DAY_MS - 3_600_000
        assert query.until_ms == NOW_MS - DAY_MS

    def test_to_dict(self, service: HistoryQueryService) -> None:
        """Test query serialization."""
        query = service.build_query(since=1, until=2, limit=3, column="mem_usage")

        assert query.to_dict() == {"since": 1, "until": 2, "limit": 3, "column": "mem_usage"}


class TestQuery:
    """Tests for running queries."""

    @pytest.mark.asyncio
    async def test_query_returns_store_points(
        self, service: HistoryQueryService, store: MetricsStore, clock: FakeClock
    ) -> None:
        """Test points come back oldest first for the requested metric."""
        for i in range(3):
            clock.now_ms = NOW_MS + i * 1000
            await store.append(PersistedRow(mem_usage=40.0 + i))

        points = await service.query(since=NOW_MS, metric="memoryUsage")

        assert [p.value for p in points] == [40.0, 41.0, 42.0]
        assert [p.timestamp_ms for p in points] == [NOW_MS, NOW_MS + 1000, NOW_MS + 2000]

    @pytest.mark.asyncio
    async def test_invalid_column_does_not_touch_storage(
        self, store: MetricsStore, clock: FakeClock, temp_db_path: Path
    ) -> None:
        """Test an invalid column fails before any store access."""
        fresh = MetricsStore(temp_db_path.parent / "untouched.db", clock_ms=clock)
        service = HistoryQueryService(fresh, clock_ms=clock)

        with pytest.raises(InvalidColumnError):
            await service.query(column="drop table")

        assert not (temp_db_path.parent / "untouched.db").exists()

    @pytest.mark.asyncio
    async def test_query_until_only_window_is_empty(
        self, service: HistoryQueryService, store: MetricsStore
    ) -> None:
        """Test a past until with no rows in its hour returns no points."""
        await store.append(PersistedRow(cpu_load=5.0))

        assert await service.query(until=str(NOW_MS - DAY_MS)) == []


class TestCleanup:
    """Tests for cleanup."""

    @pytest.mark.asyncio
    async def test_cleanup_default_age(
        self, service: HistoryQueryService, store: MetricsStore, clock: FakeClock
    ) -> None:
        """Test the default maximum age is 30 days."""
        for age_days in (40, 31, 29, 1):
            clock.now_ms = NOW_MS - age_days * DAY_MS
            await store.append(PersistedRow())
        clock.now_ms = NOW_MS

        result = await service.cleanup()

        assert result.deleted == 2
        assert result.cutoff_ms == NOW_MS - 30 * DAY_MS
        assert await store.count() == 2

    @pytest.mark.asyncio
    async def test_cleanup_explicit_age(
        self, service: HistoryQueryService, store: MetricsStore, clock: FakeClock
    ) -> None:
        """Test an explicit maxAge in milliseconds."""
        for offset in (5000, 1000, 0):
            clock.now_ms = NOW_MS - offset
            await store.append(PersistedRow())
        clock.now_ms = NOW_MS

        result = await service.cleanup("2000")

        assert result.deleted == 1
        assert result.cutoff_ms == NOW_MS - 2000

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", ["abc", "-5", "0"])
    async def test_cleanup_invalid_age_uses_default(
        self, service: HistoryQueryService, bad: str
    ) -> None:
        """Test malformed or non-positive ages fall back to the default."""
        result = await service.cleanup(bad)

        assert result.cutoff_ms == NOW_MS - 30 * DAY_MS

    def test_cleanup_result_to_dict(self) -> None:
        """Test the cleanup response shape."""
        result = CleanupResult(deleted=3, cutoff_ms=0)

        assert result.to_dict() == {
            "deleted": 3,
            "before": "1970-01-01T00:00:00+00:00",
            "cutoff": 0,
        }
