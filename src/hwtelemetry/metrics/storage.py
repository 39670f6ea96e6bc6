"""
SQLite time-series store.

This module implements the MetricsStore class that handles:
- SQLite database initialization with the metrics schema and indexes
- Appending one row per reading (serialized, one transaction per row)
- Bounded range queries over a single metric column
- Retention (deleting rows older than a cutoff)

SQLite Schema:
    CREATE TABLE metrics (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,   -- epoch milliseconds, server clock
        cpu_load REAL, cpu_temp REAL, mem_usage REAL,
        gpu_temp REAL, gpu_load REAL, fan_speed REAL,
        net_rx REAL, net_tx REAL,     -- bytes/s
        disk_usage REAL,              -- %
        disk_read REAL, disk_write REAL,  -- bytes/s
        full_data TEXT                -- Reading DTO as JSON
    );
    CREATE INDEX idx_timestamp ON metrics(timestamp);
    CREATE INDEX idx_cpu_load ON metrics(cpu_load);
    CREATE INDEX idx_mem_usage ON metrics(mem_usage);
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import math
import sqlite3
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from hwtelemetry.errors import StorageError, StorageInitError, WriteError
from hwtelemetry.logging import get_logger
from hwtelemetry.metrics.columns import ALLOWED_COLUMNS, MetricColumn, parse_column
from hwtelemetry.metrics.reading import PersistedRow

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_LIMIT = 500
MIN_LIMIT = 1
MAX_LIMIT = 2000

DEFAULT_WINDOW_MS = 3_600_000


# =============================================================================
# Data Models
# =============================================================================


@dataclass(frozen=True)
class HistoryPoint:
    """One (timestamp, value) point of a history series.

    Attributes:
        timestamp_ms: Row creation time in epoch milliseconds.
        value: Value of the requested column.
    """

    timestamp_ms: int
    value: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire shape."""
        return {"timestamp": self.timestamp_ms, "value": self.value}


# =============================================================================
# Argument coercion and clamping
# =============================================================================


def coerce_int(value: Any) -> int | None:
    """
    Leniently parse an integer query argument.

    Accepts ints, finite floats and numeric strings (including "1.7e12").
    Returns None for anything absent or malformed.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            pass
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def clamp_limit(
    limit: Any,
    *,
    default: int = DEFAULT_LIMIT,
    maximum: int = MAX_LIMIT,
) -> int:
    """Clamp a requested row limit into [1, maximum]; default when absent."""
    parsed = coerce_int(limit)
    if parsed is None:
        parsed = default
    return max(MIN_LIMIT, min(parsed, maximum))


def clamp_window(
    since_ms: Any,
    until_ms: Any,
    *,
    now_ms: int,
    default_window_ms: int = DEFAULT_WINDOW_MS,
) -> tuple[int, int]:
    """
    Resolve a query window.

    An absent or malformed ``until`` defaults to now, and an absent or
    malformed ``since`` to ``default_window_ms`` before ``until``. ``until``
    never exceeds now and ``since`` never precedes the epoch. The result
    may be inverted (since > until); callers decide whether that is an
    error.
    """
    until = coerce_int(until_ms)
    until = now_ms if until is None else min(until, now_ms)

    since = coerce_int(since_ms)
    if since is None:
        since = until - default_window_ms
    return max(0, since), until


# =============================================================================
# SQLite Schema
# =============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    cpu_load REAL,
    cpu_temp REAL,
    mem_usage REAL,
    gpu_temp REAL,
    gpu_load REAL,
    fan_speed REAL,
    net_rx REAL,
    net_tx REAL,
    disk_usage REAL,
    disk_read REAL,
    disk_write REAL,
    full_data TEXT
);

CREATE INDEX IF NOT EXISTS idx_timestamp ON metrics(timestamp);
CREATE INDEX IF NOT EXISTS idx_cpu_load ON metrics(cpu_load);
CREATE INDEX IF NOT EXISTS idx_mem_usage ON metrics(mem_usage);
"""

_INSERT_SQL = (
    "INSERT INTO metrics (timestamp, "
    + ", ".join(ALLOWED_COLUMNS)
    + ", full_data) VALUES ("
    + ", ".join("?" for _ in range(len(ALLOWED_COLUMNS) + 2))
    + ")"
)


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# MetricsStore Class
# =============================================================================


class MetricsStore:
    """
    SQLite-backed, append-only store of PersistedRows.

    Concurrency:
    - Appends are serialized by an asyncio lock and run one transaction per
      row, so a row is either fully written or not at all
    - Reads do not take the lock; WAL mode lets them run alongside writes
      without observing partial rows
    - Each operation opens its own connection in the default executor

    Ordering: the store assigns each row's timestamp as
    ``max(now, last assigned)`` while holding the write lock, so rows are
    non-decreasing in timestamp in insertion order.

    Example:
        >>> store = MetricsStore("data/metrics.db")
        >>> await store.initialize()
        >>> await store.append(reading.to_row())
        >>> points = await store.query_range(None, None, 100, "cpu_load")
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        """
        Initialize the MetricsStore.

        Args:
            db_path: Path to the SQLite database file.
            clock_ms: Server clock in epoch milliseconds.
        """
        self.db_path = Path(db_path)
        self._clock_ms = clock_ms
        self._initialized = False
        self._closed = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._last_timestamp_ms = 0

    @property
    def is_closed(self) -> bool:
        """Whether close() has been called."""
        return self._closed

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Open a connection configured for concurrent WAL access."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    async def _run(self, func: Callable[[], Any]) -> Any:
        return await asyncio.get_event_loop().run_in_executor(None, func)

    async def initialize(self) -> None:
        """
        Initialize the database schema.

        Creates the metrics table and indexes if they don't exist. Idempotent.

        Raises:
            StorageInitError: If the database cannot be initialized.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return
            if self._closed:
                raise StorageInitError(
                    "Metrics store is closed",
                    details={"db_path": str(self.db_path)},
                )

            def _init_db() -> int:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                with self._get_connection() as conn:
                    conn.executescript(SCHEMA_SQL)
                    conn.commit()
                    row = conn.execute(
                        "SELECT MAX(timestamp) AS last FROM metrics"
                    ).fetchone()
                    return int(row["last"] or 0)

            try:
                self._last_timestamp_ms = await self._run(_init_db)
            except Exception as e:
                logger.error(
                    "Failed to initialize metrics database",
                    extra={"db_path": str(self.db_path), "error": str(e)},
                )
                raise StorageInitError(
                    f"Failed to initialize metrics database: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

            self._initialized = True
            logger.info(
                "Metrics database initialized",
                extra={"db_path": str(self.db_path)},
            )

    async def _ensure_readable(self) -> None:
        if self._closed:
            raise StorageError(
                "Metrics store is closed",
                details={"db_path": str(self.db_path)},
            )
        if not self._initialized:
            await self.initialize()

    async def append(self, row: PersistedRow) -> int:
        """
        Append one row.

        Assigns ``row.timestamp`` (epoch ms) and ``row.id``.

        Args:
            row: The PersistedRow to insert.

        Returns:
            The database ID of the inserted row.

        Raises:
            WriteError: If the store is closed or the write fails.
        """
        if not self._initialized and not self._closed:
            try:
                await self.initialize()
            except StorageInitError as e:
                raise WriteError(e.message, details=e.details) from e

        async with self._write_lock:
            if self._closed:
                raise WriteError(
                    "Metrics store is closed",
                    details={"db_path": str(self.db_path)},
                )

            timestamp_ms = max(self._clock_ms(), self._last_timestamp_ms)
            values = row.metric_values()
            params = (
                timestamp_ms,
                *(values[name] for name in ALLOWED_COLUMNS),
                json.dumps(row.full_data or {}, default=str),
            )

            def _insert() -> int:
                with self._get_connection() as conn, conn:
                    cursor = conn.execute(_INSERT_SQL, params)
                    return cursor.lastrowid or 0

            try:
                row_id = await self._run(_insert)
            except Exception as e:
                logger.error(
                    "Failed to append metrics row",
                    extra={"error": str(e), "db_path": str(self.db_path)},
                )
                raise WriteError(
                    f"Failed to append metrics row: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

            self._last_timestamp_ms = timestamp_ms
            row.id = row_id
            row.timestamp = timestamp_ms
            return row_id

    async def query_range(
        self,
        since_ms: Any = None,
        until_ms: Any = None,
        limit: Any = None,
        column: MetricColumn | str | None = MetricColumn.CPU_LOAD,
    ) -> list[HistoryPoint]:
        """
        Return points of one column within an inclusive time window.

        Note: The time range is inclusive on both ends (since <= timestamp <= until).

        Args:
            since_ms: Window start in epoch ms (default now - 1h, floor 0).
            until_ms: Window end in epoch ms (default now, ceiling now).
            limit: Maximum number of points, clamped into [1, 2000].
            column: One of the eleven metric columns.

        Returns:
            Up to ``limit`` points in ascending timestamp order.

        Raises:
            InvalidColumnError: If ``column`` is not a metric column; raised
                before storage is touched.
            StorageError: If the store is closed or the query fails.
        """
        metric = parse_column(
            column.value if isinstance(column, MetricColumn) else column
        )
        bounded_limit = clamp_limit(limit)
        since, until = clamp_window(since_ms, until_ms, now_ms=self._clock_ms())

        await self._ensure_readable()

        if since > until:
            return []

        # Column name comes from the MetricColumn enum, never from the caller
        sql = (
            f"SELECT timestamp, {metric.value} AS value FROM metrics "
            "WHERE timestamp >= ? AND timestamp <= ? "
            "ORDER BY timestamp ASC, id ASC LIMIT ?"
        )

        def _query() -> list[HistoryPoint]:
            with self._get_connection() as conn:
                rows = conn.execute(sql, (since, until, bounded_limit)).fetchall()
                return [
                    HistoryPoint(
                        timestamp_ms=int(r["timestamp"]),
                        value=float(r["value"] if r["value"] is not None else 0.0),
                    )
                    for r in rows
                ]

        try:
            return await self._run(_query)
        except Exception as e:
            logger.error(
                "Failed to query metrics",
                extra={"column": metric.value, "error": str(e)},
            )
            raise StorageError(
                f"Failed to query metrics: {e}",
                details={"column": metric.value},
            ) from e

    async def purge_before(self, cutoff_ms: int) -> int:
        """
        Delete rows strictly older than the cutoff.

        Args:
            cutoff_ms: Epoch ms; rows with timestamp < cutoff are deleted,
                rows exactly at the cutoff are kept.

        Returns:
            Number of rows deleted.

        Raises:
            StorageError: If the store is closed or the deletion fails.
        """
        await self._ensure_readable()

        def _delete() -> int:
            with self._get_connection() as conn, conn:
                cursor = conn.execute(
                    "DELETE FROM metrics WHERE timestamp < ?",
                    (int(cutoff_ms),),
                )
                return cursor.rowcount

        try:
            async with self._write_lock:
                count = await self._run(_delete)
        except Exception as e:
            logger.error("Failed to purge old metrics", extra={"error": str(e)})
            raise StorageError(
                f"Failed to purge old metrics: {e}",
                details={"cutoff_ms": cutoff_ms},
            ) from e

        if count > 0:
            logger.info(
                "Deleted old metrics rows",
                extra={
                    "count": count,
                    "cutoff": datetime.fromtimestamp(cutoff_ms / 1000, UTC).isoformat(),
                },
            )
        return count

    async def count(self) -> int:
        """Return the total number of stored rows."""
        await self._ensure_readable()

        def _count() -> int:
            with self._get_connection() as conn:
                return conn.execute("SELECT COUNT(*) AS count FROM metrics").fetchone()[
                    "count"
                ]

        try:
            return await self._run(_count)
        except Exception as e:
            logger.error("Failed to count metrics rows", extra={"error": str(e)})
            raise StorageError(f"Failed to count metrics rows: {e}") from e

    async def latest(self) -> PersistedRow | None:
        """Return the most recently appended row, or None when empty."""
        await self._ensure_readable()

        def _latest() -> PersistedRow | None:
            with self._get_connection() as conn:
                r = conn.execute(
                    "SELECT * FROM metrics ORDER BY timestamp DESC, id DESC LIMIT 1"
                ).fetchone()
            if r is None:
                return None
            full_data: dict[str, Any] = {}
            if r["full_data"]:
                with contextlib.suppress(json.JSONDecodeError):
                    full_data = json.loads(r["full_data"])
            return PersistedRow(
                id=r["id"],
                timestamp=r["timestamp"],
                full_data=full_data,
                **{name: r[name] if r[name] is not None else 0.0 for name in ALLOWED_COLUMNS},
            )

        try:
            return await self._run(_latest)
        except Exception as e:
            logger.error("Failed to read latest metrics row", extra={"error": str(e)})
            raise StorageError(f"Failed to read latest metrics row: {e}") from e

    async def close(self) -> None:
        """
        Close the store.

        Waits for an in-flight append to finish, then rejects further writes.
        Idempotent.
        """
        async with self._write_lock:
            if self._closed:
                return
            self._closed = True
        logger.info("Metrics store closed", extra={"db_path": str(self.db_path)})
