"""
Background retention job.

Periodically deletes rows older than the configured maximum age through
``MetricsStore.purge_before``. Runs as a single asyncio task that can be
started and stopped; failures are logged and counted, never fatal.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from hwtelemetry.errors import StorageError
from hwtelemetry.logging import get_logger

if TYPE_CHECKING:
    from hwtelemetry.config import RetentionConfig
    from hwtelemetry.metrics.storage import MetricsStore

logger = get_logger(__name__)

DAY_MS = 24 * 3600 * 1000

# Seconds to wait for a running purge before cancelling on stop()
STOP_TIMEOUT_SECONDS = 10.0


class RetentionStatus(str, Enum):
    """Status of the retention job."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class RetentionState:
    """
    Current state of the retention job.

    Attributes:
        status: Current job status.
        job_id: Identifier of the running job.
        max_age_days: Rows older than this are deleted.
        check_interval_seconds: Delay between runs.
        started_at: When the job was started.
        last_run_at: When the last purge finished.
        run_count: Completed purge runs.
        deleted_total: Rows deleted across all runs.
        error_count: Failed purge runs.
        last_error: Last error message if any.
    """

    status: RetentionStatus = RetentionStatus.STOPPED
    job_id: str | None = None
    max_age_days: int = 30
    check_interval_seconds: int = 3600
    started_at: datetime | None = None
    last_run_at: datetime | None = None
    run_count: int = 0
    deleted_total: int = 0
    error_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "max_age_days": self.max_age_days,
            "check_interval_seconds": self.check_interval_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "run_count": self.run_count,
            "deleted_total": self.deleted_total,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


class RetentionJob:
    """
    Periodic purge of old metrics rows.

    Example:
        >>> job = RetentionJob(store, config.retention)
        >>> await job.start()
        >>> await job.stop()
    """

    def __init__(self, store: MetricsStore, config: RetentionConfig | None = None) -> None:
        self._store = store
        self._state = RetentionState()
        if config is not None:
            self._state.max_age_days = config.max_age_days
            self._state.check_interval_seconds = config.check_interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._state.status == RetentionStatus.RUNNING

    def get_status(self) -> RetentionState:
        """Return a copy of the current state."""
        return RetentionState(**vars(self._state))

    async def start(self) -> RetentionState:
        """Start the periodic job; no-op when already running."""
        async with self._lock:
            if self._state.status == RetentionStatus.RUNNING:
                return self.get_status()

            self._state.status = RetentionStatus.RUNNING
            self._state.job_id = str(uuid.uuid4())[:8]
            self._state.started_at = datetime.now()
            self._stop_event.clear()
            self._task = asyncio.create_task(self._loop())

            logger.info(
                "Retention job started",
                extra={
                    "job_id": self._state.job_id,
                    "max_age_days": self._state.max_age_days,
                    "check_interval_seconds": self._state.check_interval_seconds,
                },
            )
            return self.get_status()

    async def stop(self) -> RetentionState:
        """Stop the job, waiting for an in-progress purge to finish."""
        async with self._lock:
            if self._state.status != RetentionStatus.RUNNING:
                return self.get_status()

            self._state.status = RetentionStatus.STOPPING
            self._stop_event.set()

            if self._task:
                try:
                    await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT_SECONDS)
                except TimeoutError:
                    logger.warning("Retention task did not stop gracefully, cancelling")
                    self._task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await self._task
                self._task = None

            self._state.status = RetentionStatus.STOPPED
            logger.info(
                "Retention job stopped",
                extra={
                    "job_id": self._state.job_id,
                    "deleted_total": self._state.deleted_total,
                },
            )
            return self.get_status()

    async def run_once(self) -> int:
        """Purge rows older than the maximum age once; returns rows deleted."""
        cutoff_ms = int(time.time() * 1000) - self._state.max_age_days * DAY_MS
        deleted = await self._store.purge_before(cutoff_ms)
        self._state.run_count += 1
        self._state.deleted_total += deleted
        self._state.last_run_at = datetime.now()
        return deleted

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except StorageError as e:
                self._state.error_count += 1
                self._state.last_error = e.message
                logger.error(
                    "Error enforcing retention policy",
                    extra={"error": e.message, "job_id": self._state.job_id},
                )

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._state.check_interval_seconds),
                )
                break
            except TimeoutError:
                pass
