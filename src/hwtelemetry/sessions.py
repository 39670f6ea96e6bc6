"""
Streaming session manager.

Each live subscriber gets a Session with its own asyncio task. The task runs
one eager tick immediately, then one tick per ``interval_ms`` for the
lifetime of the connection. A tick samples the host, pushes the reading to
the subscriber and appends the derived row to the time-series store.

Failure policy per tick:
- AcquisitionError: an error message is sent, the session keeps running
- WriteError: logged and counted, the session keeps running
- TransportError: the session is torn down

Ticks of one session never overlap: the next tick is scheduled relative to
the start of the previous one and a slow tick simply delays it. Sessions
share nothing but the sampler and the store.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from hwtelemetry.errors import AcquisitionError, TransportError, WriteError
from hwtelemetry.logging import get_logger
from hwtelemetry.metrics.storage import coerce_int
from hwtelemetry.metrics.thresholds import check_thresholds

if TYPE_CHECKING:
    from hwtelemetry.config import StreamingConfig, ThresholdConfig
    from hwtelemetry.metrics.reading import PersistedRow
    from hwtelemetry.metrics.sampler import Sampler
    from hwtelemetry.metrics.storage import MetricsStore

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_INTERVAL_MS = 1000
MIN_INTERVAL_MS = 500
MAX_INTERVAL_MS = 10000

MESSAGE_VERSION = 1


def clamp_interval(
    requested: Any,
    *,
    default_ms: int = DEFAULT_INTERVAL_MS,
    min_ms: int = MIN_INTERVAL_MS,
    max_ms: int = MAX_INTERVAL_MS,
) -> int:
    """
    Resolve a client-requested interval in milliseconds.

    Absent, malformed or zero values use ``default_ms``; everything is then
    clamped into ``[min_ms, max_ms]``.

    Example:
        >>> clamp_interval("50")
        500
        >>> clamp_interval(999999)
        10000
    """
    parsed = coerce_int(requested)
    if not parsed:
        parsed = default_ms
    return max(min_ms, min(parsed, max_ms))


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Transport and Session
# =============================================================================


class SessionTransport(Protocol):
    """Bidirectional connection a session pushes messages to."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: dict[str, Any]) -> None:
        """Send one message; raise TransportError when the peer is gone."""
        ...

    async def close(self) -> None: ...


class SessionState(str, Enum):
    """Lifecycle state of a session."""

    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class Session:
    """
    One live subscriber.

    Attributes:
        id: Short unique identifier.
        interval_ms: Clamped tick interval.
        transport: Connection messages are pushed to.
        persist: Whether each reading is appended to the store.
        state: ACTIVE until torn down, then CLOSED.
        sequence: Logical sequence of the last metrics message sent.
        tick_count: Ticks executed while the transport was open.
        error_count: Ticks whose acquisition failed.
        persisted_count: Rows appended for this session.
        write_error_count: Rows the store rejected.
        created_at: When the session was opened.
        closed_at: When the session was torn down.
        close_reason: Why the session was torn down.
        task: The session's timer task.
    """

    id: str
    interval_ms: int
    transport: SessionTransport = field(repr=False)
    persist: bool = True
    state: SessionState = SessionState.ACTIVE
    sequence: int = 0
    tick_count: int = 0
    error_count: int = 0
    persisted_count: int = 0
    write_error_count: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    closed_at: datetime | None = None
    close_reason: str | None = None
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "interval_ms": self.interval_ms,
            "persist": self.persist,
            "state": self.state.value,
            "sequence": self.sequence,
            "tick_count": self.tick_count,
            "error_count": self.error_count,
            "persisted_count": self.persisted_count,
            "write_error_count": self.write_error_count,
            "created_at": self.created_at.isoformat(),
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "close_reason": self.close_reason,
        }


# =============================================================================
# SessionManager
# =============================================================================


class SessionManager:
    """
    Owns the table of live sessions and their timer tasks.

    Example:
        >>> manager = SessionManager(sampler, store, config.streaming)
        >>> session = await manager.open(transport, requested_interval="2000")
        >>> await manager.close(session.id)
        True
        >>> await manager.shutdown(timeout=5.0)
    """

    def __init__(
        self,
        sampler: Sampler,
        store: MetricsStore,
        config: StreamingConfig | None = None,
        *,
        thresholds: ThresholdConfig | None = None,
        clock_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self._sampler = sampler
        self._store = store
        self._default_ms = config.default_interval_ms if config else DEFAULT_INTERVAL_MS
        self._min_ms = config.min_interval_ms if config else MIN_INTERVAL_MS
        self._max_ms = config.max_interval_ms if config else MAX_INTERVAL_MS
        self._persist_default = config.persist if config else True
        self._send_alerts = bool(config and config.send_alerts and thresholds)
        self._thresholds = thresholds
        self._clock_ms = clock_ms
        self._sessions: dict[str, Session] = {}
        self._writes: set[asyncio.Task[None]] = set()
        self._accepting = True

    @property
    def session_count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)

    @property
    def accepting(self) -> bool:
        return self._accepting

    def clamp_interval(self, requested: Any) -> int:
        """Clamp a requested interval into this manager's bounds."""
        return clamp_interval(
            requested,
            default_ms=self._default_ms,
            min_ms=self._min_ms,
            max_ms=self._max_ms,
        )

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def get_sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def get_status(self) -> dict[str, Any]:
        return {
            "accepting": self._accepting,
            "count": len(self._sessions),
            "sessions": [s.to_dict() for s in self._sessions.values()],
        }

    async def open(
        self,
        transport: SessionTransport,
        requested_interval: Any = None,
        *,
        persist: bool | None = None,
    ) -> Session:
        """
        Register a session and start its timer task.

        Args:
            transport: Connection to push messages to.
            requested_interval: Client interval in ms (any type; clamped).
            persist: Override the configured persistence default.

        Returns:
            The new Session. Its first tick is already scheduled.

        Raises:
            TransportError: If the manager is shutting down.
        """
        if not self._accepting:
            raise TransportError("Session manager is shutting down")

        session = Session(
            id=uuid.uuid4().hex[:12],
            interval_ms=self.clamp_interval(requested_interval),
            transport=transport,
            persist=self._persist_default if persist is None else persist,
        )
        self._sessions[session.id] = session
        session.task = asyncio.create_task(
            self._run(session), name=f"session-{session.id}"
        )

        logger.info(
            "Session opened",
            extra={
                "session_id": session.id,
                "interval_ms": session.interval_ms,
                "requested_interval": requested_interval,
                "persist": session.persist,
                "sessions": len(self._sessions),
            },
        )
        return session

    async def close(self, session_id: str, reason: str = "closed") -> bool:
        """
        Tear a session down.

        Idempotent: the first call cancels the timer and closes the
        transport and returns True; later calls return False.
        """
        session = self._sessions.pop(session_id, None)
        if session is None or not session.is_active:
            return False

        session.state = SessionState.CLOSED
        session.closed_at = datetime.now(UTC)
        session.close_reason = reason

        task = session.task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise

        try:
            await session.transport.close()
        except TransportError as e:
            logger.debug(
                "Transport close failed",
                extra={"session_id": session.id, "error": e.message},
            )

        logger.info(
            "Session closed",
            extra={
                "session_id": session.id,
                "reason": reason,
                "ticks": session.tick_count,
                "persisted": session.persisted_count,
                "sessions": len(self._sessions),
            },
        )
        return True

    async def shutdown(self, timeout: float = 5.0) -> None:
        """
        Stop accepting sessions and close every live one.

        Sessions that have not closed within ``timeout`` seconds have their
        tasks cancelled without waiting further. Row writes already started
        by a tick are given the same timeout to finish.
        """
        self._accepting = False
        sessions = list(self._sessions.values())
        if sessions:
            await self._close_all(sessions, timeout)

        if self._writes:
            _done, unfinished = await asyncio.wait(set(self._writes), timeout=timeout)
            if unfinished:
                logger.warning(
                    "Session writes did not finish in time",
                    extra={"pending": len(unfinished), "timeout": timeout},
                )

    async def _close_all(self, sessions: list[Session], timeout: float) -> None:
        logger.info("Closing all sessions", extra={"count": len(sessions)})
        closers = [
            asyncio.create_task(self.close(s.id, reason="shutdown")) for s in sessions
        ]
        _done, pending = await asyncio.wait(closers, timeout=timeout)
        if pending:
            logger.warning(
                "Sessions did not close in time, cancelling",
                extra={"pending": len(pending), "timeout": timeout},
            )
            for closer in pending:
                closer.cancel()
            for session in sessions:
                if session.task is not None and not session.task.done():
                    session.task.cancel()

    # -------------------------------------------------------------------------
    # Tick loop
    # -------------------------------------------------------------------------

    async def _run(self, session: Session) -> None:
        loop = asyncio.get_running_loop()
        interval = session.interval_ms / 1000.0
        try:
            while session.is_active:
                started = loop.time()
                try:
                    await self._tick(session)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    session.error_count += 1
                    logger.exception(
                        "Unexpected error in session tick",
                        extra={"session_id": session.id},
                    )
                if not session.is_active:
                    break
                delay = interval - (loop.time() - started)
                await asyncio.sleep(max(delay, 0.0))
        finally:
            if session.is_active:
                await self.close(session.id, reason="loop_exit")

    async def _tick(self, session: Session) -> None:
        if not session.transport.is_open:
            await self.close(session.id, reason="transport_closed")
            return

        session.tick_count += 1
        try:
            reading = await self._sampler.sample()
        except AcquisitionError as e:
            session.error_count += 1
            logger.warning(
                "Session tick failed to sample",
                extra={"session_id": session.id, "error": e.message},
            )
            await self._send(session, {"type": "error", "message": e.message})
            return

        session.sequence += 1
        row = reading.to_row()
        # The row is written even if the session is cancelled during the send
        write = self._start_write(session, row) if session.persist else None
        delivered = await self._send(
            session,
            {
                "type": "metrics",
                "version": MESSAGE_VERSION,
                "sequence": session.sequence,
                "timestamp": self._clock_ms(),
                "data": row.full_data,
            },
        )

        if write is not None:
            await asyncio.shield(write)

        if delivered and self._send_alerts:
            await self._send_breaches(session, row)

    async def _send(self, session: Session, message: dict[str, Any]) -> bool:
        try:
            await session.transport.send_json(message)
        except TransportError as e:
            logger.info(
                "Session transport failed",
                extra={"session_id": session.id, "error": e.message},
            )
            await self.close(session.id, reason="transport_error")
            return False
        return True

    def _start_write(self, session: Session, row: PersistedRow) -> asyncio.Task[None]:
        task = asyncio.create_task(self._persist(session, row))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
        return task

    async def _persist(self, session: Session, row: PersistedRow) -> None:
        try:
            await self._store.append(row)
        except WriteError as e:
            session.write_error_count += 1
            logger.error(
                "Failed to persist session reading",
                extra={"session_id": session.id, "error": e.message},
            )
            return
        session.persisted_count += 1

    async def _send_breaches(self, session: Session, row: PersistedRow) -> None:
        breaches = check_thresholds(row, self._thresholds)
        if not breaches:
            return
        await self._send(
            session,
            {
                "type": "alert",
                "version": MESSAGE_VERSION,
                "timestamp": self._clock_ms(),
                "breaches": [b.to_dict() for b in breaches],
            },
        )
