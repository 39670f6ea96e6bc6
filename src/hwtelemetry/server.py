"""
HTTP and WebSocket server.

FastAPI application factory exposing:
- WS  /         live metrics stream (``?interval=<ms>&persist=<bool>``)
- GET /history  one metric column over a time window
- DELETE /metrics  retention cleanup (``?maxAge=<ms>``)
- GET /health   liveness and process statistics

All components are built in ``create_app`` and owned by ``app.state``; the
lifespan initializes the store on startup and tears sessions and storage
down on shutdown.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import psutil
from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.websockets import WebSocketDisconnect, WebSocketState

from hwtelemetry import __version__
from hwtelemetry.config import AppConfig
from hwtelemetry.errors import (
    InvalidArgumentError,
    InvalidColumnError,
    StorageError,
    TransportError,
)
from hwtelemetry.logging import get_logger
from hwtelemetry.metrics.history import HistoryQueryService
from hwtelemetry.metrics.retention import RetentionJob
from hwtelemetry.metrics.sampler import Sampler
from hwtelemetry.metrics.source import MetricsSource, PsutilSource
from hwtelemetry.metrics.storage import MetricsStore
from hwtelemetry.sessions import SessionManager

logger = get_logger(__name__)

# WebSocket close code for "try again later"
WS_TRY_AGAIN_LATER = 1013

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _parse_bool(value: str | None) -> bool | None:
    """Parse an optional boolean query flag; None when absent or unrecognized."""
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return None


# =============================================================================
# WebSocket transport
# =============================================================================


class WebSocketTransport:
    """SessionTransport over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    @property
    def is_open(self) -> bool:
        return (
            self._ws.client_state == WebSocketState.CONNECTED
            and self._ws.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: dict[str, Any]) -> None:
        if not self.is_open:
            raise TransportError("WebSocket is not connected")
        try:
            await self._ws.send_json(message)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            raise TransportError(
                "Failed to send WebSocket message",
                details={"error": str(e)},
            ) from e

    async def close(self) -> None:
        if self._ws.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self._ws.close()
        except (RuntimeError, OSError) as e:
            raise TransportError(
                "Failed to close WebSocket",
                details={"error": str(e)},
            ) from e


# =============================================================================
# Error handlers
# =============================================================================


def register_error_handlers(app: FastAPI) -> None:
    """Map domain errors and unknown routes to JSON error bodies."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code == 404:
            return JSONResponse(status_code=404, content={"error": "Endpoint not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(InvalidColumnError)
    async def invalid_column_handler(
        request: Request, exc: InvalidColumnError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": exc.message, "allowedColumns": list(exc.allowed)},
        )

    @app.exception_handler(InvalidArgumentError)
    async def invalid_argument_handler(
        request: Request, exc: InvalidArgumentError
    ) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": exc.message, "details": exc.details},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            extra={"path": request.url.path, "error": str(exc)},
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


# =============================================================================
# Application factory
# =============================================================================


def create_app(
    config: AppConfig | None = None,
    *,
    sampler: Sampler | None = None,
    store: MetricsStore | None = None,
    source: MetricsSource | None = None,
) -> FastAPI:
    """
    Build the FastAPI application and its components.

    Args:
        config: Application configuration (defaults when None).
        sampler: Sampler to use; built from ``source`` (or a PsutilSource)
            when None.
        store: Time-series store; built from ``config.storage.db_path``
            when None.
        source: Acquisition source for the default sampler.

    Example:
        >>> app = create_app(load_config(cli_args=[]))
        >>> uvicorn.run(app, host="0.0.0.0", port=3000)
    """
    config = config or AppConfig()

    if sampler is None:
        sampler = Sampler(
            source or PsutilSource(config.sampler),
            cache_ttl_seconds=config.streaming.cache_ttl_seconds,
        )
    if store is None:
        store = MetricsStore(config.storage.db_path)

    sessions = SessionManager(
        sampler,
        store,
        config.streaming,
        thresholds=config.thresholds,
    )
    history = HistoryQueryService(store, config.history)
    retention = RetentionJob(store, config.retention)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # StorageInitError propagates and aborts startup
        await store.initialize()
        if config.retention.enabled:
            await retention.start()
        logger.info(
            "Server started",
            extra={
                "listen": config.server.listen,
                "db_path": str(store.db_path),
                "dev": config.server.dev,
                "version": __version__,
            },
        )
        try:
            yield
        finally:
            logger.info("Server shutting down")
            if retention.is_running:
                await retention.stop()
            await sessions.shutdown(timeout=config.server.shutdown_timeout_seconds)
            await store.close()
            logger.info("Server stopped")

    app = FastAPI(
        title="hwtelemetry",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if config.server.dev else None,
        redoc_url=None,
    )
    app.state.config = config
    app.state.sampler = sampler
    app.state.store = store
    app.state.sessions = sessions
    app.state.history = history
    app.state.retention = retention
    app.state.started_monotonic = time.monotonic()

    register_error_handlers(app)

    if config.server.dev:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.allowed_origins,
            allow_methods=["GET", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type"],
        )

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------

    @app.websocket("/")
    async def stream_metrics(websocket: WebSocket) -> None:
        """Stream one metrics message per interval until the client leaves."""
        if not sessions.accepting:
            await websocket.close(code=WS_TRY_AGAIN_LATER)
            return

        await websocket.accept()
        params = websocket.query_params
        try:
            session = await sessions.open(
                WebSocketTransport(websocket),
                params.get("interval"),
                persist=_parse_bool(params.get("persist")),
            )
        except TransportError:
            await websocket.close(code=WS_TRY_AGAIN_LATER)
            return

        try:
            # Client messages are read and ignored
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except (WebSocketDisconnect, RuntimeError):
            pass
        finally:
            await sessions.close(session.id, reason="client_disconnect")

    @app.get("/history")
    async def get_history(
        since: str | None = None,
        until: str | None = None,
        limit: str | None = None,
        column: str | None = None,
        metric: str | None = None,
    ) -> Any:
        """Return ``[{timestamp, value}]`` for one column, oldest first."""
        try:
            points = await history.query(since, until, limit, column, metric)
        except StorageError as e:
            logger.error("History query failed", extra={"error": e.message})
            return JSONResponse(status_code=500, content={"error": "Failed to fetch history"})
        return [p.to_dict() for p in points]

    @app.delete("/metrics")
    async def delete_metrics(maxAge: str | None = None) -> Any:  # noqa: N803
        """Delete rows older than ``maxAge`` milliseconds (default 30 days)."""
        try:
            result = await history.cleanup(maxAge)
        except StorageError as e:
            logger.error("Metrics cleanup failed", extra={"error": e.message})
            return JSONResponse(status_code=500, content={"error": "Failed to cleanup metrics"})
        return result.to_dict()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Report liveness, session count and process memory."""
        memory = psutil.Process().memory_info()
        try:
            rows: int | None = await store.count()
        except StorageError as e:
            logger.warning("Health check could not count rows", extra={"error": e.message})
            rows = None
        return {
            "status": "OK",
            "timestamp": datetime.now(UTC).isoformat(),
            "clients": sessions.session_count,
            "memory": {"rss": memory.rss, "vms": memory.vms},
            "uptimeSeconds": round(time.monotonic() - app.state.started_monotonic, 3),
            "storage": {"rows": rows},
            "version": __version__,
        }

    return app
