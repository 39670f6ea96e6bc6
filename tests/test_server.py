"""
Tests for the HTTP and WebSocket server.

Uses Starlette's TestClient; the lifespan runs on entering the client
context, so store initialization and shutdown are exercised too.
"""

from __future__ import annotations

import asyncio
import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from conftest import FakeSource
from hwtelemetry.config import AppConfig, ServerConfig, StreamingConfig
from hwtelemetry.errors import StorageInitError
from hwtelemetry.metrics.columns import ALLOWED_COLUMNS
from hwtelemetry.metrics.reading import PersistedRow
from hwtelemetry.metrics.sampler import Sampler
from hwtelemetry.metrics.storage import MetricsStore
from hwtelemetry.server import _parse_bool, create_app

FAST = StreamingConfig(default_interval_ms=20, min_interval_ms=10, max_interval_ms=1000)


# =============================================================================
# Fixtures and helpers
# =============================================================================


def _seed(db_path: Path, rows: list[tuple[int, dict[str, float]]]) -> None:
    """Write rows at fixed timestamps through a throwaway store."""

    async def _write() -> None:
        now = [0]
        store = MetricsStore(db_path, clock_ms=lambda: now[0])
        await store.initialize()
        for ts, values in rows:
            now[0] = ts
            await store.append(PersistedRow(**values))
        await store.close()

    asyncio.run(_write())


def _row_count(db_path: Path) -> int:
    conn = sqlite3.connect(str(db_path))
    try:
        return conn.execute("SELECT COUNT(*) FROM metrics").fetchone()[0]
    finally:
        conn.close()


def _eventually(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        time.sleep(0.01)


def _now_ms() -> int:
    return int(time.time() * 1000)


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def make_client(temp_db_path: Path, source: FakeSource) -> Callable[..., TestClient]:
    """Factory building a TestClient around a fresh app."""

    def _make(**server: Any) -> TestClient:
        config = AppConfig(streaming=FAST, server=ServerConfig(**server))
        app = create_app(
            config,
            sampler=Sampler(source),
            store=MetricsStore(temp_db_path),
        )
        return TestClient(app)

    return _make


# =============================================================================
# Tests for helpers
# =============================================================================


class TestParseBool:
    """Tests for boolean query flags."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("true", True), ("1", True), ("OFF", False), ("no", False), ("maybe", None), (None, None)],
    )
    def test_parse_bool(self, raw: str | None, expected: bool | None) -> None:
        """Test flag parsing."""
        assert _parse_bool(raw) is expected


# =============================================================================
# Tests for HTTP routes
# =============================================================================


class TestHealth:
    """Tests for GET /health."""

    def test_health(self, make_client: Callable[..., TestClient]) -> None:
        """Test the health payload."""
        with make_client() as client:
            response = client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "OK"
        assert body["clients"] == 0
        assert body["memory"]["rss"] > 0
        assert body["memory"]["vms"] > 0
        assert body["uptimeSeconds"] >= 0
        assert body["storage"] == {"rows": 0}
        assert "timestamp" in body


class TestNotFound:
    """Tests for unknown routes."""

    def test_unknown_route(self, make_client: Callable[..., TestClient]) -> None:
        """Test unknown paths return the JSON 404 body."""
        with make_client() as client:
            response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"error": "Endpoint not found"}


class TestHistory:
    """Tests for GET /history."""

    @pytest.fixture
    def seeded(self, temp_db_path: Path) -> int:
        now = _now_ms()
        _seed(
            temp_db_path,
            [
                (now - 3000, {"cpu_load": 1.0, "mem_usage": 42.5}),
                (now - 2000, {"cpu_load": 2.0, "mem_usage": 43.0}),
                (now - 1000, {"cpu_load": 3.0, "mem_usage": 44.0}),
            ],
        )
        return now

    def test_empty_history(self, make_client: Callable[..., TestClient]) -> None:
        """Test an empty store returns an empty list."""
        with make_client() as client:
            response = client.get("/history")

        assert response.status_code == 200
        assert response.json() == []

    def test_default_column(self, seeded: int, make_client: Callable[..., TestClient]) -> None:
        """Test the default column is cpu_load, oldest first."""
        with make_client() as client:
            body = client.get("/history", params={"since": seeded - 10_000}).json()

        assert [p["value"] for p in body] == [1.0, 2.0, 3.0]
        assert [p["timestamp"] for p in body] == [seeded - 3000, seeded - 2000, seeded - 1000]

    def test_column_parameter(self, seeded: int, make_client: Callable[..., TestClient]) -> None:
        """Test an explicit column."""
        with make_client() as client:
            body = client.get(
                "/history", params={"since": seeded - 10_000, "column": "mem_usage"}
            ).json()

        assert body[0] == {"timestamp": seeded - 3000, "value": 42.5}

    def test_empty_column_parameter(
        self, seeded: int, make_client: Callable[..., TestClient]
    ) -> None:
        """Test an empty column value falls back to cpu_load."""
        with make_client() as client:
            response = client.get("/history?column=&since=" + str(seeded - 10_000))

        assert response.status_code == 200
        assert [p["value"] for p in response.json()] == [1.0, 2.0, 3.0]

    def test_metric_parameter(self, seeded: int, make_client: Callable[..., TestClient]) -> None:
        """Test a dashboard metric key."""
        with make_client() as client:
            body = client.get(
                "/history", params={"since": seeded - 10_000, "metric": "memUsage"}
            ).json()

        assert [p["value"] for p in body] == [42.5, 43.0, 44.0]

    def test_limit_parameter(self, seeded: int, make_client: Callable[..., TestClient]) -> None:
        """Test the limit keeps the oldest points."""
        with make_client() as client:
            body = client.get("/history", params={"since": seeded - 10_000, "limit": "2"}).json()

        assert [p["value"] for p in body] == [1.0, 2.0]

    def test_window_parameters(self, seeded: int, make_client: Callable[..., TestClient]) -> None:
        """Test an inclusive window."""
        with make_client() as client:
            body = client.get(
                "/history", params={"since": seeded - 2000, "until": seeded - 1000}
            ).json()

        assert [p["value"] for p in body] == [2.0, 3.0]

    def test_invalid_column(
        self, seeded: int, temp_db_path: Path, make_client: Callable[..., TestClient]
    ) -> None:
        """Test an invalid column is rejected and storage is untouched."""
        with make_client() as client:
            response = client.get(
                "/history", params={"column": "cpu_load; DROP TABLE metrics"}
            )

        assert response.status_code == 400
        assert response.json() == {
            "error": "Invalid column parameter",
            "allowedColumns": list(ALLOWED_COLUMNS),
        }
        assert _row_count(temp_db_path) == 3

    def test_until_only_in_the_past(
        self, seeded: int, make_client: Callable[..., TestClient]
    ) -> None:
        """Test an until without since covers the hour before until."""
        with make_client() as client:
            response = client.get("/history", params={"until": seeded - 86_400_000})

        assert response.status_code == 200
        assert response.json() == []

    def test_inverted_window(self, make_client: Callable[..., TestClient]) -> None:
        """Test since later than until is a client error."""
        now = _now_ms()
        with make_client() as client:
            response = client.get(
                "/history", params={"since": now - 1000, "until": now - 5000}
            )

        assert response.status_code == 400
        assert "error" in response.json()


class TestCleanup:
    """Tests for DELETE /metrics."""

    def test_cleanup_with_max_age(
        self, temp_db_path: Path, make_client: Callable[..., TestClient]
    ) -> None:
        """Test rows older than maxAge are deleted."""
        now = _now_ms()
        _seed(temp_db_path, [(now - 30_000, {}), (now - 20_000, {}), (now - 1000, {})])

        with make_client() as client:
            response = client.delete("/metrics", params={"maxAge": "10000"})

        assert response.status_code == 200
        body = response.json()
        assert body["deleted"] == 2
        assert isinstance(body["before"], str)
        assert body["cutoff"] >= now - 10_000
        assert _row_count(temp_db_path) == 1

    def test_cleanup_default_age(
        self, temp_db_path: Path, make_client: Callable[..., TestClient]
    ) -> None:
        """Test the default 30-day age keeps recent rows."""
        now = _now_ms()
        _seed(temp_db_path, [(now - 40 * 86_400_000, {}), (now - 1000, {})])

        with make_client() as client:
            body = client.delete("/metrics").json()

        assert body["deleted"] == 1


class TestCors:
    """Tests for CORS behavior."""

    def test_dev_mode_allows_any_origin(self, make_client: Callable[..., TestClient]) -> None:
        """Test development mode is permissive."""
        with make_client(dev=True) as client:
            response = client.get("/health", headers={"Origin": "http://anything.test"})

        assert response.headers["access-control-allow-origin"] == "*"

    def test_allowed_origins(self, make_client: Callable[..., TestClient]) -> None:
        """Test only configured origins are allowed outside development mode."""
        with make_client(dev=False, allowed_origins=["http://ok.test"]) as client:
            allowed = client.get("/health", headers={"Origin": "http://ok.test"})
            denied = client.get("/health", headers={"Origin": "http://evil.test"})

        assert allowed.headers["access-control-allow-origin"] == "http://ok.test"
        assert "access-control-allow-origin" not in denied.headers


# =============================================================================
# Tests for the WebSocket stream
# =============================================================================


class TestStream:
    """Tests for WS /."""

    def test_stream_messages(self, make_client: Callable[..., TestClient]) -> None:
        """Test the stream sends sequenced metrics messages."""
        with make_client() as client, client.websocket_connect("/?interval=10") as ws:
            first = ws.receive_json()
            second = ws.receive_json()

        assert first["type"] == "metrics"
        assert first["version"] == 1
        assert first["sequence"] == 1
        assert second["sequence"] == 2
        assert first["data"]["cpu"]["currentLoad"] == 42.5
        assert first["data"]["memory"]["usagePercent"] == 25.0

    def test_stream_persists_rows(
        self, temp_db_path: Path, make_client: Callable[..., TestClient]
    ) -> None:
        """Test streamed readings are recorded."""
        with make_client() as client:
            with client.websocket_connect("/?interval=10") as ws:
                ws.receive_json()
                ws.receive_json()
            _eventually(lambda: client.get("/health").json()["clients"] == 0)

        assert _row_count(temp_db_path) >= 2

    def test_stream_without_persistence(
        self, temp_db_path: Path, make_client: Callable[..., TestClient]
    ) -> None:
        """Test persist=false streams without recording."""
        with make_client() as client:
            with client.websocket_connect("/?interval=10&persist=false") as ws:
                ws.receive_json()
                ws.receive_json()
            _eventually(lambda: client.get("/health").json()["clients"] == 0)

        assert _row_count(temp_db_path) == 0

    def test_client_messages_are_ignored(self, make_client: Callable[..., TestClient]) -> None:
        """Test the server keeps streaming when the client talks."""
        with make_client() as client, client.websocket_connect("/?interval=10") as ws:
            ws.receive_json()
            ws.send_text("hello")
            assert ws.receive_json()["type"] == "metrics"

    def test_acquisition_error_message(
        self, source: FakeSource, make_client: Callable[..., TestClient]
    ) -> None:
        """Test a failed tick yields an error message and streaming resumes."""
        source.fail_on = {1}
        with make_client() as client, client.websocket_connect("/?interval=10") as ws:
            first = ws.receive_json()
            second = ws.receive_json()

        assert first == {"type": "error", "message": "Failed to retrieve system metrics"}
        assert second["type"] == "metrics"
        assert second["sequence"] == 1

    def test_disconnect_removes_session(self, make_client: Callable[..., TestClient]) -> None:
        """Test closing the socket tears the session down."""
        with make_client() as client:
            with client.websocket_connect("/") as ws:
                ws.receive_json()
                assert client.get("/health").json()["clients"] == 1
            _eventually(lambda: client.get("/health").json()["clients"] == 0)


# =============================================================================
# Tests for the lifespan
# =============================================================================


class TestLifespan:
    """Tests for startup and shutdown."""

    def test_shutdown_closes_components(self, make_client: Callable[..., TestClient]) -> None:
        """Test the store and session manager are closed on shutdown."""
        client = make_client()
        with client:
            client.get("/health")

        assert client.app.state.store.is_closed
        assert not client.app.state.sessions.accepting

    def test_startup_fails_on_unusable_store(
        self, temp_db_path: Path, source: FakeSource
    ) -> None:
        """Test a store that cannot initialize aborts startup."""
        temp_db_path.parent.mkdir(parents=True, exist_ok=True)
        blocker = temp_db_path.parent / "blocker"
        blocker.write_text("not a directory")
        app = create_app(
            AppConfig(streaming=FAST),
            sampler=Sampler(source),
            store=MetricsStore(blocker / "metrics.db"),
        )

        with pytest.raises(StorageInitError), TestClient(app):
            pass
