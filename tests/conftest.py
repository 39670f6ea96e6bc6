"""
Pytest configuration and shared fixtures for the hwtelemetry tests.
"""

from __future__ import annotations

import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture
def temp_db_path() -> Iterator[Path]:
    """Create a temporary database path."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "metrics.db"


def make_raw(
    *,
    cpu_load: float = 42.5,
    mem_used: float = 4.0,
    mem_total: float = 16.0,
    **overrides: Any,
) -> dict[str, Any]:
    """Build a complete raw source reading."""
    raw: dict[str, Any] = {
        "cpu": {"brand": "Test CPU", "cores": 4, "physical_cores": 2},
        "load": {"total": cpu_load, "per_core": [10.0, 20.0, 30.0, 40.0]},
        "cpu_temperature": 55.0,
        "memory": {"used": mem_used, "total": mem_total},
        "gpus": [
            {
                "temperature": 60.0,
                "utilization": 15.0,
                "model": "Test GPU",
                "vendor": "NVIDIA",
                "vram_total": 8192.0,
            }
        ],
        "fans": [{"rpm": 1200.0}],
        "network": {"interface": "eth0", "rx_sec": 1024.0, "tx_sec": 512.0},
        "filesystem": {"mount": "/", "use": 61.3},
        "disk_io": {"read_sec": 4096.0, "write_sec": 2048.0},
    }
    raw.update(overrides)
    return raw


class FakeSource:
    """MetricsSource returning canned raw readings, optionally failing."""

    def __init__(self, raw: dict[str, Any] | None = None) -> None:
        self.raw = raw if raw is not None else make_raw()
        self.calls = 0
        self.fail_on: set[int] = set()

    def read(self) -> dict[str, Any]:
        self.calls += 1
        if self.calls in self.fail_on:
            raise OSError("sensor bus timeout")
        return self.raw


@pytest.fixture
def fake_source() -> FakeSource:
    """Create a FakeSource with a complete reading."""
    return FakeSource()
