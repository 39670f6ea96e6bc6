"""
Sampler: the normalization boundary between the OS metrics source and the
rest of the service.

This module implements:
- ``normalize``: field-by-field defaulting/coercion of a raw source reading
  into a fixed-shape Reading
- ``Sampler``: async wrapper that runs the blocking source in the default
  executor, converts source failures into AcquisitionError and keeps
  sampling statistics

Missing or malformed sub-fields are never errors: core counts fall back to
the observed per-core entry count, the GPU list becomes empty, fan RPM
becomes 0, percentages and rates become 0.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from hwtelemetry.errors import AcquisitionError
from hwtelemetry.logging import get_logger
from hwtelemetry.metrics.reading import (
    CoreLoad,
    CpuInfo,
    FanInfo,
    GpuInfo,
    NetworkInfo,
    Reading,
    StorageInfo,
    finite_or_zero,
    non_negative_int,
    rounded,
)

if TYPE_CHECKING:
    from hwtelemetry.metrics.source import MetricsSource

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

DEFAULT_CPU_BRAND = "CPU"
DEFAULT_GPU_MODEL = "GPU"
DEFAULT_GPU_VENDOR = "Unknown"

ACQUISITION_ERROR_MESSAGE = "Failed to retrieve system metrics"


# =============================================================================
# Normalization
# =============================================================================


def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    return value if isinstance(value, Mapping) else {}


def _entries(value: Any) -> list[Any]:
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return list(value)
    return []


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _core_load(entry: Any) -> float:
    if isinstance(entry, Mapping):
        entry = entry.get("load")
    return rounded(entry)


def _gpu(entry: Any) -> GpuInfo:
    data = entry if isinstance(entry, Mapping) else {}
    return GpuInfo(
        temperature=finite_or_zero(data.get("temperature")),
        utilization=finite_or_zero(data.get("utilization")),
        model=_text(data.get("model"), DEFAULT_GPU_MODEL),
        vendor=_text(data.get("vendor"), DEFAULT_GPU_VENDOR),
        vram_total_mb=finite_or_zero(data.get("vram_total")),
    )


def _fan(entry: Any) -> FanInfo:
    data = entry if isinstance(entry, Mapping) else {}
    return FanInfo(rpm=finite_or_zero(data.get("rpm")))


def normalize(raw: Mapping[str, Any] | None, sampled_at: float) -> Reading:
    """
    Convert a raw source reading into a Reading.

    Args:
        raw: Loosely-typed dictionary returned by a MetricsSource. Any key may
            be missing or hold a value of the wrong type.
        sampled_at: Unix timestamp of the acquisition.

    Returns:
        A Reading whose numeric fields are all finite.
    """
    if not isinstance(raw, Mapping):
        raw = {}

    cpu = _section(raw, "cpu")
    load = _section(raw, "load")
    memory = _section(raw, "memory")
    network = _section(raw, "network")
    filesystem = _section(raw, "filesystem")
    disk_io = _section(raw, "disk_io")

    per_core = tuple(
        CoreLoad(core=index, load_percent=_core_load(entry))
        for index, entry in enumerate(_entries(load.get("per_core")))
    )
    cores = non_negative_int(cpu.get("cores")) or len(per_core)
    physical_cores = non_negative_int(cpu.get("physical_cores")) or cores

    used = finite_or_zero(memory.get("used"))
    total = finite_or_zero(memory.get("total"))
    memory_percent = rounded(used / max(1.0, total) * 100)

    fans = tuple(_fan(entry) for entry in _entries(raw.get("fans"))) or (FanInfo(),)

    interface = network.get("interface")
    mount = filesystem.get("mount")

    return Reading(
        cpu=CpuInfo(
            brand=_text(cpu.get("brand"), DEFAULT_CPU_BRAND),
            cores=cores,
            physical_cores=physical_cores,
        ),
        cpu_load=rounded(load.get("total")),
        cpu_temperature=finite_or_zero(raw.get("cpu_temperature")),
        per_core=per_core,
        memory_usage_percent=memory_percent,
        gpus=tuple(_gpu(entry) for entry in _entries(raw.get("gpus"))),
        fans=fans,
        network=NetworkInfo(
            interface=interface if isinstance(interface, str) else None,
            rx_sec=finite_or_zero(network.get("rx_sec")),
            tx_sec=finite_or_zero(network.get("tx_sec")),
        ),
        storage=StorageInfo(
            mount=mount if isinstance(mount, str) else None,
            usage_percent=finite_or_zero(filesystem.get("use")),
            read_bytes_sec=finite_or_zero(disk_io.get("read_sec")),
            write_bytes_sec=finite_or_zero(disk_io.get("write_sec")),
        ),
        sampled_at=finite_or_zero(sampled_at),
    )


# =============================================================================
# Sampler
# =============================================================================


@dataclass
class SamplerStats:
    """
    Running statistics of a Sampler.

    Attributes:
        sample_count: Successful acquisitions.
        error_count: Failed acquisitions.
        cache_hits: Samples served from the shared cache.
        last_sample_at: When the last successful acquisition happened.
        last_error: Last acquisition error message, if any.
    """

    sample_count: int = 0
    error_count: int = 0
    cache_hits: int = 0
    last_sample_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "sample_count": self.sample_count,
            "error_count": self.error_count,
            "cache_hits": self.cache_hits,
            "last_sample_at": (
                self.last_sample_at.isoformat() if self.last_sample_at else None
            ),
            "last_error": self.last_error,
        }


class Sampler:
    """
    Produces normalized Readings from a MetricsSource.

    Each call performs an independent acquisition in the default executor,
    so any number of sessions can sample concurrently. With
    ``cache_ttl_seconds > 0`` a reading younger than the TTL is reused; the
    TTL must stay below the shortest session interval.

    Example:
        >>> sampler = Sampler(PsutilSource())
        >>> reading = await sampler.sample()
        >>> reading.memory_usage_percent
        42.17
    """

    def __init__(
        self,
        source: MetricsSource,
        *,
        cache_ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._source = source
        self._cache_ttl = max(0.0, cache_ttl_seconds)
        self._clock = clock
        self._cached: Reading | None = None
        self._stats = SamplerStats()

    def get_stats(self) -> SamplerStats:
        """Return a copy of the sampling statistics."""
        return SamplerStats(
            sample_count=self._stats.sample_count,
            error_count=self._stats.error_count,
            cache_hits=self._stats.cache_hits,
            last_sample_at=self._stats.last_sample_at,
            last_error=self._stats.last_error,
        )

    def _fresh_cached(self) -> Reading | None:
        if self._cache_ttl <= 0 or self._cached is None:
            return None
        if self._clock() - self._cached.sampled_at < self._cache_ttl:
            return self._cached
        return None

    async def sample(self) -> Reading:
        """
        Acquire and normalize one reading.

        Returns:
            A fresh (or cache-fresh) Reading.

        Raises:
            AcquisitionError: If the source itself fails to respond.
        """
        cached = self._fresh_cached()
        if cached is not None:
            self._stats.cache_hits += 1
            return cached

        try:
            raw = await asyncio.get_event_loop().run_in_executor(
                None, self._source.read
            )
        except Exception as e:
            self._stats.error_count += 1
            self._stats.last_error = str(e)
            logger.error(
                "Metrics acquisition failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            raise AcquisitionError(
                ACQUISITION_ERROR_MESSAGE,
                details={"error": str(e)},
            ) from e

        reading = normalize(raw, self._clock())
        self._stats.sample_count += 1
        self._stats.last_sample_at = datetime.now()
        if self._cache_ttl > 0:
            self._cached = reading
        return reading
