"""
Normalized telemetry models.

A Reading is the fixed-shape snapshot produced by the Sampler on every tick.
A PersistedRow is its flattened durable form: eleven scalar metric columns
plus the full Reading serialized for audit/debugging.

Every numeric field passes through ``finite_or_zero`` (optionally rounded)
so NaN or infinity never leaves this module.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from hwtelemetry.metrics.columns import ALLOWED_COLUMNS


def finite_or_zero(value: Any) -> float:
    """Coerce any value to a finite float, or 0.0 when that is impossible."""
    if isinstance(value, bool):
        return float(value)
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def rounded(value: Any, digits: int = 2) -> float:
    """Finite-or-zero guard followed by rounding."""
    return round(finite_or_zero(value), digits)


def non_negative_int(value: Any) -> int:
    """Coerce a count to a non-negative int (0 when missing or malformed)."""
    return max(0, int(finite_or_zero(value)))


# =============================================================================
# Reading
# =============================================================================


@dataclass(frozen=True)
class CpuInfo:
    """Static CPU description."""

    brand: str
    cores: int
    physical_cores: int


@dataclass(frozen=True)
class CoreLoad:
    """Load of a single logical core."""

    core: int
    load_percent: float


@dataclass(frozen=True)
class GpuInfo:
    """One GPU controller."""

    temperature: float
    utilization: float
    model: str
    vendor: str
    vram_total_mb: float


@dataclass(frozen=True)
class FanInfo:
    """One fan sensor."""

    rpm: float = 0.0


@dataclass(frozen=True)
class NetworkInfo:
    """Throughput of the primary network interface, in bytes per second."""

    interface: str | None
    rx_sec: float
    tx_sec: float


@dataclass(frozen=True)
class StorageInfo:
    """Usage of the primary filesystem and aggregate disk throughput."""

    mount: str | None
    usage_percent: float
    read_bytes_sec: float
    write_bytes_sec: float


@dataclass(frozen=True)
class Reading:
    """
    A normalized telemetry snapshot.

    Attributes:
        cpu: CPU description.
        cpu_load: Overall CPU load percent.
        cpu_temperature: CPU package temperature (0 when unavailable).
        per_core: Per-core load, ordered by core index.
        memory_usage_percent: Used / total memory, in percent.
        gpus: GPU controllers (possibly empty).
        fans: Fan sensors (at least one entry, 0 RPM when unavailable).
        network: Primary interface throughput.
        storage: Primary filesystem usage and disk throughput.
        sampled_at: Unix timestamp of the acquisition.
    """

    cpu: CpuInfo
    cpu_load: float
    cpu_temperature: float
    per_core: tuple[CoreLoad, ...]
    memory_usage_percent: float
    gpus: tuple[GpuInfo, ...]
    fans: tuple[FanInfo, ...]
    network: NetworkInfo
    storage: StorageInfo
    sampled_at: float

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire DTO pushed to subscribers."""
        return {
            "cpu": {
                "info": {
                    "brand": self.cpu.brand,
                    "cores": self.cpu.cores,
                    "physicalCores": self.cpu.physical_cores,
                },
                "currentLoad": self.cpu_load,
                "temperature": self.cpu_temperature,
                "perCore": [
                    {"core": c.core, "loadPercent": c.load_percent}
                    for c in self.per_core
                ],
            },
            "memory": {"usagePercent": self.memory_usage_percent},
            "gpus": [
                {
                    "temperature": g.temperature,
                    "utilization": g.utilization,
                    "model": g.model,
                    "vendor": g.vendor,
                    "vramTotalMB": g.vram_total_mb,
                }
                for g in self.gpus
            ],
            "sensors": {"fans": [{"rpm": f.rpm} for f in self.fans]},
            "network": [
                {
                    "iface": self.network.interface,
                    "rxSec": self.network.rx_sec,
                    "txSec": self.network.tx_sec,
                }
            ],
            "storage": {
                "filesystems": [
                    {"mount": self.storage.mount, "use": self.storage.usage_percent}
                ],
                "io": {
                    "readBytes": self.storage.read_bytes_sec,
                    "writeBytes": self.storage.write_bytes_sec,
                },
            },
        }

    def to_row(self) -> PersistedRow:
        """Flatten into the eleven persisted columns plus the full DTO."""
        first_gpu = self.gpus[0] if self.gpus else None
        first_fan = self.fans[0] if self.fans else None
        return PersistedRow(
            cpu_load=self.cpu_load,
            cpu_temp=self.cpu_temperature,
            mem_usage=self.memory_usage_percent,
            gpu_temp=first_gpu.temperature if first_gpu else 0.0,
            gpu_load=first_gpu.utilization if first_gpu else 0.0,
            fan_speed=first_fan.rpm if first_fan else 0.0,
            net_rx=self.network.rx_sec,
            net_tx=self.network.tx_sec,
            disk_usage=self.storage.usage_percent,
            disk_read=self.storage.read_bytes_sec,
            disk_write=self.storage.write_bytes_sec,
            full_data=self.to_dict(),
        )


# =============================================================================
# PersistedRow
# =============================================================================


@dataclass
class PersistedRow:
    """
    Durable record of one reading.

    Attributes:
        id: Database ID (set after insertion).
        timestamp: Epoch milliseconds assigned by the store at append time.
        full_data: The full Reading DTO, stored verbatim as JSON.
    """

    cpu_load: float = 0.0
    cpu_temp: float = 0.0
    mem_usage: float = 0.0
    gpu_temp: float = 0.0
    gpu_load: float = 0.0
    fan_speed: float = 0.0
    net_rx: float = 0.0
    net_tx: float = 0.0
    disk_usage: float = 0.0
    disk_read: float = 0.0
    disk_write: float = 0.0
    full_data: dict[str, Any] = field(default_factory=dict)
    timestamp: int | None = None
    id: int | None = None

    def metric_values(self) -> dict[str, float]:
        """Return the eleven metric columns, each finite-or-zero."""
        return {name: finite_or_zero(getattr(self, name)) for name in ALLOWED_COLUMNS}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            **self.metric_values(),
            "full_data": self.full_data,
        }
