"""
OS metrics acquisition.

A MetricsSource returns a loosely-typed raw dictionary; the Sampler owns all
normalization and defaulting. ``PsutilSource`` is the production source and
reads CPU, memory, temperature, fans, network and disk figures through
psutil, with an optional NVML adapter for NVIDIA GPUs.

Raw dictionary layout (every key optional):
    cpu:             {"brand", "cores", "physical_cores"}
    load:            {"total", "per_core": [float, ...]}
    cpu_temperature: float | None
    memory:          {"used", "total"}
    gpus:            [{"temperature", "utilization", "model", "vendor", "vram_total"}]
    fans:            [{"rpm"}]
    network:         {"interface", "rx_sec", "tx_sec"}
    filesystem:      {"mount", "use"}
    disk_io:         {"read_sec", "write_sec"}
"""

from __future__ import annotations

import platform
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import psutil

from hwtelemetry.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from hwtelemetry.config import SamplerConfig

logger = get_logger(__name__)

# Sensor names tried first, in order, for the CPU temperature
_CPU_SENSOR_NAMES = ("coretemp", "k10temp", "cpu_thermal", "zenpower", "acpitz")

_LOOPBACK_PREFIXES = ("lo", "Loopback")


class MetricsSource(Protocol):
    """Capability that reads raw host metrics or raises."""

    def read(self) -> Mapping[str, Any]:
        """Return one raw reading; raise on acquisition failure."""
        ...


# =============================================================================
# Helpers
# =============================================================================


def _cpu_brand() -> str | None:
    cpuinfo = Path("/proc/cpuinfo")
    try:
        for line in cpuinfo.read_text().splitlines():
            if line.lower().startswith("model name"):
                return line.split(":", 1)[1].strip()
    except OSError:
        pass
    return platform.processor() or None


def _cpu_temperature() -> float | None:
    try:
        temps = psutil.sensors_temperatures()
    except (AttributeError, OSError):
        return None
    if not temps:
        return None

    for name in _CPU_SENSOR_NAMES:
        entries = temps.get(name)
        if entries:
            return entries[0].current

    for entries in temps.values():
        if entries:
            return entries[0].current
    return None


def _fans() -> list[dict[str, Any]]:
    try:
        fans = psutil.sensors_fans()
    except (AttributeError, OSError):
        return []
    return [{"rpm": entry.current} for entries in fans.values() for entry in entries]


class _GpuProbe:
    """No-op GPU probe used when NVML is disabled or unavailable."""

    def poll(self) -> list[dict[str, Any]]:
        return []


class _NvmlGpuProbe(_GpuProbe):
    def __init__(self) -> None:
        import pynvml

        self._nvml = pynvml
        pynvml.nvmlInit()

    def poll(self) -> list[dict[str, Any]]:
        nvml = self._nvml
        gpus = []
        for index in range(nvml.nvmlDeviceGetCount()):
            handle = nvml.nvmlDeviceGetHandleByIndex(index)
            name = nvml.nvmlDeviceGetName(handle)
            if isinstance(name, bytes):
                name = name.decode("utf-8", "replace")
            memory = nvml.nvmlDeviceGetMemoryInfo(handle)
            gpus.append(
                {
                    "temperature": nvml.nvmlDeviceGetTemperature(
                        handle, nvml.NVML_TEMPERATURE_GPU
                    ),
                    "utilization": nvml.nvmlDeviceGetUtilizationRates(handle).gpu,
                    "model": name,
                    "vendor": "NVIDIA",
                    "vram_total": memory.total / (1024 * 1024),
                }
            )
        return gpus


def _build_gpu_probe(enabled: bool) -> _GpuProbe:
    if not enabled:
        return _GpuProbe()
    try:
        return _NvmlGpuProbe()
    except Exception as e:
        logger.info("NVML unavailable, GPU list will be empty", extra={"error": str(e)})
        return _GpuProbe()


@dataclass
class _Counters:
    ts: float
    net_rx: int | None
    net_tx: int | None
    disk_read: int | None
    disk_write: int | None


def _rate(current: int | None, previous: int | None, elapsed: float) -> float:
    if current is None or previous is None:
        return 0.0
    return max(current - previous, 0) / elapsed


# =============================================================================
# PsutilSource
# =============================================================================


class PsutilSource:
    """
    psutil-backed metrics source.

    Network and disk throughput are computed from counter deltas between
    successive reads, so one instance is shared by every session. Counter
    state is guarded by a threading lock because reads run in executor
    threads.

    Example:
        >>> source = PsutilSource()
        >>> raw = source.read()
        >>> raw["memory"]["total"] > 0
        True
    """

    def __init__(self, config: SamplerConfig | None = None) -> None:
        self._interface = config.network_interface if config else None
        self._mount = config.disk_mount if config else "/"
        self._gpu = _build_gpu_probe(config.enable_gpu if config else True)
        self._brand = _cpu_brand()
        self._lock = threading.Lock()
        self._previous: _Counters | None = None

        # Prime the percent counters so the first read is not all zeros
        psutil.cpu_percent(interval=None)
        psutil.cpu_percent(interval=None, percpu=True)

    def _primary_interface(self, pernic: Mapping[str, Any]) -> str | None:
        if self._interface:
            return self._interface if self._interface in pernic else None
        candidates = [
            name for name in pernic if not name.startswith(_LOOPBACK_PREFIXES)
        ]
        if not candidates:
            return None
        return max(
            candidates,
            key=lambda n: pernic[n].bytes_recv + pernic[n].bytes_sent,
        )

    def _throughput(self) -> tuple[dict[str, Any], dict[str, Any]]:
        # Counters are read under the lock so concurrent reads stay ordered
        with self._lock:
            pernic = psutil.net_io_counters(pernic=True) or {}
            interface = self._primary_interface(pernic)
            nic = pernic.get(interface) if interface else None
            disk = psutil.disk_io_counters()

            current = _Counters(
                ts=time.monotonic(),
                net_rx=nic.bytes_recv if nic else None,
                net_tx=nic.bytes_sent if nic else None,
                disk_read=disk.read_bytes if disk else None,
                disk_write=disk.write_bytes if disk else None,
            )
            previous = self._previous
            self._previous = current

        if previous is None:
            return (
                {"interface": interface, "rx_sec": 0.0, "tx_sec": 0.0},
                {"read_sec": 0.0, "write_sec": 0.0},
            )

        elapsed = max(current.ts - previous.ts, 1e-6)
        network = {
            "interface": interface,
            "rx_sec": _rate(current.net_rx, previous.net_rx, elapsed),
            "tx_sec": _rate(current.net_tx, previous.net_tx, elapsed),
        }
        disk_io = {
            "read_sec": _rate(current.disk_read, previous.disk_read, elapsed),
            "write_sec": _rate(current.disk_write, previous.disk_write, elapsed),
        }
        return network, disk_io

    def _poll_gpus(self) -> list[dict[str, Any]]:
        try:
            return self._gpu.poll()
        except Exception as e:
            logger.debug("GPU poll failed", extra={"error": str(e)})
            return []

    def read(self) -> dict[str, Any]:
        """Acquire one raw reading from the host."""
        memory = psutil.virtual_memory()
        network, disk_io = self._throughput()

        raw: dict[str, Any] = {
            "cpu": {
                "brand": self._brand,
                "cores": psutil.cpu_count(logical=True),
                "physical_cores": psutil.cpu_count(logical=False),
            },
            "load": {
                "total": psutil.cpu_percent(interval=None),
                "per_core": psutil.cpu_percent(interval=None, percpu=True),
            },
            "cpu_temperature": _cpu_temperature(),
            "memory": {"used": memory.used, "total": memory.total},
            "gpus": self._poll_gpus(),
            "fans": _fans(),
            "network": network,
            "disk_io": disk_io,
        }

        try:
            usage = psutil.disk_usage(self._mount)
            raw["filesystem"] = {"mount": self._mount, "use": usage.percent}
        except OSError as e:
            logger.debug(
                "Filesystem usage unavailable",
                extra={"mount": self._mount, "error": str(e)},
            )

        return raw
