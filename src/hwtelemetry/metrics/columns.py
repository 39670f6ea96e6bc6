"""
Metric column names and external metric-key routing.

The eleven persisted columns form a closed set (``MetricColumn``). Dashboard
keys such as ``cpuCore3Load`` or ``diskReadMBps`` are routed to exactly one
column through ``METRIC_KEY_TABLE`` after normalization; keys outside the
table use ``DEFAULT_COLUMN`` unless strict mode is requested.
"""

from __future__ import annotations

import re
from enum import Enum

from hwtelemetry.errors import InvalidColumnError


class MetricColumn(str, Enum):
    """Persisted metric columns."""

    CPU_LOAD = "cpu_load"
    CPU_TEMP = "cpu_temp"
    MEM_USAGE = "mem_usage"
    GPU_TEMP = "gpu_temp"
    GPU_LOAD = "gpu_load"
    FAN_SPEED = "fan_speed"
    NET_RX = "net_rx"
    NET_TX = "net_tx"
    DISK_USAGE = "disk_usage"
    DISK_READ = "disk_read"
    DISK_WRITE = "disk_write"


ALLOWED_COLUMNS: tuple[str, ...] = tuple(c.value for c in MetricColumn)

DEFAULT_COLUMN = MetricColumn.CPU_LOAD

# Keys are normalized by lowercasing and dropping digits, '_' and '-',
# so per-device labels collapse onto one entry (cpuCore7Load -> cpucoreload).
METRIC_KEY_TABLE: dict[str, MetricColumn] = {
    # CPU
    "cpuload": MetricColumn.CPU_LOAD,
    "cpucoreload": MetricColumn.CPU_LOAD,
    "cpu": MetricColumn.CPU_LOAD,
    "cputemp": MetricColumn.CPU_TEMP,
    # Memory
    "memusage": MetricColumn.MEM_USAGE,
    "memoryusage": MetricColumn.MEM_USAGE,
    # GPU
    "gputemp": MetricColumn.GPU_TEMP,
    "gpuload": MetricColumn.GPU_LOAD,
    # Fans
    "fanspeed": MetricColumn.FAN_SPEED,
    # Network
    "netrx": MetricColumn.NET_RX,
    "nettx": MetricColumn.NET_TX,
    # Disk
    "diskusage": MetricColumn.DISK_USAGE,
    "diskread": MetricColumn.DISK_READ,
    "diskreadmbps": MetricColumn.DISK_READ,
    "diskwrite": MetricColumn.DISK_WRITE,
    "diskwritembps": MetricColumn.DISK_WRITE,
}

_STRIP_PATTERN = re.compile(r"[\d_\-\s]+")


def normalize_metric_key(key: str) -> str:
    """Lowercase a metric key and drop digits, underscores and dashes."""
    return _STRIP_PATTERN.sub("", key.lower())


def parse_column(raw: str | None) -> MetricColumn:
    """
    Validate an internal column name.

    Args:
        raw: Column name as sent by the caller (case-insensitive). None or
            a blank value selects the default column.

    Returns:
        The matching MetricColumn.

    Raises:
        InvalidColumnError: If the name is not one of the eleven columns.
    """
    name = "" if raw is None else str(raw).strip().lower()
    if not name:
        return DEFAULT_COLUMN
    try:
        return MetricColumn(name)
    except ValueError:
        raise InvalidColumnError(raw, list(ALLOWED_COLUMNS)) from None


def resolve_metric_key(key: str | None, *, strict: bool = False) -> MetricColumn:
    """
    Route an external metric key to its column.

    Unknown keys resolve to ``DEFAULT_COLUMN``; this keeps display clients
    working but returns cpu_load data for the unknown key. With ``strict``
    they raise InvalidColumnError instead.
    """
    if not key:
        return DEFAULT_COLUMN

    column = METRIC_KEY_TABLE.get(normalize_metric_key(key))
    if column is not None:
        return column

    if strict:
        raise InvalidColumnError(
            key,
            list(ALLOWED_COLUMNS),
            message="Unknown metric key",
        )
    return DEFAULT_COLUMN
