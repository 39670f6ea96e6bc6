"""
Configuration management for the hwtelemetry service.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/hwtelemetry/config.yml or --config path)
3. Environment variables (HWTELEMETRY_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_CONFIG_PATH = Path("/etc/hwtelemetry/config.yml")
DEFAULT_ENV_PREFIX = "HWTELEMETRY_"

_VALID_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}


def _normalize_log_level(v: str) -> str:
    v_lower = v.lower()
    if v_lower not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of: {', '.join(sorted(_VALID_LOG_LEVELS))}"
        )
    # Normalize 'warn' to 'warning'
    if v_lower == "warn":
        return "warning"
    return v_lower


# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """HTTP/WebSocket server settings.

    Attributes:
        listen: Listen address and port (e.g., "0.0.0.0:3000").
        log_level: Initial application log level.
        dev: Development mode (permissive CORS).
        allowed_origins: CORS origins accepted outside development mode.
        shutdown_timeout_seconds: Hard ceiling for graceful shutdown.
    """

    listen: str = Field(
        default="0.0.0.0:3000",
        description="Listen address and port (e.g., '127.0.0.1:3000')",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    dev: bool = Field(
        default=True,
        description="Development mode: accept any CORS origin",
    )
    allowed_origins: list[str] = Field(
        default_factory=list,
        description="CORS origins accepted when dev mode is off",
    )
    shutdown_timeout_seconds: float = Field(
        default=5.0,
        description="Seconds to wait for sessions and storage before forcing shutdown",
        gt=0,
        le=300,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def split_origins(cls, v: Any) -> Any:
        """Accept a comma-separated string of origins."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @property
    def host(self) -> str:
        """Host part of the listen address."""
        host, _, _port = self.listen.rpartition(":")
        return host or "0.0.0.0"

    @property
    def port(self) -> int:
        """Port part of the listen address."""
        _host, _, port = self.listen.rpartition(":")
        return int(port)


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        app_log_path: Optional rotating application log file.
        debug_mode: Enable extra diagnostic logging.
        max_bytes: Optional max log file size.
        backup_count: Optional number of backup files.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    app_log_path: str | None = Field(
        default=None,
        description="Application log file path (rotating); disabled when unset",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )
    max_bytes: int | None = Field(
        default=None,
        description="Maximum log file size in bytes",
    )
    backup_count: int | None = Field(
        default=None,
        description="Number of backup log files to keep",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Time-series storage configuration.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    db_path: str = Field(
        default="data/metrics.db",
        description="Path to the metrics SQLite database",
    )


# =============================================================================
# Sampler Configuration
# =============================================================================


class SamplerConfig(BaseModel):
    """OS metrics acquisition settings.

    Attributes:
        network_interface: Primary NIC; busiest non-loopback NIC when unset.
        disk_mount: Mount point reported as the primary filesystem.
        enable_gpu: Probe NVIDIA GPUs through NVML.
    """

    network_interface: str | None = Field(
        default=None,
        description="Primary network interface name",
    )
    disk_mount: str = Field(
        default="/",
        description="Mount point of the primary filesystem",
    )
    enable_gpu: bool = Field(
        default=True,
        description="Probe NVIDIA GPUs through NVML when available",
    )


# =============================================================================
# Streaming Configuration
# =============================================================================


class StreamingConfig(BaseModel):
    """Live streaming session settings.

    Attributes:
        default_interval_ms: Interval used when the client sends none.
        min_interval_ms: Lower clamp for client intervals.
        max_interval_ms: Upper clamp for client intervals.
        persist: Whether sessions record each reading by default.
        send_alerts: Send threshold alert messages after each reading.
        cache_ttl_seconds: Reuse readings younger than this (0 disables).
    """

    default_interval_ms: int = Field(default=1000, ge=1)
    min_interval_ms: int = Field(default=500, ge=1)
    max_interval_ms: int = Field(default=10000, ge=1)
    persist: bool = Field(
        default=True,
        description="Record every streamed reading in the time-series store",
    )
    send_alerts: bool = Field(
        default=False,
        description="Send threshold alert messages to subscribers",
    )
    cache_ttl_seconds: float = Field(
        default=0.0,
        ge=0,
        description="Share readings across sessions for this many seconds",
    )

    @model_validator(mode="after")
    def check_bounds(self) -> StreamingConfig:
        """Validate interval bounds and the cache TTL."""
        if self.min_interval_ms > self.max_interval_ms:
            raise ValueError("min_interval_ms must not exceed max_interval_ms")
        if not self.min_interval_ms <= self.default_interval_ms <= self.max_interval_ms:
            raise ValueError(
                "default_interval_ms must lie within [min_interval_ms, max_interval_ms]"
            )
        if self.cache_ttl_seconds * 1000 >= self.min_interval_ms:
            raise ValueError("cache_ttl_seconds must stay below min_interval_ms")
        return self


# =============================================================================
# History Configuration
# =============================================================================


class HistoryConfig(BaseModel):
    """History query settings.

    Attributes:
        default_limit: Row limit used when the caller sends none.
        max_limit: Upper clamp for the row limit.
        default_window_ms: Window used when `since` is absent.
        default_cleanup_max_age_ms: Age used by cleanup when none is sent.
        strict_metric_keys: Reject unknown metric keys instead of falling back.
    """

    default_limit: int = Field(default=500, ge=1)
    max_limit: int = Field(default=2000, ge=1)
    default_window_ms: int = Field(default=3_600_000, ge=1)
    default_cleanup_max_age_ms: int = Field(default=30 * 24 * 3_600_000, ge=1)
    strict_metric_keys: bool = Field(
        default=False,
        description="Reject unknown metric keys instead of using cpu_load",
    )

    @model_validator(mode="after")
    def check_limits(self) -> HistoryConfig:
        """Validate that the default limit fits under the maximum."""
        if self.default_limit > self.max_limit:
            raise ValueError("default_limit must not exceed max_limit")
        return self


# =============================================================================
# Retention Configuration
# =============================================================================


class RetentionConfig(BaseModel):
    """Automatic retention settings.

    Attributes:
        enabled: Run the periodic retention job.
        max_age_days: Rows older than this are purged.
        check_interval_seconds: How often the job runs.
    """

    enabled: bool = Field(default=False)
    max_age_days: int = Field(default=30, ge=1, le=3650)
    check_interval_seconds: int = Field(default=3600, ge=1, le=86400)


# =============================================================================
# Threshold Configuration
# =============================================================================

_MIB = 1024 * 1024


class ThresholdConfig(BaseModel):
    """Per-column alert ceilings; None disables a column.

    Rates are in bytes per second, percentages in percent, temperatures
    in degrees Celsius.
    """

    cpu_load: float | None = 90.0
    cpu_temp: float | None = None
    mem_usage: float | None = 90.0
    gpu_temp: float | None = 85.0
    gpu_load: float | None = None
    fan_speed: float | None = None
    net_rx: float | None = 100.0 * _MIB
    net_tx: float | None = 100.0 * _MIB
    disk_usage: float | None = 95.0
    disk_read: float | None = 500.0 * _MIB
    disk_write: float | None = 500.0 * _MIB


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Built from multiple layers following the precedence rules:
    1. Built-in defaults (defined in this model)
    2. YAML config file
    3. Environment variables (HWTELEMETRY_* prefix)
    4. Command-line arguments
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    sampler: SamplerConfig = Field(default_factory=SamplerConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    thresholds: ThresholdConfig = Field(default_factory=ThresholdConfig)


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "1", "on"):
        return True
    if value.lower() in ("false", "no", "0", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, e.g.
    HWTELEMETRY_STREAMING__MIN_INTERVAL_MS=250.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Host telemetry streaming service",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--listen",
        type=str,
        help="Listen address and port (e.g., 0.0.0.0:3000)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.listen:
        result.setdefault("server", {})["listen"] = parsed.listen

    if parsed.log_level:
        result.setdefault("server", {})["log_level"] = parsed.log_level
        result.setdefault("logging", {})["level"] = parsed.log_level

    if parsed.debug:
        result.setdefault("logging", {})["debug_mode"] = True
        result.setdefault("server", {})["log_level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.streaming.min_interval_ms
        500
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
