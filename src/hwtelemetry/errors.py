"""
Error types for the hwtelemetry service.

This module defines the TelemetryError base class and the subclasses used by
the sampler, the time-series store, the session manager and the history
query service. Domain errors are raised as TelemetryError subclasses and
mapped to wire responses only at the HTTP/WebSocket boundary.

Error policy:
- AcquisitionError: recovered per tick, reported to the live connection.
- WriteError: logged, never aborts the sampling loop.
- InvalidColumnError / InvalidRangeError: rejected before touching storage,
  surfaced as client errors.
- TransportError: triggers session teardown.
- StorageInitError: the only process-fatal error (raised at startup).
"""

from __future__ import annotations

from typing import Any


class TelemetryError(Exception):
    """
    Base exception class for hwtelemetry errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "unavailable", "failed_precondition").
        message: Human-readable error message.
        details: Optional structured details (e.g., parameter values, context).

    Example:
        >>> raise TelemetryError(
        ...     error_code="invalid_argument",
        ...     message="limit must be an integer",
        ...     details={"limit": "abc"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a TelemetryError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


# =============================================================================
# Client errors
# =============================================================================


class InvalidArgumentError(TelemetryError):
    """
    Error raised when a caller supplies invalid input.

    Maps to the "invalid_argument" error code (HTTP 400).
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class InvalidColumnError(InvalidArgumentError):
    """
    Error raised when a history query names a column outside the allowed set.

    The allowed column names are always included in ``details``.
    """

    def __init__(
        self,
        column: Any,
        allowed: list[str],
        message: str = "Invalid column parameter",
    ) -> None:
        """Initialize an InvalidColumnError."""
        super().__init__(
            message,
            details={"column": column, "allowed_columns": list(allowed)},
        )
        self.column = column
        self.allowed = list(allowed)


class InvalidRangeError(InvalidArgumentError):
    """Error raised when a requested time window cannot be satisfied."""


# =============================================================================
# Runtime errors
# =============================================================================


class AcquisitionError(TelemetryError):
    """
    Error raised when the OS metrics capability fails to respond.

    Maps to the "unavailable" error code. Partial or missing fields are never
    reported with this error; they are defaulted during normalization.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an AcquisitionError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class TransportError(TelemetryError):
    """Error raised when a streaming connection can no longer be written to."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a TransportError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class StorageError(TelemetryError):
    """
    Base error for time-series store faults.

    Maps to the "failed_precondition" error code.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a StorageError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class WriteError(StorageError):
    """Error raised when a row cannot be appended (fault or closed store)."""


class StorageInitError(StorageError):
    """Error raised when the store cannot be initialized at startup."""
