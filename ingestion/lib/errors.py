"""Structured exception hierarchy for the ingestion orchestrator.

Every failure a table can hit during a cycle has a specific exception type
carrying the table context, so the Delta Runner can map it to a
``FailureReason`` and operators get actionable messages.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

__all__ = [
    "IngestionError",
    "ConfigurationError",
    "ExtractionError",
    "SinkError",
    "WatermarkConflictError",
    "WatermarkStoreError",
    "CycleCancelled",
    "TableTimeout",
]


class IngestionError(Exception):
    """Base exception for all ingestion errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        table_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.message = message
        self.table_id = table_id
        self.details = dict(details or {})
        self.suggestion = suggestion
        self.cause = cause

        if cause is not None:
            self.details.setdefault("cause", str(cause))
            self.details.setdefault("cause_type", type(cause).__name__)

        parts = [message]

        if table_id:
            parts[0] = f"[{table_id}] {message}"

        if self.details:
            parts.append("\nDetails:")
            parts.extend(f"  {k}: {v}" for k, v in self.details.items())

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else parts[0])

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "table_id": self.table_id,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(IngestionError):
    """Malformed table descriptor or orchestrator setting.

    A malformed descriptor is excluded from the cycle and reported; it
    never aborts the other tables.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", None) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class ExtractionError(IngestionError):
    """Fetching rows from the source failed.

    The watermark is untouched, so the next cycle re-extracts the same delta.
    """

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault(
            "suggestion",
            "Check that the source is reachable; the next cycle retries from "
            "the same watermark.",
        )
        super().__init__(message, **kwargs)


class SinkError(IngestionError):
    """Persisting a batch failed.

    The watermark is untouched and the write key is deterministic, so the
    retried write overwrites any partial output.
    """

    def __init__(
        self,
        message: str,
        *,
        marker_range_key: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.marker_range_key = marker_range_key

        details = kwargs.pop("details", None) or {}
        if marker_range_key:
            details["marker_range_key"] = marker_range_key

        kwargs.setdefault(
            "suggestion",
            "Check storage credentials and capacity; re-running the cycle "
            "rewrites the same batch.",
        )
        super().__init__(message, details=details, **kwargs)


class WatermarkConflictError(IngestionError):
    """Another run advanced the same table's watermark first."""

    def __init__(
        self,
        message: str,
        *,
        expected: Any = None,
        **kwargs: Any,
    ) -> None:
        self.expected = expected

        details = kwargs.pop("details", None) or {}
        if expected is not None:
            details["expected"] = str(expected)

        kwargs.setdefault(
            "suggestion",
            "An overlapping cycle processed this table. Make sure only one "
            "scheduler triggers cycles for this registry.",
        )
        super().__init__(message, details=details, **kwargs)


class WatermarkStoreError(IngestionError):
    """The watermark store could not be read or written."""


class CycleCancelled(IngestionError):
    """The cycle was cancelled before this table reached a terminal state."""


class TableTimeout(IngestionError):
    """The table exceeded its wall-clock budget."""

    def __init__(
        self,
        message: str,
        *,
        timeout_seconds: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        self.timeout_seconds = timeout_seconds

        details = kwargs.pop("details", None) or {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds

        super().__init__(message, details=details, **kwargs)
