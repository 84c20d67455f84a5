"""Data model shared by the registry, the runner and the dispatch loop."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ingestion.lib.markers import MarkerType

__all__ = [
    "DEFAULT_BATCH_SIZE",
    "TableDescriptor",
    "Watermark",
    "ExtractionResult",
    "RunStatus",
    "FailureReason",
    "RunOutcome",
    "BatchReport",
]

DEFAULT_BATCH_SIZE = 10000


@dataclass(frozen=True)
class TableDescriptor:
    """Declarative description of one source table.

    Created when the registry is loaded and never mutated afterwards; the
    Delta Runner is a single generic path parameterized by this value.
    """

    table_id: str
    change_column: str
    batch_size: int = DEFAULT_BATCH_SIZE
    params: Mapping[str, str] = field(default_factory=dict, hash=False)
    marker_type: MarkerType = MarkerType.TIMESTAMP
    initial_marker: Optional[Any] = None
    max_pages: Optional[int] = None
    timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        # Freeze params so a shared descriptor cannot be mutated by a port.
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def default_marker(self) -> Any:
        """Marker used when the table has no stored watermark yet."""
        if self.initial_marker is None:
            return self.marker_type.initial()
        return self.marker_type.parse(self.initial_marker)


@dataclass(frozen=True)
class Watermark:
    """Last captured change marker for a table.

    ``version`` is the optimistic-concurrency version of the stored record;
    0 means no record has been stored yet and ``marker`` is the default.
    """

    table_id: str
    marker: Any
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.version > 0


@dataclass
class ExtractionResult:
    """One page of rows returned by an extractor."""

    table_id: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    max_marker: Any = None
    has_more: bool = False

    @property
    def row_count(self) -> int:
        return len(self.rows)


class RunStatus(str, Enum):
    """Terminal status of one table within a cycle."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED_NO_CHANGE = "skipped_no_change"


class FailureReason(str, Enum):
    """Why a table ended in ``RunStatus.FAILED``."""

    CONFIGURATION_ERROR = "configuration_error"
    EXTRACTION_ERROR = "extraction_error"
    SINK_ERROR = "sink_error"
    CONCURRENT_WATERMARK_CONFLICT = "concurrent_watermark_conflict"
    WATERMARK_NOT_FOUND = "watermark_not_found"
    WATERMARK_STORE_ERROR = "watermark_store_error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    UNEXPECTED_ERROR = "unexpected_error"


def _json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


@dataclass
class RunOutcome:
    """Result of one Delta Runner invocation."""

    table_id: str
    status: RunStatus
    rows_processed: int = 0
    duration_seconds: float = 0.0
    reason: Optional[FailureReason] = None
    error: Optional[str] = None
    previous_marker: Any = None
    new_marker: Any = None
    pages: int = 0
    marker_range_key: Optional[str] = None
    phases: Dict[str, float] = field(default_factory=dict)

    @property
    def failed(self) -> bool:
        return self.status is RunStatus.FAILED

    @classmethod
    def failure(
        cls,
        table_id: str,
        reason: FailureReason,
        error: Optional[BaseException | str] = None,
        **kwargs: Any,
    ) -> "RunOutcome":
        """Build a failed outcome for a table."""
        return cls(
            table_id=table_id,
            status=RunStatus.FAILED,
            reason=reason,
            error=str(error) if error is not None else None,
            **kwargs,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary."""
        return {
            "table_id": self.table_id,
            "status": self.status.value,
            "rows_processed": self.rows_processed,
            "duration_seconds": round(self.duration_seconds, 3),
            "reason": self.reason.value if self.reason else None,
            "error": self.error,
            "previous_marker": _json_safe(self.previous_marker),
            "new_marker": _json_safe(self.new_marker),
            "pages": self.pages,
            "marker_range_key": self.marker_range_key,
            "phases": dict(self.phases),
        }


@dataclass
class BatchReport:
    """Externally visible result of one orchestration cycle.

    Contains exactly one outcome per registry entry, in registry order.
    """

    cycle_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: List[RunOutcome] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status is RunStatus.SUCCEEDED)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status is RunStatus.SKIPPED_NO_CHANGE)

    @property
    def failure_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status is RunStatus.FAILED)

    @property
    def total_rows(self) -> int:
        return sum(o.rows_processed for o in self.outcomes)

    @property
    def succeeded(self) -> bool:
        """True when no table failed."""
        return self.failure_count == 0

    @property
    def failed_tables(self) -> Tuple[str, ...]:
        return tuple(o.table_id for o in self.outcomes if o.failed)

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    def outcome_for(self, table_id: str) -> Optional[RunOutcome]:
        """Return the outcome recorded for ``table_id``, if any."""
        for outcome in self.outcomes:
            if outcome.table_id == table_id:
                return outcome
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "success_count": self.success_count,
            "skipped_count": self.skipped_count,
            "failure_count": self.failure_count,
            "total_rows": self.total_rows,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)

    def __repr__(self) -> str:
        status = "SUCCESS" if self.succeeded else "FAILED"
        return (
            f"BatchReport({status}, tables={len(self.outcomes)}, "
            f"succeeded={self.success_count}, skipped={self.skipped_count}, "
            f"failed={self.failure_count}, rows={self.total_rows})"
        )
