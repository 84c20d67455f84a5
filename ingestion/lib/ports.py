"""Injected capabilities the Delta Runner depends on.

The orchestrator never queries a source or encodes a file itself. It talks
to an ``Extractor`` (read a page of changed rows) and a ``Sink`` (durably
persist a batch), both supplied by the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from ingestion.lib.markers import MarkerType
from ingestion.lib.models import ExtractionResult

__all__ = ["Extractor", "Sink", "SinkResult", "marker_range_key"]


class Extractor(ABC):
    """Reads rows whose change marker is strictly greater than a given marker."""

    @abstractmethod
    def fetch(
        self,
        table_id: str,
        change_column: str,
        after_marker: Any,
        page_size: int,
        params: Mapping[str, str],
    ) -> ExtractionResult:
        """Fetch one page of changed rows.

        Args:
            table_id: Table identifier from the registry
            change_column: Column holding the change marker
            after_marker: Exclusive lower bound for the marker
            page_size: Maximum number of rows to return
            params: Source-specific parameters from the registry

        Returns:
            ExtractionResult with the page rows, their maximum marker and
            whether more rows remain

        Raises:
            ExtractionError: If the source cannot be read
        """


@dataclass
class SinkResult:
    """Where a batch was written."""

    table_id: str
    marker_range_key: str
    row_count: int
    location: Optional[str] = None
    files: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


class Sink(ABC):
    """Durably persists extracted batches.

    Implementations must be idempotent for a repeated
    ``(table_id, marker_range_key)``: writing the same key again replaces the
    earlier output instead of adding to it.
    """

    @abstractmethod
    def write_batch(
        self,
        table_id: str,
        marker_range_key: str,
        rows: List[Dict[str, Any]],
    ) -> SinkResult:
        """Persist ``rows`` under a deterministic key.

        Raises:
            SinkError: If the batch could not be persisted
        """


def marker_range_key(marker_type: MarkerType, from_marker: Any, to_marker: Any) -> str:
    """Deterministic key for the batch covering ``(from_marker, to_marker]``.

    Example:
        >>> marker_range_key(MarkerType.INTEGER, 0, 42)
        '0__42'
    """
    return f"{marker_type.to_key(from_marker)}__{marker_type.to_key(to_marker)}"
