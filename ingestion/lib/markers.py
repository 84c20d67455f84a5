"""Change-marker types for incremental loads.

A marker is the value of a table's change-tracking column. Every marker
type maps configured or persisted values onto a totally ordered Python
value so the orchestrator can compare and advance watermarks without
knowing what the column holds.

Supported marker types:
- timestamp: timezone-aware UTC datetimes (naive values are taken as UTC)
- date: calendar dates
- integer: monotonically increasing identifiers
- string: lexicographically ordered strings
- composite: tuples compared element by element, e.g. (updated_at, id)
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List

__all__ = ["MarkerType", "EPOCH"]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_MARKER_TYPE_DESCRIPTIONS: Dict[str, str] = {
    "timestamp": "ISO timestamp marker (e.g., 2025-01-15T10:30:00Z)",
    "date": "Date marker (e.g., 2025-01-15)",
    "integer": "Integer sequence marker (e.g., record ID)",
    "string": "String marker for lexicographic comparison",
    "composite": "Ordered tuple marker (e.g., [\"2025-01-15T10:30:00Z\", 42])",
}


def _parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        value = raw
    elif isinstance(raw, date):
        value = datetime(raw.year, raw.month, raw.day)
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw).strip())


def _parse_integer(raw: Any) -> int:
    if isinstance(raw, bool):
        raise ValueError("Boolean is not a valid integer marker")
    return int(raw)


def _parse_composite(raw: Any) -> tuple:
    if isinstance(raw, str):
        raw = json.loads(raw)
    if not isinstance(raw, (list, tuple)):
        raise ValueError(f"Composite marker must be a list, got {type(raw).__name__}")
    return tuple(_serialize_element(item) for item in raw)


def _serialize_element(value: Any) -> Any:
    if isinstance(value, datetime):
        return _parse_timestamp(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


class MarkerType(str, Enum):
    """Type of a change-marker value."""

    TIMESTAMP = "timestamp"
    DATE = "date"
    INTEGER = "integer"
    STRING = "string"
    COMPOSITE = "composite"

    @classmethod
    def choices(cls) -> List[str]:
        """Return list of valid enum values."""
        return [member.value for member in cls]

    @classmethod
    def normalize(cls, raw: "str | MarkerType | None") -> "MarkerType":
        """Normalize a marker type value from configuration."""
        if isinstance(raw, cls):
            return raw
        if raw is None:
            return cls.TIMESTAMP

        candidate = str(raw).strip().lower()
        for member in cls:
            if member.value == candidate:
                return member

        raise ValueError(
            f"Invalid MarkerType '{raw}'. Valid options: {', '.join(cls.choices())}"
        )

    def describe(self) -> str:
        """Return human-readable description."""
        return _MARKER_TYPE_DESCRIPTIONS.get(self.value, self.value)

    def initial(self) -> Any:
        """Marker that precedes every real value (first-run default)."""
        if self is MarkerType.TIMESTAMP:
            return EPOCH
        if self is MarkerType.DATE:
            return EPOCH.date()
        if self is MarkerType.INTEGER:
            return 0
        if self is MarkerType.STRING:
            return ""
        return ()

    def parse(self, raw: Any) -> Any:
        """Convert a configured, persisted or extracted value to a comparable marker.

        Raises:
            ValueError: If the value cannot be interpreted as this marker type
        """
        if raw is None:
            raise ValueError("Marker value cannot be None")
        if self is MarkerType.TIMESTAMP:
            return _parse_timestamp(raw)
        if self is MarkerType.DATE:
            return _parse_date(raw)
        if self is MarkerType.INTEGER:
            return _parse_integer(raw)
        if self is MarkerType.STRING:
            return str(raw)
        return _parse_composite(raw)

    def serialize(self, value: Any) -> Any:
        """Convert a marker to a JSON-safe value that ``parse`` round-trips."""
        if self is MarkerType.TIMESTAMP:
            return _parse_timestamp(value).isoformat()
        if self is MarkerType.DATE:
            return _parse_date(value).isoformat()
        if self is MarkerType.INTEGER:
            return int(value)
        if self is MarkerType.STRING:
            return str(value)
        return [_serialize_element(item) for item in _parse_composite(value)]

    def to_key(self, value: Any) -> str:
        """Render a marker as a filesystem and object-key safe token."""
        if self is MarkerType.TIMESTAMP:
            text = _parse_timestamp(value).strftime("%Y%m%dT%H%M%S%fZ")
        elif self is MarkerType.COMPOSITE:
            text = "-".join(str(item) for item in self.serialize(value))
        else:
            text = str(self.serialize(value))
        safe = "".join(ch if ch.isalnum() or ch in "-_." else "-" for ch in text)
        return safe or "initial"
