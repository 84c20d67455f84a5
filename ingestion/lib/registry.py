"""Table registry: the ordered list of table descriptors driving a cycle.

The registry is data, not code. It is decoded once from YAML/JSON (or an
in-memory list) and then treated as immutable for the cycle's duration.

Example YAML (tables.yaml):
    tables:
      - id: sales.orders
        change_column: updated_at
        batch_size: 5000
        params:
          table: dbo.Orders
          url_env: SALES_DB_URL
      - id: sales.customers
        change_column: row_version
        marker_type: integer

A malformed entry is excluded and kept as a ``RejectedEntry`` so the
dispatch loop can report it; it never invalidates the other entries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import yaml

from ingestion.lib.env import expand_env_vars
from ingestion.lib.errors import ConfigurationError
from ingestion.lib.markers import MarkerType
from ingestion.lib.models import DEFAULT_BATCH_SIZE, TableDescriptor

logger = logging.getLogger(__name__)

__all__ = ["RegistryEntry", "RejectedEntry", "TableRegistry", "parse_descriptor"]

# Accepted spellings for each descriptor field, first match wins
_ID_KEYS = ("table_id", "id")
_COLUMN_KEYS = ("change_column", "watermark_column", "col")
_INITIAL_KEYS = ("initial_marker", "marker")


@dataclass(frozen=True)
class RejectedEntry:
    """A registry entry that failed validation."""

    entry_key: str
    index: int
    error: ConfigurationError


RegistryEntry = Union[TableDescriptor, RejectedEntry]


def _first(entry: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in entry:
            return entry[key]
    return None


def _positive_int(value: Any, field: str, table_id: str) -> Optional[int]:
    if value is None:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 0
    if isinstance(value, bool) or number <= 0:
        raise ConfigurationError(
            f"{field} must be a positive integer", field=field, value=value, table_id=table_id
        )
    return number


def _parse_params(raw: Any, table_id: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            "params must be a mapping", field="params", value=raw, table_id=table_id
        )
    params: Dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(key, str):
            raise ConfigurationError(
                "params keys must be strings", field="params", value=key, table_id=table_id
            )
        if isinstance(value, (Mapping, list)):
            raise ConfigurationError(
                f"params.{key} must be a scalar value",
                field=f"params.{key}",
                value=value,
                table_id=table_id,
            )
        params[key] = expand_env_vars("" if value is None else str(value))
    return params


def parse_descriptor(entry: Any, index: int = 0) -> TableDescriptor:
    """Decode one registry entry into a TableDescriptor.

    Args:
        entry: Mapping decoded from the registry source
        index: Position of the entry, used in error messages

    Raises:
        ConfigurationError: If the entry is malformed
    """
    if not isinstance(entry, Mapping):
        raise ConfigurationError(
            f"Registry entry #{index} must be a mapping, got {type(entry).__name__}"
        )

    table_id = _first(entry, _ID_KEYS)
    if not isinstance(table_id, str) or not table_id.strip():
        raise ConfigurationError(
            f"Registry entry #{index} is missing a table identifier",
            field="table_id",
            suggestion="Add an 'id' (or 'table_id') to the entry.",
        )
    table_id = table_id.strip()

    change_column = _first(entry, _COLUMN_KEYS)
    if not isinstance(change_column, str) or not change_column.strip():
        raise ConfigurationError(
            "Missing change-tracking column",
            field="change_column",
            table_id=table_id,
            suggestion="Add 'change_column' naming the last-modified column.",
        )

    try:
        marker_type = MarkerType.normalize(entry.get("marker_type"))
    except ValueError as e:
        raise ConfigurationError(
            str(e), field="marker_type", value=entry.get("marker_type"), table_id=table_id
        ) from e

    initial_marker = _first(entry, _INITIAL_KEYS)
    if initial_marker is not None:
        try:
            marker_type.parse(initial_marker)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"initial marker is not a valid {marker_type.value}",
                field="initial_marker",
                value=initial_marker,
                table_id=table_id,
            ) from e

    timeout = entry.get("timeout_seconds")
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            timeout = 0.0
        if timeout <= 0:
            raise ConfigurationError(
                "timeout_seconds must be positive",
                field="timeout_seconds",
                value=entry.get("timeout_seconds"),
                table_id=table_id,
            )

    return TableDescriptor(
        table_id=table_id,
        change_column=change_column.strip(),
        batch_size=_positive_int(entry.get("batch_size", DEFAULT_BATCH_SIZE), "batch_size", table_id)
        or DEFAULT_BATCH_SIZE,
        params=_parse_params(entry.get("params"), table_id),
        marker_type=marker_type,
        initial_marker=initial_marker,
        max_pages=_positive_int(entry.get("max_pages"), "max_pages", table_id),
        timeout_seconds=timeout,
    )


class TableRegistry:
    """Ordered, immutable collection of table descriptors."""

    def __init__(
        self,
        descriptors: Sequence[TableDescriptor] = (),
        rejected: Sequence[RejectedEntry] = (),
        source: Optional[str] = None,
        order: Optional[Sequence[RegistryEntry]] = None,
    ) -> None:
        self._descriptors: Tuple[TableDescriptor, ...] = tuple(descriptors)
        self._rejected: Tuple[RejectedEntry, ...] = tuple(rejected)
        if order is None:
            order = self._descriptors + self._rejected
        self._order: Tuple[RegistryEntry, ...] = tuple(order)
        self.source = source

    @classmethod
    def from_entries(
        cls,
        entries: Sequence[Any],
        source: Optional[str] = None,
    ) -> "TableRegistry":
        """Build a registry from decoded entries, rejecting malformed ones."""
        descriptors: List[TableDescriptor] = []
        rejected: List[RejectedEntry] = []
        seen: Dict[str, int] = {}
        order: List[RegistryEntry] = []

        for index, entry in enumerate(entries):
            try:
                descriptor = parse_descriptor(entry, index)
                if descriptor.table_id in seen:
                    raise ConfigurationError(
                        f"Duplicate table identifier (first defined at entry #{seen[descriptor.table_id]})",
                        field="table_id",
                        table_id=descriptor.table_id,
                    )
            except ConfigurationError as e:
                key = e.table_id or f"#{index}"
                logger.warning("Rejected registry entry %s: %s", key, e.message)
                rejected.append(RejectedEntry(entry_key=key, index=index, error=e))
                order.append(rejected[-1])
                continue

            seen[descriptor.table_id] = index
            descriptors.append(descriptor)
            order.append(descriptor)

        logger.info(
            "Loaded table registry%s: %d tables, %d rejected",
            f" from {source}" if source else "",
            len(descriptors),
            len(rejected),
        )
        return cls(descriptors, rejected, source=source, order=order)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "TableRegistry":
        """Load a registry from a YAML or JSON file.

        The file holds either a top-level list of entries or a mapping with
        a ``tables`` list.

        Raises:
            ConfigurationError: If the file cannot be read or has no table list
        """
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(
                f"Cannot read table registry: {path}", cause=e
            ) from e

        try:
            if path.suffix.lower() == ".json":
                data = json.loads(text)
            else:
                data = yaml.safe_load(text)
        except (json.JSONDecodeError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Invalid registry syntax in {path}", cause=e
            ) from e

        if isinstance(data, Mapping):
            data = data.get("tables")
        if not isinstance(data, list):
            raise ConfigurationError(
                f"Table registry {path} must contain a list of tables",
                field="tables",
                suggestion="Use a top-level 'tables:' list.",
            )

        return cls.from_entries(data, source=str(path))

    def list_tables(self) -> Tuple[TableDescriptor, ...]:
        """Return the accepted descriptors in registry order."""
        return self._descriptors

    def rejected(self) -> Tuple[RejectedEntry, ...]:
        """Return the entries excluded as malformed."""
        return self._rejected

    def entries(self) -> Tuple[RegistryEntry, ...]:
        """Return accepted and rejected entries interleaved in source order."""
        return self._order

    def get(self, table_id: str) -> Optional[TableDescriptor]:
        for descriptor in self._descriptors:
            if descriptor.table_id == table_id:
                return descriptor
        return None

    def __len__(self) -> int:
        return len(self._descriptors)

    def __iter__(self) -> Iterator[TableDescriptor]:
        return iter(self._descriptors)

    def __repr__(self) -> str:
        return (
            f"TableRegistry(tables={len(self._descriptors)}, "
            f"rejected={len(self._rejected)}, source={self.source!r})"
        )
