"""Storage-backed sink: persists each batch as a data file plus metadata.

Layout for one batch:

    <base>/<table_id>/<marker_range_key>/part-00000.<ext>
    <base>/<table_id>/<marker_range_key>/_metadata.json

The path is a pure function of ``(table_id, marker_range_key)``, so a
retried batch overwrites its earlier output instead of duplicating it.
``_metadata.json`` is written last and marks the batch as complete.
"""

from __future__ import annotations

import io
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import pandas as pd

from ingestion.lib.config_loader import SINK_FORMATS, SinkSettings
from ingestion.lib.errors import ConfigurationError, SinkError
from ingestion.lib.ports import Sink, SinkResult
from ingestion.lib.storage import StorageBackend, get_storage

logger = logging.getLogger(__name__)

__all__ = ["StorageSink", "build_sink", "METADATA_FILE"]

METADATA_FILE = "_metadata.json"

_EXTENSIONS = {"parquet": "parquet", "csv": "csv", "jsonl": "jsonl"}


class StorageSink(Sink):
    """Sink writing batches through a StorageBackend with pandas.

    Example:
        >>> sink = StorageSink(get_storage("./output"), format="parquet")
        >>> sink.write_batch("sales.orders", "20240101T000000000000Z__20240103T000000000000Z", rows)
    """

    def __init__(self, storage: StorageBackend, format: str = "parquet") -> None:
        format = (format or "parquet").lower()
        if format not in SINK_FORMATS:
            raise ConfigurationError(
                f"Unsupported sink format: {format}",
                field="sink.format",
                value=format,
                suggestion=f"Use one of: {', '.join(SINK_FORMATS)}",
            )
        self.storage = storage
        self.format = format

    def batch_path(self, table_id: str, marker_range_key: str) -> str:
        return f"{quote(table_id, safe='')}/{marker_range_key}"

    def data_file(self, table_id: str, marker_range_key: str) -> str:
        return f"{self.batch_path(table_id, marker_range_key)}/part-00000.{_EXTENSIONS[self.format]}"

    def _serialize(self, df: pd.DataFrame) -> bytes:
        if self.format == "parquet":
            buffer = io.BytesIO()
            df.to_parquet(buffer, engine="pyarrow", index=False)
            return buffer.getvalue()
        if self.format == "csv":
            return df.to_csv(index=False).encode("utf-8")
        return df.to_json(orient="records", lines=True, date_format="iso").encode("utf-8")

    def write_batch(
        self,
        table_id: str,
        marker_range_key: str,
        rows: List[Dict[str, Any]],
    ) -> SinkResult:
        """Write ``rows`` and the batch metadata, replacing any earlier attempt."""
        data_path = self.data_file(table_id, marker_range_key)
        meta_path = f"{self.batch_path(table_id, marker_range_key)}/{METADATA_FILE}"

        try:
            df = pd.DataFrame.from_records(rows)
            data = self._serialize(df)
        except (ValueError, TypeError) as e:
            raise SinkError(
                f"Could not encode batch as {self.format}",
                table_id=table_id,
                marker_range_key=marker_range_key,
                cause=e,
            ) from e

        result = self.storage.write_bytes(data_path, data)
        if not result.success:
            raise SinkError(
                f"Failed to write batch file: {result.error}",
                table_id=table_id,
                marker_range_key=marker_range_key,
                details={"path": result.path},
            )

        metadata = {
            "table_id": table_id,
            "marker_range_key": marker_range_key,
            "row_count": len(rows),
            "columns": [str(c) for c in df.columns],
            "format": self.format,
            "data_file": data_path,
            "bytes": result.bytes_written,
            "written_at": datetime.now(timezone.utc).isoformat(),
        }
        meta_result = self.storage.write_text(
            meta_path, json.dumps(metadata, indent=2, default=str)
        )
        if not meta_result.success:
            raise SinkError(
                f"Failed to write batch metadata: {meta_result.error}",
                table_id=table_id,
                marker_range_key=marker_range_key,
                details={"path": meta_result.path},
            )

        logger.debug("Wrote %d rows to %s", len(rows), result.path)
        return SinkResult(
            table_id=table_id,
            marker_range_key=marker_range_key,
            row_count=len(rows),
            location=result.path,
            files=result.files_written + meta_result.files_written,
            metadata=metadata,
        )

    def read_metadata(self, table_id: str, marker_range_key: str) -> Optional[Dict[str, Any]]:
        """Return a batch's metadata, or None if the batch is incomplete."""
        meta_path = f"{self.batch_path(table_id, marker_range_key)}/{METADATA_FILE}"
        if not self.storage.exists(meta_path):
            return None
        return json.loads(self.storage.read_text(meta_path))

    def read_batch(self, table_id: str, marker_range_key: str) -> pd.DataFrame:
        """Load a written batch back into a DataFrame."""
        buffer = io.BytesIO(self.storage.read_bytes(self.data_file(table_id, marker_range_key)))
        if self.format == "parquet":
            return pd.read_parquet(buffer, engine="pyarrow")
        if self.format == "csv":
            return pd.read_csv(buffer)
        return pd.read_json(buffer, orient="records", lines=True)

    def list_batches(self, table_id: str) -> List[str]:
        """Marker range keys that have complete batches for a table."""
        keys = set()
        for info in self.storage.list_files(quote(table_id, safe=""), recursive=True):
            parts = info.path.split("/")
            if len(parts) == 2 and parts[1] == METADATA_FILE:
                keys.add(parts[0])
        return sorted(keys)


def build_sink(settings: SinkSettings, **options: Any) -> StorageSink:
    """Create a StorageSink from sink settings.

    Raises:
        ConfigurationError: If the backend is unknown or incomplete
    """
    backend = (settings.backend or "local").lower()
    if backend == "s3":
        if not settings.bucket:
            raise ConfigurationError("S3 sink requires a bucket", field="sink.bucket")
        path = f"s3://{settings.bucket}/{settings.prefix.strip('/')}".rstrip("/")
    elif backend == "local":
        path = settings.path
    else:
        raise ConfigurationError(
            f"Unsupported sink backend: {backend}",
            field="sink.backend",
            value=backend,
            suggestion="Use one of: local, s3",
        )
    storage_options = dict(settings.client_options)
    storage_options.update(options)
    return StorageSink(get_storage(path, **storage_options), format=settings.format)
