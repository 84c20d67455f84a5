"""Watermark storage with compare-and-advance semantics.

Watermarks track the last change marker captured for each table, allowing
cycles to resume from where they left off. ``compare_and_advance`` is the
only mutation path: it succeeds only while the stored record still matches
what the caller read, so two overlapping runs for the same table can never
both advance from a stale base.

Supported storage backends:
- memory: process-local dictionary (tests, single-process embedding)
- local: JSON files in a state directory (default ``.state``)
- s3: JSON objects in an S3 bucket, guarded by conditional writes

Watermark record structure:
```json
{
  "table_id": "sales.orders",
  "marker": "2025-01-15T10:30:00+00:00",
  "marker_type": "timestamp",
  "updated_at": "2025-01-15T10:31:02.118+00:00",
  "version": 7
}
```
"""

from __future__ import annotations

import errno
import json
import logging
import os
import threading
import time
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from ingestion.lib.errors import ConfigurationError, WatermarkStoreError
from ingestion.lib.markers import MarkerType
from ingestion.lib.models import Watermark

logger = logging.getLogger(__name__)

__all__ = [
    "AdvanceResult",
    "WatermarkStore",
    "InMemoryWatermarkStore",
    "LocalWatermarkStore",
    "S3WatermarkStore",
    "build_watermark_store",
    "DEFAULT_STATE_DIR",
]

DEFAULT_STATE_DIR = ".state"
STALE_LOCK_SECONDS = 30.0


class AdvanceResult(str, Enum):
    """Outcome of a compare-and-advance call."""

    SUCCESS = "success"
    CONFLICT_STALE = "conflict_stale"
    NOT_FOUND = "not_found"


def _safe_key(table_id: str) -> str:
    return quote(table_id, safe="")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatermarkStore(ABC):
    """Durable mapping from table identifier to its last captured marker."""

    @abstractmethod
    def _read(self, table_id: str) -> Optional[Dict[str, Any]]:
        """Return the raw stored record, or None when absent."""

    @abstractmethod
    def _compare_and_swap(
        self,
        table_id: str,
        expected: Watermark,
        marker_type: MarkerType,
        record: Dict[str, Any],
    ) -> AdvanceResult:
        """Atomically replace the stored record if it still matches ``expected``."""

    @abstractmethod
    def delete(self, table_id: str) -> bool:
        """Remove a table's watermark to force a reload from the initial marker.

        Returns:
            True if a watermark was deleted, False if none existed
        """

    @abstractmethod
    def _list_records(self) -> List[Dict[str, Any]]:
        """Return every stored raw record."""

    def get(
        self,
        table_id: str,
        default: Any = None,
        marker_type: MarkerType = MarkerType.TIMESTAMP,
    ) -> Watermark:
        """Return the table's watermark, or a version-0 watermark holding ``default``.

        Args:
            table_id: Table identifier
            default: Marker returned when nothing is stored (first run)
            marker_type: Type used when the stored record does not name one

        Returns:
            Stored Watermark, or ``Watermark(table_id, default, version=0)``
        """
        record = self._read(table_id)
        if record is None:
            logger.debug("No watermark found for %s, using default %s", table_id, default)
            return Watermark(table_id=table_id, marker=default, version=0)
        return self._from_record(record, marker_type)

    def compare_and_advance(
        self,
        table_id: str,
        expected: Watermark,
        new_marker: Any,
        marker_type: MarkerType = MarkerType.TIMESTAMP,
    ) -> AdvanceResult:
        """Advance the watermark only if the stored one still equals ``expected``.

        Args:
            table_id: Table identifier
            expected: Watermark the caller read before extracting
            new_marker: Maximum marker of the batch that was durably written
            marker_type: Marker type used to persist ``new_marker``

        Returns:
            SUCCESS when advanced, CONFLICT_STALE when another writer got there
            first, NOT_FOUND when the record the caller read has disappeared

        Raises:
            WatermarkStoreError: If ``new_marker`` is not after ``expected.marker``
        """
        if expected.marker is not None:
            try:
                forward = marker_type.parse(new_marker) > marker_type.parse(expected.marker)
            except (TypeError, ValueError):
                forward = False
            if not forward:
                raise WatermarkStoreError(
                    "Refusing to move watermark backwards",
                    table_id=table_id,
                    details={"expected": str(expected.marker), "new_marker": str(new_marker)},
                )
        record = {
            "table_id": table_id,
            "marker": marker_type.serialize(new_marker),
            "marker_type": marker_type.value,
            "updated_at": _utcnow().isoformat(),
            "version": expected.version + 1,
        }
        result = self._compare_and_swap(table_id, expected, marker_type, record)
        if result is AdvanceResult.SUCCESS:
            logger.info(
                "Advanced watermark for %s: %s -> %s (version %d)",
                table_id,
                expected.marker,
                new_marker,
                record["version"],
            )
        else:
            logger.warning(
                "Watermark for %s not advanced (%s); expected version %d",
                table_id,
                result.value,
                expected.version,
            )
        return result

    def list_watermarks(self) -> List[Watermark]:
        """List all stored watermarks, sorted by table identifier."""
        watermarks = []
        for record in self._list_records():
            try:
                watermarks.append(self._from_record(record, MarkerType.STRING))
            except (KeyError, ValueError) as e:
                logger.warning("Skipping invalid watermark record %s: %s", record, e)
        return sorted(watermarks, key=lambda w: w.table_id)

    def _from_record(self, record: Dict[str, Any], fallback: MarkerType) -> Watermark:
        marker_type = MarkerType.normalize(record.get("marker_type") or fallback)
        updated_at = record.get("updated_at")
        return Watermark(
            table_id=record["table_id"],
            marker=marker_type.parse(record["marker"]),
            updated_at=datetime.fromisoformat(updated_at) if updated_at else None,
            version=int(record.get("version", 1)),
        )

    def _matches(
        self,
        current: Optional[Dict[str, Any]],
        expected: Watermark,
        marker_type: MarkerType,
    ) -> AdvanceResult:
        """Decide whether ``current`` still equals what the caller read."""
        if current is None:
            if expected.version == 0:
                return AdvanceResult.SUCCESS
            return AdvanceResult.NOT_FOUND

        if expected.version == 0:
            return AdvanceResult.CONFLICT_STALE

        stored = self._from_record(current, marker_type)
        if stored.version != expected.version or stored.marker != expected.marker:
            return AdvanceResult.CONFLICT_STALE
        return AdvanceResult.SUCCESS


class InMemoryWatermarkStore(WatermarkStore):
    """Process-local watermark store.

    Records are kept as serialized dictionaries so behaviour matches the
    durable backends exactly.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _read(self, table_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(table_id)
            return dict(record) if record is not None else None

    def _compare_and_swap(
        self,
        table_id: str,
        expected: Watermark,
        marker_type: MarkerType,
        record: Dict[str, Any],
    ) -> AdvanceResult:
        with self._lock:
            result = self._matches(self._records.get(table_id), expected, marker_type)
            if result is AdvanceResult.SUCCESS:
                self._records[table_id] = dict(record)
            return result

    def delete(self, table_id: str) -> bool:
        with self._lock:
            return self._records.pop(table_id, None) is not None

    def _list_records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._records.values()]


class LocalWatermarkStore(WatermarkStore):
    """Watermarks as JSON files in a local state directory.

    Each compare-and-advance holds an exclusive per-table lock file while it
    re-reads the record and atomically replaces it, which keeps the update
    atomic across threads and processes sharing the directory.

    Example:
        >>> store = LocalWatermarkStore(Path(".state"))
        >>> wm = store.get("sales.orders", default=EPOCH)
        >>> store.compare_and_advance("sales.orders", wm, new_marker)
        <AdvanceResult.SUCCESS: 'success'>
    """

    def __init__(
        self,
        local_path: Optional[Path] = None,
        lock_timeout: float = 10.0,
        poll_interval: float = 0.01,
        stale_lock_seconds: float = STALE_LOCK_SECONDS,
    ) -> None:
        if local_path is None:
            local_path = Path(os.environ.get("INGEST_STATE_DIR", DEFAULT_STATE_DIR))
        self.local_path = Path(local_path)
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self.stale_lock_seconds = stale_lock_seconds
        self.local_path.mkdir(parents=True, exist_ok=True)

    def _get_local_path(self, table_id: str) -> Path:
        return self.local_path / f"{_safe_key(table_id)}_watermark.json"

    def _read(self, table_id: str) -> Optional[Dict[str, Any]]:
        return self._read_path(self._get_local_path(table_id))

    def _read_path(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise WatermarkStoreError(
                "Could not read watermark file", details={"path": str(path)}, cause=e
            ) from e

    def _acquire(self, lock_path: Path) -> None:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._remove_stale_lock(lock_path):
                    continue
                if time.monotonic() >= deadline:
                    raise WatermarkStoreError(
                        "Timed out waiting for watermark lock",
                        details={"lock_path": str(lock_path)},
                        suggestion="Remove the lock file if no cycle is running.",
                    )
                time.sleep(self.poll_interval)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            return

    def _remove_stale_lock(self, lock_path: Path) -> bool:
        """Delete a lock left behind by a process that is gone.

        A lock naming a live PID is never touched. One without a readable PID
        counts as stale only once it is older than ``stale_lock_seconds``,
        since a fresh lock is empty until its owner writes the PID.
        """
        try:
            text = lock_path.read_text(encoding="utf-8").strip()
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.debug("Could not inspect lock %s: %s", lock_path, e)
            return False

        if text.isdigit():
            pid = int(text)
            try:
                os.kill(pid, 0)
                return False
            except OSError as e:
                if e.errno != errno.ESRCH:
                    return False
            reason = f"pid {pid} no longer exists"
        elif age >= self.stale_lock_seconds:
            reason = f"no owner pid after {age:.1f}s"
        else:
            return False

        try:
            if lock_path.read_text(encoding="utf-8").strip() != text:
                return False
            lock_path.unlink()
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.debug("Could not remove stale lock %s: %s", lock_path, e)
            return False
        logger.warning("Removed stale watermark lock %s (%s)", lock_path, reason)
        return True

    def _compare_and_swap(
        self,
        table_id: str,
        expected: Watermark,
        marker_type: MarkerType,
        record: Dict[str, Any],
    ) -> AdvanceResult:
        path = self._get_local_path(table_id)
        lock_path = path.with_suffix(".lock")

        self._acquire(lock_path)
        try:
            result = self._matches(self._read_path(path), expected, marker_type)
            if result is AdvanceResult.SUCCESS:
                tmp_path = path.parent / f"{path.name}.{uuid.uuid4().hex}.tmp"
                try:
                    with open(tmp_path, "w", encoding="utf-8") as f:
                        json.dump(record, f, indent=2)
                        f.flush()
                        os.fsync(f.fileno())
                    os.replace(tmp_path, path)
                except OSError as e:
                    tmp_path.unlink(missing_ok=True)
                    raise WatermarkStoreError(
                        "Could not write watermark file",
                        table_id=table_id,
                        details={"path": str(path)},
                        cause=e,
                    ) from e
                logger.debug("Saved watermark to %s", path)
            return result
        finally:
            lock_path.unlink(missing_ok=True)

    def delete(self, table_id: str) -> bool:
        path = self._get_local_path(table_id)
        if path.exists():
            path.unlink()
            logger.info("Deleted watermark at %s", path)
            return True
        return False

    def _list_records(self) -> List[Dict[str, Any]]:
        records = []
        for path in sorted(self.local_path.glob("*_watermark.json")):
            try:
                record = self._read_path(path)
            except WatermarkStoreError as e:
                logger.warning("Invalid watermark file %s: %s", path, e)
                continue
            if record is not None:
                records.append(record)
        return records


class S3WatermarkStore(WatermarkStore):
    """Watermarks as JSON objects in S3.

    Creation uses ``IfNoneMatch="*"`` and updates use ``IfMatch=<etag>``, so
    the conditional write itself is the atomic compare-and-advance.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "_watermarks",
        client: Any = None,
        **client_options: Any,
    ) -> None:
        if not bucket:
            raise ConfigurationError("S3 watermark store requires a bucket", field="state.bucket")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client
        self._client_options = client_options

    @property
    def client(self) -> Any:
        if self._client is None:
            import boto3

            self._client = boto3.client("s3", **self._client_options)
        return self._client

    def _get_s3_key(self, table_id: str) -> str:
        name = f"{_safe_key(table_id)}_watermark.json"
        return f"{self.prefix}/{name}" if self.prefix else name

    def _get_object(self, key: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        from botocore.exceptions import ClientError

        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None, None
            raise WatermarkStoreError(
                "Could not read watermark from S3",
                details={"bucket": self.bucket, "key": key},
                cause=e,
            ) from e
        data = json.loads(response["Body"].read().decode("utf-8"))
        return data, response.get("ETag")

    def _read(self, table_id: str) -> Optional[Dict[str, Any]]:
        record, _ = self._get_object(self._get_s3_key(table_id))
        return record

    def _compare_and_swap(
        self,
        table_id: str,
        expected: Watermark,
        marker_type: MarkerType,
        record: Dict[str, Any],
    ) -> AdvanceResult:
        from botocore.exceptions import ClientError

        key = self._get_s3_key(table_id)
        current, etag = self._get_object(key)
        result = self._matches(current, expected, marker_type)
        if result is not AdvanceResult.SUCCESS:
            return result

        condition = {"IfMatch": etag} if etag else {"IfNoneMatch": "*"}
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=json.dumps(record, indent=2).encode("utf-8"),
                ContentType="application/json",
                **condition,
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "ConditionalRequestConflict", "412"):
                return AdvanceResult.CONFLICT_STALE
            raise WatermarkStoreError(
                "Could not write watermark to S3",
                table_id=table_id,
                details={"bucket": self.bucket, "key": key},
                cause=e,
            ) from e

        logger.debug("Saved watermark to s3://%s/%s", self.bucket, key)
        return AdvanceResult.SUCCESS

    def delete(self, table_id: str) -> bool:
        key = self._get_s3_key(table_id)
        current, _ = self._get_object(key)
        if current is None:
            return False
        self.client.delete_object(Bucket=self.bucket, Key=key)
        logger.info("Deleted watermark from s3://%s/%s", self.bucket, key)
        return True

    def _list_records(self) -> List[Dict[str, Any]]:
        records = []
        paginator = self.client.get_paginator("list_objects_v2")
        prefix = f"{self.prefix}/" if self.prefix else ""
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for obj in page.get("Contents", []):
                if not obj["Key"].endswith("_watermark.json"):
                    continue
                record, _ = self._get_object(obj["Key"])
                if record is not None:
                    records.append(record)
        return records


def build_watermark_store(
    backend: str = "local",
    *,
    path: Optional[str] = None,
    bucket: Optional[str] = None,
    prefix: str = "_watermarks",
    **options: Any,
) -> WatermarkStore:
    """Create a watermark store from configuration values.

    Args:
        backend: "local", "memory" or "s3"
        path: State directory for the local backend
        bucket: Bucket for the S3 backend
        prefix: Key prefix for the S3 backend
        **options: Extra boto3 client options (endpoint_url, region_name)

    Raises:
        ConfigurationError: If the backend is unknown
    """
    backend = (backend or "local").lower()
    if backend == "memory":
        return InMemoryWatermarkStore()
    if backend == "local":
        return LocalWatermarkStore(Path(path) if path else None)
    if backend == "s3":
        return S3WatermarkStore(bucket or "", prefix=prefix, **options)
    raise ConfigurationError(
        f"Unsupported watermark store backend: {backend}",
        field="state.backend",
        value=backend,
        suggestion="Use one of: local, memory, s3",
    )

