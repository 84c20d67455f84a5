"""Local filesystem storage backend."""

from __future__ import annotations

import logging
import os
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import List

from ingestion.lib.storage.base import FileInfo, StorageBackend, StorageResult

logger = logging.getLogger(__name__)

__all__ = ["LocalStorage"]


class LocalStorage(StorageBackend):
    """Local filesystem storage backend.

    Files are written to a temporary sibling and moved into place with
    ``os.replace``, so a reader never sees a half-written batch file.

    Example:
        >>> storage = LocalStorage("./output/")
        >>> storage.write_bytes("orders/0__42/part-00000.parquet", data)
        >>> storage.exists("orders/0__42/_metadata.json")
        True
    """

    @property
    def scheme(self) -> str:
        return "local"

    def _resolve_path(self, path: str) -> Path:
        return Path(self.get_full_path(path)).resolve()

    def exists(self, path: str) -> bool:
        return self._resolve_path(path).exists()

    def list_files(self, path: str = "", recursive: bool = False) -> List[FileInfo]:
        """List files at a path."""
        resolved = self._resolve_path(path)
        if not resolved.exists():
            return []

        iterator = resolved.rglob("*") if recursive else resolved.iterdir()
        files: List[FileInfo] = []
        for item in iterator:
            if item.is_file():
                stat = item.stat()
                files.append(
                    FileInfo(
                        path=item.relative_to(resolved).as_posix(),
                        size=stat.st_size,
                        modified=datetime.fromtimestamp(stat.st_mtime),
                    )
                )
        return sorted(files, key=lambda f: f.path)

    def read_bytes(self, path: str) -> bytes:
        return self._resolve_path(path).read_bytes()

    def write_bytes(self, path: str, data: bytes) -> StorageResult:
        """Write bytes to a file atomically."""
        resolved = self._resolve_path(path)
        tmp_path = resolved.parent / f".{resolved.name}.{uuid.uuid4().hex}.tmp"

        try:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, resolved)

            return StorageResult(
                success=True,
                path=str(resolved),
                files_written=[str(resolved)],
                bytes_written=len(data),
            )
        except OSError as e:
            logger.error("Failed to write %s: %s", resolved, e)
            if tmp_path.exists():
                tmp_path.unlink()
            return StorageResult(success=False, path=str(resolved), error=str(e))

    def delete(self, path: str) -> bool:
        """Delete a file or directory."""
        resolved = self._resolve_path(path)
        if not resolved.exists():
            return False

        try:
            if resolved.is_dir():
                shutil.rmtree(resolved)
            else:
                resolved.unlink()
            return True
        except OSError as e:
            logger.error("Failed to delete %s: %s", resolved, e)
            return False
