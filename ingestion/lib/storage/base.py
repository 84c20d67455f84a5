"""Abstract base class for storage backends.

Defines the interface the storage sink writes batches through.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

__all__ = ["StorageBackend", "StorageResult", "FileInfo"]


@dataclass
class FileInfo:
    """Information about a file in storage."""

    path: str
    size: int
    modified: Optional[datetime] = None


@dataclass
class StorageResult:
    """Result of a storage operation."""

    success: bool
    path: str
    files_written: List[str] = field(default_factory=list)
    bytes_written: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "path": self.path,
            "files_written": self.files_written,
            "bytes_written": self.bytes_written,
            "error": self.error,
        }


class StorageBackend(ABC):
    """Abstract base class for storage backends.

    Provides a unified interface for reading and writing batch files to
    different storage systems (local filesystem, S3).

    Writes must replace an existing object at the same path, which is what
    makes repeated batch writes idempotent.
    """

    def __init__(self, base_path: str, **options: Any) -> None:
        """Initialize the storage backend.

        Args:
            base_path: Base path for this storage backend
            **options: Backend-specific options
        """
        self.base_path = base_path
        self.options = options

    @property
    @abstractmethod
    def scheme(self) -> str:
        """Return the URI scheme for this backend ('local' or 's3')."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check if a path exists.

        Args:
            path: Path to check (relative to base_path)
        """

    @abstractmethod
    def list_files(self, path: str = "", recursive: bool = False) -> List[FileInfo]:
        """List files at a path.

        Args:
            path: Path to list (relative to base_path)
            recursive: If True, list files recursively

        Returns:
            List of FileInfo objects with paths relative to ``path``
        """

    @abstractmethod
    def read_bytes(self, path: str) -> bytes:
        """Read file contents as bytes."""

    @abstractmethod
    def write_bytes(self, path: str, data: bytes) -> StorageResult:
        """Write bytes to a file, replacing any existing content.

        Returns:
            StorageResult with operation details; failures are reported in
            the result rather than raised
        """

    @abstractmethod
    def delete(self, path: str) -> bool:
        """Delete a file or directory.

        Returns:
            True if deleted, False if not found
        """

    def read_text(self, path: str, encoding: str = "utf-8") -> str:
        return self.read_bytes(path).decode(encoding)

    def write_text(self, path: str, data: str, encoding: str = "utf-8") -> StorageResult:
        return self.write_bytes(path, data.encode(encoding))

    def get_full_path(self, path: str) -> str:
        """Get the full path including base_path."""
        if not path:
            return self.base_path
        if path.startswith(("s3://", "/")):
            return path
        base = self.base_path.rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(base_path={self.base_path!r})"
