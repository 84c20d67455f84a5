"""Storage backend abstraction for the storage sink.

Usage:
    from ingestion.lib.storage import get_storage

    # Local filesystem
    storage = get_storage("./output/")

    # AWS S3
    storage = get_storage("s3://my-bucket/landing/")
"""

from typing import Any, Tuple

from ingestion.lib.storage.base import FileInfo, StorageBackend, StorageResult
from ingestion.lib.storage.local import LocalStorage
from ingestion.lib.storage.s3 import S3Storage

__all__ = [
    "FileInfo",
    "StorageBackend",
    "StorageResult",
    "LocalStorage",
    "S3Storage",
    "get_storage",
    "parse_uri",
]


def parse_uri(path: str) -> Tuple[str, str]:
    """Parse a storage URI into scheme and path.

    Examples:
        >>> parse_uri("./output/")
        ('local', './output/')
        >>> parse_uri("s3://my-bucket/landing/")
        ('s3', 'my-bucket/landing/')
    """
    if path.startswith("s3://"):
        return ("s3", path[5:])
    return ("local", path)


def get_storage(path: str, **options: Any) -> StorageBackend:
    """Get the appropriate storage backend for a path.

    Args:
        path: Storage path (local path or s3:// URI)
        **options: Backend-specific options (endpoint_url, region_name, client)
    """
    scheme, _ = parse_uri(path)
    if scheme == "s3":
        return S3Storage(path, **options)
    return LocalStorage(path, **options)
