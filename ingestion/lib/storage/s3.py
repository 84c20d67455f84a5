"""AWS S3 storage backend."""

from __future__ import annotations

import logging
import os
from typing import Any, List

from ingestion.lib.storage.base import FileInfo, StorageBackend, StorageResult

logger = logging.getLogger(__name__)

__all__ = ["S3Storage"]


class S3Storage(StorageBackend):
    """AWS S3 storage backend.

    Provides storage operations on AWS S3 using boto3. A ``put_object`` on
    an existing key replaces it, so rewriting a batch is idempotent.

    Example:
        >>> storage = S3Storage("s3://my-bucket/landing/")
        >>> storage.exists("orders/0__42/part-00000.parquet")
        True

    Environment Variables:
        AWS_ACCESS_KEY_ID: AWS access key
        AWS_SECRET_ACCESS_KEY: AWS secret key
        AWS_REGION: AWS region
        AWS_ENDPOINT_URL: Custom S3 endpoint (for MinIO, LocalStack, etc.)

    Options:
        endpoint_url: Custom S3 endpoint
        region_name: AWS region
        client: Pre-built boto3 S3 client
    """

    def __init__(self, base_path: str, **options: Any) -> None:
        self._client = options.pop("client", None)
        super().__init__(base_path, **options)
        self._bucket, self._prefix = self._parse_path(base_path)

    @staticmethod
    def _parse_path(path: str) -> tuple:
        if path.startswith("s3://"):
            path = path[5:]
        parts = path.split("/", 1)
        prefix = parts[1].strip("/") if len(parts) > 1 else ""
        return parts[0], prefix

    @property
    def scheme(self) -> str:
        return "s3"

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def client(self) -> Any:
        """Lazy-load the boto3 S3 client."""
        if self._client is None:
            import boto3

            client_options = {}
            region = self.options.get("region_name") or os.environ.get("AWS_REGION")
            if region:
                client_options["region_name"] = region
            endpoint_url = self.options.get("endpoint_url") or os.environ.get(
                "AWS_ENDPOINT_URL"
            )
            if endpoint_url:
                client_options["endpoint_url"] = endpoint_url

            self._client = boto3.client("s3", **client_options)
        return self._client

    def _get_key(self, path: str) -> str:
        if path.startswith("s3://"):
            return self._parse_path(path)[1]
        path = path.lstrip("/")
        if self._prefix:
            return f"{self._prefix}/{path}" if path else self._prefix
        return path

    def exists(self, path: str) -> bool:
        from botocore.exceptions import ClientError

        key = self._get_key(path)
        try:
            self.client.head_object(Bucket=self._bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") not in ("404", "NoSuchKey", "NotFound"):
                logger.warning("Error checking existence of s3://%s/%s: %s", self._bucket, key, e)
        # A "directory" exists when any object sits under it
        response = self.client.list_objects_v2(
            Bucket=self._bucket, Prefix=key.rstrip("/") + "/", MaxKeys=1
        )
        return response.get("KeyCount", 0) > 0

    def list_files(self, path: str = "", recursive: bool = False) -> List[FileInfo]:
        """List files at a path."""
        key = self._get_key(path)
        prefix = f"{key.rstrip('/')}/" if key else ""

        options = {"Bucket": self._bucket, "Prefix": prefix}
        if not recursive:
            options["Delimiter"] = "/"

        files: List[FileInfo] = []
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(**options):
            for obj in page.get("Contents", []):
                files.append(
                    FileInfo(
                        path=obj["Key"][len(prefix):],
                        size=obj.get("Size", 0),
                        modified=obj.get("LastModified"),
                    )
                )
        return sorted(files, key=lambda f: f.path)

    def read_bytes(self, path: str) -> bytes:
        response = self.client.get_object(Bucket=self._bucket, Key=self._get_key(path))
        return response["Body"].read()

    def write_bytes(self, path: str, data: bytes) -> StorageResult:
        """Write bytes to an object."""
        key = self._get_key(path)
        uri = f"s3://{self._bucket}/{key}"

        try:
            self.client.put_object(Bucket=self._bucket, Key=key, Body=data)
            return StorageResult(
                success=True,
                path=uri,
                files_written=[uri],
                bytes_written=len(data),
            )
        except Exception as e:
            logger.error("Failed to write %s: %s", uri, e)
            return StorageResult(success=False, path=uri, error=str(e))

    def delete(self, path: str) -> bool:
        """Delete an object, or every object under a prefix."""
        key = self._get_key(path)
        keys: List[str] = []
        if self.exists(path):
            keys = [f"{key.rstrip('/')}/{f.path}" for f in self.list_files(path, recursive=True)]
            keys.append(key)
        if not keys:
            return False

        try:
            for start in range(0, len(keys), 1000):
                self.client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": k} for k in keys[start:start + 1000]]},
                )
            return True
        except Exception as e:
            logger.error("Failed to delete s3://%s/%s: %s", self._bucket, key, e)
            return False

    def __repr__(self) -> str:
        return f"S3Storage(bucket={self._bucket!r}, prefix={self._prefix!r})"
