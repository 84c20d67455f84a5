"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
from typing import Any

import pytest

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from ingestion.lib.models import TableDescriptor  # noqa: E402
from ingestion.lib.state import InMemoryWatermarkStore  # noqa: E402
from tests.fakes import S3_BUCKET, FakeExtractor, RecordingSink  # noqa: E402


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store():
    return InMemoryWatermarkStore()


@pytest.fixture
def descriptor_factory():
    """Build TableDescriptors with sensible defaults."""

    def factory(table_id: str = "t1", **kwargs: Any) -> TableDescriptor:
        kwargs.setdefault("change_column", "updated_at")
        return TableDescriptor(table_id=table_id, **kwargs)

    return factory


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)


@pytest.fixture
def s3_client(aws_credentials):
    """A moto-backed S3 client with an empty test bucket."""
    import boto3
    from moto import mock_aws

    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=S3_BUCKET)
        yield client


@pytest.fixture
def restore_logging():
    """Undo root logger changes made by the CLI's setup_logging."""
    import logging

    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)
