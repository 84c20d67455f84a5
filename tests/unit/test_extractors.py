"""Tests for ingestion/lib/extractors - reference database and HTTP extractors."""

from datetime import datetime, timedelta, timezone

import pytest
import requests
from sqlalchemy import create_engine, text

from ingestion.lib.config_loader import SourceSettings
from ingestion.lib.errors import ConfigurationError, ExtractionError
from ingestion.lib.extractors import DatabaseExtractor, HttpExtractor, build_extractor
from ingestion.lib.extractors.database import _db_value
from ingestion.lib.markers import EPOCH, MarkerType
from ingestion.lib.models import RunStatus, TableDescriptor
from ingestion.lib.runner import DeltaRunner
from ingestion.lib.sink import StorageSink
from ingestion.lib.state import LocalWatermarkStore
from ingestion.lib.storage import LocalStorage

# Versions repeat so page boundaries can fall inside a run of equal markers
ORDERS = [
    {"id": 1, "version": 1, "amount": 10},
    {"id": 2, "version": 2, "amount": 20},
    {"id": 3, "version": 2, "amount": 30},
    {"id": 4, "version": 2, "amount": 40},
    {"id": 5, "version": 3, "amount": 50},
]


@pytest.fixture
def sqlite_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'source.db'}"
    engine = create_engine(url)
    with engine.begin() as conn:
        conn.execute(
            text("CREATE TABLE orders (id INTEGER PRIMARY KEY, version INTEGER, amount INTEGER)")
        )
        conn.execute(
            text("INSERT INTO orders (id, version, amount) VALUES (:id, :version, :amount)"),
            ORDERS,
        )
    engine.dispose()
    return url


@pytest.fixture
def db_extractor(sqlite_url):
    extractor = DatabaseExtractor(sqlite_url)
    yield extractor
    extractor.dispose()


class TestDatabaseExtractor:
    """Tests for DatabaseExtractor against SQLite."""

    def test_fetch_all(self, db_extractor):
        page = db_extractor.fetch("orders", "version", 0, 100, {})
        assert sorted(r["id"] for r in page.rows) == [1, 2, 3, 4, 5]
        assert page.max_marker == 3
        assert not page.has_more

    def test_fetch_after_marker(self, db_extractor):
        page = db_extractor.fetch("orders", "version", 2, 100, {})
        assert [r["id"] for r in page.rows] == [5]

    def test_nothing_new(self, db_extractor):
        page = db_extractor.fetch("orders", "version", 3, 100, {})
        assert page.rows == []
        assert page.max_marker is None
        assert not page.has_more

    def test_page_stops_before_tied_markers(self, db_extractor):
        page = db_extractor.fetch("orders", "version", 0, 2, {})
        assert [r["id"] for r in page.rows] == [1]
        assert page.max_marker == 1
        assert page.has_more

    def test_page_of_one_marker_takes_all_ties(self, db_extractor):
        page = db_extractor.fetch("orders", "version", 1, 2, {})
        assert sorted(r["id"] for r in page.rows) == [2, 3, 4]
        assert page.max_marker == 2
        assert page.has_more

    def test_page_ending_on_marker_change(self, db_extractor):
        page = db_extractor.fetch("orders", "version", 0, 4, {})
        assert sorted(r["id"] for r in page.rows) == [1, 2, 3, 4]
        assert page.has_more

    def test_table_param(self, db_extractor):
        page = db_extractor.fetch("sales.orders", "version", 0, 100, {"table": "orders"})
        assert len(page.rows) == 5

    def test_base_query(self, db_extractor):
        params = {"base_query": "SELECT id, version FROM orders WHERE amount > 25"}
        page = db_extractor.fetch("big_orders", "version", 0, 100, params)
        assert sorted(r["id"] for r in page.rows) == [3, 4, 5]
        assert set(page.rows[0]) == {"id", "version"}

    def test_url_env(self, sqlite_url, monkeypatch):
        monkeypatch.setenv("TEST_SOURCE_URL", sqlite_url)
        extractor = DatabaseExtractor()
        page = extractor.fetch("orders", "version", 0, 100, {"url_env": "TEST_SOURCE_URL"})
        assert len(page.rows) == 5
        extractor.dispose()

    def test_url_env_missing(self, monkeypatch):
        monkeypatch.delenv("TEST_SOURCE_URL", raising=False)
        with pytest.raises(ConfigurationError, match="TEST_SOURCE_URL"):
            DatabaseExtractor().fetch("orders", "version", 0, 10, {"url_env": "TEST_SOURCE_URL"})

    def test_no_url(self):
        with pytest.raises(ConfigurationError, match="No database URL"):
            DatabaseExtractor().fetch("orders", "version", 0, 10, {})

    def test_engine_injection(self, sqlite_url):
        engine = create_engine(sqlite_url)
        page = DatabaseExtractor(engine=engine).fetch("orders", "version", 0, 100, {})
        assert len(page.rows) == 5
        engine.dispose()

    @pytest.mark.parametrize("column", ["version; DROP TABLE orders", "1version", ""])
    def test_invalid_column(self, db_extractor, column):
        with pytest.raises(ConfigurationError, match="Invalid change column"):
            db_extractor.fetch("orders", column, 0, 10, {})

    def test_invalid_table(self, db_extractor):
        with pytest.raises(ConfigurationError, match="Invalid table name"):
            db_extractor.fetch("orders", "version", 0, 10, {"table": "orders o, users"})

    def test_query_failure(self, db_extractor):
        with pytest.raises(ExtractionError, match="Database query failed"):
            db_extractor.fetch("missing_table", "version", 0, 10, {})

    def test_composite_marker_rejected(self, db_extractor):
        with pytest.raises(ConfigurationError, match="Composite"):
            db_extractor.fetch("orders", "version", (1, 2), 10, {})

    def test_build_query(self):
        query = DatabaseExtractor().build_query("dbo.Orders", "updated_at", {})
        assert query == "SELECT * FROM dbo.Orders WHERE updated_at > :after ORDER BY updated_at"

    def test_aware_datetimes_bound_as_utc(self):
        value = datetime(2024, 1, 3, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        assert _db_value(value) == datetime(2024, 1, 3, 0, 0)
        assert _db_value(5) == 5

    def test_runner_end_to_end(self, sqlite_url, tmp_path):
        extractor = DatabaseExtractor(sqlite_url)
        sink = StorageSink(LocalStorage(str(tmp_path / "out")))
        store = LocalWatermarkStore(tmp_path / "state")
        descriptor = TableDescriptor(
            "orders", "version", batch_size=2, marker_type=MarkerType.INTEGER
        )

        outcome = DeltaRunner(extractor, sink, store).run(descriptor)
        extractor.dispose()

        assert outcome.status is RunStatus.SUCCEEDED
        assert outcome.rows_processed == 5
        assert outcome.pages == 3
        assert store.get("orders", 0, MarkerType.INTEGER).marker == 3
        assert sorted(sink.read_batch("orders", "0__3")["id"]) == [1, 2, 3, 4, 5]


class FakeResponse:
    def __init__(self, payload=None, status_code=200, invalid_json=False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error", response=self)

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value")
        return self.payload


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []
        self.headers = {}

    def get(self, url, params=None, headers=None, timeout=None):
        self.requests.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class TestHttpExtractor:
    """Tests for HttpExtractor with a fake session."""

    def test_list_payload(self):
        session = FakeSession(FakeResponse([{"id": 1}, {"id": 2}]))
        extractor = HttpExtractor("https://api.example.com/v1/", session=session, timeout=5)

        page = extractor.fetch("orders", "updated_at", EPOCH, 2, {})

        assert len(page.rows) == 2
        assert page.has_more
        request = session.requests[0]
        assert request["url"] == "https://api.example.com/v1/orders"
        assert request["params"] == {"after": "1970-01-01T00:00:00+00:00", "limit": 2}
        assert request["timeout"] == 5

    def test_short_list_is_last_page(self):
        session = FakeSession(FakeResponse([{"id": 1}]))
        page = HttpExtractor("https://api", session=session).fetch("orders", "ts", EPOCH, 5, {})
        assert not page.has_more

    def test_object_payload(self):
        payload = {"items": [{"id": 1}], "has_more": True, "max_marker": "2024-01-03T00:00:00Z"}
        session = FakeSession(FakeResponse(payload))
        params = {
            "base_url": "https://other.example.com",
            "endpoint": "/v2/orders",
            "after_param": "since",
            "limit_param": "page_size",
            "data_key": "items",
        }

        page = HttpExtractor(session=session).fetch("orders", "ts", 41, 100, params)

        assert page.has_more
        assert page.max_marker == "2024-01-03T00:00:00Z"
        assert session.requests[0]["url"] == "https://other.example.com/v2/orders"
        assert session.requests[0]["params"] == {"since": "41", "page_size": 100}

    def test_empty_page_never_has_more(self):
        session = FakeSession(FakeResponse({"data": [], "has_more": True}))
        page = HttpExtractor("https://api", session=session).fetch("orders", "ts", EPOCH, 5, {})
        assert not page.has_more

    def test_bearer_token(self, monkeypatch):
        monkeypatch.setenv("TEST_API_TOKEN", "secret")
        session = FakeSession(FakeResponse([]))
        HttpExtractor("https://api", session=session).fetch(
            "orders", "ts", EPOCH, 5, {"token_env": "TEST_API_TOKEN"}
        )
        assert session.requests[0]["headers"] == {"Authorization": "Bearer secret"}

    def test_missing_token(self, monkeypatch):
        monkeypatch.delenv("TEST_API_TOKEN", raising=False)
        extractor = HttpExtractor("https://api", session=FakeSession())
        with pytest.raises(ConfigurationError, match="TEST_API_TOKEN"):
            extractor.fetch("orders", "ts", EPOCH, 5, {"token_env": "TEST_API_TOKEN"})

    def test_no_base_url(self):
        with pytest.raises(ConfigurationError, match="No base_url"):
            HttpExtractor(session=FakeSession()).fetch("orders", "ts", EPOCH, 5, {})

    def test_server_error(self):
        session = FakeSession(FakeResponse(status_code=503))
        with pytest.raises(ExtractionError, match="API request failed") as exc_info:
            HttpExtractor("https://api", session=session).fetch("orders", "ts", EPOCH, 5, {})
        assert exc_info.value.details["status_code"] == 503
        assert exc_info.value.details["retryable"] is True

    def test_client_error_not_retryable(self):
        session = FakeSession(FakeResponse(status_code=404))
        with pytest.raises(ExtractionError) as exc_info:
            HttpExtractor("https://api", session=session).fetch("orders", "ts", EPOCH, 5, {})
        assert exc_info.value.details["retryable"] is False

    def test_connection_error(self):
        session = FakeSession(requests.ConnectionError("refused"))
        with pytest.raises(ExtractionError, match="refused"):
            HttpExtractor("https://api", session=session).fetch("orders", "ts", EPOCH, 5, {})

    def test_invalid_json(self):
        session = FakeSession(FakeResponse(invalid_json=True))
        with pytest.raises(ExtractionError, match="not valid JSON"):
            HttpExtractor("https://api", session=session).fetch("orders", "ts", EPOCH, 5, {})

    @pytest.mark.parametrize("payload", ["text", [1, 2], {"data": "nope"}])
    def test_malformed_payloads(self, payload):
        session = FakeSession(FakeResponse(payload))
        with pytest.raises(ExtractionError):
            HttpExtractor("https://api", session=session).fetch("orders", "ts", EPOCH, 5, {})

    def test_session_headers(self):
        session = FakeSession()
        HttpExtractor("https://api", session=session, headers={"X-Client": "ingest"})
        assert session.headers == {"X-Client": "ingest"}


class TestBuildExtractor:
    def test_database(self):
        extractor = build_extractor(SourceSettings(type="database", options={"url": "sqlite://"}))
        assert isinstance(extractor, DatabaseExtractor)
        assert extractor.url == "sqlite://"

    def test_http(self):
        extractor = build_extractor(
            SourceSettings(
                type="http",
                options={"base_url": "https://api", "timeout": "10", "headers": {"X-A": "1"}},
            )
        )
        assert isinstance(extractor, HttpExtractor)
        assert extractor.base_url == "https://api"
        assert extractor.timeout == 10.0
        assert extractor.session.headers["X-A"] == "1"

    def test_overrides(self):
        extractor = build_extractor(SourceSettings(type="http"), base_url="https://override")
        assert extractor.base_url == "https://override"

    @pytest.mark.parametrize("source_type", [None, "ftp"])
    def test_unsupported(self, source_type):
        with pytest.raises(ConfigurationError, match="Unsupported source type"):
            build_extractor(SourceSettings(type=source_type))
