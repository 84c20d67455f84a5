"""Database extraction through SQLAlchemy with marker-based paging."""

from __future__ import annotations

import logging
import os
import re
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ingestion.lib.errors import ConfigurationError, ExtractionError
from ingestion.lib.models import ExtractionResult
from ingestion.lib.ports import Extractor

logger = logging.getLogger(__name__)

__all__ = ["DatabaseExtractor"]

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_$]*(\.[A-Za-z_][A-Za-z0-9_$]*)*$")


def _db_value(marker: Any) -> Any:
    """Convert a marker into a value DB drivers accept as a bound parameter."""
    if isinstance(marker, datetime) and marker.tzinfo is not None:
        return marker.astimezone(timezone.utc).replace(tzinfo=None)
    return marker


class DatabaseExtractor(Extractor):
    """Extractor for relational sources reachable through SQLAlchemy.

    Registry params:
        table: Source table (defaults to the table id)
        base_query: Query to wrap instead of a table
        url_env: Environment variable holding the SQLAlchemy URL
        url: Literal SQLAlchemy URL (prefer url_env for credentials)

    Each page runs ``SELECT * FROM <source> WHERE <col> > :after ORDER BY <col>``
    and reads ``page_size + 1`` rows to learn whether more remain. Rows that
    share the boundary marker are never split across pages, because the next
    page starts strictly after the page's maximum marker.

    Example:
        extractor = DatabaseExtractor("postgresql://user:pw@db01/sales")
        page = extractor.fetch("dbo.Orders", "updated_at", EPOCH, 5000, {})
    """

    def __init__(self, url: Optional[str] = None, *, engine: Optional[Engine] = None) -> None:
        self.url = url
        self._engines: Dict[str, Engine] = {}
        self._default_engine = engine
        self._lock = threading.Lock()

    def _get_url(self, table_id: str, params: Mapping[str, str]) -> Optional[str]:
        if params.get("url"):
            return params["url"]
        env_name = params.get("url_env")
        if env_name:
            value = os.environ.get(env_name)
            if not value:
                raise ConfigurationError(
                    f"Environment variable '{env_name}' not set for database URL",
                    field="params.url_env",
                    value=env_name,
                    table_id=table_id,
                )
            return value
        return self.url

    def _get_engine(self, table_id: str, params: Mapping[str, str]) -> Engine:
        url = self._get_url(table_id, params)
        if url is None:
            if self._default_engine is not None:
                return self._default_engine
            raise ConfigurationError(
                "No database URL configured",
                field="params.url_env",
                table_id=table_id,
                suggestion="Set params.url_env or source.url.",
            )
        with self._lock:
            engine = self._engines.get(url)
            if engine is None:
                engine = create_engine(url, pool_pre_ping=True)
                self._engines[url] = engine
            return engine

    def build_query(self, table_id: str, change_column: str, params: Mapping[str, str]) -> str:
        """Build the paging query for a table."""
        if not _IDENTIFIER.match(change_column):
            raise ConfigurationError(
                "Invalid change column name",
                field="change_column",
                value=change_column,
                table_id=table_id,
            )
        base_query = params.get("base_query")
        if base_query:
            source = f"({base_query}) src"
        else:
            source = params.get("table") or table_id
            if not _IDENTIFIER.match(source):
                raise ConfigurationError(
                    "Invalid table name", field="params.table", value=source, table_id=table_id
                )
        return f"SELECT * FROM {source} WHERE {change_column} > :after ORDER BY {change_column}"

    def fetch(
        self,
        table_id: str,
        change_column: str,
        after_marker: Any,
        page_size: int,
        params: Mapping[str, str],
    ) -> ExtractionResult:
        if isinstance(after_marker, tuple):
            raise ConfigurationError(
                "Composite markers are not supported by DatabaseExtractor",
                field="marker_type",
                table_id=table_id,
            )
        engine = self._get_engine(table_id, params)
        query = self.build_query(table_id, change_column, params)
        logger.debug("[%s] Executing %s with marker %s", table_id, query, after_marker)

        try:
            with engine.connect() as conn:
                result = conn.execute(text(query), {"after": _db_value(after_marker)})
                rows, has_more = self._read_page(result, change_column, page_size)
        except SQLAlchemyError as e:
            raise ExtractionError(
                f"Database query failed: {e}",
                table_id=table_id,
                details={"after_marker": str(after_marker)},
                cause=e,
            ) from e

        max_marker = rows[-1][change_column] if rows else None
        return ExtractionResult(
            table_id=table_id, rows=rows, max_marker=max_marker, has_more=has_more
        )

    @staticmethod
    def _read_page(
        result: Any,
        change_column: str,
        page_size: int,
    ) -> Tuple[List[Dict[str, Any]], bool]:
        mappings = result.mappings()
        fetched = [dict(row) for row in mappings.fetchmany(page_size + 1)]
        if len(fetched) <= page_size:
            return fetched, False

        extra = fetched.pop()
        boundary = extra[change_column]
        if fetched[-1][change_column] != boundary:
            return fetched, True

        # The page would end inside a run of equal markers
        kept = [row for row in fetched if row[change_column] != boundary]
        if kept:
            return kept, True

        # Whole page shares one marker: take every row with it
        fetched.append(extra)
        while True:
            row = mappings.fetchone()
            if row is None:
                return fetched, False
            record = dict(row)
            if record[change_column] != boundary:
                return fetched, True
            fetched.append(record)

    def dispose(self) -> None:
        """Close pooled connections."""
        with self._lock:
            for engine in self._engines.values():
                engine.dispose()
            self._engines.clear()
