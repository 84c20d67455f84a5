"""REST API extraction with marker-based paging."""

from __future__ import annotations

import json
import logging
import os
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

import requests

from ingestion.lib.errors import ConfigurationError, ExtractionError
from ingestion.lib.models import ExtractionResult
from ingestion.lib.ports import Extractor

logger = logging.getLogger(__name__)

__all__ = ["HttpExtractor", "RETRYABLE_STATUS_CODES"]

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


def _query_value(marker: Any) -> str:
    if isinstance(marker, (datetime, date)):
        return marker.isoformat()
    if isinstance(marker, tuple):
        return json.dumps([_query_value(m) if isinstance(m, (datetime, date)) else m for m in marker])
    return str(marker)


class HttpExtractor(Extractor):
    """Extractor for JSON APIs that filter by a change marker.

    Registry params:
        base_url: API root (falls back to the constructor value)
        endpoint: Path appended to base_url (defaults to the table id)
        after_param: Query parameter for the marker (default ``after``)
        limit_param: Query parameter for the page size (default ``limit``)
        data_key: Key of the row list in an object response (default ``data``)
        token_env: Environment variable holding a bearer token

    The response is either a JSON list of rows or an object such as
    ``{"data": [...], "has_more": true, "max_marker": "..."}``.

    Example:
        extractor = HttpExtractor("https://api.example.com/v1")
        page = extractor.fetch("orders", "updated_at", EPOCH, 500, {})
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout
        if headers:
            self.session.headers.update(headers)

    def _url(self, table_id: str, params: Mapping[str, str]) -> str:
        base_url = params.get("base_url") or self.base_url
        if not base_url:
            raise ConfigurationError(
                "No base_url configured",
                field="params.base_url",
                table_id=table_id,
            )
        endpoint = params.get("endpoint") or table_id
        return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"

    def _headers(self, table_id: str, params: Mapping[str, str]) -> Dict[str, str]:
        env_name = params.get("token_env")
        if not env_name:
            return {}
        token = os.environ.get(env_name)
        if not token:
            raise ConfigurationError(
                f"Environment variable '{env_name}' not set for API token",
                field="params.token_env",
                value=env_name,
                table_id=table_id,
            )
        return {"Authorization": f"Bearer {token}"}

    def fetch(
        self,
        table_id: str,
        change_column: str,
        after_marker: Any,
        page_size: int,
        params: Mapping[str, str],
    ) -> ExtractionResult:
        url = self._url(table_id, params)
        query = {
            params.get("after_param", "after"): _query_value(after_marker),
            params.get("limit_param", "limit"): page_size,
        }

        try:
            response = self.session.get(
                url,
                params=query,
                headers=self._headers(table_id, params),
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            status = getattr(getattr(e, "response", None), "status_code", None)
            raise ExtractionError(
                f"API request failed: {e}",
                table_id=table_id,
                details={
                    "url": url,
                    "status_code": status,
                    "retryable": status in RETRYABLE_STATUS_CODES if status else True,
                },
                cause=e,
            ) from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ExtractionError(
                "API response is not valid JSON",
                table_id=table_id,
                details={"url": url},
                cause=e,
            ) from e

        rows: List[Dict[str, Any]]
        max_marker = None
        if isinstance(payload, list):
            rows = payload
            has_more = len(rows) >= page_size
        elif isinstance(payload, dict):
            rows = payload.get(params.get("data_key", "data")) or []
            has_more = bool(payload.get("has_more", len(rows) >= page_size))
            max_marker = payload.get("max_marker")
        else:
            raise ExtractionError(
                f"Unexpected API response type {type(payload).__name__}",
                table_id=table_id,
                details={"url": url},
            )

        if not isinstance(rows, list) or not all(isinstance(r, dict) for r in rows):
            raise ExtractionError(
                "API response rows must be JSON objects", table_id=table_id, details={"url": url}
            )

        logger.debug("[%s] GET %s returned %d rows (has_more=%s)", table_id, url, len(rows), has_more)
        return ExtractionResult(
            table_id=table_id,
            rows=rows,
            max_marker=max_marker,
            has_more=has_more and bool(rows),
        )
