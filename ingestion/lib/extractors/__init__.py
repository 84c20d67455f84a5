"""Reference extractors for common source types.

Usage:
    from ingestion.lib.extractors import build_extractor

    extractor = build_extractor(settings.source)
"""

from typing import Any

from ingestion.lib.config_loader import SourceSettings
from ingestion.lib.errors import ConfigurationError
from ingestion.lib.extractors.database import DatabaseExtractor
from ingestion.lib.extractors.http import HttpExtractor
from ingestion.lib.ports import Extractor

__all__ = ["DatabaseExtractor", "HttpExtractor", "build_extractor"]


def build_extractor(settings: SourceSettings, **overrides: Any) -> Extractor:
    """Create the reference extractor named by ``source.type``.

    Raises:
        ConfigurationError: If no type or an unknown type is configured
    """
    options = dict(settings.options)
    options.update(overrides)

    if settings.type == "database":
        return DatabaseExtractor(options.get("url"))
    if settings.type == "http":
        headers = options.get("headers")
        return HttpExtractor(
            options.get("base_url"),
            timeout=float(options.get("timeout", 30.0)),
            headers=dict(headers) if headers else None,
        )
    raise ConfigurationError(
        f"Unsupported source type: {settings.type}",
        field="source.type",
        value=settings.type,
        suggestion="Use one of: database, http",
    )
