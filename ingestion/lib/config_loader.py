"""YAML settings loader for the orchestrator.

Example YAML (ingest.yaml):
    orchestrator:
      concurrency_limit: 8
      max_pages: 100
      table_timeout_seconds: 900
      registry: ./tables.yaml
      retry:
        max_attempts: 3
        backoff_seconds: 2
      state:
        backend: s3
        bucket: ${INGEST_BUCKET}
        prefix: _watermarks
      sink:
        backend: local
        path: ./output
        format: parquet
      source:
        type: database
        url: ${SALES_DB_URL}

Usage:
    # Command line
    ingest-cycle run ./ingest.yaml

    # Python API
    from ingestion.lib.config_loader import load_settings
    settings = load_settings("./ingest.yaml")

Environment overrides (applied after the file is read):
    INGEST_CONCURRENCY, INGEST_MAX_PAGES, INGEST_TABLE_TIMEOUT,
    INGEST_CYCLE_TIMEOUT, INGEST_STATE_DIR, INGEST_REGISTRY
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from ingestion.lib.env import expand_config, load_env_file
from ingestion.lib.errors import ConfigurationError
from ingestion.lib.resilience import RetryConfig

logger = logging.getLogger(__name__)

__all__ = [
    "OrchestratorSettings",
    "StateSettings",
    "SinkSettings",
    "SourceSettings",
    "load_settings",
    "settings_from_dict",
    "apply_env_overrides",
]

SINK_FORMATS = ("parquet", "csv", "jsonl")


def _resolve_path(path: Optional[str], config_dir: Path) -> Optional[str]:
    """Resolve ``./`` and ``../`` paths relative to the settings file."""
    if not path:
        return path
    if path.startswith(("s3://", "http://", "https://")) or os.path.isabs(path):
        return path
    if path.startswith("./") or path.startswith("../"):
        return str(config_dir / path)
    return path


def _client_options(data: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: data[k] for k in ("endpoint_url", "region_name") if data.get(k)}


@dataclass
class StateSettings:
    """Where watermarks are persisted."""

    backend: str = "local"
    path: Optional[str] = None
    bucket: Optional[str] = None
    prefix: str = "_watermarks"
    client_options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], config_dir: Path) -> "StateSettings":
        return cls(
            backend=str(data.get("backend", "local")).lower(),
            path=_resolve_path(data.get("path"), config_dir),
            bucket=data.get("bucket"),
            prefix=str(data.get("prefix", "_watermarks")),
            client_options=_client_options(data),
        )


@dataclass
class SinkSettings:
    """Where extracted batches are written and in which format."""

    backend: str = "local"
    path: str = "./output"
    bucket: Optional[str] = None
    prefix: str = ""
    format: str = "parquet"
    client_options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], config_dir: Path) -> "SinkSettings":
        return cls(
            backend=str(data.get("backend", "local")).lower(),
            path=_resolve_path(data.get("path"), config_dir) or "./output",
            bucket=data.get("bucket"),
            prefix=str(data.get("prefix", "")),
            format=str(data.get("format", "parquet")).lower(),
            client_options=_client_options(data),
        )


@dataclass
class SourceSettings:
    """Which reference extractor to build and its connection options."""

    type: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SourceSettings":
        options = {k: v for k, v in data.items() if k != "type"}
        source_type = data.get("type")
        return cls(type=str(source_type).lower() if source_type else None, options=options)


@dataclass
class OrchestratorSettings:
    """Tunables for one orchestration cycle."""

    concurrency_limit: int = 4
    max_pages: int = 100
    table_timeout_seconds: Optional[float] = None
    cycle_timeout_seconds: Optional[float] = None
    retry: RetryConfig = field(default_factory=RetryConfig.none)
    state: StateSettings = field(default_factory=StateSettings)
    sink: SinkSettings = field(default_factory=SinkSettings)
    source: SourceSettings = field(default_factory=SourceSettings)
    registry_path: Optional[str] = None

    def validate(self) -> "OrchestratorSettings":
        """Check value ranges.

        Raises:
            ConfigurationError: If a setting is out of range
        """
        if self.concurrency_limit < 1:
            raise ConfigurationError(
                "concurrency_limit must be at least 1",
                field="concurrency_limit",
                value=self.concurrency_limit,
            )
        if self.max_pages < 1:
            raise ConfigurationError(
                "max_pages must be at least 1", field="max_pages", value=self.max_pages
            )
        for name in ("table_timeout_seconds", "cycle_timeout_seconds"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{name} must be positive", field=name, value=value)
        if self.retry.max_attempts < 1:
            raise ConfigurationError(
                "retry.max_attempts must be at least 1",
                field="retry.max_attempts",
                value=self.retry.max_attempts,
            )
        if self.sink.format not in SINK_FORMATS:
            raise ConfigurationError(
                f"Unsupported sink format: {self.sink.format}",
                field="sink.format",
                value=self.sink.format,
                suggestion=f"Use one of: {', '.join(SINK_FORMATS)}",
            )
        return self


def _number(data: Mapping[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"{key} must be a number", field=key, value=value
        ) from e


def settings_from_dict(
    data: Optional[Mapping[str, Any]],
    config_dir: Optional[Path] = None,
) -> OrchestratorSettings:
    """Build settings from a parsed mapping (the ``orchestrator`` section).

    Raises:
        ConfigurationError: If a value has the wrong type or range
    """
    config_dir = config_dir or Path.cwd()
    data = expand_config(dict(data or {}))

    for section in ("retry", "state", "sink", "source"):
        if data.get(section) is not None and not isinstance(data[section], Mapping):
            raise ConfigurationError(
                f"{section} must be a mapping", field=section, value=data[section]
            )

    try:
        retry = RetryConfig.from_dict(data.get("retry"))
    except (TypeError, ValueError) as e:
        raise ConfigurationError("Invalid retry settings", field="retry", cause=e) from e

    settings = OrchestratorSettings(
        concurrency_limit=_number(data, "concurrency_limit", int, 4),
        max_pages=_number(data, "max_pages", int, 100),
        table_timeout_seconds=_number(data, "table_timeout_seconds", float, None),
        cycle_timeout_seconds=_number(data, "cycle_timeout_seconds", float, None),
        retry=retry,
        state=StateSettings.from_dict(data.get("state") or {}, config_dir),
        sink=SinkSettings.from_dict(data.get("sink") or {}, config_dir),
        source=SourceSettings.from_dict(data.get("source") or {}),
        registry_path=_resolve_path(data.get("registry"), config_dir),
    )
    return settings


def apply_env_overrides(settings: OrchestratorSettings) -> OrchestratorSettings:
    """Apply ``INGEST_*`` environment overrides in place."""
    overrides = {
        "INGEST_CONCURRENCY": ("concurrency_limit", int),
        "INGEST_MAX_PAGES": ("max_pages", int),
        "INGEST_TABLE_TIMEOUT": ("table_timeout_seconds", float),
        "INGEST_CYCLE_TIMEOUT": ("cycle_timeout_seconds", float),
    }
    for env_name, (attr, kind) in overrides.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            setattr(settings, attr, kind(raw))
        except ValueError as e:
            raise ConfigurationError(
                f"{env_name} must be a number", field=env_name, value=raw
            ) from e
        logger.debug("Override %s from %s", attr, env_name)

    state_dir = os.environ.get("INGEST_STATE_DIR")
    if state_dir and settings.state.backend == "local":
        settings.state.path = state_dir
    registry = os.environ.get("INGEST_REGISTRY")
    if registry:
        settings.registry_path = registry
    return settings


def load_settings(
    path: Optional[Union[str, Path]] = None,
    *,
    env_file: Optional[Union[str, Path]] = None,
) -> OrchestratorSettings:
    """Load orchestrator settings from YAML plus environment overrides.

    Args:
        path: Settings file; defaults only when omitted
        env_file: Optional .env file loaded before expansion

    Returns:
        Validated OrchestratorSettings

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid
    """
    load_env_file(env_file)

    data: Dict[str, Any] = {}
    config_dir = Path.cwd()
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f"Settings file not found: {path}")
        try:
            with open(path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {path}", cause=e) from e
        if not isinstance(loaded, Mapping):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")
        data = loaded.get("orchestrator", loaded)
        if not isinstance(data, Mapping):
            raise ConfigurationError("orchestrator section must be a mapping", field="orchestrator")
        config_dir = path.parent

    settings = apply_env_overrides(settings_from_dict(data, config_dir))
    logger.debug("Loaded settings: %s", settings)
    return settings.validate()
