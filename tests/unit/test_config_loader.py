"""Tests for ingestion/lib/config_loader.py - orchestrator settings."""

import pytest

from ingestion.lib.config_loader import (
    OrchestratorSettings,
    apply_env_overrides,
    load_settings,
    settings_from_dict,
)
from ingestion.lib.errors import ConfigurationError
from ingestion.lib.resilience import RetryConfig

OVERRIDE_VARS = (
    "INGEST_CONCURRENCY",
    "INGEST_MAX_PAGES",
    "INGEST_TABLE_TIMEOUT",
    "INGEST_CYCLE_TIMEOUT",
    "INGEST_STATE_DIR",
    "INGEST_REGISTRY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in OVERRIDE_VARS:
        monkeypatch.delenv(name, raising=False)


def write(path, text):
    path.write_text(text, encoding="utf-8")
    return path


class TestLoadSettings:
    """Tests for loading settings files."""

    def test_full_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_INGEST_BUCKET", "state-bucket")
        path = write(
            tmp_path / "ingest.yaml",
            """
orchestrator:
  concurrency_limit: 8
  max_pages: 20
  table_timeout_seconds: 900
  cycle_timeout_seconds: 3600
  registry: ./tables.yaml
  retry:
    max_attempts: 3
    backoff_seconds: 2
  state:
    backend: S3
    bucket: ${TEST_INGEST_BUCKET}
    prefix: wm
    endpoint_url: http://localhost:9000
  sink:
    backend: local
    path: ./output
    format: CSV
  source:
    type: HTTP
    base_url: https://api.example.com
""",
        )
        settings = load_settings(path)

        assert settings.concurrency_limit == 8
        assert settings.max_pages == 20
        assert settings.table_timeout_seconds == 900.0
        assert settings.cycle_timeout_seconds == 3600.0
        assert settings.registry_path == str(tmp_path / "tables.yaml")
        assert settings.retry == RetryConfig(max_attempts=3, backoff_seconds=2.0)
        assert settings.state.backend == "s3"
        assert settings.state.bucket == "state-bucket"
        assert settings.state.prefix == "wm"
        assert settings.state.client_options == {"endpoint_url": "http://localhost:9000"}
        assert settings.sink.path == str(tmp_path / "output")
        assert settings.sink.format == "csv"
        assert settings.source.type == "http"
        assert settings.source.options == {"base_url": "https://api.example.com"}

    def test_top_level_mapping_without_section(self, tmp_path):
        path = write(tmp_path / "ingest.yaml", "concurrency_limit: 2\n")
        assert load_settings(path).concurrency_limit == 2

    def test_defaults(self):
        settings = load_settings()
        assert settings.concurrency_limit == 4
        assert settings.max_pages == 100
        assert settings.table_timeout_seconds is None
        assert settings.retry.max_attempts == 1
        assert settings.state.backend == "local"
        assert settings.sink.format == "parquet"
        assert settings.source.type is None

    def test_null_values_use_defaults(self, tmp_path):
        path = write(tmp_path / "ingest.yaml", "orchestrator:\n  concurrency_limit:\n")
        assert load_settings(path).concurrency_limit == 4

    def test_env_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_DOTENV_BUCKET", "placeholder")
        monkeypatch.delenv("TEST_DOTENV_BUCKET")
        env_file = write(tmp_path / ".env", "TEST_DOTENV_BUCKET=from-dotenv\n")
        path = write(
            tmp_path / "ingest.yaml",
            "state:\n  backend: s3\n  bucket: ${TEST_DOTENV_BUCKET}\n",
        )
        assert load_settings(path, env_file=env_file).state.bucket == "from-dotenv"

    def test_absolute_paths_kept(self, tmp_path):
        path = write(tmp_path / "ingest.yaml", "sink:\n  path: /data/landing\n")
        assert load_settings(path).sink.path == "/data/landing"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_settings(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = write(tmp_path / "ingest.yaml", "orchestrator: [\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_settings(path)

    def test_not_a_mapping(self, tmp_path):
        path = write(tmp_path / "ingest.yaml", "- a\n- b\n")
        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            load_settings(path)

    def test_section_not_a_mapping(self, tmp_path):
        path = write(tmp_path / "ingest.yaml", "orchestrator: 5\n")
        with pytest.raises(ConfigurationError, match="orchestrator section"):
            load_settings(path)


class TestValidation:
    """Tests for range and type checks."""

    @pytest.mark.parametrize(
        "data, field",
        [
            ({"concurrency_limit": 0}, "concurrency_limit"),
            ({"max_pages": 0}, "max_pages"),
            ({"table_timeout_seconds": -1}, "table_timeout_seconds"),
            ({"cycle_timeout_seconds": 0}, "cycle_timeout_seconds"),
            ({"retry": {"max_attempts": 0}}, "retry.max_attempts"),
            ({"sink": {"format": "xml"}}, "sink.format"),
        ],
    )
    def test_out_of_range(self, data, field):
        with pytest.raises(ConfigurationError) as exc_info:
            settings_from_dict(data).validate()
        assert exc_info.value.field == field

    def test_non_numeric(self):
        with pytest.raises(ConfigurationError, match="must be a number"):
            settings_from_dict({"concurrency_limit": "lots"})

    def test_section_type(self):
        with pytest.raises(ConfigurationError, match="state must be a mapping"):
            settings_from_dict({"state": "s3"})

    def test_invalid_retry(self):
        with pytest.raises(ConfigurationError, match="Invalid retry settings"):
            settings_from_dict({"retry": {"max_attempts": "often"}})


class TestEnvOverrides:
    """Tests for INGEST_* environment overrides."""

    def test_numeric_overrides(self, monkeypatch):
        monkeypatch.setenv("INGEST_CONCURRENCY", "16")
        monkeypatch.setenv("INGEST_MAX_PAGES", "5")
        monkeypatch.setenv("INGEST_TABLE_TIMEOUT", "30")
        monkeypatch.setenv("INGEST_CYCLE_TIMEOUT", "600")

        settings = apply_env_overrides(OrchestratorSettings())

        assert settings.concurrency_limit == 16
        assert settings.max_pages == 5
        assert settings.table_timeout_seconds == 30.0
        assert settings.cycle_timeout_seconds == 600.0

    def test_invalid_override(self, monkeypatch):
        monkeypatch.setenv("INGEST_CONCURRENCY", "many")
        with pytest.raises(ConfigurationError, match="INGEST_CONCURRENCY"):
            apply_env_overrides(OrchestratorSettings())

    def test_state_dir_only_for_local(self, monkeypatch):
        monkeypatch.setenv("INGEST_STATE_DIR", "/var/state")
        local = apply_env_overrides(settings_from_dict({}))
        remote = apply_env_overrides(settings_from_dict({"state": {"backend": "s3"}}))
        assert local.state.path == "/var/state"
        assert remote.state.path is None

    def test_registry_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("INGEST_REGISTRY", "/etc/ingest/tables.yaml")
        path = write(tmp_path / "ingest.yaml", "registry: ./tables.yaml\n")
        assert load_settings(path).registry_path == "/etc/ingest/tables.yaml"

    def test_override_is_validated(self, monkeypatch):
        monkeypatch.setenv("INGEST_CONCURRENCY", "0")
        with pytest.raises(ConfigurationError, match="concurrency_limit"):
            load_settings()
