"""Tests for ingestion/lib/registry.py - table registry loading."""

import json

import pytest

from ingestion.lib.errors import ConfigurationError
from ingestion.lib.markers import MarkerType
from ingestion.lib.registry import RejectedEntry, TableRegistry, parse_descriptor


class TestParseDescriptor:
    """Tests for decoding single entries."""

    def test_minimal_entry(self):
        descriptor = parse_descriptor({"id": "t1", "change_column": "updated_at"})
        assert descriptor.table_id == "t1"
        assert descriptor.change_column == "updated_at"
        assert descriptor.marker_type is MarkerType.TIMESTAMP
        assert dict(descriptor.params) == {}

    def test_alias_keys(self):
        descriptor = parse_descriptor({"table_id": "t1", "watermark_column": "ts"})
        assert descriptor.change_column == "ts"

    def test_full_entry(self):
        descriptor = parse_descriptor(
            {
                "id": "sales.orders",
                "change_column": "row_id",
                "marker_type": "integer",
                "initial_marker": 100,
                "batch_size": 500,
                "max_pages": 3,
                "timeout_seconds": 60,
                "params": {"table": "dbo.Orders", "limit": 5},
            }
        )
        assert descriptor.marker_type is MarkerType.INTEGER
        assert descriptor.default_marker() == 100
        assert descriptor.batch_size == 500
        assert descriptor.max_pages == 3
        assert descriptor.timeout_seconds == 60.0
        assert dict(descriptor.params) == {"table": "dbo.Orders", "limit": "5"}

    def test_params_expand_env_vars(self, monkeypatch):
        monkeypatch.setenv("ORDERS_SCHEMA", "sales")
        descriptor = parse_descriptor(
            {"id": "t1", "change_column": "ts", "params": {"table": "${ORDERS_SCHEMA}.orders"}}
        )
        assert descriptor.params["table"] == "sales.orders"

    @pytest.mark.parametrize(
        "entry, field",
        [
            ({"change_column": "ts"}, "table_id"),
            ({"id": "  ", "change_column": "ts"}, "table_id"),
            ({"id": "t1"}, "change_column"),
            ({"id": "t1", "change_column": "ts", "marker_type": "uuid"}, "marker_type"),
            ({"id": "t1", "change_column": "ts", "initial_marker": "soon"}, "initial_marker"),
            ({"id": "t1", "change_column": "ts", "batch_size": 0}, "batch_size"),
            ({"id": "t1", "change_column": "ts", "batch_size": "many"}, "batch_size"),
            ({"id": "t1", "change_column": "ts", "max_pages": -1}, "max_pages"),
            ({"id": "t1", "change_column": "ts", "timeout_seconds": 0}, "timeout_seconds"),
            ({"id": "t1", "change_column": "ts", "params": ["a"]}, "params"),
            ({"id": "t1", "change_column": "ts", "params": {"a": {"b": 1}}}, "params.a"),
        ],
    )
    def test_malformed_entries(self, entry, field):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_descriptor(entry)
        assert exc_info.value.field == field

    def test_non_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            parse_descriptor(["t1"], index=4)


class TestTableRegistry:
    """Tests for building registries."""

    def test_rejected_entries_do_not_affect_others(self):
        registry = TableRegistry.from_entries(
            [
                {"id": "a", "change_column": "ts"},
                {"id": "b"},
                {"id": "c", "change_column": "ts"},
            ]
        )
        assert [d.table_id for d in registry.list_tables()] == ["a", "c"]
        assert len(registry.rejected()) == 1
        rejected = registry.rejected()[0]
        assert rejected.entry_key == "b"
        assert rejected.index == 1
        assert rejected.error.field == "change_column"

    def test_entries_keep_source_order(self):
        registry = TableRegistry.from_entries(
            [{"id": "a", "change_column": "ts"}, "junk", {"id": "c", "change_column": "ts"}]
        )
        entries = registry.entries()
        assert isinstance(entries[1], RejectedEntry)
        assert entries[1].entry_key == "#1"
        assert [getattr(e, "table_id", None) for e in entries] == ["a", None, "c"]

    def test_duplicate_ids_rejected(self):
        registry = TableRegistry.from_entries(
            [{"id": "a", "change_column": "ts"}, {"id": "a", "change_column": "other"}]
        )
        assert len(registry) == 1
        assert registry.get("a").change_column == "ts"
        assert "Duplicate" in registry.rejected()[0].error.message

    def test_empty_registry(self):
        registry = TableRegistry.from_entries([])
        assert len(registry) == 0
        assert registry.entries() == ()

    def test_iteration_and_repr(self):
        registry = TableRegistry.from_entries([{"id": "a", "change_column": "ts"}])
        assert [d.table_id for d in registry] == ["a"]
        assert "tables=1" in repr(registry)
        assert registry.get("missing") is None


class TestFromFile:
    """Tests for loading registries from disk."""

    def test_yaml_tables_key(self, tmp_path):
        path = tmp_path / "tables.yaml"
        path.write_text(
            """
tables:
  - id: sales.orders
    change_column: updated_at
    params:
      table: dbo.Orders
  - id: sales.customers
    change_column: row_version
    marker_type: integer
""",
            encoding="utf-8",
        )
        registry = TableRegistry.from_file(path)
        assert len(registry) == 2
        assert registry.source == str(path)
        assert registry.get("sales.customers").marker_type is MarkerType.INTEGER

    def test_yaml_bare_list(self, tmp_path):
        path = tmp_path / "tables.yml"
        path.write_text("- {id: a, change_column: ts}\n", encoding="utf-8")
        assert len(TableRegistry.from_file(path)) == 1

    def test_json(self, tmp_path):
        path = tmp_path / "tables.json"
        path.write_text(json.dumps({"tables": [{"id": "a", "col": "ts"}]}), encoding="utf-8")
        assert TableRegistry.from_file(path).get("a").change_column == "ts"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Cannot read"):
            TableRegistry.from_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "tables.yaml"
        path.write_text("tables: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Invalid registry syntax"):
            TableRegistry.from_file(path)

    def test_no_table_list(self, tmp_path):
        path = tmp_path / "tables.yaml"
        path.write_text("tables: 5\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must contain a list"):
            TableRegistry.from_file(path)
