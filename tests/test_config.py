"""Tests for configuration parsing."""

import logging

import pytest

from pgmeta.config import DEFAULT_CONNECTION_STRINGS, load_config, parse_config
from pgmeta.errors import ConfigError

CONFIG_TOML = """
deleted_at_field = "removed_at"

[[type_override]]
pg_type_name = "citext"
type_name = "str"

[[table]]
name = "users"
box_results = true
immutable_fields = ["email"]

  [[table.belongs_to]]
  table = "orgs"
  key_field = "org_id"

[[query]]
name = "GetUserByNickname"
body = "SELECT * FROM users WHERE nickname = $1"
arg_names = ["nickname"]
single_result = true

[[statement]]
name = "DeleteUsersByNickname"
body = "DELETE FROM users WHERE nickname = $1"
nullable_arguments = true

[[stored_function]]
name = "get_small_users"
"""


class TestLoadConfig:
    """Tests for reading TOML configuration files."""

    def test_load(self, tmp_path):
        path = tmp_path / "pgmeta.toml"
        path.write_text(CONFIG_TOML)

        conf = load_config(str(path))

        assert conf.deleted_at_field == "removed_at"
        assert conf.created_at_field == "created_at"
        assert conf.type_overrides[0].pg_type_name == "citext"
        assert conf.tables[0].box_results
        assert conf.tables[0].belongs_to[0].key_field == "org_id"
        assert conf.queries[0].single_result
        assert conf.statements[0].nullable_arguments
        assert conf.stored_functions[0].name == "get_small_users"

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "broken.toml"
        path.write_text("[[table]\nname = ")

        with pytest.raises(ConfigError, match="broken.toml"):
            load_config(str(path))


class TestParseConfig:
    """Tests for validating decoded configuration."""

    def test_defaults(self):
        conf = parse_config({})

        assert conf.tables == []
        assert conf.connection_strings == DEFAULT_CONNECTION_STRINGS
        assert conf.connection_strings is not DEFAULT_CONNECTION_STRINGS

    def test_unknown_keys_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="pgmeta.config"):
            conf = parse_config({"tabel": [], "table": [{"name": "users", "boxed": True}]})

        assert conf.tables[0].name == "users"
        messages = [r.getMessage() for r in caplog.records]
        assert "unknown config file key: 'tabel'" in messages
        assert "unknown config file key: 'tables[0].boxed'" in messages

    def test_missing_required_key(self):
        with pytest.raises(ConfigError, match="invalid configuration"):
            parse_config({"query": [{"name": "q"}]})

    def test_duplicate_names(self):
        with pytest.raises(ConfigError, match="already configured"):
            parse_config({
                "table": [{"name": "users"}],
                "query": [{"name": "users", "body": "SELECT 1"}],
            })

    def test_table_config_lookup(self):
        conf = parse_config({"table": [{"name": "users"}, {"name": "orgs"}]})

        assert conf.table_config("orgs").name == "orgs"
        assert conf.table_config("ghosts") is None
