"""Tests for the catalog reader, against a mocked session."""

from unittest.mock import MagicMock, call

import psycopg2
import pytest

import pgmeta.catalog as catalog_module
from pgmeta.catalog import CatalogReader, is_row_describable, strip_statement
from pgmeta.errors import ArgumentTypeAmbiguityError, CatalogError, ConfigError, SchemaNotFoundError


class IndeterminateDatatype(psycopg2.Error):
    pgcode = "42P18"


def column_row(name, ordinal, type_name, type_oid, nullable=True, has_default=False, default_expr=None):
    return {
        "name": name,
        "ordinal": ordinal,
        "type_oid": type_oid,
        "type_name": type_name,
        "type_schema": "pg_catalog",
        "nullable": nullable,
        "has_default": has_default,
        "default_expr": default_expr,
    }


@pytest.fixture
def session():
    return MagicMock()


def answer(session, responses):
    """Make ``session.fetch_all`` answer by query text."""
    session.fetch_all.side_effect = lambda query, params=None: responses[query]


class TestStatementHelpers:
    """Tests for statement text helpers."""

    def test_strip_statement(self):
        assert strip_statement("  SELECT 1;;\n") == "SELECT 1"

    @pytest.mark.parametrize("sql", [
        "SELECT 1",
        "  with x AS (SELECT 1) SELECT * FROM x",
        "-- comment\nSELECT 1",
        "/* a */ (SELECT 1)",
        "VALUES (1)",
        "TABLE users",
    ])
    def test_row_describable(self, sql):
        assert is_row_describable(sql)

    @pytest.mark.parametrize("sql", [
        "DELETE FROM users",
        "UPDATE users SET nickname = $1",
        "INSERT INTO users VALUES (1)",
        "",
    ])
    def test_not_row_describable(self, sql):
        assert not is_row_describable(sql)


class TestTableFacts:
    """Tests for reading tables."""

    def test_reads_columns_and_constraints(self, session):
        session.fetch_one.return_value = {"oid": 16384, "name": "users"}
        answer(session, {
            catalog_module._UNIQUE_SQL: [{"name": "email"}],
            catalog_module._CONSTRAINTS_SQL: [
                {"kind": "f", "name": "users_org_id_fkey", "columns": ["org_id"],
                 "ref_table": "orgs", "ref_columns": ["id"]},
                {"kind": "f", "name": "users_pair_fkey", "columns": ["a", "b"],
                 "ref_table": "pairs", "ref_columns": ["a", "b"]},
                {"kind": "p", "name": "users_pkey", "columns": ["id"],
                 "ref_table": None, "ref_columns": []},
            ],
            catalog_module._COLUMNS_SQL: [
                column_row("id", 1, "int8", 20, nullable=False, has_default=True,
                           default_expr="nextval('users_id_seq'::regclass)"),
                column_row("email", 2, "text", 25, nullable=False),
                column_row("org_id", 3, "int8", 20),
            ],
        })

        table = CatalogReader(session).table_facts("users")

        session.fetch_one.assert_called_once_with(catalog_module._TABLE_SQL, ("users",))
        assert table.name == "users"
        assert table.get_column_names() == ["id", "email", "org_id"]
        assert table.primary_key == ["id"]
        assert table.find_column("id").primary_key
        assert table.find_column("email").unique
        assert table.find_column("id").default.startswith("nextval")
        assert [(fk.column, fk.references_table) for fk in table.foreign_keys] == [("org_id", "orgs")]

    def test_missing_table(self, session):
        session.fetch_one.return_value = None

        with pytest.raises(SchemaNotFoundError, match="ghosts"):
            CatalogReader(session).table_facts("ghosts")

    def test_database_error(self, session):
        session.fetch_one.side_effect = psycopg2.OperationalError("server closed the connection")

        with pytest.raises(CatalogError, match="server closed"):
            CatalogReader(session).table_facts("users")


class TestTypeFacts:
    """Tests for reading types."""

    def type_row(self, oid, name, typtype="b", category="U", element_oid=0, base_oid=0, relid=0, schema="public"):
        return [{
            "oid": oid, "name": name, "schema_name": schema, "typtype": typtype,
            "category": category, "element_oid": element_oid, "base_oid": base_oid, "relid": relid,
        }]

    def test_enum(self, session):
        by_name = catalog_module._TYPE_SQL.format(where="to_regtype(%s)")
        answer(session, {
            by_name: self.type_row(50001, "mood", typtype="e", category="E"),
            catalog_module._ENUM_SQL: [{"label": "happy"}, {"label": "sad"}],
        })
        reader = CatalogReader(session)

        facts = reader.type_facts("mood")

        assert facts.kind == "enum"
        assert facts.enum_labels == ["happy", "sad"]
        assert reader.type_facts("mood") is facts
        assert session.fetch_all.call_count == 2

    def test_array_by_oid(self, session):
        rows = {
            1016: self.type_row(1016, "_int8", category="A", element_oid=20, schema="pg_catalog"),
            20: self.type_row(20, "int8", category="N", schema="pg_catalog"),
        }
        session.fetch_all.side_effect = lambda query, params=None: rows[params[0]]

        facts = CatalogReader(session).type_facts(1016)

        assert facts.kind == "array"
        assert facts.name == "_int8"
        assert facts.element_type == "int8"

    def test_schema_qualified_name(self, session):
        by_name = catalog_module._TYPE_SQL.format(where="to_regtype(%s)")
        answer(session, {by_name: self.type_row(50002, "money2", typtype="r", category="R", schema="billing")})

        facts = CatalogReader(session).type_facts("billing.money2")

        assert facts.name == "billing.money2"
        assert facts.kind == "range"

    def test_missing_type(self, session):
        session.fetch_all.return_value = []

        with pytest.raises(SchemaNotFoundError):
            CatalogReader(session).type_facts("nope")


class TestFunctionFacts:
    """Tests for reading stored function arguments."""

    def test_output_arguments_are_dropped(self, session):
        session.fetch_all.return_value = [{
            "name": "get_small_users",
            "arg_names": ["max_id", "n"],
            "arg_modes": ["i", "o"],
            "arg_oids": [20],
        }]

        func = CatalogReader(session).function_facts("get_small_users")

        assert func.arg_names == ["max_id"]
        assert func.arg_oids == [20]

    def test_unnamed_arguments(self, session):
        session.fetch_all.return_value = [{
            "name": "twice", "arg_names": None, "arg_modes": None, "arg_oids": [23, 23],
        }]

        func = CatalogReader(session).function_facts("twice")

        assert func.arg_names == ["", ""]


class TestDescribe:
    """Tests for the describe probe."""

    def test_parameters_and_columns(self, session):
        session.fetch_all.return_value = [{"oids": [25]}]
        session.result_columns.return_value = [("id", 23), ("email", 25)]

        result = CatalogReader(session).describe("SELECT id, email FROM users WHERE nickname = $1;", True)

        assert result.param_oids == [25]
        assert [(c.name, c.type_oid) for c in result.columns] == [("id", 23), ("email", 25)]
        session.result_columns.assert_called_once_with("EXECUTE pgmeta_row_probe (NULL)")
        assert session.execute.call_args_list == [
            call("PREPARE pgmeta_param_probe AS SELECT id, email FROM users WHERE nickname = $1"),
            call("DEALLOCATE pgmeta_param_probe"),
            call("PREPARE pgmeta_row_probe AS SELECT * FROM "
                 "(SELECT id, email FROM users WHERE nickname = $1) AS pgmeta_probe LIMIT 0"),
            call("DEALLOCATE pgmeta_row_probe"),
        ]

    def test_declared_parameter_types(self, session):
        session.fetch_all.return_value = [{"oids": [25]}]
        session.result_columns.return_value = [("flag", 25), ("id", 23)]

        result = CatalogReader(session).describe("SELECT $1 AS flag, id FROM users", True, param_types=["text"])

        assert result.param_oids == [25]
        assert session.execute.call_args_list == [
            call("PREPARE pgmeta_param_probe(text) AS SELECT $1 AS flag, id FROM users"),
            call("DEALLOCATE pgmeta_param_probe"),
            call("PREPARE pgmeta_row_probe(text) AS SELECT * FROM "
                 "(SELECT $1 AS flag, id FROM users) AS pgmeta_probe LIMIT 0"),
            call("DEALLOCATE pgmeta_row_probe"),
        ]
        session.result_columns.assert_called_once_with("EXECUTE pgmeta_row_probe (NULL)")

    def test_several_declared_parameter_types(self, session):
        session.fetch_all.return_value = [{"oids": [25, 23]}]

        CatalogReader(session).describe("DELETE FROM users WHERE nickname = $1 AND id = $2", False,
                                        param_types=["text", "int4"])

        assert session.execute.call_args_list[0] == call(
            "PREPARE pgmeta_param_probe(text, int4) AS DELETE FROM users WHERE nickname = $1 AND id = $2"
        )

    def test_statement_parameters_only(self, session):
        session.fetch_all.return_value = [{"oids": [25]}]

        result = CatalogReader(session).describe("DELETE FROM users WHERE nickname = $1", False)

        assert result.param_oids == [25]
        assert result.columns == []
        session.result_columns.assert_not_called()

    def test_data_modifying_sql_cannot_return_rows(self, session):
        with pytest.raises(ConfigError):
            CatalogReader(session).describe("DELETE FROM users RETURNING *", True)
        session.execute.assert_not_called()

    def test_ambiguous_parameter(self, session):
        session.execute.side_effect = IndeterminateDatatype("could not determine data type of parameter $1")

        with pytest.raises(ArgumentTypeAmbiguityError, match=r"parameter \$1"):
            CatalogReader(session).describe("SELECT $1", True)

    def test_rejected_statement(self, session):
        session.execute.side_effect = psycopg2.ProgrammingError('relation "ghosts" does not exist')

        with pytest.raises(CatalogError, match="ghosts"):
            CatalogReader(session).describe("SELECT * FROM ghosts", True)

    def test_probe_is_deallocated_after_failure(self, session):
        session.fetch_all.return_value = [{"oids": []}]
        session.result_columns.side_effect = psycopg2.DataError("division by zero")

        with pytest.raises(CatalogError, match="division by zero"):
            CatalogReader(session).describe("SELECT 1 / 0 AS x", True)

        assert session.execute.call_args_list[-1] == call("DEALLOCATE pgmeta_row_probe")
