"""Read-only access to the postgres catalog and the describe probe."""

import logging
import re
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Protocol, Sequence, Union

import psycopg2

from .db import Session
from .errors import ArgumentTypeAmbiguityError, CatalogError, ConfigError, SchemaNotFoundError
from .schema_model import (
    Attribute,
    Column,
    DescribeResult,
    ForeignKey,
    Function,
    PgType,
    ResultColumn,
    Table,
)

logger = logging.getLogger(__name__)

# SQLSTATE for "could not determine data type of parameter $n"
INDETERMINATE_DATATYPE = "42P18"

_PARAM_PROBE = "pgmeta_param_probe"
_ROW_PROBE = "pgmeta_row_probe"

_COMMENT = re.compile(r"--[^\n]*|/\*.*?\*/", re.DOTALL)
_ROW_RETURNING_KEYWORDS = ("SELECT", "WITH", "VALUES", "TABLE")


class CatalogSource(Protocol):
    """Everything the resolvers need to know about a live database.

    ``CatalogReader`` implements this against postgres; tests substitute
    an in-memory catalog.
    """

    def table_facts(self, table_name: str) -> Table:
        ...

    def type_facts(self, type_ref: Union[str, int]) -> PgType:
        ...

    def function_facts(self, function_name: str) -> Function:
        ...

    def describe(self, sql: str, row_returning: bool, param_types: Sequence[str] = ()) -> DescribeResult:
        ...


def strip_statement(sql: str) -> str:
    """Trim whitespace and trailing semicolons from a statement body."""
    return sql.strip().rstrip(";").strip()


def is_row_describable(sql: str) -> bool:
    """Whether a statement can be wrapped in a zero-row SELECT."""
    text = _COMMENT.sub(" ", sql).lstrip().lstrip("(").lstrip()
    first = text.split(None, 1)[0].upper() if text else ""
    return first in _ROW_RETURNING_KEYWORDS


def _native_name(schema_name: str, type_name: str) -> str:
    if schema_name in ("pg_catalog", "public"):
        return type_name
    return f"{schema_name}.{type_name}"


_TABLE_SQL = """
SELECT c.oid AS oid, c.oid::regclass::text AS name
FROM pg_class c
WHERE c.oid = to_regclass(%s)
"""

_COLUMNS_SQL = """
SELECT a.attname AS name,
       a.attnum AS ordinal,
       t.oid AS type_oid,
       t.typname AS type_name,
       tn.nspname AS type_schema,
       NOT a.attnotnull AS nullable,
       (d.adbin IS NOT NULL OR a.attidentity <> '') AS has_default,
       pg_get_expr(d.adbin, d.adrelid) AS default_expr
FROM pg_attribute a
JOIN pg_type t ON t.oid = a.atttypid
JOIN pg_namespace tn ON tn.oid = t.typnamespace
LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
WHERE a.attrelid = %s AND a.attnum > 0 AND NOT a.attisdropped
ORDER BY a.attnum
"""

_CONSTRAINTS_SQL = """
SELECT c.contype AS kind,
       c.conname AS name,
       ARRAY(
           SELECT a.attname::text
           FROM unnest(c.conkey) WITH ORDINALITY AS k(attnum, n)
           JOIN pg_attribute a ON a.attrelid = c.conrelid AND a.attnum = k.attnum
           ORDER BY k.n
       ) AS columns,
       CASE WHEN c.contype = 'f' THEN c.confrelid::regclass::text END AS ref_table,
       ARRAY(
           SELECT a.attname::text
           FROM unnest(c.confkey) WITH ORDINALITY AS k(attnum, n)
           JOIN pg_attribute a ON a.attrelid = c.confrelid AND a.attnum = k.attnum
           ORDER BY k.n
       ) AS ref_columns
FROM pg_constraint c
WHERE c.conrelid = %s AND c.contype IN ('p', 'f')
ORDER BY c.conname
"""

_UNIQUE_SQL = """
SELECT a.attname AS name
FROM pg_index i
JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = i.indkey[0]
WHERE i.indrelid = %s
  AND i.indisunique
  AND i.indnatts = 1
  AND i.indpred IS NULL
  AND i.indexprs IS NULL
"""

_TYPE_SQL = """
SELECT t.oid AS oid,
       t.typname AS name,
       n.nspname AS schema_name,
       t.typtype AS typtype,
       t.typcategory AS category,
       t.typelem AS element_oid,
       t.typbasetype AS base_oid,
       t.typrelid AS relid
FROM pg_type t
JOIN pg_namespace n ON n.oid = t.typnamespace
WHERE t.oid = {where}
"""

_ENUM_SQL = """
SELECT enumlabel AS label FROM pg_enum WHERE enumtypid = %s ORDER BY enumsortorder
"""

_FUNCTION_SQL = """
SELECT p.proname AS name,
       p.proargnames::text[] AS arg_names,
       p.proargmodes::text[] AS arg_modes,
       p.proargtypes::oid[] AS arg_oids
FROM pg_proc p
WHERE p.oid = to_regproc(%s)
"""


class CatalogReader:
    """Answers catalog questions over a single shared session."""

    def __init__(self, session: Session):
        self.session = session
        self._type_cache: Dict[Union[str, int], PgType] = {}

    def _fetch_all(self, query: str, params: tuple) -> List[dict]:
        try:
            return self.session.fetch_all(query, params)
        except psycopg2.Error as e:
            raise CatalogError(f"catalog query failed: {e}") from e

    def _fetch_one(self, query: str, params: tuple) -> Optional[Dict[str, Any]]:
        try:
            return self.session.fetch_one(query, params)
        except psycopg2.Error as e:
            raise CatalogError(f"catalog query failed: {e}") from e

    def table_facts(self, table_name: str) -> Table:
        """Read columns and constraints of a table.

        Raises:
            SchemaNotFoundError: If the table does not exist
        """
        row = self._fetch_one(_TABLE_SQL, (table_name,))
        if row is None:
            raise SchemaNotFoundError(f"table '{table_name}' does not exist")
        oid, canonical = row["oid"], row["name"]

        unique = {row["name"] for row in self._fetch_all(_UNIQUE_SQL, (oid,))}

        primary_key: List[str] = []
        foreign_keys: List[ForeignKey] = []
        for row in self._fetch_all(_CONSTRAINTS_SQL, (oid,)):
            if row["kind"] == "p":
                primary_key = list(row["columns"])
            elif len(row["columns"]) == 1:
                foreign_keys.append(ForeignKey(
                    column=row["columns"][0],
                    references_table=row["ref_table"],
                    references_column=row["ref_columns"][0],
                    constraint_name=row["name"],
                ))
            else:
                logger.debug("skipping multi-column foreign key %s on %s", row["name"], canonical)

        columns = []
        for row in self._fetch_all(_COLUMNS_SQL, (oid,)):
            columns.append(Column(
                name=row["name"],
                data_type=_native_name(row["type_schema"], row["type_name"]),
                type_oid=row["type_oid"],
                ordinal=row["ordinal"],
                nullable=row["nullable"],
                primary_key=row["name"] in primary_key,
                unique=row["name"] in unique,
                has_default=row["has_default"],
                default=row["default_expr"],
            ))

        return Table(
            name=canonical,
            columns=columns,
            primary_key=primary_key,
            foreign_keys=foreign_keys,
        )

    def type_facts(self, type_ref: Union[str, int]) -> PgType:
        """Look up a type by native name or by oid."""
        if type_ref in self._type_cache:
            return self._type_cache[type_ref]

        if isinstance(type_ref, int):
            rows = self._fetch_all(_TYPE_SQL.format(where="%s"), (type_ref,))
        else:
            rows = self._fetch_all(_TYPE_SQL.format(where="to_regtype(%s)"), (type_ref,))
        if not rows:
            raise SchemaNotFoundError(f"type '{type_ref}' does not exist")
        row = rows[0]

        facts = PgType(
            oid=row["oid"],
            name=_native_name(row["schema_name"], row["name"]),
            kind="base",
        )
        if row["category"] == "A" and row["element_oid"]:
            facts.kind = "array"
            facts.element_type = self.type_facts(row["element_oid"]).name
        elif row["typtype"] == "e":
            facts.kind = "enum"
            facts.enum_labels = [r["label"] for r in self._fetch_all(_ENUM_SQL, (row["oid"],))]
        elif row["typtype"] == "c":
            facts.kind = "composite"
            facts.attributes = [
                Attribute(
                    name=r["name"],
                    data_type=_native_name(r["type_schema"], r["type_name"]),
                    type_oid=r["type_oid"],
                )
                for r in self._fetch_all(_COLUMNS_SQL, (row["relid"],))
            ]
        elif row["typtype"] == "d":
            facts.kind = "domain"
            facts.base_type = self.type_facts(row["base_oid"]).name
        elif row["typtype"] in ("r", "m"):
            facts.kind = "range"
        elif row["typtype"] == "p":
            facts.kind = "pseudo"

        self._type_cache[type_ref] = facts
        return facts

    def function_facts(self, function_name: str) -> Function:
        """Read the input arguments of a stored function.

        Raises:
            SchemaNotFoundError: If the function does not exist or is overloaded
        """
        rows = self._fetch_all(_FUNCTION_SQL, (function_name,))
        if not rows:
            raise SchemaNotFoundError(
                f"function '{function_name}' does not exist or is overloaded"
            )
        row = rows[0]
        arg_oids = list(row["arg_oids"] or [])
        names = list(row["arg_names"] or [])
        modes = row["arg_modes"]
        if modes:
            # proargnames covers all arguments, proargtypes only the inputs
            names = [n for n, m in zip(names, modes) if m in ("i", "b", "v")]
        names = (names + [""] * len(arg_oids))[:len(arg_oids)]
        return Function(name=row["name"], arg_names=names, arg_oids=arg_oids)

    def describe(self, sql: str, row_returning: bool, param_types: Sequence[str] = ()) -> DescribeResult:
        """Report parameter and result column types without running the statement.

        Parameter types come from preparing the statement. Result columns
        come from executing a prepared ``SELECT * FROM (<sql>) LIMIT 0``
        with NULL arguments, which never produces a row.

        Args:
            sql: The statement body
            row_returning: Whether result columns are wanted
            param_types: Native type names declared for ``$1``, ``$2``, ...
                in both prepared statements. Parameters past the end of
                the list are left for postgres to infer.

        Raises:
            ArgumentTypeAmbiguityError: If postgres cannot infer a parameter type
            ConfigError: If a row-returning body cannot be wrapped
            CatalogError: If postgres rejects the statement
        """
        body = strip_statement(sql)
        if row_returning and not is_row_describable(body):
            raise ConfigError(
                "only SELECT, WITH, VALUES or TABLE bodies can return rows; "
                "configure data modifying SQL as a statement"
            )

        with self.session.exclusive():
            with self._prepared(_PARAM_PROBE, body, param_types):
                rows = self.session.fetch_all(
                    "SELECT parameter_types::oid[] AS oids FROM pg_prepared_statements WHERE name = %s",
                    (_PARAM_PROBE,),
                )
            param_oids = list(rows[0]["oids"] or []) if rows else []

            columns: List[ResultColumn] = []
            if row_returning:
                wrapped = f"SELECT * FROM ({body}) AS pgmeta_probe LIMIT 0"
                logger.debug("describing %s", wrapped)
                execute = f"EXECUTE {_ROW_PROBE}"
                if param_oids:
                    execute += " (" + ", ".join(["NULL"] * len(param_oids)) + ")"
                with self._prepared(_ROW_PROBE, wrapped, param_types):
                    columns = [
                        ResultColumn(name=name, type_oid=oid)
                        for name, oid in self.session.result_columns(execute)
                    ]

        return DescribeResult(param_oids=param_oids, columns=columns)

    @contextmanager
    def _prepared(self, name: str, body: str, param_types: Sequence[str] = ()) -> Iterator[None]:
        """Keep ``body`` prepared under ``name`` for the duration of the block."""
        declared = f"({', '.join(param_types)})" if param_types else ""
        try:
            self.session.execute(f"PREPARE {name}{declared} AS {body}")
        except psycopg2.Error as e:
            if getattr(e, "pgcode", None) == INDETERMINATE_DATATYPE:
                raise ArgumentTypeAmbiguityError(str(e).strip()) from e
            raise CatalogError(f"describe failed: {str(e).strip()}") from e

        try:
            yield
        except psycopg2.Error as e:
            raise CatalogError(f"describe failed: {str(e).strip()}") from e
        finally:
            self.session.execute(f"DEALLOCATE {name}")
