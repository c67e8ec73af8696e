"""Pytest configuration for pgmeta tests.

Resolver tests run against ``FakeCatalog``, an in-memory stand-in for a
live postgres catalog. Tests register tables, types, functions and
describe results on it and then drive the resolvers as usual.
"""

from typing import Dict, List, Sequence, Union

import pytest

from pgmeta.catalog import is_row_describable, strip_statement
from pgmeta.errors import ArgumentTypeAmbiguityError, CatalogError, ConfigError, SchemaNotFoundError
from pgmeta.schema_model import (
    Column,
    DescribeResult,
    ForeignKey,
    Function,
    PgType,
    ResultColumn,
    Table,
)
from pgmeta.types import canonical_key


# oids of the builtin types the tests use
BUILTIN_OIDS = {
    "bool": 16,
    "bytea": 17,
    "int8": 20,
    "int2": 21,
    "int4": 23,
    "text": 25,
    "float8": 701,
    "varchar": 1043,
    "date": 1082,
    "timestamp": 1114,
    "timestamptz": 1184,
    "numeric": 1700,
    "uuid": 2950,
    "jsonb": 3802,
    "_int8": 1016,
    "_text": 1009,
}


class FakeCatalog:
    """In-memory ``CatalogSource``."""

    def __init__(self):
        self.tables: Dict[str, Table] = {}
        self.types: Dict[str, PgType] = {}
        self.functions: Dict[str, Function] = {}
        self.described: Dict[str, DescribeResult] = {}
        self.describe_calls: List[str] = []
        self.describe_param_types: List[tuple] = []
        self._next_oid = 50000
        for name, oid in BUILTIN_OIDS.items():
            if name.startswith("_"):
                self.types[name] = PgType(oid=oid, name=name, kind="array", element_type=name[1:])
            else:
                self.types[name] = PgType(oid=oid, name=name, kind="base")

    def oid_of(self, type_name: str) -> int:
        facts = self.types.get(type_name)
        return facts.oid if facts else 0

    def add_type(self, name: str, kind: str, **kwargs) -> PgType:
        self._next_oid += 1
        facts = PgType(oid=self._next_oid, name=name, kind=kind, **kwargs)
        self.types[name] = facts
        return facts

    def add_table(
        self,
        name: str,
        columns: Sequence[tuple],
        primary_key: Sequence[str] = ("id",),
        foreign_keys: Sequence[tuple] = (),
        unique: Sequence[str] = (),
    ) -> Table:
        """Register a table.

        Each column is ``(name, type)`` or ``(name, type, {column options})``;
        each foreign key is ``(column, references_table, references_column)``.
        """
        cols = []
        for ordinal, spec in enumerate(columns, start=1):
            col_name, data_type = spec[0], spec[1]
            opts = dict(spec[2]) if len(spec) > 2 else {}
            if col_name in primary_key:
                opts.setdefault("nullable", False)
            cols.append(Column(
                name=col_name,
                data_type=data_type,
                type_oid=self.oid_of(data_type),
                ordinal=ordinal,
                primary_key=col_name in primary_key,
                unique=col_name in unique,
                **opts,
            ))
        table = Table(
            name=name,
            columns=cols,
            primary_key=list(primary_key),
            foreign_keys=[
                ForeignKey(column=c, references_table=t, references_column=r)
                for c, t, r in foreign_keys
            ],
        )
        self.tables[name] = table
        return table

    def add_function(self, name: str, args: Sequence[tuple]) -> Function:
        func = Function(
            name=name,
            arg_names=[a[0] for a in args],
            arg_oids=[self.oid_of(a[1]) for a in args],
        )
        self.functions[name] = func
        return func

    def add_describe(
        self,
        sql: str,
        params: Sequence[Union[str, int]] = (),
        columns: Sequence[tuple] = (),
    ) -> DescribeResult:
        """Register the describe result of a statement body.

        Parameters and column types are given by type name, or by oid. A
        parameter given as 0 is one postgres cannot type unless it is
        declared.
        """
        result = DescribeResult(
            param_oids=[p if isinstance(p, int) else self.oid_of(p) for p in params],
            columns=[ResultColumn(name=n, type_oid=self.oid_of(t)) for n, t in columns],
        )
        self.described[strip_statement(sql)] = result
        return result

    def table_facts(self, table_name: str) -> Table:
        name = table_name[len("public."):] if table_name.startswith("public.") else table_name
        if name not in self.tables:
            raise SchemaNotFoundError(f"table '{table_name}' does not exist")
        return self.tables[name]

    def type_facts(self, type_ref: Union[str, int]) -> PgType:
        if isinstance(type_ref, int):
            for facts in self.types.values():
                if facts.oid == type_ref:
                    return facts
        else:
            name = type_ref[len("public."):] if type_ref.startswith("public.") else type_ref
            if name in self.types:
                return self.types[name]
        raise SchemaNotFoundError(f"type '{type_ref}' does not exist")

    def function_facts(self, function_name: str) -> Function:
        if function_name not in self.functions:
            raise SchemaNotFoundError(f"function '{function_name}' does not exist or is overloaded")
        return self.functions[function_name]

    def describe(self, sql: str, row_returning: bool, param_types: Sequence[str] = ()) -> DescribeResult:
        body = strip_statement(sql)
        self.describe_calls.append(body)
        self.describe_param_types.append(tuple(param_types))
        if row_returning and not is_row_describable(body):
            raise ConfigError(
                "only SELECT, WITH, VALUES or TABLE bodies can return rows; "
                "configure data modifying SQL as a statement"
            )
        if body not in self.described:
            raise CatalogError(f"describe failed: syntax error in '{body}'")
        result = self.described[body]

        # declared types win, like PREPARE name(type, ...) does
        param_oids = list(result.param_oids)
        for i, type_name in enumerate(param_types):
            oid = self.oid_of(canonical_key(type_name))
            if i < len(param_oids):
                param_oids[i] = oid
            else:
                param_oids.append(oid)
        for i, oid in enumerate(param_oids):
            if not oid:
                raise ArgumentTypeAmbiguityError(f"could not determine data type of parameter ${i + 1}")

        if row_returning:
            return DescribeResult(param_oids=param_oids, columns=result.columns)
        return DescribeResult(param_oids=param_oids)


USERS_COLUMNS = [
    ("id", "int4", {"has_default": True, "default": "nextval('users_id_seq'::regclass)"}),
    ("email", "text", {"nullable": False}),
    ("nickname", "text"),
    ("deleted_at", "timestamptz"),
]

USERS_ROW = [("id", "int4"), ("email", "text"), ("nickname", "text"), ("deleted_at", "timestamptz")]


@pytest.fixture
def catalog() -> FakeCatalog:
    """An empty catalog that knows the builtin types."""
    return FakeCatalog()


@pytest.fixture
def users_catalog(catalog) -> FakeCatalog:
    """A catalog holding the ``users`` table and queries over it."""
    catalog.add_table("users", USERS_COLUMNS)
    catalog.add_describe(
        "SELECT * FROM users WHERE nickname = $1",
        params=["text"],
        columns=USERS_ROW,
    )
    catalog.add_describe(
        "DELETE FROM users WHERE nickname = $1",
        params=["text"],
    )
    return catalog


@pytest.fixture
def nodes_catalog(catalog) -> FakeCatalog:
    """A catalog holding a self-referencing ``nodes`` table."""
    catalog.add_table(
        "nodes",
        [("id", "int8"), ("parent_id", "int8"), ("label", "text")],
        foreign_keys=[("parent_id", "nodes", "id")],
    )
    return catalog
