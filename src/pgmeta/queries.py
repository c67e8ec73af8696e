"""Resolution of queries, stored functions and statements."""

import logging
from typing import Dict, List, Optional, Union

from .catalog import CatalogSource
from .config import ArgConfig, QueryConfig, StmtConfig, StoredFuncConfig
from .errors import ArgumentCountError, ArgumentTypeAmbiguityError, ConfigError
from .meta import Arg, ColumnMeta, QueryMeta, StmtMeta, TableMeta
from .naming import pascal_case, snake_case
from .row_types import RowField
from .schema_model import DescribeResult, ResultColumn
from .types import TypeDescriptor, TypeResolver

logger = logging.getLogger(__name__)


class QueryResolver:
    """Types the arguments and result rows of configured SQL.

    Needs every table resolved up front: a query whose result columns are
    exactly the columns of a table returns that table's row type instead
    of a new one.
    """

    def __init__(self, catalog: CatalogSource, type_resolver: TypeResolver, tables: Dict[str, TableMeta]):
        self.catalog = catalog
        self.type_resolver = type_resolver
        self.tables = tables

    def query_meta(self, config: QueryConfig, infer_arg_types: bool = True) -> QueryMeta:
        """Resolve a query.

        Args:
            config: The query configuration
            infer_arg_types: If false only the return shape is resolved and
                ``args`` is left empty

        Raises:
            ArgumentCountError: If configured names and parameters disagree in count
            ArgumentTypeAmbiguityError: If a parameter type cannot be inferred
            DuplicateTypeError: If the return type name is taken by another shape
        """
        logger.info("resolving query '%s'", config.name)
        described = self._describe(config)

        args: List[Arg] = []
        if infer_arg_types:
            args = self._args(config.args, config.arg_names, described, config.nullable_arguments)

        meta = QueryMeta(
            name=config.name,
            config=config,
            body=config.body,
            args=args,
            single_result=config.single_result,
            **self._return_shape(config, described),
        )
        return meta

    def stored_func_meta(self, config: StoredFuncConfig) -> QueryMeta:
        """Resolve a stored function called as ``SELECT * FROM fn($1, ...)``.

        Argument types come from the function's declaration.
        """
        logger.info("resolving stored function '%s'", config.name)
        facts = self.catalog.function_facts(config.name)
        placeholders = ", ".join(f"${i + 1}" for i in range(len(facts.arg_oids)))
        body = f"SELECT * FROM {config.name}({placeholders})"

        names = config.arg_names or [
            n or f"arg{i + 1}" for i, n in enumerate(facts.arg_names)
        ]
        if len(names) != len(facts.arg_oids):
            raise ArgumentCountError(
                f"{len(names)} argument names configured but '{config.name}' "
                f"takes {len(facts.arg_oids)} arguments"
            )
        args = [
            self._arg(name, self.type_resolver.resolve_oid(oid), False)
            for name, oid in zip(names, facts.arg_oids)
        ]
        _check_arg_names(args)

        described = self.catalog.describe(body, row_returning=True)
        return QueryMeta(
            name=config.name,
            config=config,
            body=body,
            args=args,
            single_result=False,
            **self._return_shape(config, described),
        )

    def stmt_meta(self, config: StmtConfig) -> StmtMeta:
        """Resolve a statement. Only its arguments are typed."""
        logger.info("resolving statement '%s'", config.name)
        if config.args:
            args = self._explicit_args(config.args, config.arg_names, config.nullable_arguments)
        else:
            described = self.catalog.describe(config.body, row_returning=False)
            args = self._args([], config.arg_names, described, config.nullable_arguments)
        return StmtMeta(name=config.name, config=config, body=config.body, args=args)

    def _describe(self, config: QueryConfig) -> DescribeResult:
        """Describe a query body, declaring the configured argument types if postgres needs them."""
        try:
            return self.catalog.describe(config.body, row_returning=True)
        except ArgumentTypeAmbiguityError:
            if not config.args:
                raise
        logger.debug("describing '%s' with its configured argument types", config.name)
        return self.catalog.describe(
            config.body,
            row_returning=True,
            param_types=[a.type for a in config.args],
        )

    def _arg(self, name: str, type_info: TypeDescriptor, nullable: bool) -> Arg:
        return Arg(pg_name=name, py_name=snake_case(name), type_info=type_info, nullable=nullable)

    def _explicit_args(self, explicit: List[ArgConfig], arg_names: List[str], nullable: bool) -> List[Arg]:
        if arg_names and arg_names != [a.name for a in explicit]:
            raise ConfigError("arg_names and args name different arguments")
        args = [self._arg(a.name, self.type_resolver.resolve(a.type), nullable) for a in explicit]
        _check_arg_names(args)
        return args

    def _args(
        self,
        explicit: List[ArgConfig],
        arg_names: List[str],
        described: DescribeResult,
        nullable: bool,
    ) -> List[Arg]:
        param_count = len(described.param_oids)
        if explicit:
            if len(explicit) != param_count:
                raise ArgumentCountError(
                    f"{len(explicit)} arguments configured but the query takes {param_count}"
                )
            return self._explicit_args(explicit, arg_names, nullable)

        if arg_names and len(arg_names) != param_count:
            raise ArgumentCountError(
                f"{len(arg_names)} argument names configured but the query takes {param_count}"
            )
        names = arg_names or [f"arg{i + 1}" for i in range(param_count)]

        args = []
        for i, (name, oid) in enumerate(zip(names, described.param_oids)):
            if not oid:
                raise ArgumentTypeAmbiguityError(f"cannot determine the type of parameter ${i + 1} ('{name}')")
            args.append(self._arg(name, self.type_resolver.resolve_oid(oid), nullable))
        _check_arg_names(args)
        return args

    def _return_shape(self, config: Union[QueryConfig, StoredFuncConfig], described: DescribeResult) -> dict:
        columns = described.columns
        if not columns:
            raise ConfigError(f"'{config.name}' returns no columns")
        names = [c.name for c in columns]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigError(f"'{config.name}' returns duplicate column names: {', '.join(dupes)}")

        described_types = [self.type_resolver.resolve_oid(c.type_oid) for c in columns]
        table = self._matching_table(names, described_types)
        if table is not None:
            logger.debug("'%s' returns rows of table '%s'", config.name, table.pg_name)
            positions = [names.index(n) for n in table.column_names()]
            return {
                "return_type_name": table.type_name,
                "return_table": table.pg_name,
                "return_columns": [table.find_column(n) for n in names],
                "row_positions": [] if positions == list(range(len(names))) else positions,
                "multi_return": True,
            }

        nullable = _result_nullability(config, columns)
        result_cols = [
            ColumnMeta(
                pg_name=col.name,
                py_name=snake_case(col.name),
                ordinal=i + 1,
                type_info=type_info,
                nullable=nullable[col.name],
                is_mutable=False,
            )
            for i, (col, type_info) in enumerate(zip(columns, described_types))
        ]

        if len(result_cols) == 1:
            return {
                "return_type_name": result_cols[0].type_name,
                "return_columns": result_cols,
                "multi_return": False,
            }

        type_name = config.return_type or f"{pascal_case(config.name)}Row"
        self.type_resolver.emit_struct_type(
            type_name,
            [
                RowField(name=c.py_name, annotation=c.type_name, pg_name=c.pg_name, receive=c.receive_template())
                for c in result_cols
            ],
        )
        return {
            "return_type_name": type_name,
            "return_columns": result_cols,
            "multi_return": True,
        }

    def _matching_table(self, names: List[str], types: List[TypeDescriptor]) -> Optional[TableMeta]:
        """The first table with these column names, decoding to the same python types.

        Column order may differ. The caller maps result positions onto the
        table's column order.
        """
        wanted = set(names)
        for table in self.tables.values():
            if set(table.column_names()) != wanted:
                continue
            if all(_same_python_type(table.find_column(n).type_info, t) for n, t in zip(names, types)):
                return table
            logger.debug("result columns of table '%s' are cast to other types", table.pg_name)
        return None


def _same_python_type(a: TypeDescriptor, b: TypeDescriptor) -> bool:
    return a.name == b.name and a.receive == b.receive


def _result_nullability(config: Union[QueryConfig, StoredFuncConfig], columns: List[ResultColumn]) -> Dict[str, bool]:
    """Which result columns may be NULL.

    Postgres does not report nullability for query results, so every
    column is nullable unless the configuration says otherwise.
    """
    nullable = {c.name: True for c in columns}
    if config.null_flags is not None:
        flags = config.null_flags.strip()
        if len(flags) != len(columns) or set(flags) - {"n", "-"}:
            raise ConfigError(
                f"null_flags '{config.null_flags}' must have one 'n' or '-' per result column ({len(columns)})"
            )
        for col, flag in zip(columns, flags):
            nullable[col.name] = flag == "n"
    for name in config.not_null_fields:
        if name not in nullable:
            raise ConfigError(f"not null field '{name}' is not a result column of '{config.name}'")
        nullable[name] = False
    return nullable


def _check_arg_names(args: List[Arg]) -> None:
    seen = set()
    for arg in args:
        if arg.py_name in seen:
            raise ConfigError(f"argument name '{arg.py_name}' is used twice")
        seen.add(arg.py_name)
