"""Orchestration of a complete resolution run."""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .catalog import CatalogReader, CatalogSource
from .config import DbConfig, TableConfig
from .db import PgPool
from .errors import PgMetaError
from .field_mask import BitLayout, assign_bits
from .meta import QueryMeta, Reference, StmtMeta, TableMeta
from .queries import QueryResolver
from .relationships import RelationshipBuilder
from .tables import TableResolver, emit_row_type
from .types import TypeResolver, TypeSet

logger = logging.getLogger(__name__)


class ResolvedModel(BaseModel):
    """Everything the emission layer gets, keyed by stable names."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    tables: Dict[str, TableMeta] = Field(default_factory=dict)
    queries: Dict[str, QueryMeta] = Field(default_factory=dict)
    stored_functions: Dict[str, QueryMeta] = Field(default_factory=dict)
    statements: Dict[str, StmtMeta] = Field(default_factory=dict)
    field_masks: Dict[str, BitLayout] = Field(default_factory=dict)
    references: List[Reference] = Field(default_factory=list)
    types: TypeSet

    def table_by_config_name(self, name: str) -> Optional[TableMeta]:
        for table in self.tables.values():
            if table.config.name == name or table.pg_name == name:
                return table
        return None


class MetaResolver:
    """Runs the resolution stages in dependency order.

    Tables come first so that queries can reuse table row types, then
    relationships, then queries, stored functions and statements, and
    finally field masks. The first error aborts the run.
    """

    def __init__(self, config: DbConfig, catalog: CatalogSource, max_workers: int = 1):
        self.config = config
        self.catalog = catalog
        self.max_workers = max(1, max_workers)
        self.type_resolver = TypeResolver(catalog, config.type_overrides)
        self.table_resolver = TableResolver(catalog, self.type_resolver, config)

    def resolve(self) -> ResolvedModel:
        """Resolve every configured object.

        Raises:
            PgMetaError: The first resolution error, with the name of the
                offending table, query or statement attached
        """
        if self.config.tables:
            logger.info("resolving %d tables", len(self.config.tables))
        tables: Dict[str, TableMeta] = {}
        for meta in self._resolve_tables(self.config.tables):
            if meta.pg_name in tables:
                raise PgMetaError(
                    f"tables '{tables[meta.pg_name].config.name}' and '{meta.config.name}' "
                    f"are the same table"
                )
            tables[meta.pg_name] = meta

        graph = RelationshipBuilder(tables).build()
        for meta in tables.values():
            try:
                emit_row_type(self.type_resolver, meta, tables)
            except PgMetaError as e:
                raise e.add_context(f"while resolving table '{meta.config.name}'")

        query_resolver = QueryResolver(self.catalog, self.type_resolver, tables)
        stored_functions = {}
        for func in self.config.stored_functions:
            try:
                stored_functions[func.name] = query_resolver.stored_func_meta(func)
            except PgMetaError as e:
                raise e.add_context(f"while resolving stored function '{func.name}'")

        queries = {}
        for query in self.config.queries:
            try:
                queries[query.name] = query_resolver.query_meta(query, infer_arg_types=True)
            except PgMetaError as e:
                raise e.add_context(f"while resolving query '{query.name}'")

        statements = {}
        for stmt in self.config.statements:
            try:
                statements[stmt.name] = query_resolver.stmt_meta(stmt)
            except PgMetaError as e:
                raise e.add_context(f"while resolving statement '{stmt.name}'")

        return ResolvedModel(
            tables=tables,
            queries=queries,
            stored_functions=stored_functions,
            statements=statements,
            field_masks={name: assign_bits(meta) for name, meta in tables.items()},
            references=graph.edges(),
            types=self.type_resolver.types,
        )

    def _resolve_one_table(self, table_config: TableConfig) -> TableMeta:
        try:
            return self.table_resolver.resolve(table_config)
        except PgMetaError as e:
            raise e.add_context(f"while resolving table '{table_config.name}'")

    def _resolve_tables(self, configs: List[TableConfig]) -> List[TableMeta]:
        if self.max_workers == 1 or len(configs) < 2:
            return [self._resolve_one_table(c) for c in configs]

        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        try:
            futures = [executor.submit(self._resolve_one_table, c) for c in configs]
            return [f.result() for f in futures]
        finally:
            # on failure, drop the tables that have not started yet
            executor.shutdown(wait=True, cancel_futures=True)


def resolve_database(config: DbConfig, max_workers: int = 1) -> ResolvedModel:
    """Connect using the configured connection strings and resolve everything.

    The pool stays open for later runs; call ``PgPool.close_pool()`` when done.
    """
    PgPool.initialize(config.connection_strings)
    with PgPool.session() as session:
        return MetaResolver(config, CatalogReader(session), max_workers=max_workers).resolve()
