"""Resolution of configured tables into table metadata."""

import logging
from typing import Dict, List, Optional

from .catalog import CatalogSource
from .config import DbConfig, TableConfig
from .errors import ConfigError, MissingPrimaryKeyError, SchemaNotFoundError
from .meta import ColumnMeta, TableMeta, TimestampField
from .naming import snake_case, table_type_name
from .row_types import RowField
from .schema_model import Column, Table
from .types import TIMEZONE_AWARE, TypeResolver, canonical_key

logger = logging.getLogger(__name__)


class TableResolver:
    """Combines catalog facts with per-table configuration."""

    def __init__(self, catalog: CatalogSource, type_resolver: TypeResolver, db_config: DbConfig):
        self.catalog = catalog
        self.type_resolver = type_resolver
        self.db_config = db_config

    def resolve(self, table_config: TableConfig) -> TableMeta:
        """Build the table model for one configured table.

        Raises:
            SchemaNotFoundError: If the table or a configured column is missing
            MissingPrimaryKeyError: If the table has no single-column primary key
            UnknownTypeError: If a column type cannot be mapped
            ConfigError: If the configuration contradicts the catalog
        """
        logger.info("resolving table '%s'", table_config.name)
        facts = self.catalog.table_facts(table_config.name)

        if not facts.primary_key:
            raise MissingPrimaryKeyError(f"table '{facts.name}' has no primary key")
        if len(facts.primary_key) > 1:
            raise MissingPrimaryKeyError(
                f"table '{facts.name}' has a composite primary key "
                f"({', '.join(facts.primary_key)}); a single key column is required"
            )
        pkey_name = facts.primary_key[0]

        selected = self._select_columns(facts, table_config, pkey_name)
        immutable = set(table_config.immutable_fields)
        for name in immutable:
            if facts.find_column(name) is None:
                raise SchemaNotFoundError(f"immutable field '{name}' is not a column of '{facts.name}'")

        columns: List[ColumnMeta] = []
        for col in selected:
            columns.append(ColumnMeta(
                pg_name=col.name,
                py_name=snake_case(col.name),
                ordinal=col.ordinal,
                type_info=self.type_resolver.resolve(col.data_type),
                nullable=col.nullable,
                is_primary=col.name == pkey_name,
                # primary keys are never updated
                is_mutable=col.name != pkey_name and col.name not in immutable,
                has_default=col.has_default,
                default_expr=col.default,
                unique=col.unique or col.name == pkey_name,
            ))
        _check_field_names(facts.name, columns)

        pkey_idx = next(i for i, c in enumerate(columns) if c.is_primary)
        meta = TableMeta(
            pg_name=facts.name,
            type_name=table_type_name(facts.name),
            config=table_config,
            columns=columns,
            pkey_col=columns[pkey_idx],
            pkey_col_idx=pkey_idx,
            foreign_keys=[fk for fk in facts.foreign_keys if any(c.pg_name == fk.column for c in columns)],
        )

        if not table_config.disable_timestamps:
            meta.created_at = self._timestamp_field(
                meta, facts, table_config.created_at_field, self.db_config.created_at_field,
            )
            meta.updated_at = self._timestamp_field(
                meta, facts, table_config.updated_at_field, self.db_config.updated_at_field,
            )
        meta.deleted_at = self._deleted_at_field(meta, facts, table_config)
        return meta

    def _select_columns(self, facts: Table, table_config: TableConfig, pkey_name: str) -> List[Column]:
        for name in table_config.include_columns + table_config.exclude_columns:
            if facts.find_column(name) is None:
                raise SchemaNotFoundError(f"table '{facts.name}' has no column '{name}'")

        selected = facts.columns
        if table_config.include_columns:
            keep = set(table_config.include_columns) | {pkey_name}
            selected = [c for c in selected if c.name in keep]
        if table_config.exclude_columns:
            if pkey_name in table_config.exclude_columns:
                raise ConfigError(f"the primary key '{pkey_name}' of '{facts.name}' cannot be excluded")
            drop = set(table_config.exclude_columns)
            selected = [c for c in selected if c.name not in drop]
        return selected

    def _timestamp_field(
        self,
        meta: TableMeta,
        facts: Table,
        configured: Optional[str],
        conventional: str,
    ) -> Optional[TimestampField]:
        name = configured or conventional
        column = meta.find_column(name)
        if column is None:
            if configured:
                raise SchemaNotFoundError(f"timestamp field '{configured}' is not a column of '{facts.name}'")
            return None
        return TimestampField(
            column=column,
            nullable=column.nullable,
            has_timezone=canonical_key(facts.find_column(name).data_type) in TIMEZONE_AWARE,
        )

    def _deleted_at_field(self, meta: TableMeta, facts: Table, table_config: TableConfig) -> Optional[ColumnMeta]:
        configured = table_config.deleted_at_field
        name = configured or self.db_config.deleted_at_field
        column = meta.find_column(name)
        if column is None:
            if configured:
                raise SchemaNotFoundError(f"deleted at field '{configured}' is not a column of '{facts.name}'")
            return None
        if not column.nullable:
            if configured:
                raise ConfigError(f"deleted at field '{name}' of '{facts.name}' must be nullable")
            logger.debug("ignoring non-nullable '%s' on '%s' as a soft delete column", name, facts.name)
            return None
        return column


def _check_field_names(table_name: str, columns: List[ColumnMeta]) -> None:
    seen: Dict[str, str] = {}
    for col in columns:
        if col.py_name in seen:
            raise ConfigError(
                f"columns '{seen[col.py_name]}' and '{col.pg_name}' of '{table_name}' "
                f"both map to the field name '{col.py_name}'"
            )
        seen[col.py_name] = col.pg_name


def row_fields(meta: TableMeta, tables: Dict[str, TableMeta]) -> List[RowField]:
    """The dataclass fields of a table row type, references included."""
    fields = [
        RowField(name=c.py_name, annotation=c.type_name, pg_name=c.pg_name, receive=c.receive_template())
        for c in meta.columns
    ]
    for ref in meta.incoming_references:
        source = tables[ref.points_from].type_name
        if ref.one_to_one:
            fields.append(RowField(name=ref.incoming_field_name, annotation=f'Optional["{source}"]', default="None"))
        else:
            fields.append(RowField(
                name=ref.incoming_field_name,
                annotation=f'List["{source}"]',
                default="field(default_factory=list)",
            ))
    for ref in meta.outgoing_references:
        target = tables[ref.points_to].type_name
        fields.append(RowField(name=ref.outgoing_field_name, annotation=f'Optional["{target}"]', default="None"))
    return fields


def emit_row_type(type_resolver: TypeResolver, meta: TableMeta, tables: Dict[str, TableMeta]) -> None:
    """Register the row-accessor type of a table.

    Must run after relationships are built so the reference fields exist.
    """
    type_resolver.emit_struct_type(
        meta.type_name,
        row_fields(meta, tables),
        doc=f"A row of the '{meta.pg_name}' table.",
    )
