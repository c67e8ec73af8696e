"""Resolved metadata handed to the emission layer."""

from typing import List, Optional, Set, Union

from pydantic import BaseModel, Field

from .config import QueryConfig, StmtConfig, StoredFuncConfig, TableConfig
from .schema_model import ForeignKey
from .types import TypeDescriptor


class ColumnMeta(BaseModel):
    """A resolved column of a table or of a query result."""
    pg_name: str
    py_name: str
    ordinal: int
    type_info: TypeDescriptor
    nullable: bool = True
    is_primary: bool = False
    is_mutable: bool = True
    has_default: bool = False
    default_expr: Optional[str] = None
    unique: bool = False

    @property
    def type_name(self) -> str:
        """The python annotation of the field holding this column."""
        return self.type_info.type_name(self.nullable)

    def receive_template(self) -> str:
        return self.type_info.receive_template(self.nullable)


class TimestampField(BaseModel):
    """A column filled in automatically on insert or update."""
    column: ColumnMeta
    nullable: bool
    has_timezone: bool


class Reference(BaseModel):
    """A foreign key edge between two resolved tables.

    Seen from ``points_from`` it is an outgoing, always one-to-one
    reference. Seen from ``points_to`` it is an incoming reference that is
    one-to-one when the key column is unique and one-to-many otherwise.
    """
    points_from: str
    points_from_field: ColumnMeta
    points_to: str
    points_to_field: ColumnMeta
    one_to_one: bool
    outgoing_field_name: str  # attribute on the points_from row type
    incoming_field_name: str  # attribute on the points_to row type


class IncludeSpec(BaseModel):
    """A tree of references to load along with a row.

    Renders as ``users.{org.{owner}, profile}``: each node is named by the
    attribute it is reached through, the root by its table.
    """
    name: str
    table: str
    includes: List["IncludeSpec"] = Field(default_factory=list)

    def __str__(self) -> str:
        if not self.includes:
            return self.name
        return f"{self.name}.{{{', '.join(str(i) for i in self.includes)}}}"

    def tables(self) -> Set[str]:
        """Every table mentioned anywhere in the tree."""
        seen = set()
        stack = [self]
        while stack:
            node = stack.pop()
            seen.add(node.table)
            stack.extend(node.includes)
        return seen


IncludeSpec.model_rebuild()


class TableMeta(BaseModel):
    """Everything known about a configured table after resolution."""
    pg_name: str
    type_name: str
    config: TableConfig
    columns: List[ColumnMeta]
    pkey_col: ColumnMeta
    pkey_col_idx: int
    created_at: Optional[TimestampField] = None
    updated_at: Optional[TimestampField] = None
    deleted_at: Optional[ColumnMeta] = None
    foreign_keys: List[ForeignKey] = Field(default_factory=list)
    outgoing_references: List[Reference] = Field(default_factory=list)
    incoming_references: List[Reference] = Field(default_factory=list)
    all_include_spec: Optional[IncludeSpec] = None

    @property
    def box_results(self) -> bool:
        return self.config.box_results

    @property
    def has_created_at_field(self) -> bool:
        return self.created_at is not None

    @property
    def has_updated_at_field(self) -> bool:
        return self.updated_at is not None

    @property
    def has_deleted_at_field(self) -> bool:
        return self.deleted_at is not None

    def column_names(self) -> List[str]:
        return [c.pg_name for c in self.columns]

    def find_column(self, pg_name: str) -> Optional[ColumnMeta]:
        for column in self.columns:
            if column.pg_name == pg_name:
                return column
        return None


class Arg(BaseModel):
    """A positional argument of a query, stored function or statement."""
    pg_name: str
    py_name: str
    type_info: TypeDescriptor
    nullable: bool = False

    @property
    def type_name(self) -> str:
        return self.type_info.type_name(self.nullable)


class QueryMeta(BaseModel):
    """A resolved query or stored function.

    ``multi_return`` is true when each result row is decoded into a row
    type (``return_type_name`` names a table row type or a synthesized
    one) and false when the query yields a single column whose values are
    returned directly.

    ``return_columns`` are in result order. When a reused table row type
    lists its columns in another order, ``row_positions`` holds the result
    position of each of the table's columns, in the table's order.
    """
    name: str
    config: Union[QueryConfig, StoredFuncConfig]
    body: str
    args: List[Arg] = Field(default_factory=list)
    return_type_name: str
    return_table: Optional[str] = None  # pg name of the table whose row type is reused
    return_columns: List[ColumnMeta] = Field(default_factory=list)
    row_positions: List[int] = Field(default_factory=list)
    multi_return: bool = True
    single_result: bool = False

    @property
    def box_results(self) -> bool:
        return self.config.box_results

    @property
    def synthesized_return_type(self) -> bool:
        return self.multi_return and self.return_table is None

    def decode_expr(self, row: str) -> str:
        """Python expression decoding the raw result row named ``row``."""
        if not self.multi_return:
            col = self.return_columns[0]
            return col.type_info.receive_value(f"{row}[0]", col.nullable)
        if self.row_positions:
            picked = ", ".join(f"{row}[{i}]" for i in self.row_positions)
            return f"{self.return_type_name}.from_row(({picked},))"
        return f"{self.return_type_name}.from_row({row})"


class StmtMeta(BaseModel):
    """A resolved statement; calling it yields an affected-row count."""
    name: str
    config: StmtConfig
    body: str
    args: List[Arg] = Field(default_factory=list)
