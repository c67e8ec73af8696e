"""Data models for facts read out of the postgres catalog."""

from typing import List, Optional
from pydantic import BaseModel, Field


class Column(BaseModel):
    """Catalog facts about one table column."""
    name: str
    data_type: str  # native type name, e.g. "int8", "_text", "public.mood"
    type_oid: int = 0
    ordinal: int
    nullable: bool = True
    primary_key: bool = False
    unique: bool = False
    has_default: bool = False
    default: Optional[str] = None  # default expression text, if any


class ForeignKey(BaseModel):
    """A single-column foreign key constraint."""
    column: str
    references_table: str
    references_column: str
    constraint_name: Optional[str] = None


class Table(BaseModel):
    """Catalog facts about one table."""
    name: str  # canonical name, schema qualified unless on the search_path
    columns: List[Column]
    primary_key: List[str] = Field(default_factory=list)
    foreign_keys: List[ForeignKey] = Field(default_factory=list)

    def get_column_names(self) -> List[str]:
        """Get list of all column names in ordinal order."""
        return [column.name for column in self.columns]

    def find_column(self, name: str) -> Optional[Column]:
        """Find a column by name."""
        for column in self.columns:
            if column.name == name:
                return column
        return None


class Attribute(BaseModel):
    """A field of a composite type."""
    name: str
    data_type: str
    type_oid: int = 0


class PgType(BaseModel):
    """Catalog facts about one postgres type."""
    oid: int
    name: str  # native type name, schema qualified outside pg_catalog/public
    kind: str  # "base", "array", "enum", "composite", "domain", "range" or "pseudo"
    element_type: Optional[str] = None  # arrays
    base_type: Optional[str] = None  # domains
    enum_labels: List[str] = Field(default_factory=list)
    attributes: List[Attribute] = Field(default_factory=list)


class ResultColumn(BaseModel):
    """A column reported by a describe probe."""
    name: str
    type_oid: int


class DescribeResult(BaseModel):
    """Parameter and result types of a statement, as reported by postgres."""
    param_oids: List[int] = Field(default_factory=list)
    columns: List[ResultColumn] = Field(default_factory=list)


class Function(BaseModel):
    """Catalog facts about a stored function's input arguments."""
    name: str
    arg_names: List[str] = Field(default_factory=list)  # empty strings for unnamed args
    arg_oids: List[int] = Field(default_factory=list)
