"""Configuration models for a pgmeta resolution run."""

import logging
import tomllib
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigError

logger = logging.getLogger(__name__)

# Connection strings tried in order when none are given explicitly.
# A leading '$' names an environment variable.
DEFAULT_CONNECTION_STRINGS = ["$DATABASE_URL"]


class _ConfigModel(BaseModel):
    """Base model that keeps unknown keys around so they can be reported."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def unknown_keys(self, prefix: str = "") -> List[str]:
        """Return dotted paths of every key this model did not recognize."""
        keys = [f"{prefix}{key}" for key in (self.model_extra or {})]
        for name in type(self).model_fields:
            value = getattr(self, name)
            if isinstance(value, _ConfigModel):
                keys.extend(value.unknown_keys(f"{prefix}{name}."))
            elif isinstance(value, list):
                for i, item in enumerate(value):
                    if isinstance(item, _ConfigModel):
                        keys.extend(item.unknown_keys(f"{prefix}{name}[{i}]."))
        return keys


class TypeOverride(_ConfigModel):
    """Replace the built-in mapping for a postgres type."""
    pg_type_name: str
    type_name: str
    nullable_type_name: Optional[str] = None
    pkg: Optional[str] = None  # import line, e.g. "from decimal import Decimal"
    sql_argument: Optional[str] = None  # bind template, "{0}" is the value
    receive: Optional[str] = None  # receive template, "{0}" is the raw value


class BelongsTo(_ConfigModel):
    """An explicit reference from the configured table to another table."""
    table: str
    key_field: str
    one_to_one: bool = False


class TableConfig(_ConfigModel):
    """Per-table options."""
    name: str
    box_results: bool = False
    created_at_field: Optional[str] = None
    updated_at_field: Optional[str] = None
    deleted_at_field: Optional[str] = None
    disable_timestamps: bool = False
    include_columns: List[str] = Field(default_factory=list)
    exclude_columns: List[str] = Field(default_factory=list)
    immutable_fields: List[str] = Field(default_factory=list)
    no_infer_belongs_to: bool = False
    belongs_to: List[BelongsTo] = Field(default_factory=list)


class ArgConfig(_ConfigModel):
    """An explicitly typed query argument."""
    name: str
    type: str  # postgres type name


class QueryConfig(_ConfigModel):
    """A named, row-returning query."""
    name: str
    body: str
    comment: Optional[str] = None
    single_result: bool = False
    nullable_arguments: bool = False
    arg_names: List[str] = Field(default_factory=list)
    args: List[ArgConfig] = Field(default_factory=list)
    return_type: Optional[str] = None
    null_flags: Optional[str] = None  # one of 'n' or '-' per result column
    not_null_fields: List[str] = Field(default_factory=list)
    box_results: bool = False


class StmtConfig(_ConfigModel):
    """A named statement that returns only an affected-row count."""
    name: str
    body: str
    comment: Optional[str] = None
    nullable_arguments: bool = False
    arg_names: List[str] = Field(default_factory=list)
    args: List[ArgConfig] = Field(default_factory=list)


class StoredFuncConfig(_ConfigModel):
    """A stored function called as ``SELECT * FROM fn(...)``."""
    name: str
    comment: Optional[str] = None
    return_type: Optional[str] = None
    null_flags: Optional[str] = None
    not_null_fields: List[str] = Field(default_factory=list)
    arg_names: List[str] = Field(default_factory=list)
    box_results: bool = False


class DbConfig(_ConfigModel):
    """Everything a resolution run needs to know besides the database itself."""
    type_overrides: List[TypeOverride] = Field(default_factory=list, alias="type_override")
    tables: List[TableConfig] = Field(default_factory=list, alias="table")
    queries: List[QueryConfig] = Field(default_factory=list, alias="query")
    statements: List[StmtConfig] = Field(default_factory=list, alias="statement")
    stored_functions: List[StoredFuncConfig] = Field(default_factory=list, alias="stored_function")
    created_at_field: str = "created_at"
    updated_at_field: str = "updated_at"
    deleted_at_field: str = "deleted_at"
    connection_strings: List[str] = Field(default_factory=lambda: list(DEFAULT_CONNECTION_STRINGS))

    @model_validator(mode="after")
    def _check_unique_names(self) -> "DbConfig":
        seen = {}
        groups = [
            ("table", [t.name for t in self.tables]),
            ("query", [q.name for q in self.queries]),
            ("statement", [s.name for s in self.statements]),
            ("stored_function", [f.name for f in self.stored_functions]),
        ]
        for kind, names in groups:
            for name in names:
                if name in seen:
                    raise ValueError(f"{kind} '{name}' is already configured as a {seen[name]}")
                seen[name] = kind
        return self

    def table_config(self, name: str) -> Optional[TableConfig]:
        """Find the configuration for a table by name."""
        for table in self.tables:
            if table.name == name:
                return table
        return None


def parse_config(data: dict) -> DbConfig:
    """Validate a decoded configuration document.

    Unknown keys are logged as warnings rather than rejected so that
    configuration files keep working across versions.

    Raises:
        ConfigError: If the document does not validate
    """
    try:
        conf = DbConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e

    for key in conf.unknown_keys():
        logger.warning("unknown config file key: '%s'", key)
    return conf


def load_config(path: str) -> DbConfig:
    """Load and validate a TOML configuration file."""
    logger.info("using config '%s'", path)
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"while parsing config file '{path}': {e}") from e
    return parse_config(data)
