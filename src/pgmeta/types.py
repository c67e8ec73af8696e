"""Mapping of postgres types to python type descriptors.

Every native type the resolvers meet goes through ``TypeResolver.resolve``.
Descriptors are memoized by canonical key, and the python declarations
some of them need (enums, composites, row types) go through a ``TypeSet``
so each one is rendered exactly once no matter how many columns, queries
or other types refer to it.
"""

import logging
import threading
from typing import Dict, List, NamedTuple, Optional, Set, Tuple

from pydantic import BaseModel, ConfigDict

from .catalog import CatalogSource
from .config import TypeOverride
from .errors import DuplicateTypeError, SchemaNotFoundError, UnknownTypeError
from .naming import pascal_case, snake_case
from .row_types import ROW_TYPE_IMPORTS, RowField, render_enum_type, render_row_type, struct_signature

logger = logging.getLogger(__name__)

IDENTITY = "{0}"
OPTIONAL_IMPORT = "from typing import Optional"
RUNTIME_CASTER_IMPORT = "from pgmeta.runtime import register_array_types, register_composite_types"


class TypeDescriptor(BaseModel):
    """The emission-ready description of a native type.

    The four templates are python expressions with ``{0}`` standing for
    the value: ``sql_argument`` turns a field value into a query argument,
    ``receive`` turns the raw value handed out by the cursor into the field
    value. The ``null_`` variants do the same for nullable values.
    """

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    null_name: str
    imports: Tuple[str, ...] = ()
    sql_argument: str = IDENTITY
    null_sql_argument: str = IDENTITY
    receive: str = IDENTITY
    null_receive: str = IDENTITY
    # psycopg2 returns arrays of this type as one '{a,b}' string unless a
    # text array typecaster is registered for them
    needs_array_caster: bool = False

    def type_name(self, nullable: bool) -> str:
        return self.null_name if nullable else self.name

    def bind(self, expr: str, nullable: bool = False) -> str:
        """Python expression binding ``expr`` as a query argument."""
        template = self.null_sql_argument if nullable else self.sql_argument
        return template.format(expr)

    def receive_value(self, expr: str, nullable: bool = False) -> str:
        """Python expression converting a raw cursor value into the field value."""
        template = self.null_receive if nullable else self.receive
        return template.format(expr)

    def receive_template(self, nullable: bool = False) -> str:
        return self.null_receive if nullable else self.receive

    @property
    def converts_on_read(self) -> bool:
        """Whether the wire representation differs from the logical one."""
        return self.receive != IDENTITY


def _null_template(template: str) -> str:
    if template == IDENTITY:
        return IDENTITY
    return "None if {0} is None else " + template


def _escape(expr: str) -> str:
    return expr.replace("{", "{{").replace("}", "}}")


def make_descriptor(
    key: str,
    name: str,
    null_name: Optional[str] = None,
    imports: Tuple[str, ...] = (),
    sql_argument: str = IDENTITY,
    receive: str = IDENTITY,
    needs_array_caster: bool = False,
) -> TypeDescriptor:
    """Build a descriptor, deriving the nullable forms from the plain ones."""
    return TypeDescriptor(
        key=key,
        name=name,
        null_name=null_name or f"Optional[{name}]",
        imports=tuple(sorted(set(imports) | {OPTIONAL_IMPORT})),
        sql_argument=sql_argument,
        null_sql_argument=_null_template(sql_argument),
        receive=receive,
        null_receive=_null_template(receive),
        needs_array_caster=needs_array_caster,
    )


def array_of(elem: TypeDescriptor) -> TypeDescriptor:
    """Descriptor for a one-dimensional array of ``elem``."""
    sql_argument = IDENTITY
    if elem.sql_argument != IDENTITY:
        sql_argument = "[" + _escape(elem.bind("x", nullable=True)) + " for x in {0}]"
    receive = IDENTITY
    if elem.receive != IDENTITY:
        receive = "[" + _escape(elem.receive_value("x", nullable=True)) + " for x in {0}]"
    return make_descriptor(
        key=f"{elem.key}[]",
        name=f"List[{elem.name}]",
        imports=elem.imports + ("from typing import List",),
        sql_argument=sql_argument,
        receive=receive,
    )


_DATETIME = ("import datetime",)

# Built-in mapping for postgres primitive types. Array variants are derived.
_DEFAULT_TYPES: Dict[str, TypeDescriptor] = {
    d.key: d for d in [
        make_descriptor("bool", "bool"),
        make_descriptor("int2", "int"),
        make_descriptor("int4", "int"),
        make_descriptor("int8", "int"),
        make_descriptor("oid", "int"),
        make_descriptor("float4", "float"),
        make_descriptor("float8", "float"),
        make_descriptor("numeric", "decimal.Decimal", imports=("import decimal",)),
        make_descriptor("money", "str", needs_array_caster=True),
        make_descriptor("text", "str"),
        make_descriptor("varchar", "str"),
        make_descriptor("bpchar", "str"),
        make_descriptor("char", "str"),
        make_descriptor("name", "str"),
        make_descriptor("citext", "str", needs_array_caster=True),
        make_descriptor("xml", "str", needs_array_caster=True),
        make_descriptor("tsvector", "str", needs_array_caster=True),
        make_descriptor("inet", "str", needs_array_caster=True),
        make_descriptor("cidr", "str", needs_array_caster=True),
        make_descriptor("macaddr", "str", needs_array_caster=True),
        make_descriptor("bit", "str", needs_array_caster=True),
        make_descriptor("varbit", "str", needs_array_caster=True),
        make_descriptor("bytea", "bytes", receive="bytes({0})"),
        make_descriptor("date", "datetime.date", imports=_DATETIME),
        make_descriptor("time", "datetime.time", imports=_DATETIME),
        make_descriptor("timetz", "datetime.time", imports=_DATETIME),
        make_descriptor("timestamp", "datetime.datetime", imports=_DATETIME),
        make_descriptor("timestamptz", "datetime.datetime", imports=_DATETIME),
        make_descriptor("interval", "datetime.timedelta", imports=_DATETIME),
        make_descriptor(
            "uuid", "uuid.UUID",
            imports=("import uuid",),
            sql_argument="str({0})",
            receive="uuid.UUID(str({0}))",
            needs_array_caster=True,
        ),
        make_descriptor(
            "json", "Any",
            imports=("from typing import Any", "import psycopg2.extras"),
            sql_argument="psycopg2.extras.Json({0})",
        ),
        make_descriptor(
            "jsonb", "Any",
            imports=("from typing import Any", "import psycopg2.extras"),
            sql_argument="psycopg2.extras.Json({0})",
        ),
    ]
}

# SQL spellings of types that the catalog knows under another name
_ALIASES = {
    "bigint": "int8",
    "integer": "int4",
    "int": "int4",
    "smallint": "int2",
    "serial": "int4",
    "bigserial": "int8",
    "smallserial": "int2",
    "boolean": "bool",
    "real": "float4",
    "double precision": "float8",
    "decimal": "numeric",
    "character varying": "varchar",
    "character": "bpchar",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "time without time zone": "time",
    "time with time zone": "timetz",
    "bit varying": "varbit",
}

TIMEZONE_AWARE = {"timestamptz", "timetz"}


def canonical_key(native_type: str) -> str:
    """Normalize a native type name: ``_int8``, ``bigint[]`` both become ``int8[]``."""
    name = native_type.strip()
    depth = 0
    while name.endswith("[]"):
        name = name[:-2].rstrip()
        depth += 1
    schema, dot, base = name.rpartition(".")
    if base.startswith("_"):
        base = base[1:]
        depth += 1
    base = _ALIASES.get(base.lower(), base)
    name = f"{schema}.{base}" if dot else base
    return name + "[]" * depth


class _Declared(NamedTuple):
    signature: str
    body: str


class TypeSet:
    """The clearing house for python declarations.

    Every named declaration is registered here before being rendered, so
    the same type is never declared twice. Registration is safe to call
    from several threads.
    """

    def __init__(self):
        self._types: Dict[str, _Declared] = {}
        self._imports: Set[str] = set()
        self._composite_casters: Set[str] = set()
        self._array_casters: Set[str] = set()
        self._lock = threading.Lock()

    def emit(self, name: str, signature: str, body: str) -> bool:
        """Register a declaration.

        Returns:
            True if the declaration is new, False if an identical one exists

        Raises:
            DuplicateTypeError: If a different declaration already uses the name
        """
        with self._lock:
            existing = self._types.get(name)
            if existing is None:
                self._types[name] = _Declared(signature, body)
                return True
            if existing.signature != signature or existing.body != body:
                raise DuplicateTypeError(
                    f"type '{name}' is defined twice with different shapes:\n"
                    f"{existing.signature}\n---\n{signature}"
                )
            return False

    def add_imports(self, imports) -> None:
        with self._lock:
            self._imports.update(imports)

    def require_composite_caster(self, pg_name: str) -> None:
        """Generated code must have psycopg2 decode ``pg_name`` values into tuples."""
        with self._lock:
            self._composite_casters.add(pg_name)
            self._imports.add(RUNTIME_CASTER_IMPORT)

    def require_array_caster(self, pg_name: str) -> None:
        """Generated code must have psycopg2 decode ``pg_name[]`` values into lists."""
        with self._lock:
            self._array_casters.add(pg_name)
            self._imports.add(RUNTIME_CASTER_IMPORT)

    @property
    def composite_casters(self) -> List[str]:
        return sorted(self._composite_casters)

    @property
    def array_casters(self) -> List[str]:
        return sorted(self._array_casters)

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def body(self, name: str) -> Optional[str]:
        declared = self._types.get(name)
        return declared.body if declared else None

    def names(self) -> List[str]:
        return sorted(self._types)

    @property
    def imports(self) -> List[str]:
        return sorted(self._imports)

    def render(self) -> str:
        """All declarations, sorted by name for stable output."""
        return "\n\n".join(self._types[name].body for name in self.names())

    def render_casters(self) -> str:
        """A ``register_types(conn)`` function installing the typecasters the declarations rely on.

        Empty when psycopg2's built-in typecasters are enough.
        """
        if not self._composite_casters and not self._array_casters:
            return ""
        lines = [
            "def register_types(conn) -> None:",
            '    """Register the psycopg2 typecasters the row types rely on."""',
        ]
        if self._composite_casters:
            lines.append(f"    register_composite_types(conn, {self.composite_casters!r})")
        if self._array_casters:
            lines.append(f"    register_array_types(conn, {self.array_casters!r})")
        return "\n".join(lines) + "\n"


class TypeResolver:
    """Resolves native type names to descriptors.

    Lookup order: user override, built-in table, catalog-defined types
    (arrays, enums, composites, domains). Anything else is an
    ``UnknownTypeError``.
    """

    def __init__(
        self,
        catalog: CatalogSource,
        overrides: Optional[List[TypeOverride]] = None,
        types: Optional[TypeSet] = None,
    ):
        self.catalog = catalog
        self.types = types if types is not None else TypeSet()
        self._overrides: Dict[str, TypeDescriptor] = {}
        for override in overrides or []:
            key = canonical_key(override.pg_type_name)
            self._overrides[key] = make_descriptor(
                key=key,
                name=override.type_name,
                null_name=override.nullable_type_name,
                imports=(override.pkg,) if override.pkg else (),
                sql_argument=override.sql_argument or IDENTITY,
                receive=override.receive or IDENTITY,
            )
        self._cache: Dict[str, TypeDescriptor] = {}
        # re-entrant: composites resolve their attribute types recursively
        self._lock = threading.RLock()

    def resolve(self, native_type: str) -> TypeDescriptor:
        """Map a native type name to a descriptor.

        Raises:
            UnknownTypeError: If the type has no override, no built-in
                mapping and is not a supported catalog type
        """
        key = canonical_key(native_type)
        with self._lock:
            desc = self._cache.get(key)
            if desc is None:
                desc = self._resolve_uncached(key)
                self._cache[key] = desc
                self.types.add_imports(desc.imports)
            return desc

    def resolve_oid(self, oid: int) -> TypeDescriptor:
        """Map a type oid, as reported by a describe probe, to a descriptor."""
        try:
            facts = self.catalog.type_facts(oid)
        except SchemaNotFoundError as e:
            raise UnknownTypeError(f"no type with oid {oid}") from e
        return self.resolve(facts.name)

    def _resolve_uncached(self, key: str) -> TypeDescriptor:
        if key in self._overrides:
            return self._overrides[key]
        if key in _DEFAULT_TYPES:
            return _DEFAULT_TYPES[key]
        if key.endswith("[]"):
            return self._array_of(self.resolve(key[:-2]))

        try:
            facts = self.catalog.type_facts(key)
        except SchemaNotFoundError as e:
            raise UnknownTypeError(f"unknown postgres type '{key}'") from e

        if facts.name != key and canonical_key(facts.name) != key:
            # the catalog knows this type under another spelling
            return self.resolve(facts.name).model_copy(update={"key": key})
        if facts.kind == "array" and facts.element_type:
            return self._array_of(self.resolve(facts.element_type))
        if facts.kind == "enum":
            return self._synthesize_enum(key, facts.enum_labels)
        if facts.kind == "composite":
            return self._synthesize_composite(key, [(a.name, a.data_type) for a in facts.attributes])
        if facts.kind == "domain" and facts.base_type:
            return self.resolve(facts.base_type).model_copy(update={"key": key})

        raise UnknownTypeError(
            f"no mapping for postgres type '{key}' ({facts.kind}); add a type_override"
        )

    def _array_of(self, elem: TypeDescriptor) -> TypeDescriptor:
        if elem.needs_array_caster:
            self.types.require_array_caster(elem.key)
        return array_of(elem)

    def _synthesize_enum(self, key: str, labels: List[str]) -> TypeDescriptor:
        class_name = pascal_case(key.replace(".", "_"))
        members: List[str] = []
        for label in labels:
            member = snake_case(label).upper()
            if member in members:
                member = f"{member}_{len(members)}"
            members.append(member)

        self.emit_type(
            class_name,
            f"enum {class_name}: " + ", ".join(labels),
            render_enum_type(class_name, labels, members),
        )
        logger.debug("synthesized enum %s for %s", class_name, key)
        return make_descriptor(
            key=key,
            name=class_name,
            imports=("import enum",),
            sql_argument="{0}.value",
            receive=class_name + "({0})",
            needs_array_caster=True,
        )

    def _synthesize_composite(self, key: str, attributes: List[Tuple[str, str]]) -> TypeDescriptor:
        class_name = pascal_case(key.replace(".", "_"))
        fields = []
        imports: Tuple[str, ...] = ("import dataclasses",)
        for attr_name, attr_type in attributes:
            attr = self.resolve(attr_type)
            imports += attr.imports
            # composite attributes can always be NULL
            fields.append(RowField(
                name=snake_case(attr_name),
                annotation=attr.null_name,
                pg_name=attr_name,
                receive=attr.null_receive,
            ))

        self.emit_struct_type(class_name, fields, decoder="from_record")
        # register_composite also covers arrays of the type
        self.types.require_composite_caster(key)
        logger.debug("synthesized composite %s for %s", class_name, key)
        return make_descriptor(
            key=key,
            name=class_name,
            imports=imports,
            sql_argument="dataclasses.astuple({0})",
            receive=class_name + ".from_record({0})",
        )

    def emit_type(self, name: str, signature: str, body: str) -> bool:
        """Register a named declaration discovered during resolution."""
        return self.types.emit(name, signature, body)

    def emit_struct_type(
        self,
        type_name: str,
        fields: List[RowField],
        doc: Optional[str] = None,
        decoder: str = "from_row",
    ) -> bool:
        """Register a row-accessor dataclass."""
        self.types.add_imports(ROW_TYPE_IMPORTS)
        return self.emit_type(
            type_name,
            struct_signature(fields),
            render_row_type(type_name, fields, doc=doc, decoder=decoder),
        )
