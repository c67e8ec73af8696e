"""Rendering of row-accessor dataclass declarations.

A row-accessor type is a dataclass with one field per result column plus
a ``from_row`` classmethod. ``from_row`` decodes a row positionally, and
the positions are fixed when the declaration is rendered, so ``COLUMNS``
records the column order the generated code expects to receive.
"""

from typing import List, NamedTuple, Optional

ROW_TYPE_IMPORTS = (
    "from dataclasses import dataclass, field",
    "from typing import Any, ClassVar, List, Optional, Sequence, Tuple",
)

_INDENT = "    "


class RowField(NamedTuple):
    """One attribute of a rendered dataclass."""
    name: str
    annotation: str
    pg_name: Optional[str] = None  # None for attributes not read from the row
    receive: str = "{0}"  # template turning the raw value into the field value
    default: Optional[str] = None


def struct_signature(fields: List[RowField]) -> str:
    """The part of a declaration that identifies its shape."""
    return "\n".join(f"{f.name}: {f.annotation}" for f in fields)


def _decode_expr(f: RowField, idx: int) -> str:
    return f.receive.format(f"row[{idx}]")


def render_row_type(
    class_name: str,
    fields: List[RowField],
    doc: Optional[str] = None,
    decoder: str = "from_row",
) -> str:
    """Render a dataclass declaration for a row type.

    Fields with a ``pg_name`` are decoded from the row in the order they
    are given. The rest must carry a default and are left at it.
    """
    row_fields = [f for f in fields if f.pg_name is not None]
    extra_fields = [f for f in fields if f.pg_name is None]

    lines: List[str] = ["@dataclass", f"class {class_name}:"]
    if doc:
        lines.append(f'{_INDENT}"""{doc}"""')
        lines.append("")

    lines.append(f"{_INDENT}COLUMNS: ClassVar[Tuple[str, ...]] = (")
    for f in row_fields:
        lines.append(f'{_INDENT * 2}"{f.pg_name}",')
    lines.append(f"{_INDENT})")
    lines.append("")

    for f in row_fields:
        lines.append(f"{_INDENT}{f.name}: {f.annotation}")
    for f in extra_fields:
        lines.append(f"{_INDENT}{f.name}: {f.annotation} = {f.default}")
    lines.append("")

    lines.append(f"{_INDENT}@classmethod")
    lines.append(f'{_INDENT}def {decoder}(cls, row: Sequence[Any]) -> "{class_name}":')
    lines.append(f"{_INDENT * 2}return cls(")
    for idx, f in enumerate(row_fields):
        lines.append(f"{_INDENT * 3}{f.name}={_decode_expr(f, idx)},")
    lines.append(f"{_INDENT * 2})")

    return "\n".join(lines) + "\n"


def render_enum_type(class_name: str, labels: List[str], member_names: List[str]) -> str:
    """Render a str-valued Enum declaration."""
    lines = [f"class {class_name}(str, enum.Enum):"]
    if not labels:
        lines.append(f"{_INDENT}pass")
    for member, label in zip(member_names, labels):
        escaped = label.replace("\\", "\\\\").replace('"', '\\"')
        lines.append(f'{_INDENT}{member} = "{escaped}"')
    return "\n".join(lines) + "\n"
