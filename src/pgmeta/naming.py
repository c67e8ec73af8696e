"""Conversions from postgres names to python identifiers."""

import keyword
import re

_NON_IDENT = re.compile(r"[^0-9a-zA-Z_]+")
_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def snake_case(name: str) -> str:
    """Turn an arbitrary postgres identifier into a python field name."""
    name = _CAMEL_BOUNDARY.sub("_", name)
    name = _NON_IDENT.sub("_", name).strip("_").lower()
    if not name:
        name = "field"
    if name[0].isdigit():
        name = "_" + name
    if keyword.iskeyword(name):
        name += "_"
    return name


def pascal_case(name: str) -> str:
    """Turn a postgres identifier into a python class name."""
    parts = [p for p in _NON_IDENT.sub("_", _CAMEL_BOUNDARY.sub("_", name)).split("_") if p]
    result = "".join(p[:1].upper() + p[1:] for p in parts)
    if not result:
        return "Type"
    if result[0].isdigit():
        result = "T" + result
    return result


def singularize(word: str) -> str:
    """Best-effort english singular for table names."""
    lower = word.lower()
    if lower.endswith("ies") and len(word) > 3:
        return word[:-3] + ("Y" if word[-3].isupper() else "y")
    if lower.endswith(("sses", "xes", "ches", "shes", "zzes")):
        return word[:-2]
    if lower.endswith("s") and not lower.endswith(("ss", "us", "is")):
        return word[:-1]
    return word


def table_type_name(pg_name: str) -> str:
    """The class name of the row type for a table.

    ``users`` becomes ``User`` and ``billing.invoice_items`` becomes
    ``BillingInvoiceItem``. Tables in the ``public`` schema are not prefixed.
    """
    parts = pg_name.split(".")
    if len(parts) > 1 and parts[0] == "public":
        parts = parts[1:]
    words = parts[-1].split("_")
    words[-1] = singularize(words[-1])
    parts[-1] = "_".join(words)
    return pascal_case("_".join(parts))


def reference_field_name(column_pg_name: str) -> str:
    """Name of the attribute holding the row a foreign key points at.

    ``parent_id`` becomes ``parent``. Columns without an ``_id`` suffix
    get ``_ref`` appended so the attribute never shadows the key column.
    """
    base = snake_case(column_pg_name)
    if base.endswith("_id") and len(base) > 3:
        return base[:-3]
    return base + "_ref"
