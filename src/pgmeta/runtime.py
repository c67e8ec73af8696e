"""Runtime support imported by generated data-access code.

Single-result accessors use ``single_result`` and follow one policy:
no rows raises ``NotFoundError``, more than one row raises
``TooManyRowsError``. Callers can test for the not-found case with
``is_not_found_error`` without caring which accessor raised it.

Row types for composite columns, and for arrays of types psycopg2 has
no array typecaster for, decode correctly only once the generated
``register_types(conn)`` has run on the connection. It calls
``register_composite_types`` and ``register_array_types``.
"""

from typing import Iterable, Sequence, TypeVar

import psycopg2
import psycopg2.extensions
import psycopg2.extras

T = TypeVar("T")

_ARRAY_OID_SQL = "SELECT typarray FROM pg_type WHERE oid = %s::regtype"


class NotFoundError(Exception):
    """A single-result query or a get by primary key matched no rows."""
    pass


class TooManyRowsError(Exception):
    """A single-result query matched more than one row."""
    pass


def is_not_found_error(err: BaseException) -> bool:
    """Whether an error means that the requested record does not exist."""
    return isinstance(err, NotFoundError)


def single_result(rows: Iterable[T], what: str) -> T:
    """Return the only row of ``rows``.

    Only the first two rows are consumed, so a cursor can be passed in
    directly.

    Args:
        rows: Decoded rows, or a cursor
        what: Name of the accessor, used in error messages

    Raises:
        NotFoundError: If there are no rows
        TooManyRowsError: If there is more than one row
    """
    it = iter(rows)
    try:
        first = next(it)
    except StopIteration:
        raise NotFoundError(f"{what}: record not found") from None
    try:
        next(it)
    except StopIteration:
        return first
    raise TooManyRowsError(f"{what}: expected a single row, found more")


def register_composite_types(conn, type_names: Sequence[str]) -> None:
    """Decode the named composite types, and arrays of them, into tuples on ``conn``."""
    for name in type_names:
        psycopg2.extras.register_composite(name, conn)


def register_array_types(conn, type_names: Sequence[str]) -> None:
    """Decode arrays of the named types into lists of strings on ``conn``.

    Without this psycopg2 hands such an array back as a single
    ``'{a,b}'`` literal.

    Raises:
        psycopg2.ProgrammingError: If a type does not exist
    """
    with conn.cursor() as cur:
        for name in type_names:
            cur.execute(_ARRAY_OID_SQL, (name,))
            array_oid = cur.fetchone()[0]
            caster = psycopg2.extensions.new_array_type((array_oid,), f"{name}[]", psycopg2.STRING)
            psycopg2.extensions.register_type(caster, conn)
