"""Bit positions for partial updates, upserts and default columns.

Every column of a table gets a bit equal to its position in the table's
resolved column order. Generated update and upsert calls take a
``FieldSet`` naming the columns to write; inserts take one naming the
columns to leave to their database default.
"""

from typing import Dict, Iterable, Iterator

from pydantic import BaseModel, ConfigDict

from .meta import TableMeta


class FieldSet:
    """A fixed-size bitset over the columns of one table.

    Backed by a python int, so comparisons and set algebra cost one
    operation per machine word rather than one per column.
    """

    __slots__ = ("size", "_bits")

    def __init__(self, size: int, bits: int = 0):
        if size < 0:
            raise ValueError("size must be non-negative")
        self.size = size
        self._bits = bits & ((1 << size) - 1)

    @classmethod
    def filled(cls, size: int) -> "FieldSet":
        return cls(size, (1 << size) - 1)

    @classmethod
    def of(cls, size: int, indices: Iterable[int]) -> "FieldSet":
        fs = cls(size)
        for idx in indices:
            fs.set(idx)
        return fs

    def _check(self, idx: int) -> None:
        if not 0 <= idx < self.size:
            raise IndexError(f"field index {idx} out of range for {self.size} fields")

    def set(self, idx: int, on: bool = True) -> "FieldSet":
        """Set or clear a bit in place. Returns self so calls can be chained."""
        self._check(idx)
        if on:
            self._bits |= 1 << idx
        else:
            self._bits &= ~(1 << idx)
        return self

    def test(self, idx: int) -> bool:
        self._check(idx)
        return bool(self._bits >> idx & 1)

    def count(self) -> int:
        return bin(self._bits).count("1")

    def union(self, other: "FieldSet") -> "FieldSet":
        return FieldSet(max(self.size, other.size), self._bits | other._bits)

    def intersection(self, other: "FieldSet") -> "FieldSet":
        return FieldSet(max(self.size, other.size), self._bits & other._bits)

    def difference(self, other: "FieldSet") -> "FieldSet":
        return FieldSet(self.size, self._bits & ~other._bits)

    def is_subset(self, other: "FieldSet") -> bool:
        return self._bits & ~other._bits == 0

    __or__ = union
    __and__ = intersection
    __sub__ = difference
    __le__ = is_subset

    def __eq__(self, other) -> bool:
        if not isinstance(other, FieldSet):
            return NotImplemented
        return self.size == other.size and self._bits == other._bits

    __hash__ = None

    def __iter__(self) -> Iterator[int]:
        """Indices of the set bits, ascending."""
        bits = self._bits
        while bits:
            low = bits & -bits
            yield low.bit_length() - 1
            bits ^= low

    def __int__(self) -> int:
        return self._bits

    def __repr__(self) -> str:
        return f"FieldSet(size={self.size}, bits={self._bits:#b})"


class BitLayout(BaseModel):
    """Field indices and the standard masks of one table."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    table: str
    indices: Dict[str, int]  # pg column name -> bit index, in column order
    all_fields: FieldSet
    mutable_fields: FieldSet
    defaultable_fields: FieldSet

    @property
    def size(self) -> int:
        return len(self.indices)

    @property
    def max_index(self) -> int:
        return len(self.indices) - 1

    def index_of(self, column: str) -> int:
        try:
            return self.indices[column]
        except KeyError:
            raise KeyError(f"table '{self.table}' has no column '{column}'") from None

    def mask(self, *columns: str) -> FieldSet:
        """A field set with the bits of the named columns set."""
        return FieldSet.of(self.size, (self.index_of(c) for c in columns))


def assign_bits(table: TableMeta) -> BitLayout:
    """Assign each column the bit equal to its position in the column order."""
    size = len(table.columns)
    indices = {col.pg_name: idx for idx, col in enumerate(table.columns)}
    return BitLayout(
        table=table.pg_name,
        indices=indices,
        all_fields=FieldSet.filled(size),
        mutable_fields=FieldSet.of(size, (i for i, c in enumerate(table.columns) if c.is_mutable)),
        defaultable_fields=FieldSet.of(size, (i for i, c in enumerate(table.columns) if c.has_default)),
    )
