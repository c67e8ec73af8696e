"""Foreign key relationships between resolved tables."""

import logging
from collections import deque
from typing import Deque, Dict, List, NamedTuple, Optional, Set, Tuple

from .errors import ConfigError, SchemaNotFoundError
from .meta import ColumnMeta, IncludeSpec, Reference, TableMeta
from .naming import reference_field_name, snake_case

logger = logging.getLogger(__name__)


class _Edge(NamedTuple):
    source: TableMeta
    column: ColumnMeta
    target: str
    one_to_one: bool


class RelationshipGraph:
    """The reference graph, as adjacency lists keyed by table name.

    The graph may contain cycles (self references, tables pointing at each
    other), so every traversal tracks the tables it has already expanded.
    """

    def __init__(self, tables: List[str]):
        self.outgoing: Dict[str, List[Reference]] = {t: [] for t in tables}
        self.incoming: Dict[str, List[Reference]] = {t: [] for t in tables}

    def add(self, ref: Reference) -> None:
        self.outgoing[ref.points_from].append(ref)
        self.incoming[ref.points_to].append(ref)

    def edges(self) -> List[Reference]:
        return [ref for refs in self.outgoing.values() for ref in refs]

    def include_spec(self, table: str) -> IncludeSpec:
        """The 'include everything' tree for a table.

        Lists every reference reachable by following outgoing references.
        Each table is expanded at most once; a reference leading back to an
        already expanded table appears as a leaf.
        """
        root = IncludeSpec(name=table, table=table)
        expanded: Set[str] = {table}
        queue: Deque[IncludeSpec] = deque([root])
        while queue:
            node = queue.popleft()
            for ref in self.outgoing[node.table]:
                child = IncludeSpec(name=ref.outgoing_field_name, table=ref.points_to)
                node.includes.append(child)
                if ref.points_to not in expanded:
                    expanded.add(ref.points_to)
                    queue.append(child)
        return root


class RelationshipBuilder:
    """Derives references from foreign keys and ``belongs_to`` configuration."""

    def __init__(self, tables: Dict[str, TableMeta]):
        self.tables = tables
        self._index: Dict[str, str] = {}
        for pg_name, meta in tables.items():
            self._index[pg_name] = pg_name
            self._index.setdefault(meta.config.name, pg_name)
        self._used_names: Dict[str, Set[str]] = {
            pg_name: {c.py_name for c in meta.columns} for pg_name, meta in tables.items()
        }

    def build(self) -> RelationshipGraph:
        """Attach references and include specs to every table.

        Outgoing attribute names are claimed for every table before any
        incoming ones, so the name derived from a table's own key column
        wins over the name of a reference pointing into it.
        """
        edges: List[_Edge] = []
        seen: Set[Tuple[str, str, str]] = set()

        def add(meta: TableMeta, column: ColumnMeta, target: str, one_to_one: bool):
            key = (meta.pg_name, column.pg_name, target)
            if key not in seen:
                seen.add(key)
                edges.append(_Edge(meta, column, target, one_to_one))

        for meta in self.tables.values():
            for belongs_to in meta.config.belongs_to:
                target = self._index.get(belongs_to.table)
                if target is None:
                    raise ConfigError(
                        f"table '{meta.pg_name}' belongs to '{belongs_to.table}', which is not configured"
                    )
                column = meta.find_column(belongs_to.key_field)
                if column is None:
                    raise SchemaNotFoundError(
                        f"belongs_to key field '{belongs_to.key_field}' is not a column of '{meta.pg_name}'"
                    )
                add(meta, column, target, belongs_to.one_to_one or column.unique)

            if meta.config.no_infer_belongs_to:
                continue
            for fk in meta.foreign_keys:
                target = self._index.get(fk.references_table)
                if target is None:
                    logger.debug(
                        "skipping foreign key %s.%s: table '%s' is not configured",
                        meta.pg_name, fk.column, fk.references_table,
                    )
                    continue
                if fk.references_column != self.tables[target].pkey_col.pg_name:
                    logger.debug(
                        "skipping foreign key %s.%s: it does not reference the primary key of '%s'",
                        meta.pg_name, fk.column, target,
                    )
                    continue
                column = meta.find_column(fk.column)
                add(meta, column, target, column.unique)

        outgoing_names = [
            self._claim(e.source.pg_name, reference_field_name(e.column.pg_name), None)
            for e in edges
        ]
        graph = RelationshipGraph(list(self.tables))
        for edge, outgoing_name in zip(edges, outgoing_names):
            if edge.one_to_one:
                incoming_base = snake_case(edge.source.type_name)
            else:
                incoming_base = snake_case(edge.source.pg_name)
            graph.add(Reference(
                points_from=edge.source.pg_name,
                points_from_field=edge.column,
                points_to=edge.target,
                points_to_field=self.tables[edge.target].pkey_col,
                one_to_one=edge.one_to_one,
                outgoing_field_name=outgoing_name,
                incoming_field_name=self._claim(edge.target, incoming_base, edge.column.pg_name),
            ))
            logger.debug("%s.%s references %s", edge.source.pg_name, edge.column.pg_name, edge.target)

        for pg_name, meta in self.tables.items():
            meta.outgoing_references = list(graph.outgoing[pg_name])
            meta.incoming_references = list(graph.incoming[pg_name])
            meta.all_include_spec = graph.include_spec(pg_name)
        return graph

    def _claim(self, table: str, name: str, via_column: Optional[str]) -> str:
        """Reserve an attribute name on a table's row type."""
        used = self._used_names[table]
        candidate = name
        if candidate in used and via_column:
            candidate = f"{name}_by_{snake_case(via_column)}"
        suffix = 2
        base = candidate
        while candidate in used:
            candidate = f"{base}_{suffix}"
            suffix += 1
        used.add(candidate)
        return candidate
