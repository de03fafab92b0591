"""Relationship Manager for TaskWing.

Manages typed edges between knowledge nodes:
- depends_on, extends, replaces, calls, implements: directional
- related: undirected; stored once with the lexicographically smaller id as
  from_id and matched from either endpoint at query time

Inserting an existing (from, to, kind) edge is a no-op apart from keeping the
higher confidence. A depends_on edge that would close a cycle is rejected.
"""

from taskwing.db.graph_analytics import GraphAnalytics
from taskwing.db.store_protocol import SQLStore
from taskwing.errors import CycleError, NotFoundError, ValidationError
from taskwing.log_config import get_logger
from taskwing.models import Direction, Edge, EdgeKind
from taskwing.protocols import Clock

log = get_logger("db.relationships")


def canonical_endpoints(from_id: str, to_id: str, kind: EdgeKind) -> tuple[str, str]:
    """Storage direction for an edge; only ``related`` is reordered."""
    if kind == EdgeKind.RELATED and to_id < from_id:
        return to_id, from_id
    return from_id, to_id


def _edge_from_row(row) -> Edge:
    return Edge(
        from_id=row["from_id"],
        to_id=row["to_id"],
        kind=EdgeKind(row["kind"]),
        confidence=row["confidence"],
        evidence=row["evidence"],
        created_at=row["created_at"],
    )


class RelationshipManager:
    """Edge CRUD over the edge table.

    Uses dependency injection for the store so tests can run against a
    throwaway database.
    """

    def __init__(self, store: SQLStore, clock: Clock):
        self.store = store
        self.clock = clock
        self._graph = GraphAnalytics(store)

    def _node_exists(self, node_id: str) -> bool:
        return self.store.query_one("SELECT 1 FROM node_index WHERE id = ?", (node_id,)) is not None

    def add_edge(
        self,
        from_id: str,
        to_id: str,
        kind: EdgeKind,
        confidence: float = 1.0,
        evidence: str | None = None,
    ) -> Edge:
        """Insert an edge idempotently.

        Raises:
            ValidationError: Self-edge or confidence outside [0, 1]
            NotFoundError: If either endpoint does not exist
            CycleError: If a depends_on edge would close a cycle
        """
        if from_id == to_id:
            raise ValidationError(f"Self-referencing {kind.value} edge on {from_id}")
        if not 0.0 <= confidence <= 1.0:
            raise ValidationError(f"Edge confidence must be within [0, 1], got {confidence}")

        with self.store.transaction():
            for node_id in (from_id, to_id):
                if not self._node_exists(node_id):
                    raise NotFoundError("Node", node_id)
            if kind == EdgeKind.DEPENDS_ON:
                cycle = self._graph.cycle_check(from_id, to_id, kinds=[EdgeKind.DEPENDS_ON])
                if cycle:
                    raise CycleError(cycle)

            src, dst = canonical_endpoints(from_id, to_id, kind)
            now = self.clock.now()
            self.store.execute(
                """
                INSERT INTO edge (from_id, to_id, kind, confidence, evidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(from_id, to_id, kind) DO UPDATE SET
                    confidence = max(edge.confidence, excluded.confidence),
                    evidence = COALESCE(edge.evidence, excluded.evidence)
                """,
                (src, dst, kind.value, confidence, evidence, now),
            )
            row = self.store.query_one(
                "SELECT * FROM edge WHERE from_id = ? AND to_id = ? AND kind = ?",
                (src, dst, kind.value),
            )
        log.trace(f"Edge {src[:8]} -[{kind.value}]-> {dst[:8]}")
        return _edge_from_row(row)

    def remove_edge(self, from_id: str, to_id: str, kind: EdgeKind) -> bool:
        src, dst = canonical_endpoints(from_id, to_id, kind)
        cur = self.store.execute(
            "DELETE FROM edge WHERE from_id = ? AND to_id = ? AND kind = ?",
            (src, dst, kind.value),
        )
        return cur.rowcount > 0

    def get_edges(
        self,
        node_id: str,
        direction: Direction = Direction.BOTH,
        kinds: list[EdgeKind] | None = None,
    ) -> list[Edge]:
        """Edges touching a node.

        ``related`` edges match from either endpoint whatever the direction.
        """
        clauses = []
        params: list = []
        if direction in (Direction.OUT, Direction.BOTH):
            clauses.append("from_id = ?")
            params.append(node_id)
        if direction in (Direction.IN, Direction.BOTH):
            clauses.append("to_id = ?")
            params.append(node_id)
        if direction != Direction.BOTH:
            clauses.append("(kind = 'related' AND (from_id = ? OR to_id = ?))")
            params.extend([node_id, node_id])
        sql = f"SELECT * FROM edge WHERE ({' OR '.join(clauses)})"
        if kinds:
            sql += f" AND kind IN ({','.join('?' * len(kinds))})"
            params.extend(k.value for k in kinds)
        rows = self.store.query(sql + " ORDER BY kind, from_id, to_id", params)
        return [_edge_from_row(r) for r in rows]

    def all_edges(self, workspace_id: str | None = None) -> list[Edge]:
        if workspace_id is None:
            rows = self.store.query("SELECT * FROM edge ORDER BY from_id, to_id, kind")
        else:
            rows = self.store.query(
                """
                SELECT e.* FROM edge e JOIN node_index n ON n.id = e.from_id
                WHERE n.workspace_id = ? ORDER BY e.from_id, e.to_id, e.kind
                """,
                (workspace_id,),
            )
        return [_edge_from_row(r) for r in rows]

    def orphan_edges(self) -> list[Edge]:
        """Edges whose endpoints no longer exist."""
        rows = self.store.query(
            """
            SELECT * FROM edge
            WHERE from_id NOT IN (SELECT id FROM node_index)
               OR to_id NOT IN (SELECT id FROM node_index)
            ORDER BY from_id, to_id, kind
            """
        )
        return [_edge_from_row(r) for r in rows]

    def delete_orphan_edges(self) -> int:
        cur = self.store.execute(
            """
            DELETE FROM edge
            WHERE from_id NOT IN (SELECT id FROM node_index)
               OR to_id NOT IN (SELECT id FROM node_index)
            """
        )
        if cur.rowcount:
            log.info(f"Removed {cur.rowcount} orphan edges")
        return cur.rowcount
