"""Graph Analytics for TaskWing.

Read-only traversals over the edge table:
- neighbors: one hop, optionally filtered by kind and direction
- shortest_paths / find_path: "why does X depend on Y?"
- dependencies / dependents: transitive depends_on closure
- related: everything within N hops regardless of kind
- cycle_check: would adding an edge close a dependency cycle?

All traversals are iterative BFS with a visited set and a depth cap. The
``related`` kind is traversed in both directions.
"""

from collections import deque
from collections.abc import Callable, Iterable

from taskwing.db.store_protocol import SQLStore
from taskwing.log_config import get_logger
from taskwing.models import DEPENDENCY_EDGE_KINDS, Direction, EdgeKind

log = get_logger("db.graph_analytics")

DEFAULT_MAX_DEPTH = 6


def bfs_path(
    start: str,
    goal: str,
    successors: Callable[[str], Iterable[str]],
    max_depth: int = 64,
) -> list[str] | None:
    """Shortest path start..goal (inclusive) following ``successors``, or None.

    Successors are visited in sorted order so the returned path is deterministic.
    """
    if start == goal:
        return [start]
    parents: dict[str, str | None] = {start: None}
    frontier = deque([(start, 0)])
    while frontier:
        node, depth = frontier.popleft()
        if depth >= max_depth:
            continue
        for nxt in sorted(set(successors(node))):
            if nxt in parents:
                continue
            parents[nxt] = node
            if nxt == goal:
                path = [nxt]
                cur = parents[nxt]
                while cur is not None:
                    path.append(cur)
                    cur = parents[cur]
                return list(reversed(path))
            frontier.append((nxt, depth + 1))
    return None


class GraphAnalytics:
    """Graph traversal and path analysis over stored edges.

    Uses dependency injection for the store to enable testing.
    """

    def __init__(self, store: SQLStore, max_depth: int = DEFAULT_MAX_DEPTH):
        self.store = store
        self.max_depth = max_depth

    def _step(self, node_id: str, kinds: list[EdgeKind] | None, direction: Direction) -> list[tuple[str, str]]:
        """(neighbor_id, kind) pairs one hop away."""
        kind_sql = ""
        kind_params: list = []
        if kinds:
            kind_sql = f" AND kind IN ({','.join('?' * len(kinds))})"
            kind_params = [k.value for k in kinds]

        out: list[tuple[str, str]] = []
        if direction in (Direction.OUT, Direction.BOTH):
            rows = self.store.query(f"SELECT to_id, kind FROM edge WHERE from_id = ?{kind_sql}", [node_id, *kind_params])
            out.extend((r["to_id"], r["kind"]) for r in rows)
        if direction in (Direction.IN, Direction.BOTH):
            rows = self.store.query(f"SELECT from_id, kind FROM edge WHERE to_id = ?{kind_sql}", [node_id, *kind_params])
            out.extend((r["from_id"], r["kind"]) for r in rows)
        if direction == Direction.OUT:
            rows = self.store.query(
                f"SELECT from_id, kind FROM edge WHERE to_id = ? AND kind = 'related'{kind_sql}",
                [node_id, *kind_params],
            )
            out.extend((r["from_id"], r["kind"]) for r in rows)
        elif direction == Direction.IN:
            rows = self.store.query(
                f"SELECT to_id, kind FROM edge WHERE from_id = ? AND kind = 'related'{kind_sql}",
                [node_id, *kind_params],
            )
            out.extend((r["to_id"], r["kind"]) for r in rows)
        return out

    def neighbors(
        self,
        node_id: str,
        kinds: list[EdgeKind] | None = None,
        direction: Direction = Direction.BOTH,
    ) -> list[str]:
        """Distinct neighbor ids, sorted."""
        return sorted({n for n, _ in self._step(node_id, kinds, direction)})

    def _successors(self, kinds: list[EdgeKind] | None, direction: Direction) -> Callable[[str], list[str]]:
        return lambda node: [n for n, _ in self._step(node, kinds, direction)]

    def find_path(
        self,
        from_id: str,
        to_id: str,
        kinds: list[EdgeKind] | None = None,
        max_len: int | None = None,
    ) -> list[str] | None:
        """One shortest outgoing path from ``from_id`` to ``to_id``."""
        return bfs_path(from_id, to_id, self._successors(kinds, Direction.OUT), max_len or self.max_depth)

    def shortest_paths(
        self,
        from_id: str,
        to_id: str,
        max_len: int | None = None,
        kinds: list[EdgeKind] | None = None,
        limit: int = 10,
    ) -> list[list[str]]:
        """All shortest outgoing paths (up to ``limit``) of at most ``max_len`` hops."""
        max_len = max_len or self.max_depth
        if from_id == to_id:
            return [[from_id]]

        # Layered BFS recording every parent at the shortest distance
        dist = {from_id: 0}
        parents: dict[str, list[str]] = {from_id: []}
        layer = [from_id]
        found = False
        depth = 0
        while layer and not found and depth < max_len:
            depth += 1
            next_layer: list[str] = []
            for node in layer:
                for nxt in sorted({n for n, _ in self._step(node, kinds, Direction.OUT)}):
                    if nxt not in dist:
                        dist[nxt] = depth
                        parents[nxt] = [node]
                        next_layer.append(nxt)
                    elif dist[nxt] == depth:
                        parents[nxt].append(node)
                    if nxt == to_id:
                        found = True
            layer = next_layer
        if not found:
            return []

        paths: list[list[str]] = []
        stack: list[list[str]] = [[to_id]]
        while stack and len(paths) < limit:
            partial = stack.pop()
            head = partial[-1]
            if head == from_id:
                paths.append(list(reversed(partial)))
                continue
            for parent in sorted(parents[head], reverse=True):
                stack.append(partial + [parent])
        return paths

    def _closure(self, node_id: str, kinds: list[EdgeKind] | None, direction: Direction, depth: int) -> list[str]:
        seen = {node_id}
        order: list[str] = []
        frontier = deque([(node_id, 0)])
        while frontier:
            node, d = frontier.popleft()
            if d >= depth:
                continue
            for nxt in sorted({n for n, _ in self._step(node, kinds, direction)}):
                if nxt not in seen:
                    seen.add(nxt)
                    order.append(nxt)
                    frontier.append((nxt, d + 1))
        return order

    def dependencies(self, node_id: str, depth: int | None = None) -> list[str]:
        """Everything ``node_id`` transitively depends on, nearest first."""
        return self._closure(node_id, [EdgeKind.DEPENDS_ON], Direction.OUT, depth or self.max_depth)

    def dependents(self, node_id: str, depth: int | None = None) -> list[str]:
        """Everything that transitively depends on ``node_id``, nearest first."""
        return self._closure(node_id, [EdgeKind.DEPENDS_ON], Direction.IN, depth or self.max_depth)

    def related(self, node_id: str, depth: int = 1) -> list[str]:
        return self._closure(node_id, None, Direction.BOTH, min(depth, self.max_depth))

    def cycle_check(
        self,
        from_id: str,
        to_id: str,
        kinds: list[EdgeKind] | None = None,
    ) -> list[str] | None:
        """Cycle that adding ``from_id -> to_id`` would close, or None.

        The path starts and ends at ``from_id``: [from, to, ..., from].
        """
        kinds = kinds or list(DEPENDENCY_EDGE_KINDS)
        back = bfs_path(to_id, from_id, self._successors(kinds, Direction.OUT), max_depth=10_000)
        if back is None:
            return None
        return [from_id, *back]
