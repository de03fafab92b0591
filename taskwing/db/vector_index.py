"""Vector index over the embedding table.

Vectors are stored L2-normalized as float32 blobs, so cosine similarity is a
dot product. Queries scan an in-memory matrix built from the table; the matrix
is rebuilt whenever the write generation (bumped by triggers on every insert,
update or delete of an embedding row) changes, so a vector inserted in the
current transaction is immediately queryable on the writing thread.

Above ``ivf_threshold`` vectors a coarse IVF index (k-means lists, probed
``ivf_nprobe`` at a time) replaces the exhaustive scan. It is built lazily on
the first query after a change.
"""

import threading
from dataclasses import dataclass

import numpy as np

from taskwing.db.store_protocol import SQLStore
from taskwing.log_config import get_logger, log_timing
from taskwing.models import EmbeddingVector, NodeHit, NodeType
from taskwing.protocols import Clock

log = get_logger("db.vector_index")


def l2_normalize(vec: np.ndarray) -> np.ndarray:
    vec = np.asarray(vec, dtype=np.float32)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return vec
    return vec / norm


@dataclass
class _Matrix:
    signature: tuple
    model_tag: str | None
    ids: list[str]
    types: list[str]
    workspaces: list[str]
    vectors: np.ndarray  # (n, dim)
    centroids: np.ndarray | None = None
    assignments: np.ndarray | None = None


def _kmeans(vectors: np.ndarray, k: int, iterations: int = 8, seed: int = 0) -> tuple[np.ndarray, np.ndarray]:
    """Spherical k-means; returns (centroids, assignment per row)."""
    rng = np.random.default_rng(seed)
    centroids = vectors[rng.choice(len(vectors), size=k, replace=False)].copy()
    assignments = np.zeros(len(vectors), dtype=np.int64)
    for _ in range(iterations):
        assignments = np.argmax(vectors @ centroids.T, axis=1)
        for c in range(k):
            members = vectors[assignments == c]
            if len(members):
                centroid = members.mean(axis=0)
                norm = np.linalg.norm(centroid)
                centroids[c] = centroid / norm if norm else centroid
    return centroids, assignments


class VectorIndex:
    """Stores embeddings and answers k-nearest-neighbour queries."""

    def __init__(self, store: SQLStore, clock: Clock, ivf_threshold: int = 100_000, ivf_nprobe: int = 8):
        self.store = store
        self.clock = clock
        self.ivf_threshold = ivf_threshold
        self.ivf_nprobe = ivf_nprobe
        self._cache: dict[str | None, _Matrix] = {}
        self._cache_lock = threading.Lock()

    # =========================================================================
    # Writes
    # =========================================================================

    def put(self, node_id: str, model_tag: str, vector: np.ndarray) -> EmbeddingVector:
        vec = l2_normalize(vector)
        self.store.execute(
            """
            INSERT OR REPLACE INTO embedding (node_id, model_tag, dim, vector, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (node_id, model_tag, int(vec.shape[0]), vec.astype(np.float32).tobytes(), self.clock.now()),
        )
        return EmbeddingVector(node_id=node_id, model_tag=model_tag, vector=vec)

    def delete(self, node_id: str) -> None:
        self.store.execute("DELETE FROM embedding WHERE node_id = ?", (node_id,))

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, node_id: str) -> EmbeddingVector | None:
        row = self.store.query_one("SELECT * FROM embedding WHERE node_id = ?", (node_id,))
        if row is None:
            return None
        return EmbeddingVector(
            node_id=row["node_id"],
            model_tag=row["model_tag"],
            vector=np.frombuffer(row["vector"], dtype=np.float32).copy(),
        )

    def count(self, model_tag: str | None = None) -> int:
        if model_tag is None:
            return self.store.query_one("SELECT count(*) FROM embedding")[0]
        return self.store.query_one("SELECT count(*) FROM embedding WHERE model_tag = ?", (model_tag,))[0]

    def node_ids(self, model_tag: str | None = None) -> set[str]:
        if model_tag is None:
            rows = self.store.query("SELECT node_id FROM embedding")
        else:
            rows = self.store.query("SELECT node_id FROM embedding WHERE model_tag = ?", (model_tag,))
        return {r["node_id"] for r in rows}

    def stale_ids(self, model_tag: str) -> list[str]:
        """Nodes whose stored vector was produced by a different model."""
        rows = self.store.query(
            "SELECT node_id FROM embedding WHERE model_tag != ? ORDER BY node_id", (model_tag,)
        )
        return [r["node_id"] for r in rows]

    def _signature(self) -> tuple:
        row = self.store.query_one("SELECT generation FROM vector_generation WHERE id = 1")
        return (row[0] if row is not None else None,)

    def _matrix(self, model_tag: str | None, dim: int) -> _Matrix | None:
        signature = (*self._signature(), dim)
        with self._cache_lock:
            cached = self._cache.get(model_tag)
            if cached is not None and cached.signature == signature:
                return cached

        sql = """
            SELECT e.node_id, e.vector, n.type, n.workspace_id
            FROM embedding e JOIN node_index n ON n.id = e.node_id
            WHERE e.dim = ?
        """
        params: list = [dim]
        if model_tag is not None:
            sql += " AND e.model_tag = ?"
            params.append(model_tag)
        rows = self.store.query(sql + " ORDER BY e.node_id", params)
        if not rows:
            return None

        with log_timing(f"Vector matrix build ({len(rows)} rows)", log, level="trace"):
            vectors = np.vstack([np.frombuffer(r["vector"], dtype=np.float32) for r in rows])
            matrix = _Matrix(
                signature=signature,
                model_tag=model_tag,
                ids=[r["node_id"] for r in rows],
                types=[r["type"] for r in rows],
                workspaces=[r["workspace_id"] for r in rows],
                vectors=vectors,
            )
        with self._cache_lock:
            self._cache[model_tag] = matrix
        return matrix

    def _ensure_ivf(self, matrix: _Matrix) -> None:
        if matrix.centroids is not None:
            return
        nlist = max(1, int(np.sqrt(len(matrix.ids))))
        with log_timing(f"IVF build ({len(matrix.ids)} vectors, {nlist} lists)", log, level="info"):
            matrix.centroids, matrix.assignments = _kmeans(matrix.vectors, nlist)

    def knn(
        self,
        vector: np.ndarray,
        k: int,
        model_tag: str | None = None,
        types: list[NodeType] | None = None,
        workspace_id: str | None = None,
    ) -> list[NodeHit]:
        """Top-k nodes by cosine similarity.

        Args:
            vector: Query vector (normalized here)
            k: Number of hits
            model_tag: Only compare against vectors from this model
            types: Restrict to these node types
            workspace_id: Restrict to one workspace

        Returns:
            Hits ordered by descending similarity, then node id
        """
        query = l2_normalize(vector)
        matrix = self._matrix(model_tag, int(query.shape[0]))
        if matrix is None or k <= 0:
            return []

        candidates = np.arange(len(matrix.ids))
        if len(matrix.ids) > self.ivf_threshold:
            self._ensure_ivf(matrix)
            nearest_lists = np.argsort(-(matrix.centroids @ query))[: self.ivf_nprobe]
            candidates = np.nonzero(np.isin(matrix.assignments, nearest_lists))[0]

        type_values = {t.value for t in types} if types else None
        if type_values is not None or workspace_id is not None:
            candidates = np.array(
                [
                    i for i in candidates
                    if (type_values is None or matrix.types[i] in type_values)
                    and (workspace_id is None or matrix.workspaces[i] == workspace_id)
                ],
                dtype=np.int64,
            )
        if len(candidates) == 0:
            return []

        # Rows are ordered by node id, so a stable sort breaks score ties by id
        candidates = np.sort(candidates)
        scores = matrix.vectors[candidates] @ query
        order = np.argsort(-scores, kind="stable")
        hits = [
            NodeHit(id=matrix.ids[candidates[j]], score=float(np.clip(scores[j], -1.0, 1.0)))
            for j in order[:k]
        ]
        log.trace(f"kNN k={k} over {len(candidates)} candidates -> {len(hits)} hits")
        return hits
