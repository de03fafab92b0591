"""Hybrid retrieval: FTS5 keyword search fused with vector kNN.

Pipeline per query:
1. FTS and vector channels run concurrently, each fetching
   max(2 * limit, candidate_floor) hits
2. Each channel's scores are min-max normalized over its own hits
3. Reciprocal Rank Fusion: score(id) = sum_c w_c / (rrf_k + rank_c(id)), rank from 1;
   with a single channel its normalized scores are used directly
4. Service/type/verification filters
5. Optional rerank of the top candidates (circuit-broken; failures fall back)
6. Truncate to ``limit`` and attach snippets

Ties are broken by normalized FTS score, then newer updated_at, then id.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np

from taskwing.cancellation import CancellationToken
from taskwing.config import RetrievalConfig
from taskwing.db import DatabaseManager
from taskwing.errors import ExternalServiceError, ValidationError
from taskwing.log_config import get_logger, log_timing
from taskwing.models import NodeHit, NodeRecord, NodeType, SearchResponse, SearchResult, VerificationStatus
from taskwing.protocols import Embedder, Reranker

log = get_logger("knowledge.retrieval")

SOURCE_FTS = "fts"
SOURCE_VECTOR = "vector"
SOURCE_FUSED = "fused"
SOURCE_RERANKED = "reranked"

RERANK_DOC_CHARS = 1000


@dataclass
class SearchOptions:
    """Retrieval options.

    Attributes:
        limit: Maximum results
        workspace_id: Workspace scope (None searches every workspace in the DB)
        service: Service filter; nodes without a service always match
        types: Node types to return (default: all but symbols)
        include_symbols: Add symbols to the default type set
        include_unverified: Keep nodes whose evidence no longer matches
        disable_vector: Keyword channel only
        use_reranker: Rerank when a reranker is configured
        generate_answer: Ask the answer synthesizer for a cited answer
        cancel: Cancellation handle
    """

    limit: int = 10
    workspace_id: str | None = None
    service: str | None = None
    types: list[NodeType] | None = None
    include_symbols: bool = False
    include_unverified: bool = False
    disable_vector: bool = False
    use_reranker: bool = True
    generate_answer: bool = False
    cancel: CancellationToken | None = None

    def node_types(self) -> list[NodeType]:
        if self.types:
            return list(self.types)
        return [t for t in NodeType if t != NodeType.SYMBOL or self.include_symbols]


@dataclass
class Candidate:
    """A node during fusion, before truncation."""

    id: str
    score: float
    fts_score: float | None = None
    vector_score: float | None = None
    sources: set[str] = field(default_factory=set)
    record: NodeRecord | None = None
    reranked: bool = False

    @property
    def source(self) -> str:
        if self.reranked:
            return SOURCE_RERANKED
        if len(self.sources) == 1:
            return next(iter(self.sources))
        return SOURCE_FUSED

    def sort_key(self) -> tuple:
        fts = self.fts_score if self.fts_score is not None else -1.0
        updated = self.record.updated_at if self.record is not None else 0.0
        return (-self.score, -fts, -updated, self.id)


def normalize_scores(hits: list[NodeHit]) -> dict[str, float]:
    """Min-max normalize a channel's scores to [0, 1]; a flat channel maps to 1.0."""
    if not hits:
        return {}
    scores = np.array([h.score for h in hits], dtype=np.float64)
    lo, hi = float(scores.min()), float(scores.max())
    if hi - lo <= 1e-12:
        return {h.id: 1.0 for h in hits}
    return {h.id: (h.score - lo) / (hi - lo) for h in hits}


def fuse(
    fts_hits: list[NodeHit] | None,
    vector_hits: list[NodeHit] | None,
    config: RetrievalConfig,
) -> dict[str, Candidate]:
    """Combine channel hits into candidates keyed by node id.

    A channel passed as None is unavailable; an empty list is a channel that
    ran and found nothing.
    """
    channels: list[tuple[str, list[NodeHit], float]] = []
    if fts_hits is not None:
        channels.append((SOURCE_FTS, fts_hits, config.fts_weight))
    if vector_hits is not None:
        channels.append((SOURCE_VECTOR, vector_hits, config.vector_weight))

    candidates: dict[str, Candidate] = {}
    single = len(channels) == 1
    for name, hits, weight in channels:
        normalized = normalize_scores(hits)
        for rank, hit in enumerate(hits, start=1):
            cand = candidates.get(hit.id)
            if cand is None:
                cand = candidates[hit.id] = Candidate(id=hit.id, score=0.0)
            cand.sources.add(name)
            if name == SOURCE_FTS:
                cand.fts_score = normalized[hit.id]
            else:
                cand.vector_score = normalized[hit.id]
            if single:
                cand.score = normalized[hit.id]
            else:
                cand.score += weight / (config.rrf_k + rank)
    return candidates


class Retriever:
    """Runs the hybrid pipeline against one DatabaseManager.

    The vector channel runs on a long-lived worker thread so its SQLite
    connection is reused across queries.
    """

    def __init__(
        self,
        db: DatabaseManager,
        embedder: Embedder | None = None,
        reranker: Reranker | None = None,
        config: RetrievalConfig | None = None,
    ):
        self.db = db
        self.embedder = embedder
        self.reranker = reranker
        self.config = config or RetrievalConfig()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="taskwing-vector")

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def candidate_count(self, limit: int) -> int:
        return max(2 * limit, self.config.candidate_floor)

    def _vector_channel(self, query: str, k: int, options: SearchOptions) -> list[NodeHit]:
        if options.cancel is not None:
            options.cancel.raise_if_cancelled()
        vector = self.embedder.embed_batch([query], role="query")[0]
        return self.db.vectors.knn(
            vector,
            k,
            model_tag=self.embedder.model_tag,
            types=options.node_types(),
            workspace_id=options.workspace_id,
        )

    def search(self, query: str, options: SearchOptions | None = None) -> SearchResponse:
        """Ranked nodes for ``query``; degraded channels are listed in the response.

        Raises:
            ValidationError: Empty query or non-positive limit
            CancelledError: If cancelled before results are assembled
        """
        options = options or SearchOptions()
        if not query or not query.strip():
            raise ValidationError("Search query must not be empty")
        if options.limit <= 0:
            raise ValidationError(f"Search limit must be positive, got {options.limit}")
        if options.cancel is not None:
            options.cancel.raise_if_cancelled()

        k = self.candidate_count(options.limit)
        types = options.node_types()
        response = SearchResponse()

        with log_timing(f"Search '{query[:40]}' (limit={options.limit})", log):
            vector_future = None
            if self.embedder is not None and not options.disable_vector:
                vector_future = self._executor.submit(self._vector_channel, query, k, options)
            elif self.embedder is None and not options.disable_vector:
                response.degraded.append("vector_unconfigured")

            fts_hits = self.db.fts.search(query, limit=k, types=types, workspace_id=options.workspace_id)

            vector_hits = None
            if vector_future is not None:
                try:
                    vector_hits = vector_future.result()
                except ExternalServiceError as e:
                    log.warning(f"Vector channel unavailable, using keyword results only: {e}")
                    response.degraded.append("vector")

            candidates = fuse(fts_hits, vector_hits, self.config)
            ranked = self._filter(candidates, options, types)
            ranked = self._rerank(query, ranked, options, response)
            ranked = ranked[: options.limit]

            snippets = self.db.fts.snippets(query, [c.id for c in ranked])
            response.results = [
                SearchResult(
                    node_id=c.id,
                    type=c.record.type,
                    title=c.record.title,
                    summary=c.record.summary,
                    score=round(c.score, 6),
                    source=c.source,
                    snippet=snippets.get(c.id),
                )
                for c in ranked
            ]

        log.debug(
            f"Search returned {len(response.results)} results "
            f"(fts={len(fts_hits)}, vector={len(vector_hits) if vector_hits is not None else '-'}, "
            f"degraded={response.degraded})"
        )
        return response

    def _filter(
        self,
        candidates: dict[str, Candidate],
        options: SearchOptions,
        types: list[NodeType],
    ) -> list[Candidate]:
        records = self.db.entities.get_records(list(candidates))
        kept: list[Candidate] = []
        for node_id, cand in candidates.items():
            record = records.get(node_id)
            if record is None:
                continue
            if record.type not in types:
                continue
            if options.service is not None and record.service not in (None, options.service):
                continue
            if record.verification_status == VerificationStatus.UNVERIFIED and not options.include_unverified:
                continue
            cand.record = record
            kept.append(cand)
        kept.sort(key=Candidate.sort_key)
        return kept

    def _rerank(
        self,
        query: str,
        ranked: list[Candidate],
        options: SearchOptions,
        response: SearchResponse,
    ) -> list[Candidate]:
        if not options.use_reranker or self.reranker is None or len(ranked) < 2:
            return ranked
        if options.cancel is not None:
            options.cancel.raise_if_cancelled()

        top_k = self.config.rerank_top_k or 2 * options.limit
        head, tail = ranked[:top_k], ranked[top_k:]
        documents = [
            f"{c.record.title}\n{c.record.summary}"[:RERANK_DOC_CHARS] for c in head
        ]
        try:
            scores = self.reranker.rerank(query, documents)
        except ExternalServiceError as e:
            log.debug(f"Rerank skipped: {e}")
            response.degraded.append("reranker")
            return ranked

        for cand, score in zip(head, scores):
            cand.score = float(score)
            cand.reranked = True
        # Stable: equal rerank scores keep fused order
        head = [c for _, c in sorted(enumerate(head), key=lambda ic: (-ic[1].score, ic[0]))]
        return head + tail
