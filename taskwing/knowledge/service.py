"""Knowledge service facade.

Wraps the memory database with the operations callers use: ingest, hybrid
search with optional answers, CRUD that keeps FTS and vectors in step with the
tables, graph queries and maintenance (check/repair, re-embedding, symbol GC).
"""

from dataclasses import dataclass, field
from typing import Any, TextIO

import numpy as np

from taskwing.config import Config
from taskwing.db import DatabaseManager
from taskwing.db.entity_repository import document_text, embedding_text, node_type_of
from taskwing.embeddings import create_embedder
from taskwing.errors import ExternalServiceError, NotFoundError, ValidationError
from taskwing.knowledge.answer import AnswerSynthesizer
from taskwing.knowledge.ingest import IngestOptions, IngestReport, Ingestor
from taskwing.knowledge.retrieval import Retriever, SearchOptions
from taskwing.llm import LiteLLMChatClient
from taskwing.log_config import get_logger, log_timing
from taskwing.models import (
    Constraint,
    Decision,
    Direction,
    Edge,
    EdgeKind,
    EvidenceRef,
    Feature,
    FeatureStatus,
    Finding,
    Node,
    NodeRecord,
    NodeType,
    Overview,
    Pattern,
    Relationship,
    SearchResponse,
    Workspace,
    new_id,
)
from taskwing.protocols import ChatClient, Embedder, FileSystem, Reranker
from taskwing.reranker import create_reranker
from taskwing.workspace import WorkspaceInfo

log = get_logger("knowledge.service")

REEMBED_BATCH = 64


@dataclass
class IntegrityReport:
    orphan_edges: list[Edge] = field(default_factory=list)
    missing_vectors: list[str] = field(default_factory=list)
    stale_vectors: list[str] = field(default_factory=list)
    missing_fts: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not (self.orphan_edges or self.missing_vectors or self.stale_vectors or self.missing_fts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "orphan_edges": len(self.orphan_edges),
            "missing_vectors": len(self.missing_vectors),
            "stale_vectors": len(self.stale_vectors),
            "missing_fts": len(self.missing_fts),
        }


class KnowledgeService:
    """Entry point for project memory.

    Example:
        >>> service = KnowledgeService.from_config(Config())
        >>> report = service.ingest(findings, relationships, IngestOptions(workspace_id=ws))
        >>> response = service.search("how is auth done", SearchOptions(workspace_id=ws))
    """

    def __init__(
        self,
        db: DatabaseManager,
        embedder: Embedder | None = None,
        chat: ChatClient | None = None,
        reranker: Reranker | None = None,
        config: Config | None = None,
        fs: FileSystem | None = None,
    ):
        self.config = config or Config()
        self.db = db
        self.embedder = embedder
        self.chat = chat
        self.ingestor = Ingestor(db, embedder, fs=fs, retrieval=self.config.retrieval)
        self.retriever = Retriever(db, embedder, reranker, self.config.retrieval)
        self.answerer = AnswerSynthesizer(chat, self.config.answer_char_budget) if chat is not None else None

    @classmethod
    def from_config(cls, config: Config) -> "KnowledgeService":
        """Open memory.db and build the configured providers."""
        config.ensure_dirs()
        db = DatabaseManager(
            config.db_path,
            ivf_threshold=config.retrieval.ivf_threshold,
            ivf_nprobe=config.retrieval.ivf_nprobe,
        )
        chat = LiteLLMChatClient.from_config(config) if config.chat_model else None
        return cls(
            db,
            embedder=create_embedder(config),
            chat=chat,
            reranker=create_reranker(config, chat),
            config=config,
        )

    def close(self) -> None:
        self.retriever.close()
        self.db.close()

    def __enter__(self) -> "KnowledgeService":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # =========================================================================
    # Workspace
    # =========================================================================

    def register_workspace(self, info: WorkspaceInfo) -> Workspace:
        with self.db.transaction():
            return self.db.entities.upsert_workspace(info.to_workspace())

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        return self.db.entities.get_workspace(workspace_id)

    # =========================================================================
    # Ingest and search
    # =========================================================================

    def ingest(
        self,
        findings: list[Finding],
        relationships: list[Relationship] | None = None,
        options: IngestOptions | None = None,
    ) -> IngestReport:
        return self.ingestor.ingest(findings, relationships, options)

    def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        writer: TextIO | None = None,
    ) -> SearchResponse:
        """Hybrid search; with ``generate_answer`` also synthesizes a cited answer.

        An unavailable chat model never fails the search: the response carries
        ``answer_unavailable`` instead.
        """
        options = options or SearchOptions()
        response = self.retriever.search(query, options)
        if not options.generate_answer:
            return response
        if self.answerer is None:
            response.answer_unavailable = True
            response.degraded.append("llm_unconfigured")
            return response
        try:
            response.answer = self.answerer.synthesize(query, response.results, writer=writer, cancel=options.cancel)
        except ExternalServiceError as e:
            log.warning(f"Answer synthesis unavailable: {e}")
            response.answer_unavailable = True
            response.degraded.append("llm")
        return response

    def ask(self, query: str, options: SearchOptions | None = None, writer: TextIO | None = None) -> SearchResponse:
        options = options or SearchOptions()
        options.generate_answer = True
        return self.search(query, options, writer=writer)

    # =========================================================================
    # CRUD (embeds on write)
    # =========================================================================

    def _embed_one(self, node: Node) -> np.ndarray | None:
        if self.embedder is None:
            return None
        try:
            return self.embedder.embed_batch([embedding_text(node)], role="document")[0]
        except ExternalServiceError as e:
            log.warning(f"Stored {node.id[:8]} without a vector: {e}")
            return None

    def _store_vector(self, node_id: str, vector: np.ndarray | None) -> None:
        if vector is not None:
            self.db.vectors.put(node_id, self.embedder.model_tag, vector)

    def create_feature(
        self,
        workspace_id: str,
        name: str,
        one_liner: str = "",
        description: str = "",
        tags: set[str] | None = None,
        status: FeatureStatus = FeatureStatus.ACTIVE,
        service: str | None = None,
    ) -> Feature:
        feature = Feature(
            id=new_id(),
            workspace_id=workspace_id,
            name=name,
            one_liner=one_liner,
            description=description,
            tags=set(tags or ()),
            status=status,
            service=service,
        )
        vector = self._embed_one(feature)
        with self.db.transaction():
            self.db.entities.create_feature(feature)
            self._store_vector(feature.id, vector)
        log.info(f"Created feature '{feature.name}' ({feature.id[:8]})")
        return feature

    def update_feature(self, feature: Feature) -> Feature:
        vector = self._embed_one(feature)
        with self.db.transaction():
            self.db.entities.update_feature(feature)
            self._store_vector(feature.id, vector)
        return feature

    def get_feature(self, feature_id: str) -> Feature:
        feature = self.db.entities.get_feature(feature_id)
        if feature is None:
            raise NotFoundError("Feature", feature_id)
        return feature

    def list_features(self, workspace_id: str, service: str | None = None) -> list[Feature]:
        return self.db.entities.list_features(workspace_id, service=service)

    def delete_feature(self, feature_id: str, force: bool = False) -> None:
        with self.db.transaction():
            self.db.entities.delete_feature(feature_id, force=force)

    def add_decision(
        self,
        feature_id: str,
        title: str,
        summary: str = "",
        reasoning: str = "",
        tradeoffs: str = "",
        evidence: list[EvidenceRef] | None = None,
    ) -> Decision:
        parent = self.get_feature(feature_id)
        decision = Decision(
            id=new_id(),
            feature_id=feature_id,
            title=title,
            summary=summary,
            reasoning=reasoning,
            tradeoffs=tradeoffs,
            evidence=list(evidence or []),
            workspace_id=parent.workspace_id,
            service=parent.service,
        )
        vector = self._embed_one(decision)
        with self.db.transaction():
            self.db.entities.create_decision(decision)
            self._store_vector(decision.id, vector)
        return decision

    def list_decisions(self, workspace_id: str, feature_id: str | None = None) -> list[Decision]:
        return self.db.entities.list_decisions(workspace_id, feature_id=feature_id)

    def save_pattern(self, pattern: Pattern) -> Pattern:
        vector = self._embed_one(pattern)
        with self.db.transaction():
            self.db.entities.save_pattern(pattern)
            self._store_vector(pattern.id, vector)
        return pattern

    def save_constraint(self, constraint: Constraint) -> Constraint:
        vector = self._embed_one(constraint)
        with self.db.transaction():
            self.db.entities.save_constraint(constraint)
            self._store_vector(constraint.id, vector)
        return constraint

    def set_overview(self, workspace_id: str, short_description: str, long_description: str = "",
                     edited: bool = False) -> Overview:
        """Replace the workspace overview; ``edited`` marks a manual change."""
        now = self.db.clock.now()
        overview = Overview(
            workspace_id=workspace_id,
            short_description=short_description,
            long_description=long_description,
            generated_at=now,
            last_edited_at=now if edited else None,
        )
        existing = self.db.entities.get_overview(workspace_id)
        if existing is not None and edited:
            overview.generated_at = existing.generated_at
        vector = self._embed_one(overview)
        with self.db.transaction():
            self.db.entities.put_overview(overview)
            self._store_vector(overview.id, vector)
        return overview

    def get_overview(self, workspace_id: str) -> Overview | None:
        return self.db.entities.get_overview(workspace_id)

    def get_node(self, node_id: str) -> Node:
        node = self.db.entities.get_node(node_id)
        if node is None:
            raise NotFoundError("Node", node_id, hint="Search memory to find valid node ids.")
        return node

    def delete_node(self, node_id: str, force: bool = False) -> None:
        with self.db.transaction():
            self.db.entities.delete_node(node_id, force=force)

    # =========================================================================
    # Graph
    # =========================================================================

    def link(
        self,
        from_id: str,
        to_id: str,
        kind: EdgeKind,
        confidence: float = 1.0,
        evidence: str | None = None,
    ) -> Edge:
        return self.db.relationships.add_edge(from_id, to_id, kind, confidence, evidence)

    def unlink(self, from_id: str, to_id: str, kind: EdgeKind) -> bool:
        return self.db.relationships.remove_edge(from_id, to_id, kind)

    def edges(self, node_id: str, direction: Direction = Direction.BOTH,
              kinds: list[EdgeKind] | None = None) -> list[Edge]:
        return self.db.relationships.get_edges(node_id, direction, kinds)

    def neighbors(self, node_id: str, kinds: list[EdgeKind] | None = None,
                  direction: Direction = Direction.BOTH) -> list[str]:
        return self.db.graph.neighbors(node_id, kinds, direction)

    def dependencies(self, node_id: str, depth: int | None = None) -> list[str]:
        return self.db.graph.dependencies(node_id, depth)

    def dependents(self, node_id: str, depth: int | None = None) -> list[str]:
        return self.db.graph.dependents(node_id, depth)

    def related(self, node_id: str, depth: int = 1) -> list[str]:
        return self.db.graph.related(node_id, depth)

    def why_depends(self, from_id: str, to_id: str, max_len: int = 6) -> list[list[str]]:
        """Dependency paths explaining why ``from_id`` depends on ``to_id``."""
        return self.db.graph.shortest_paths(
            from_id, to_id, max_len=max_len, kinds=[EdgeKind.DEPENDS_ON, EdgeKind.CALLS]
        )

    # =========================================================================
    # Maintenance
    # =========================================================================

    def check(self, workspace_id: str | None = None) -> IntegrityReport:
        """Report orphan edges, nodes without vectors or FTS rows, and vectors from another model."""
        report = IntegrityReport(orphan_edges=self.db.relationships.orphan_edges())
        records = self._records(workspace_id)
        ids = [r.id for r in records]
        indexed = self.db.fts.indexed_ids()
        report.missing_fts = sorted(i for i in ids if i not in indexed)
        if self.embedder is not None:
            tag = self.embedder.model_tag
            with_vectors = self.db.vectors.node_ids()
            report.missing_vectors = sorted(i for i in ids if i not in with_vectors)
            scoped = set(ids)
            report.stale_vectors = [i for i in self.db.vectors.stale_ids(tag) if i in scoped]
        log.info(f"Integrity check: {report.to_dict()}")
        return report

    def repair(self, workspace_id: str | None = None) -> dict[str, int]:
        """Delete orphan edges, restore FTS rows and embed nodes missing vectors."""
        report = self.check(workspace_id)
        with self.db.transaction():
            removed = self.db.relationships.delete_orphan_edges()
            for node_id in report.missing_fts:
                node = self.db.entities.get_node(node_id)
                if node is None:
                    continue
                title, body = document_text(node)
                ws = node.workspace_id
                self.db.fts.index_document(node_id, node_type_of(node), ws, title, body)
        embedded = self._embed_ids(report.missing_vectors) if self.embedder is not None else 0
        result = {"orphan_edges": removed, "fts_restored": len(report.missing_fts), "embedded": embedded}
        log.info(f"Repair complete: {result}")
        return result

    def reembed(self, workspace_id: str | None = None) -> int:
        """Recompute vectors produced by a model other than the active embedder's.

        Raises:
            ValidationError: If no embedder is configured
            ExternalServiceError: If the embedder fails after retries
        """
        if self.embedder is None:
            raise ValidationError("No embedder configured", hint="Set TASKWING_EMBEDDING_PROVIDER.")
        report = self.check(workspace_id)
        targets = sorted(set(report.stale_vectors) | set(report.missing_vectors))
        count = self._embed_ids(targets)
        log.info(f"Re-embedded {count} nodes with {self.embedder.model_tag}")
        return count

    def _embed_ids(self, node_ids: list[str]) -> int:
        count = 0
        for i in range(0, len(node_ids), REEMBED_BATCH):
            nodes = [n for n in (self.db.entities.get_node(x) for x in node_ids[i:i + REEMBED_BATCH]) if n]
            if not nodes:
                continue
            texts = [embedding_text(node) for node in nodes]
            with log_timing(f"Embed {len(texts)} nodes", log):
                vectors = self.embedder.embed_batch(texts, role="document")
            with self.db.transaction():
                for node, vector in zip(nodes, vectors):
                    self.db.vectors.put(node.id, self.embedder.model_tag, vector)
            count += len(nodes)
        return count

    def gc_symbols(self, workspace_id: str, grace_seconds: float | None = None) -> list[str]:
        """Delete symbols no indexing pass has seen within the grace period."""
        grace = self.config.symbol_gc_grace_seconds if grace_seconds is None else grace_seconds
        return self.db.entities.gc_symbols(workspace_id, self.db.clock.now() - grace)

    def _records(self, workspace_id: str | None) -> list[NodeRecord]:
        if workspace_id is not None:
            return self.db.entities.list_records(workspace_id)
        rows = self.db.query("SELECT DISTINCT workspace_id FROM node_index ORDER BY workspace_id")
        records = []
        for row in rows:
            records.extend(self.db.entities.list_records(row["workspace_id"]))
        return records

    def stats(self) -> dict[str, int]:
        return self.db.stats()

    def type_counts(self, workspace_id: str) -> dict[str, int]:
        counts = {t.value: 0 for t in NodeType}
        for record in self.db.entities.list_records(workspace_id):
            counts[record.type.value] += 1
        return counts
