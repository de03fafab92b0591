"""Finding ingestion for TaskWing.

Turns agent findings into knowledge nodes:

1. Group findings by (type, canonical title) and merge each group
2. Verify evidence against the workspace files
3. Dedupe against existing nodes (merge bodies, union tags, keep ids)
4. Embed new or changed nodes (outside the write transaction)
5. In one transaction: write nodes and vectors, resolve relationships by title,
   link nodes sharing an evidence file and semantically similar nodes

Embedding failures degrade to FTS-only (the report carries the flag); any other
failure rolls the whole batch back.
"""

import dataclasses
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from taskwing.cancellation import CancellationToken
from taskwing.config import RetrievalConfig
from taskwing.db import DatabaseManager
from taskwing.db.entity_repository import embedding_text, node_type_of
from taskwing.errors import CycleError, ExternalServiceError, ValidationError
from taskwing.knowledge.verification import EvidenceVerifier, VerificationOutcome
from taskwing.log_config import get_logger, log_timing
from taskwing.models import (
    Constraint,
    Decision,
    EdgeKind,
    EvidenceRef,
    Feature,
    FeatureStatus,
    Finding,
    Node,
    NodeType,
    Pattern,
    Relationship,
    Symbol,
    SymbolKind,
    VerificationStatus,
    canonical_title,
    new_id,
    symbol_id,
)
from taskwing.protocols import Embedder, FileSystem

log = get_logger("knowledge.ingest")

EVIDENCE_LINK_CONFIDENCE = 0.6
# Files cited by more nodes than this are too generic to imply a relationship
EVIDENCE_LINK_MAX_NODES = 25
SEMANTIC_LINK_NEIGHBORS = 5
FUZZY_TITLE_THRESHOLD = 0.4

DEFAULT_COMPONENTS = {
    "deps": "Technology Stack",
    "git": "Project Evolution",
}
FALLBACK_COMPONENT = "Core Architecture"

# Resolution order when a relationship does not name the endpoint type
_RESOLUTION_ORDER = (
    NodeType.FEATURE,
    NodeType.DECISION,
    NodeType.PATTERN,
    NodeType.CONSTRAINT,
    NodeType.SYMBOL,
)

_LINKABLE_TYPES = [NodeType.FEATURE, NodeType.DECISION, NodeType.PATTERN, NodeType.CONSTRAINT]

_TITLE_STOP_WORDS = frozenset(
    {"the", "and", "but", "for", "with", "are", "was", "were", "use", "using", "based", "via"}
)
_WORD_SPLIT = re.compile(r"[\s\-_/]+")


@dataclass
class IngestOptions:
    """Per-call ingest settings.

    Attributes:
        workspace_id: Workspace receiving the nodes
        root: Workspace root for evidence verification (None skips verification)
        verify_evidence: Check snippet hashes against current files
        link_by_evidence: Add related edges between nodes citing the same file
        link_semantic: Add related edges between nodes with similar vectors
        cancel: Cancellation handle checked between phases
    """

    workspace_id: str
    root: Path | None = None
    verify_evidence: bool = True
    link_by_evidence: bool = True
    link_semantic: bool = True
    cancel: CancellationToken | None = None


@dataclass
class IngestReport:
    created: dict[str, int] = field(default_factory=dict)
    updated: dict[str, int] = field(default_factory=dict)
    unchanged: int = 0
    skipped: int = 0
    edges: int = 0
    evidence_edges: int = 0
    semantic_edges: int = 0
    unresolved: list[str] = field(default_factory=list)
    rejected_edges: list[str] = field(default_factory=list)
    unverified: list[str] = field(default_factory=list)
    dropped_evidence: int = 0
    embedded: int = 0
    embedding_degraded: bool = False
    warnings: list[str] = field(default_factory=list)
    node_ids: dict[str, str] = field(default_factory=dict)

    @property
    def nodes_written(self) -> int:
        return sum(self.created.values()) + sum(self.updated.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": dict(self.created),
            "updated": dict(self.updated),
            "unchanged": self.unchanged,
            "skipped": self.skipped,
            "edges": self.edges,
            "evidence_edges": self.evidence_edges,
            "semantic_edges": self.semantic_edges,
            "unresolved": list(self.unresolved),
            "rejected_edges": list(self.rejected_edges),
            "unverified": list(self.unverified),
            "dropped_evidence": self.dropped_evidence,
            "embedded": self.embedded,
            "embedding_degraded": self.embedding_degraded,
            "warnings": list(self.warnings),
        }


@dataclass
class _Draft:
    """A merged group of findings sharing (type, canonical title)."""

    type: NodeType
    title: str
    body: str
    evidence: list[EvidenceRef]
    metadata: dict[str, Any]
    tags: set[str]
    confidence: float
    agents: list[str]
    status: VerificationStatus = VerificationStatus.SKIPPED


@dataclass
class _Write:
    node: Node
    is_new: bool
    changed: bool


# =============================================================================
# Grouping and merging (pure, order-independent)
# =============================================================================


def merge_text(existing: str, incoming: str) -> str:
    if not incoming or incoming in existing:
        return existing
    if not existing or existing in incoming:
        return incoming
    return f"{existing}\n\n{incoming}"


def merge_evidence(*groups: list[EvidenceRef]) -> list[EvidenceRef]:
    seen: dict[tuple, EvidenceRef] = {}
    for group in groups:
        for ref in group:
            key = (ref.file_path, ref.start_line or 0, ref.end_line or 0)
            if key not in seen or (seen[key].snippet_hash is None and ref.snippet_hash):
                seen[key] = ref
    return [seen[k] for k in sorted(seen)]


def _symbol_fields(
    title: str, metadata: dict[str, Any], evidence: list[EvidenceRef]
) -> tuple[str, str, str, str] | None:
    """(file_path, kind, name, signature) for a symbol, or None if it has no location."""
    file_path = metadata.get("file_path") or (evidence[0].file_path if evidence else "")
    if not file_path:
        return None
    kind = str(metadata.get("kind", SymbolKind.FUNCTION.value)).lower()
    return file_path, kind, title.strip(), str(metadata.get("signature", ""))


def group_key(finding: Finding, workspace_id: str) -> tuple[NodeType, str] | None:
    """Dedupe key; symbols use their content hash so same-named symbols in different files stay apart."""
    if not finding.title or not finding.title.strip():
        return None
    if finding.type == NodeType.SYMBOL:
        fields_ = _symbol_fields(finding.title, finding.metadata, finding.evidence)
        if fields_ is None:
            return None
        return NodeType.SYMBOL, symbol_id(workspace_id, *fields_)
    return finding.type, canonical_title(finding.title)


def merge_group(members: list[Finding]) -> _Draft:
    ordered = sorted(members, key=lambda f: (f.agent, f.title, f.body, f.confidence))
    body = ""
    for f in ordered:
        body = merge_text(body, f.body.strip())
    metadata: dict[str, Any] = {}
    tags: set[str] = set()
    for f in ordered:
        for key, value in f.metadata.items():
            if key == "tags":
                tags.update(str(t) for t in (value or []))
            else:
                metadata.setdefault(key, value)
    return _Draft(
        type=ordered[0].type,
        title=ordered[0].title.strip(),
        body=body,
        evidence=merge_evidence(*(f.evidence for f in ordered)),
        metadata=metadata,
        tags=tags,
        confidence=max(f.confidence for f in ordered),
        agents=sorted({f.agent for f in ordered}),
    )


def component_for(draft: _Draft) -> str:
    """Name of the Feature a Decision belongs to."""
    explicit = draft.metadata.get("feature") or draft.metadata.get("component")
    if explicit:
        return str(explicit).strip()
    name = DEFAULT_COMPONENTS.get(draft.agents[0] if draft.agents else "", FALLBACK_COMPONENT)
    service = draft.metadata.get("service")
    return f"[{service}] {name}" if service else name


def _word_tokens(text: str) -> set[str]:
    return {w for w in _WORD_SPLIT.split(text.lower()) if len(w) > 2 and w not in _TITLE_STOP_WORDS}


def fuzzy_title_match(title: str, candidates: dict[str, str]) -> str | None:
    """Best candidate id by word-set Jaccard similarity (>= 0.4), ties by title."""
    words = _word_tokens(title)
    if not words:
        return None
    best: tuple[float, str] | None = None
    for candidate in sorted(candidates):
        other = _word_tokens(candidate)
        if not other:
            continue
        score = len(words & other) / len(words | other)
        if score >= FUZZY_TITLE_THRESHOLD and (best is None or score > best[0]):
            best = (score, candidate)
    return candidates[best[1]] if best else None


# =============================================================================
# Ingestor
# =============================================================================


class Ingestor:
    """Writes findings and relationships into the memory database."""

    def __init__(
        self,
        db: DatabaseManager,
        embedder: Embedder | None = None,
        fs: FileSystem | None = None,
        retrieval: RetrievalConfig | None = None,
    ):
        self.db = db
        self.embedder = embedder
        self.fs = fs
        self.retrieval = retrieval or RetrievalConfig()

    def ingest(
        self,
        findings: list[Finding],
        relationships: list[Relationship] | None = None,
        options: IngestOptions | None = None,
    ) -> IngestReport:
        """Ingest a batch atomically.

        Raises:
            ValidationError: If no workspace is given
            ConflictError: If a concurrent writer created a clashing Feature
            CancelledError: If cancelled before the commit
        """
        if options is None or not options.workspace_id:
            raise ValidationError("Ingest requires a workspace id")
        ws = options.workspace_id
        relationships = relationships or []
        report = IngestReport()

        # 1. Group and merge
        groups: dict[tuple[NodeType, str], list[Finding]] = {}
        for finding in findings:
            if finding.type == NodeType.OVERVIEW:
                report.skipped += 1
                report.warnings.append(f"Overview findings are not ingested: {finding.title!r}")
                continue
            key = group_key(finding, ws)
            if key is None:
                report.skipped += 1
                report.warnings.append(f"Skipped {finding.type.value} finding without title or location")
                continue
            groups.setdefault(key, []).append(finding)
        drafts = {key: merge_group(members) for key, members in sorted(groups.items())}
        log.info(f"Ingesting {len(findings)} findings as {len(drafts)} nodes, {len(relationships)} relationships")

        # 2. Verify evidence (symbols are regenerated from source each pass)
        if options.verify_evidence and options.root is not None:
            verifier = EvidenceVerifier(options.root, self.fs)
            with log_timing(f"Evidence verification ({len(drafts)} nodes)", log):
                for draft in drafts.values():
                    if draft.type != NodeType.SYMBOL:
                        self._apply_verification(draft, verifier.verify(draft.evidence, draft.confidence), report)

        self._check_cancel(options)

        # 3. Dedupe against existing nodes
        writes, index = self._prepare_writes(ws, drafts, report)

        # 4. Embed outside the transaction
        self._check_cancel(options)
        vectors = self._embed(writes, report)

        # 5. Commit
        self._check_cancel(options)
        with log_timing(f"Ingest commit ({len(writes)} nodes)", log, level="info"):
            with self.db.transaction():
                for write in writes:
                    self._persist(write, report)
                if vectors:
                    tag = self.embedder.model_tag
                    for node_id, vector in vectors.items():
                        self.db.vectors.put(node_id, tag, vector)
                self._link_relationships(ws, relationships, index, report)
                if options.link_by_evidence:
                    self._link_by_evidence(writes, report)
                if options.link_semantic and vectors:
                    self._link_semantic(ws, vectors, report)

        report.unverified = sorted(
            w.node.id for w in writes
            if getattr(w.node, "verification_status", None) == VerificationStatus.UNVERIFIED
        )
        report.node_ids = {f"{t.value}:{title}": node_id for (t, title), node_id in sorted(index.items())}
        log.info(
            f"Ingest complete: created={report.created} updated={report.updated} unchanged={report.unchanged} "
            f"edges={report.edges}+{report.evidence_edges}+{report.semantic_edges} "
            f"unresolved={len(report.unresolved)} degraded={report.embedding_degraded}"
        )
        return report

    @staticmethod
    def _check_cancel(options: IngestOptions) -> None:
        if options.cancel is not None:
            options.cancel.raise_if_cancelled()

    @staticmethod
    def _apply_verification(draft: _Draft, outcome: VerificationOutcome, report: IngestReport) -> None:
        draft.status = outcome.status
        draft.confidence = outcome.confidence
        draft.evidence = outcome.evidence
        report.dropped_evidence += len(outcome.missing)
        if outcome.mismatched:
            files = ", ".join(sorted({r.file_path for r in outcome.mismatched}))
            report.warnings.append(f"Evidence changed for '{draft.title}': {files}")

    # =========================================================================
    # Dedupe and node construction
    # =========================================================================

    def _prepare_writes(
        self,
        ws: str,
        drafts: dict[tuple[NodeType, str], _Draft],
        report: IngestReport,
    ) -> tuple[list[_Write], dict[tuple[NodeType, str], str]]:
        """Build node objects for every draft; features first so decisions can reference them."""
        index: dict[tuple[NodeType, str], str] = {}
        writes: list[_Write] = []
        pending_features: dict[str, _Write] = {}

        for (node_type, key), draft in drafts.items():
            if node_type != NodeType.FEATURE:
                continue
            write = self._feature_write(ws, draft)
            pending_features[key] = write
            index[(NodeType.FEATURE, key)] = write.node.id

        others: list[_Write] = []
        for (node_type, key), draft in drafts.items():
            if node_type == NodeType.FEATURE:
                continue
            if node_type == NodeType.DECISION:
                feature_id = self._parent_feature_id(ws, draft, index, pending_features)
                write = self._decision_write(ws, draft, feature_id)
                index[(NodeType.DECISION, key)] = write.node.id
            elif node_type == NodeType.PATTERN:
                write = self._pattern_write(ws, draft)
                index[(NodeType.PATTERN, key)] = write.node.id
            elif node_type == NodeType.CONSTRAINT:
                write = self._constraint_write(ws, draft)
                index[(NodeType.CONSTRAINT, key)] = write.node.id
            else:
                write = self._symbol_write(ws, draft)
                index[(NodeType.SYMBOL, canonical_title(draft.title))] = write.node.id
            others.append(write)

        writes.extend(pending_features[k] for k in sorted(pending_features))
        writes.extend(others)
        for write in writes:
            if not write.is_new and not write.changed:
                report.unchanged += 1
        return writes, index

    def _parent_feature_id(
        self,
        ws: str,
        draft: _Draft,
        index: dict[tuple[NodeType, str], str],
        pending: dict[str, _Write],
    ) -> str:
        name = component_for(draft)
        key = canonical_title(name)
        if (NodeType.FEATURE, key) in index:
            return index[(NodeType.FEATURE, key)]
        existing = self.db.entities.find_feature_by_name(ws, name)
        if existing is not None:
            index[(NodeType.FEATURE, key)] = existing.id
            return existing.id
        feature = Feature(
            id=new_id(),
            workspace_id=ws,
            name=name,
            description=f"Decisions grouped under {name}.",
            service=draft.metadata.get("service"),
            verification_status=VerificationStatus.SKIPPED,
            metadata={"auto_created": True},
        )
        pending[key] = _Write(node=feature, is_new=True, changed=True)
        index[(NodeType.FEATURE, key)] = feature.id
        log.debug(f"Auto-created component feature '{name}'")
        return feature.id

    @staticmethod
    def _merged_status(existing_status: VerificationStatus, existing_conf: float, draft: _Draft):
        if draft.status == VerificationStatus.SKIPPED:
            return existing_status, existing_conf
        return draft.status, draft.confidence

    @staticmethod
    def _node_metadata(draft: _Draft, consumed: tuple[str, ...]) -> dict[str, Any]:
        meta = {k: v for k, v in draft.metadata.items() if k not in consumed}
        meta["agents"] = draft.agents
        return meta

    def _feature_write(self, ws: str, draft: _Draft) -> _Write:
        try:
            status = FeatureStatus(str(draft.metadata.get("status", "active")).lower())
        except ValueError:
            status = FeatureStatus.ACTIVE
        metadata = self._node_metadata(draft, ("one_liner", "status"))
        existing = self.db.entities.find_feature_by_name(ws, draft.title)
        if existing is None:
            feature = Feature(
                id=new_id(),
                workspace_id=ws,
                name=draft.title,
                one_liner=str(draft.metadata.get("one_liner", "")),
                description=draft.body,
                tags=set(draft.tags),
                status=status,
                service=draft.metadata.get("service"),
                verification_status=draft.status,
                confidence=draft.confidence,
                evidence=draft.evidence,
                metadata=metadata,
            )
            return _Write(node=feature, is_new=True, changed=True)

        verification, confidence = self._merged_status(existing.verification_status, existing.confidence, draft)
        merged = dataclasses.replace(
            existing,
            one_liner=existing.one_liner or str(draft.metadata.get("one_liner", "")),
            description=merge_text(existing.description, draft.body),
            tags=existing.tags | draft.tags,
            service=existing.service or draft.metadata.get("service"),
            verification_status=verification,
            confidence=confidence,
            evidence=merge_evidence(existing.evidence, draft.evidence),
            metadata={**metadata, **existing.metadata},
        )
        return _Write(node=merged, is_new=False, changed=merged != existing)

    def _decision_write(self, ws: str, draft: _Draft, feature_id: str) -> _Write:
        metadata = self._node_metadata(draft, ("reasoning", "tradeoffs", "feature", "component"))
        reasoning = str(draft.metadata.get("reasoning", ""))
        tradeoffs = str(draft.metadata.get("tradeoffs", ""))
        summary = draft.body or str(draft.metadata.get("one_liner", ""))
        existing = self.db.entities.find_decision_by_title(ws, draft.title)
        if existing is None:
            decision = Decision(
                id=new_id(),
                feature_id=feature_id,
                title=draft.title,
                summary=summary,
                reasoning=reasoning,
                tradeoffs=tradeoffs,
                evidence=draft.evidence,
                workspace_id=ws,
                service=draft.metadata.get("service"),
                verification_status=draft.status,
                confidence=draft.confidence,
                metadata=metadata,
            )
            return _Write(node=decision, is_new=True, changed=True)

        verification, confidence = self._merged_status(existing.verification_status, existing.confidence, draft)
        merged = dataclasses.replace(
            existing,
            summary=merge_text(existing.summary, summary),
            reasoning=existing.reasoning or reasoning,
            tradeoffs=existing.tradeoffs or tradeoffs,
            service=existing.service or draft.metadata.get("service"),
            verification_status=verification,
            confidence=confidence,
            evidence=merge_evidence(existing.evidence, draft.evidence),
            metadata={**metadata, **existing.metadata},
        )
        return _Write(node=merged, is_new=False, changed=merged != existing)

    def _pattern_write(self, ws: str, draft: _Draft) -> _Write:
        metadata = self._node_metadata(draft, ("solution", "consequences"))
        solution = str(draft.metadata.get("solution", ""))
        consequences = str(draft.metadata.get("consequences", ""))
        existing = self.db.entities.find_pattern_by_name(ws, draft.title)
        if existing is None:
            pattern = Pattern(
                id=new_id(),
                workspace_id=ws,
                name=draft.title,
                context=draft.body,
                solution=solution,
                consequences=consequences,
                service=draft.metadata.get("service"),
                verification_status=draft.status,
                confidence=draft.confidence,
                evidence=draft.evidence,
                metadata=metadata,
            )
            return _Write(node=pattern, is_new=True, changed=True)

        verification, confidence = self._merged_status(existing.verification_status, existing.confidence, draft)
        merged = dataclasses.replace(
            existing,
            context=merge_text(existing.context, draft.body),
            solution=existing.solution or solution,
            consequences=existing.consequences or consequences,
            verification_status=verification,
            confidence=confidence,
            evidence=merge_evidence(existing.evidence, draft.evidence),
            metadata={**metadata, **existing.metadata},
        )
        return _Write(node=merged, is_new=False, changed=merged != existing)

    def _constraint_write(self, ws: str, draft: _Draft) -> _Write:
        metadata = self._node_metadata(draft, ("scope",))
        scope = str(draft.metadata.get("scope", ""))
        existing = self.db.entities.find_constraint_by_title(ws, draft.title)
        if existing is None:
            constraint = Constraint(
                id=new_id(),
                workspace_id=ws,
                title=draft.title,
                description=draft.body,
                scope=scope,
                service=draft.metadata.get("service"),
                verification_status=draft.status,
                confidence=draft.confidence,
                evidence=draft.evidence,
                metadata=metadata,
            )
            return _Write(node=constraint, is_new=True, changed=True)

        verification, confidence = self._merged_status(existing.verification_status, existing.confidence, draft)
        merged = dataclasses.replace(
            existing,
            description=merge_text(existing.description, draft.body),
            scope=existing.scope or scope,
            verification_status=verification,
            confidence=confidence,
            evidence=merge_evidence(existing.evidence, draft.evidence),
            metadata={**metadata, **existing.metadata},
        )
        return _Write(node=merged, is_new=False, changed=merged != existing)

    def _symbol_write(self, ws: str, draft: _Draft) -> _Write:
        meta = draft.metadata
        file_path, kind_name, name, signature = _symbol_fields(draft.title, meta, draft.evidence)
        try:
            kind = SymbolKind(kind_name)
        except ValueError:
            kind = SymbolKind.FUNCTION
        sid = symbol_id(ws, file_path, kind_name, name, signature)
        symbol = Symbol(
            id=sid,
            workspace_id=ws,
            name=name,
            kind=kind,
            file_path=file_path,
            start_line=int(meta.get("start_line") or 0),
            end_line=int(meta.get("end_line") or 0),
            signature=signature,
            doc_comment=str(meta.get("doc_comment") or draft.body),
            module_path=str(meta.get("module_path", "")),
            service=meta.get("service"),
            verification_status=VerificationStatus.VERIFIED,
            confidence=draft.confidence,
            metadata=self._node_metadata(
                draft,
                ("file_path", "kind", "signature", "start_line", "end_line", "doc_comment", "module_path"),
            ),
        )
        existing = self.db.entities.get_symbol(sid)
        if existing is None:
            return _Write(node=symbol, is_new=True, changed=True)
        symbol.created_at = existing.created_at
        changed = (symbol.doc_comment, symbol.start_line, symbol.end_line, symbol.module_path) != (
            existing.doc_comment, existing.start_line, existing.end_line, existing.module_path,
        )
        return _Write(node=symbol, is_new=False, changed=changed)

    # =========================================================================
    # Embedding
    # =========================================================================

    def _embed(self, writes: list[_Write], report: IngestReport) -> dict[str, np.ndarray]:
        if self.embedder is None:
            return {}
        tag = self.embedder.model_tag
        stored = self.db.vectors.node_ids(tag)
        targets = [w.node for w in writes if w.is_new or w.changed or w.node.id not in stored]
        if not targets:
            return {}
        texts = [embedding_text(node) for node in targets]
        try:
            vectors = self.embedder.embed_batch(texts, role="document")
        except ExternalServiceError as e:
            report.embedding_degraded = True
            report.warnings.append(f"Embedding unavailable, nodes stored without vectors: {e.message}")
            log.warning(f"Embedding failed for {len(texts)} nodes; continuing FTS-only: {e}")
            return {}
        report.embedded = len(vectors)
        return {node.id: vec for node, vec in zip(targets, vectors)}

    # =========================================================================
    # Persistence and linking (inside the transaction)
    # =========================================================================

    def _persist(self, write: _Write, report: IngestReport) -> None:
        node = write.node
        type_name = node_type_of(node).value
        entities = self.db.entities
        if isinstance(node, Symbol):
            # Always upserted so last_seen_at advances for garbage collection
            entities.upsert_symbol(node)
        elif not write.is_new and not write.changed:
            return
        elif isinstance(node, Feature):
            if write.is_new:
                entities.create_feature(node)
            else:
                entities.update_feature(node)
        elif isinstance(node, Decision):
            if write.is_new:
                entities.create_decision(node)
            else:
                entities.update_decision(node)
        elif isinstance(node, Pattern):
            entities.save_pattern(node)
        elif isinstance(node, Constraint):
            entities.save_constraint(node)

        if write.is_new:
            report.created[type_name] = report.created.get(type_name, 0) + 1
        elif write.changed:
            report.updated[type_name] = report.updated.get(type_name, 0) + 1

    def _resolve_title(
        self,
        ws: str,
        title: str,
        node_type: NodeType | None,
        index: dict[tuple[NodeType, str], str],
    ) -> str | None:
        key = canonical_title(title)
        types = (node_type,) if node_type is not None else _RESOLUTION_ORDER
        for t in types:
            if (t, key) in index:
                return index[(t, key)]
        for t in types:
            found = self._find_existing(ws, t, title)
            if found is not None:
                return found
        candidates = {k: v for (t, k), v in index.items() if t in types and t != NodeType.SYMBOL}
        return fuzzy_title_match(title, candidates)

    def _find_existing(self, ws: str, node_type: NodeType, title: str) -> str | None:
        entities = self.db.entities
        node = None
        if node_type == NodeType.FEATURE:
            node = entities.find_feature_by_name(ws, title)
        elif node_type == NodeType.DECISION:
            node = entities.find_decision_by_title(ws, title)
        elif node_type == NodeType.PATTERN:
            node = entities.find_pattern_by_name(ws, title)
        elif node_type == NodeType.CONSTRAINT:
            node = entities.find_constraint_by_title(ws, title)
        elif node_type == NodeType.SYMBOL:
            matches = entities.find_symbols_by_name(ws, title)
            node = matches[0] if len(matches) == 1 else None
        return node.id if node is not None else None

    def _link_relationships(
        self,
        ws: str,
        relationships: list[Relationship],
        index: dict[tuple[NodeType, str], str],
        report: IngestReport,
    ) -> None:
        for rel in relationships:
            from_id = self._resolve_title(ws, rel.from_title, rel.from_type, index)
            to_id = self._resolve_title(ws, rel.to_title, rel.to_type, index)
            label = f"{rel.from_title} -[{rel.kind.value}]-> {rel.to_title}"
            if from_id is None or to_id is None:
                report.unresolved.append(label)
                log.warning(f"Unresolved relationship dropped: {label}")
                continue
            if from_id == to_id:
                report.rejected_edges.append(f"{label} (self-reference)")
                continue
            try:
                self.db.relationships.add_edge(
                    from_id, to_id, rel.kind, min(max(rel.confidence, 0.0), 1.0), rel.evidence
                )
            except CycleError as e:
                report.rejected_edges.append(f"{label} ({e.message})")
                log.warning(f"Relationship rejected: {e.message}")
                continue
            report.edges += 1

    def _link_by_evidence(self, writes: list[_Write], report: IngestReport) -> None:
        by_file: dict[str, list[str]] = {}
        for write in writes:
            for ref in getattr(write.node, "evidence", []):
                ids = by_file.setdefault(ref.file_path, [])
                if write.node.id not in ids:
                    ids.append(write.node.id)
        for file_path in sorted(by_file):
            ids = sorted(by_file[file_path])
            if len(ids) < 2:
                continue
            if len(ids) > EVIDENCE_LINK_MAX_NODES:
                log.debug(f"Not linking {len(ids)} nodes sharing generic evidence file {file_path}")
                continue
            for i, a in enumerate(ids):
                for b in ids[i + 1:]:
                    self.db.relationships.add_edge(
                        a, b, EdgeKind.RELATED, EVIDENCE_LINK_CONFIDENCE, f"shared evidence: {file_path}"
                    )
                    report.evidence_edges += 1

    def _link_semantic(self, ws: str, vectors: dict[str, np.ndarray], report: IngestReport) -> None:
        threshold = self.retrieval.semantic_link_threshold
        tag = self.embedder.model_tag
        linkable = {
            node_id for node_id, record in self.db.entities.get_records(list(vectors)).items()
            if record.type in _LINKABLE_TYPES
        }
        for node_id in sorted(linkable):
            hits = self.db.vectors.knn(
                vectors[node_id], SEMANTIC_LINK_NEIGHBORS + 1, model_tag=tag, types=_LINKABLE_TYPES, workspace_id=ws
            )
            for hit in hits:
                if hit.id == node_id or hit.score < threshold:
                    continue
                similarity = round(min(hit.score, 1.0), 4)
                self.db.relationships.add_edge(
                    node_id, hit.id, EdgeKind.RELATED, similarity, f"semantic similarity {similarity:.2f}"
                )
                report.semantic_edges += 1
