"""Entity model for the TaskWing knowledge graph and task engine.

Nodes (Feature, Decision, Symbol, Pattern, Constraint, Overview) and edges are
plain dataclasses; the storage layer maps them to and from SQLite rows.
Findings and Relationships are the transient agent outputs consumed by ingest.
"""

import hashlib
import re
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import numpy as np


class NodeType(str, Enum):
    FEATURE = "feature"
    DECISION = "decision"
    SYMBOL = "symbol"
    PATTERN = "pattern"
    CONSTRAINT = "constraint"
    OVERVIEW = "overview"


class EdgeKind(str, Enum):
    DEPENDS_ON = "depends_on"
    EXTENDS = "extends"
    REPLACES = "replaces"
    RELATED = "related"
    CALLS = "calls"
    IMPLEMENTS = "implements"


# Edge kinds that carry a dependency and therefore must stay acyclic
DEPENDENCY_EDGE_KINDS = (EdgeKind.DEPENDS_ON, EdgeKind.CALLS)


class Direction(str, Enum):
    IN = "in"
    OUT = "out"
    BOTH = "both"


class WorkspaceKind(str, Enum):
    SINGLE = "single"
    MONOREPO = "monorepo"
    MULTI_REPO = "multi_repo"


class FeatureStatus(str, Enum):
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    PLANNED = "planned"


class SymbolKind(str, Enum):
    FUNCTION = "function"
    METHOD = "method"
    STRUCT = "struct"
    INTERFACE = "interface"
    TYPE = "type"
    VARIABLE = "variable"
    CONSTANT = "constant"
    FIELD = "field"
    PACKAGE = "package"
    MODULE = "module"


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    SKIPPED = "skipped"


class PlanStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


_WS_RE = re.compile(r"\s+")


def canonical_title(title: str) -> str:
    """Lowercase and collapse whitespace; the key used for dedupe and edge resolution."""
    return _WS_RE.sub(" ", title.strip()).lower()


def new_id() -> str:
    return str(uuid.uuid4())


def symbol_id(workspace_id: str, file_path: str, kind: str, name: str, signature: str = "") -> str:
    """Content hash identifying a symbol across indexing passes."""
    raw = "\x1f".join([workspace_id, file_path, kind, name, signature])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def overview_id(workspace_id: str) -> str:
    return f"overview-{workspace_id}"


@dataclass
class EvidenceRef:
    """Pointer to a source location backing a claim.

    Attributes:
        file_path: Path relative to the workspace root
        start_line: First line (1-based, inclusive) or None for the whole file
        end_line: Last line (inclusive) or None
        snippet_hash: sha256 of the normalized referenced lines, if known
    """

    file_path: str
    start_line: int | None = None
    end_line: int | None = None
    snippet_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "file_path": self.file_path,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "snippet_hash": self.snippet_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EvidenceRef":
        return cls(
            file_path=data["file_path"],
            start_line=data.get("start_line"),
            end_line=data.get("end_line"),
            snippet_hash=data.get("snippet_hash"),
        )


@dataclass
class Workspace:
    id: str
    root_path: str
    kind: WorkspaceKind = WorkspaceKind.SINGLE
    services: list[str] = field(default_factory=list)
    updated_at: float = 0.0


@dataclass
class Feature:
    id: str
    workspace_id: str
    name: str
    one_liner: str = ""
    description: str = ""
    tags: set[str] = field(default_factory=set)
    status: FeatureStatus = FeatureStatus.ACTIVE
    decision_count: int = 0
    service: str | None = None
    verification_status: VerificationStatus = VerificationStatus.VERIFIED
    confidence: float = 1.0
    evidence: list[EvidenceRef] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Decision:
    id: str
    feature_id: str
    title: str
    summary: str = ""
    reasoning: str = ""
    tradeoffs: str = ""
    evidence: list[EvidenceRef] = field(default_factory=list)
    workspace_id: str = ""
    service: str | None = None
    verification_status: VerificationStatus = VerificationStatus.VERIFIED
    confidence: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Symbol:
    id: str
    workspace_id: str
    name: str
    kind: SymbolKind
    file_path: str
    start_line: int = 0
    end_line: int = 0
    signature: str = ""
    doc_comment: str = ""
    module_path: str = ""
    service: str | None = None
    verification_status: VerificationStatus = VerificationStatus.VERIFIED
    confidence: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)
    last_seen_at: float = 0.0
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Pattern:
    id: str
    workspace_id: str
    name: str
    context: str = ""
    solution: str = ""
    consequences: str = ""
    service: str | None = None
    verification_status: VerificationStatus = VerificationStatus.VERIFIED
    confidence: float = 1.0
    evidence: list[EvidenceRef] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Constraint:
    id: str
    workspace_id: str
    title: str
    description: str = ""
    scope: str = ""
    service: str | None = None
    verification_status: VerificationStatus = VerificationStatus.VERIFIED
    confidence: float = 1.0
    evidence: list[EvidenceRef] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Overview:
    """Singleton project summary per workspace."""

    workspace_id: str
    short_description: str = ""
    long_description: str = ""
    generated_at: float = 0.0
    last_edited_at: float | None = None

    @property
    def id(self) -> str:
        return overview_id(self.workspace_id)


Node = Feature | Decision | Symbol | Pattern | Constraint | Overview


@dataclass
class NodeRecord:
    """Type-erased view of any node, as exposed by the node_index view."""

    id: str
    type: NodeType
    workspace_id: str
    title: str
    summary: str = ""
    service: str | None = None
    verification_status: VerificationStatus = VerificationStatus.VERIFIED
    updated_at: float = 0.0


@dataclass
class Edge:
    from_id: str
    to_id: str
    kind: EdgeKind
    confidence: float = 1.0
    evidence: str | None = None
    created_at: float = 0.0


@dataclass
class EmbeddingVector:
    node_id: str
    model_tag: str
    vector: np.ndarray

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])


@dataclass
class NodeHit:
    """A node returned by one retrieval channel.

    ``score`` is bm25-derived (higher is better) for FTS hits and cosine
    similarity in [-1, 1] for vector hits.
    """

    id: str
    score: float
    snippet: str | None = None


@dataclass
class Finding:
    """A typed claim emitted by an agent, before normalization.

    Type-specific fields travel in ``metadata`` (one_liner, reasoning, tradeoffs,
    feature, kind, file_path, start_line, signature, ...).
    """

    agent: str
    type: NodeType
    title: str
    body: str = ""
    evidence: list[EvidenceRef] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "type": self.type.value,
            "title": self.title,
            "body": self.body,
            "evidence": [e.to_dict() for e in self.evidence],
            "metadata": self.metadata,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Finding":
        return cls(
            agent=data.get("agent", "manual"),
            type=NodeType(data["type"].lower()),
            title=data["title"],
            body=data.get("body", ""),
            evidence=[EvidenceRef.from_dict(e) for e in data.get("evidence", [])],
            metadata=dict(data.get("metadata") or {}),
            confidence=float(data.get("confidence", 1.0)),
        )


@dataclass
class Relationship:
    """Edge between two findings, referenced by title.

    ``from_type``/``to_type`` narrow title resolution when two node types share
    a canonical title.
    """

    from_title: str
    to_title: str
    kind: EdgeKind
    confidence: float = 1.0
    evidence: str | None = None
    from_type: NodeType | None = None
    to_type: NodeType | None = None


@dataclass
class Plan:
    id: str
    workspace_id: str
    goal: str
    enriched_goal: str = ""
    status: PlanStatus = PlanStatus.DRAFT
    created_at: float = 0.0
    updated_at: float = 0.0


@dataclass
class Task:
    id: str
    plan_id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    complexity: Complexity = Complexity.MEDIUM
    priority: int = 0
    status: TaskStatus = TaskStatus.PENDING
    dependencies: set[str] = field(default_factory=set)
    parent_id: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    completed_at: float | None = None


@dataclass
class SearchResult:
    node_id: str
    type: NodeType
    title: str
    summary: str
    score: float
    source: str  # fts | vector | fused | reranked
    snippet: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "node_id": self.node_id,
            "type": self.type.value,
            "title": self.title,
            "summary": self.summary,
            "score": self.score,
            "source": self.source,
        }
        if self.snippet:
            data["snippet"] = self.snippet
        return data


@dataclass
class Answer:
    text: str
    citations: list[str] = field(default_factory=list)


@dataclass
class SearchResponse:
    results: list[SearchResult] = field(default_factory=list)
    answer: Answer | None = None
    answer_unavailable: bool = False
    degraded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"results": [r.to_dict() for r in self.results]}
        if self.answer is not None:
            data["answer"] = {"text": self.answer.text, "citations": self.answer.citations}
        if self.answer_unavailable:
            data["answer_unavailable"] = True
        if self.degraded:
            data["degraded"] = self.degraded
        return data
