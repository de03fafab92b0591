"""Entity Repository for TaskWing.

Typed CRUD for knowledge nodes (Feature, Decision, Symbol, Pattern, Constraint,
Overview) and the workspace row. Every write also refreshes the node's FTS
document so keyword search never lags behind the tables.

This module handles:
- Row <-> dataclass mapping (JSON columns for tags, evidence, metadata)
- Feature name uniqueness (case-insensitive, whitespace-collapsed key)
- Delete rules: inbound depends_on blocks Feature deletion unless forced
- Type-erased lookups through the node_index view
"""

import json
import sqlite3
from typing import Any

from taskwing.db.fts import FTSIndex
from taskwing.db.store_protocol import SQLStore
from taskwing.errors import ConflictError, NotFoundError, ValidationError
from taskwing.log_config import get_logger
from taskwing.models import (
    Constraint,
    Decision,
    EdgeKind,
    EvidenceRef,
    Feature,
    FeatureStatus,
    Node,
    NodeRecord,
    NodeType,
    Overview,
    Pattern,
    Symbol,
    SymbolKind,
    VerificationStatus,
    Workspace,
    WorkspaceKind,
    canonical_title,
)
from taskwing.protocols import Clock

log = get_logger("db.entity_repository")

# Table holding each node type; "constraint" is an SQL keyword
NODE_TYPE_TABLES = {
    NodeType.FEATURE: "feature",
    NodeType.DECISION: "decision",
    NodeType.SYMBOL: "symbol",
    NodeType.PATTERN: "pattern",
    NodeType.CONSTRAINT: '"constraint"',
    NodeType.OVERVIEW: "overview",
}


def document_text(node: Node) -> tuple[str, str]:
    """(title, body) used for both the FTS document and the embedding input."""
    if isinstance(node, Feature):
        tags = " ".join(sorted(node.tags))
        return node.name, "\n".join(p for p in (node.one_liner, node.description, tags) if p)
    if isinstance(node, Decision):
        return node.title, "\n".join(p for p in (node.summary, node.reasoning, node.tradeoffs) if p)
    if isinstance(node, Symbol):
        parts = (node.signature, node.doc_comment, node.module_path, node.file_path)
        return node.name, "\n".join(p for p in parts if p)
    if isinstance(node, Pattern):
        return node.name, "\n".join(p for p in (node.context, node.solution, node.consequences) if p)
    if isinstance(node, Constraint):
        return node.title, "\n".join(p for p in (node.description, node.scope) if p)
    if isinstance(node, Overview):
        return "Project Overview", "\n".join(p for p in (node.short_description, node.long_description) if p)
    raise TypeError(f"Unsupported node: {type(node).__name__}")


def embedding_text(node: Node) -> str:
    title, body = document_text(node)
    return f"{title}\n{body}" if body else title


def node_type_of(node: Node) -> NodeType:
    if isinstance(node, Feature):
        return NodeType.FEATURE
    if isinstance(node, Decision):
        return NodeType.DECISION
    if isinstance(node, Symbol):
        return NodeType.SYMBOL
    if isinstance(node, Pattern):
        return NodeType.PATTERN
    if isinstance(node, Constraint):
        return NodeType.CONSTRAINT
    if isinstance(node, Overview):
        return NodeType.OVERVIEW
    raise TypeError(f"Unsupported node: {type(node).__name__}")


def _evidence_json(evidence: list[EvidenceRef]) -> str:
    return json.dumps([e.to_dict() for e in evidence], sort_keys=True)


def _evidence_from(raw: str | None) -> list[EvidenceRef]:
    return [EvidenceRef.from_dict(e) for e in json.loads(raw or "[]")]


def _meta_json(metadata: dict[str, Any]) -> str:
    return json.dumps(metadata, sort_keys=True, default=str)


class EntityRepository:
    """Repository for knowledge node operations.

    Uses dependency injection for the store and clock to enable testing.
    Multi-statement writes run inside ``store.transaction()`` and join any
    transaction the caller already holds.
    """

    def __init__(self, store: SQLStore, clock: Clock, fts: FTSIndex | None = None):
        self.store = store
        self.clock = clock
        self.fts = fts or FTSIndex(store)

    def _index(self, node: Node, workspace_id: str) -> None:
        title, body = document_text(node)
        self.fts.index_document(node.id, node_type_of(node), workspace_id, title, body)

    # =========================================================================
    # Workspace
    # =========================================================================

    def upsert_workspace(self, workspace: Workspace) -> Workspace:
        workspace.updated_at = self.clock.now()
        self.store.execute(
            """
            INSERT INTO workspace (id, root_path, kind, services, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                root_path = excluded.root_path, kind = excluded.kind,
                services = excluded.services, updated_at = excluded.updated_at
            """,
            (
                workspace.id,
                workspace.root_path,
                workspace.kind.value,
                json.dumps(workspace.services),
                workspace.updated_at,
            ),
        )
        return workspace

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        row = self.store.query_one("SELECT * FROM workspace WHERE id = ?", (workspace_id,))
        if row is None:
            return None
        return Workspace(
            id=row["id"],
            root_path=row["root_path"],
            kind=WorkspaceKind(row["kind"]),
            services=json.loads(row["services"]),
            updated_at=row["updated_at"],
        )

    # =========================================================================
    # Features
    # =========================================================================

    def _feature_from_row(self, row: sqlite3.Row) -> Feature:
        keys = row.keys()
        return Feature(
            id=row["id"],
            workspace_id=row["workspace_id"],
            name=row["name"],
            one_liner=row["one_liner"],
            description=row["description"],
            tags=set(json.loads(row["tags"])),
            status=FeatureStatus(row["status"]),
            decision_count=row["decision_count"] if "decision_count" in keys else 0,
            service=row["service"],
            verification_status=VerificationStatus(row["verification_status"]),
            confidence=row["confidence"],
            evidence=_evidence_from(row["evidence"]),
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    _FEATURE_SELECT = """
        SELECT f.*, (SELECT count(*) FROM decision d WHERE d.feature_id = f.id) AS decision_count
        FROM feature f
    """

    def create_feature(self, feature: Feature) -> Feature:
        """Insert a new Feature.

        Raises:
            ValidationError: If the name is empty
            ConflictError: If another Feature in the workspace has the same name
        """
        if not feature.name or not feature.name.strip():
            raise ValidationError("Feature name must not be empty")
        now = self.clock.now()
        feature.created_at = feature.created_at or now
        feature.updated_at = now
        with self.store.transaction():
            existing = self.find_feature_by_name(feature.workspace_id, feature.name)
            if existing is not None:
                raise ConflictError(
                    f"Feature '{existing.name}' already exists",
                    hint="Feature names are unique per workspace (case-insensitive); update the existing one.",
                )
            self.store.execute(
                """
                INSERT INTO feature (id, workspace_id, name, name_key, one_liner, description, tags,
                    status, service, verification_status, confidence, evidence, metadata,
                    created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    feature.id,
                    feature.workspace_id,
                    feature.name.strip(),
                    canonical_title(feature.name),
                    feature.one_liner,
                    feature.description,
                    json.dumps(sorted(feature.tags)),
                    feature.status.value,
                    feature.service,
                    feature.verification_status.value,
                    feature.confidence,
                    _evidence_json(feature.evidence),
                    _meta_json(feature.metadata),
                    feature.created_at,
                    feature.updated_at,
                ),
            )
            self._index(feature, feature.workspace_id)
        log.debug(f"Created feature {feature.id[:8]} '{feature.name}'")
        return feature

    def update_feature(self, feature: Feature) -> Feature:
        if not feature.name or not feature.name.strip():
            raise ValidationError("Feature name must not be empty")
        feature.updated_at = self.clock.now()
        with self.store.transaction():
            clash = self.find_feature_by_name(feature.workspace_id, feature.name)
            if clash is not None and clash.id != feature.id:
                raise ConflictError(f"Feature '{clash.name}' already exists")
            cur = self.store.execute(
                """
                UPDATE feature SET name = ?, name_key = ?, one_liner = ?, description = ?, tags = ?,
                    status = ?, service = ?, verification_status = ?, confidence = ?, evidence = ?,
                    metadata = ?, created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    feature.name.strip(),
                    canonical_title(feature.name),
                    feature.one_liner,
                    feature.description,
                    json.dumps(sorted(feature.tags)),
                    feature.status.value,
                    feature.service,
                    feature.verification_status.value,
                    feature.confidence,
                    _evidence_json(feature.evidence),
                    _meta_json(feature.metadata),
                    feature.created_at,
                    feature.updated_at,
                    feature.id,
                ),
            )
            if cur.rowcount == 0:
                raise NotFoundError("Feature", feature.id)
            self._index(feature, feature.workspace_id)
        return feature

    def get_feature(self, feature_id: str) -> Feature | None:
        row = self.store.query_one(self._FEATURE_SELECT + " WHERE f.id = ?", (feature_id,))
        return self._feature_from_row(row) if row else None

    def find_feature_by_name(self, workspace_id: str, name: str) -> Feature | None:
        row = self.store.query_one(
            self._FEATURE_SELECT + " WHERE f.workspace_id = ? AND f.name_key = ?",
            (workspace_id, canonical_title(name)),
        )
        return self._feature_from_row(row) if row else None

    def list_features(self, workspace_id: str, service: str | None = None) -> list[Feature]:
        if service is None:
            rows = self.store.query(
                self._FEATURE_SELECT + " WHERE f.workspace_id = ? ORDER BY f.name_key", (workspace_id,)
            )
        else:
            rows = self.store.query(
                self._FEATURE_SELECT + " WHERE f.workspace_id = ? AND f.service = ? ORDER BY f.name_key",
                (workspace_id, service),
            )
        return [self._feature_from_row(r) for r in rows]

    def delete_feature(self, feature_id: str, force: bool = False) -> None:
        """Delete a Feature and its Decisions.

        Raises:
            NotFoundError: If the Feature does not exist
            ConflictError: If other nodes depend on it and ``force`` is False
        """
        with self.store.transaction():
            if self.store.query_one("SELECT 1 FROM feature WHERE id = ?", (feature_id,)) is None:
                raise NotFoundError("Feature", feature_id)
            dependents = self.store.query(
                "SELECT from_id FROM edge WHERE to_id = ? AND kind = ?",
                (feature_id, EdgeKind.DEPENDS_ON.value),
            )
            if dependents and not force:
                raise ConflictError(
                    f"Feature {feature_id} has {len(dependents)} dependent(s)",
                    hint="Remove the depends_on edges first or delete with force.",
                )
            # Explicit so each decision's delete trigger cleans its edges and vectors
            self.store.execute("DELETE FROM decision WHERE feature_id = ?", (feature_id,))
            self.store.execute("DELETE FROM feature WHERE id = ?", (feature_id,))
        log.info(f"Deleted feature {feature_id[:8]} (force={force}, dependents={len(dependents)})")

    # =========================================================================
    # Decisions
    # =========================================================================

    def _decision_from_row(self, row: sqlite3.Row) -> Decision:
        return Decision(
            id=row["id"],
            feature_id=row["feature_id"],
            title=row["title"],
            summary=row["summary"],
            reasoning=row["reasoning"],
            tradeoffs=row["tradeoffs"],
            evidence=_evidence_from(row["evidence"]),
            workspace_id=row["workspace_id"],
            service=row["service"],
            verification_status=VerificationStatus(row["verification_status"]),
            confidence=row["confidence"],
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _decision_params(self, d: Decision) -> tuple:
        return (
            d.workspace_id,
            d.feature_id,
            d.title.strip(),
            canonical_title(d.title),
            d.summary,
            d.reasoning,
            d.tradeoffs,
            d.service,
            d.verification_status.value,
            d.confidence,
            _evidence_json(d.evidence),
            _meta_json(d.metadata),
            d.created_at,
            d.updated_at,
        )

    def create_decision(self, decision: Decision) -> Decision:
        if not decision.title or not decision.title.strip():
            raise ValidationError("Decision title must not be empty")
        now = self.clock.now()
        decision.created_at = decision.created_at or now
        decision.updated_at = now
        with self.store.transaction():
            parent = self.store.query_one(
                "SELECT workspace_id FROM feature WHERE id = ?", (decision.feature_id,)
            )
            if parent is None:
                raise NotFoundError("Feature", decision.feature_id, hint="A decision must belong to a feature.")
            decision.workspace_id = decision.workspace_id or parent["workspace_id"]
            self.store.execute(
                """
                INSERT INTO decision (workspace_id, feature_id, title, title_key, summary, reasoning,
                    tradeoffs, service, verification_status, confidence, evidence, metadata,
                    created_at, updated_at, id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (*self._decision_params(decision), decision.id),
            )
            self._index(decision, decision.workspace_id)
        return decision

    def update_decision(self, decision: Decision) -> Decision:
        if not decision.title or not decision.title.strip():
            raise ValidationError("Decision title must not be empty")
        decision.updated_at = self.clock.now()
        with self.store.transaction():
            cur = self.store.execute(
                """
                UPDATE decision SET workspace_id = ?, feature_id = ?, title = ?, title_key = ?,
                    summary = ?, reasoning = ?, tradeoffs = ?, service = ?, verification_status = ?,
                    confidence = ?, evidence = ?, metadata = ?, created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (*self._decision_params(decision), decision.id),
            )
            if cur.rowcount == 0:
                raise NotFoundError("Decision", decision.id)
            self._index(decision, decision.workspace_id)
        return decision

    def get_decision(self, decision_id: str) -> Decision | None:
        row = self.store.query_one("SELECT * FROM decision WHERE id = ?", (decision_id,))
        return self._decision_from_row(row) if row else None

    def find_decision_by_title(self, workspace_id: str, title: str) -> Decision | None:
        row = self.store.query_one(
            "SELECT * FROM decision WHERE workspace_id = ? AND title_key = ? ORDER BY created_at LIMIT 1",
            (workspace_id, canonical_title(title)),
        )
        return self._decision_from_row(row) if row else None

    def list_decisions(self, workspace_id: str, feature_id: str | None = None) -> list[Decision]:
        if feature_id is None:
            rows = self.store.query(
                "SELECT * FROM decision WHERE workspace_id = ? ORDER BY created_at, id", (workspace_id,)
            )
        else:
            rows = self.store.query(
                "SELECT * FROM decision WHERE feature_id = ? ORDER BY created_at, id", (feature_id,)
            )
        return [self._decision_from_row(r) for r in rows]

    def delete_decision(self, decision_id: str) -> None:
        cur = self.store.execute("DELETE FROM decision WHERE id = ?", (decision_id,))
        if cur.rowcount == 0:
            raise NotFoundError("Decision", decision_id)

    # =========================================================================
    # Symbols
    # =========================================================================

    def _symbol_from_row(self, row: sqlite3.Row) -> Symbol:
        return Symbol(
            id=row["id"],
            workspace_id=row["workspace_id"],
            name=row["name"],
            kind=SymbolKind(row["kind"]),
            file_path=row["file_path"],
            start_line=row["start_line"],
            end_line=row["end_line"],
            signature=row["signature"],
            doc_comment=row["doc_comment"],
            module_path=row["module_path"],
            service=row["service"],
            verification_status=VerificationStatus(row["verification_status"]),
            confidence=row["confidence"],
            metadata=json.loads(row["metadata"]),
            last_seen_at=row["last_seen_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def upsert_symbol(self, symbol: Symbol) -> Symbol:
        """Insert or refresh a symbol; the content-hash id keeps reindexing idempotent."""
        now = self.clock.now()
        symbol.last_seen_at = now
        symbol.updated_at = now
        symbol.created_at = symbol.created_at or now
        with self.store.transaction():
            self.store.execute(
                """
                INSERT INTO symbol (id, workspace_id, name, kind, file_path, start_line, end_line,
                    signature, doc_comment, module_path, service, verification_status, confidence,
                    metadata, last_seen_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    start_line = excluded.start_line, end_line = excluded.end_line,
                    doc_comment = excluded.doc_comment, module_path = excluded.module_path,
                    service = excluded.service, verification_status = excluded.verification_status,
                    confidence = excluded.confidence, metadata = excluded.metadata,
                    last_seen_at = excluded.last_seen_at, updated_at = excluded.updated_at
                """,
                (
                    symbol.id,
                    symbol.workspace_id,
                    symbol.name,
                    symbol.kind.value,
                    symbol.file_path,
                    symbol.start_line,
                    symbol.end_line,
                    symbol.signature,
                    symbol.doc_comment,
                    symbol.module_path,
                    symbol.service,
                    symbol.verification_status.value,
                    symbol.confidence,
                    _meta_json(symbol.metadata),
                    symbol.last_seen_at,
                    symbol.created_at,
                    symbol.updated_at,
                ),
            )
            row = self.store.query_one("SELECT created_at FROM symbol WHERE id = ?", (symbol.id,))
            symbol.created_at = row["created_at"]
            self._index(symbol, symbol.workspace_id)
        return symbol

    def get_symbol(self, symbol_id: str) -> Symbol | None:
        row = self.store.query_one("SELECT * FROM symbol WHERE id = ?", (symbol_id,))
        return self._symbol_from_row(row) if row else None

    def find_symbols_by_name(self, workspace_id: str, name: str) -> list[Symbol]:
        rows = self.store.query(
            "SELECT * FROM symbol WHERE workspace_id = ? AND lower(name) = lower(?) ORDER BY file_path, id",
            (workspace_id, name),
        )
        return [self._symbol_from_row(r) for r in rows]

    def list_symbols(self, workspace_id: str, file_path: str | None = None) -> list[Symbol]:
        if file_path is None:
            rows = self.store.query(
                "SELECT * FROM symbol WHERE workspace_id = ? ORDER BY file_path, start_line, id", (workspace_id,)
            )
        else:
            rows = self.store.query(
                "SELECT * FROM symbol WHERE workspace_id = ? AND file_path = ? ORDER BY start_line, id",
                (workspace_id, file_path),
            )
        return [self._symbol_from_row(r) for r in rows]

    def delete_symbol(self, symbol_id: str) -> None:
        cur = self.store.execute("DELETE FROM symbol WHERE id = ?", (symbol_id,))
        if cur.rowcount == 0:
            raise NotFoundError("Symbol", symbol_id)

    def gc_symbols(self, workspace_id: str, seen_before: float) -> list[str]:
        """Delete symbols not seen by any indexing pass since ``seen_before``; edges cascade."""
        with self.store.transaction():
            rows = self.store.query(
                "SELECT id FROM symbol WHERE workspace_id = ? AND last_seen_at < ?",
                (workspace_id, seen_before),
            )
            ids = [r["id"] for r in rows]
            if ids:
                self.store.execute(
                    "DELETE FROM symbol WHERE workspace_id = ? AND last_seen_at < ?",
                    (workspace_id, seen_before),
                )
        if ids:
            log.info(f"Garbage-collected {len(ids)} stale symbols")
        return ids

    # =========================================================================
    # Patterns and constraints
    # =========================================================================

    def _pattern_from_row(self, row: sqlite3.Row) -> Pattern:
        return Pattern(
            id=row["id"],
            workspace_id=row["workspace_id"],
            name=row["name"],
            context=row["context"],
            solution=row["solution"],
            consequences=row["consequences"],
            service=row["service"],
            verification_status=VerificationStatus(row["verification_status"]),
            confidence=row["confidence"],
            evidence=_evidence_from(row["evidence"]),
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def save_pattern(self, pattern: Pattern) -> Pattern:
        """Insert or fully replace a Pattern row."""
        if not pattern.name or not pattern.name.strip():
            raise ValidationError("Pattern name must not be empty")
        now = self.clock.now()
        pattern.created_at = pattern.created_at or now
        pattern.updated_at = now
        with self.store.transaction():
            self.store.execute(
                """
                INSERT INTO pattern (id, workspace_id, name, name_key, context, solution, consequences,
                    service, verification_status, confidence, evidence, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name, name_key = excluded.name_key, context = excluded.context,
                    solution = excluded.solution, consequences = excluded.consequences,
                    service = excluded.service, verification_status = excluded.verification_status,
                    confidence = excluded.confidence, evidence = excluded.evidence,
                    metadata = excluded.metadata, created_at = excluded.created_at,
                    updated_at = excluded.updated_at
                """,
                (
                    pattern.id,
                    pattern.workspace_id,
                    pattern.name.strip(),
                    canonical_title(pattern.name),
                    pattern.context,
                    pattern.solution,
                    pattern.consequences,
                    pattern.service,
                    pattern.verification_status.value,
                    pattern.confidence,
                    _evidence_json(pattern.evidence),
                    _meta_json(pattern.metadata),
                    pattern.created_at,
                    pattern.updated_at,
                ),
            )
            self._index(pattern, pattern.workspace_id)
        return pattern

    def get_pattern(self, pattern_id: str) -> Pattern | None:
        row = self.store.query_one("SELECT * FROM pattern WHERE id = ?", (pattern_id,))
        return self._pattern_from_row(row) if row else None

    def find_pattern_by_name(self, workspace_id: str, name: str) -> Pattern | None:
        row = self.store.query_one(
            "SELECT * FROM pattern WHERE workspace_id = ? AND name_key = ? ORDER BY created_at LIMIT 1",
            (workspace_id, canonical_title(name)),
        )
        return self._pattern_from_row(row) if row else None

    def list_patterns(self, workspace_id: str) -> list[Pattern]:
        rows = self.store.query("SELECT * FROM pattern WHERE workspace_id = ? ORDER BY name_key", (workspace_id,))
        return [self._pattern_from_row(r) for r in rows]

    def _constraint_from_row(self, row: sqlite3.Row) -> Constraint:
        return Constraint(
            id=row["id"],
            workspace_id=row["workspace_id"],
            title=row["title"],
            description=row["description"],
            scope=row["scope"],
            service=row["service"],
            verification_status=VerificationStatus(row["verification_status"]),
            confidence=row["confidence"],
            evidence=_evidence_from(row["evidence"]),
            metadata=json.loads(row["metadata"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def save_constraint(self, constraint: Constraint) -> Constraint:
        """Insert or fully replace a Constraint row."""
        if not constraint.title or not constraint.title.strip():
            raise ValidationError("Constraint title must not be empty")
        now = self.clock.now()
        constraint.created_at = constraint.created_at or now
        constraint.updated_at = now
        with self.store.transaction():
            self.store.execute(
                """
                INSERT INTO "constraint" (id, workspace_id, title, title_key, description, scope,
                    service, verification_status, confidence, evidence, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    title = excluded.title, title_key = excluded.title_key,
                    description = excluded.description, scope = excluded.scope,
                    service = excluded.service, verification_status = excluded.verification_status,
                    confidence = excluded.confidence, evidence = excluded.evidence,
                    metadata = excluded.metadata, created_at = excluded.created_at,
                    updated_at = excluded.updated_at
                """,
                (
                    constraint.id,
                    constraint.workspace_id,
                    constraint.title.strip(),
                    canonical_title(constraint.title),
                    constraint.description,
                    constraint.scope,
                    constraint.service,
                    constraint.verification_status.value,
                    constraint.confidence,
                    _evidence_json(constraint.evidence),
                    _meta_json(constraint.metadata),
                    constraint.created_at,
                    constraint.updated_at,
                ),
            )
            self._index(constraint, constraint.workspace_id)
        return constraint

    def get_constraint(self, constraint_id: str) -> Constraint | None:
        row = self.store.query_one('SELECT * FROM "constraint" WHERE id = ?', (constraint_id,))
        return self._constraint_from_row(row) if row else None

    def find_constraint_by_title(self, workspace_id: str, title: str) -> Constraint | None:
        row = self.store.query_one(
            'SELECT * FROM "constraint" WHERE workspace_id = ? AND title_key = ? ORDER BY created_at LIMIT 1',
            (workspace_id, canonical_title(title)),
        )
        return self._constraint_from_row(row) if row else None

    def list_constraints(self, workspace_id: str) -> list[Constraint]:
        rows = self.store.query(
            'SELECT * FROM "constraint" WHERE workspace_id = ? ORDER BY title_key', (workspace_id,)
        )
        return [self._constraint_from_row(r) for r in rows]

    # =========================================================================
    # Overview (singleton per workspace)
    # =========================================================================

    def put_overview(self, overview: Overview) -> Overview:
        overview.generated_at = overview.generated_at or self.clock.now()
        with self.store.transaction():
            self.store.execute(
                """
                INSERT INTO overview (workspace_id, id, short_description, long_description,
                    generated_at, last_edited_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(workspace_id) DO UPDATE SET
                    short_description = excluded.short_description,
                    long_description = excluded.long_description,
                    generated_at = excluded.generated_at,
                    last_edited_at = excluded.last_edited_at
                """,
                (
                    overview.workspace_id,
                    overview.id,
                    overview.short_description,
                    overview.long_description,
                    overview.generated_at,
                    overview.last_edited_at,
                ),
            )
            self._index(overview, overview.workspace_id)
        return overview

    def get_overview(self, workspace_id: str) -> Overview | None:
        row = self.store.query_one("SELECT * FROM overview WHERE workspace_id = ?", (workspace_id,))
        if row is None:
            return None
        return Overview(
            workspace_id=row["workspace_id"],
            short_description=row["short_description"],
            long_description=row["long_description"],
            generated_at=row["generated_at"],
            last_edited_at=row["last_edited_at"],
        )

    # =========================================================================
    # Type-erased access
    # =========================================================================

    def _record_from_row(self, row: sqlite3.Row) -> NodeRecord:
        return NodeRecord(
            id=row["id"],
            type=NodeType(row["type"]),
            workspace_id=row["workspace_id"],
            title=row["title"],
            summary=row["summary"] or "",
            service=row["service"],
            verification_status=VerificationStatus(row["verification_status"]),
            updated_at=row["updated_at"] or 0.0,
        )

    def get_record(self, node_id: str) -> NodeRecord | None:
        row = self.store.query_one("SELECT * FROM node_index WHERE id = ?", (node_id,))
        return self._record_from_row(row) if row else None

    def get_records(self, node_ids: list[str]) -> dict[str, NodeRecord]:
        """Bulk lookup of node_index rows, chunked under SQLite's variable limit."""
        records: dict[str, NodeRecord] = {}
        ids = list(dict.fromkeys(node_ids))
        for i in range(0, len(ids), 500):
            chunk = ids[i:i + 500]
            rows = self.store.query(
                f"SELECT * FROM node_index WHERE id IN ({','.join('?' * len(chunk))})", chunk
            )
            for row in rows:
                records[row["id"]] = self._record_from_row(row)
        return records

    def list_records(
        self,
        workspace_id: str,
        types: list[NodeType] | None = None,
    ) -> list[NodeRecord]:
        sql = "SELECT * FROM node_index WHERE workspace_id = ?"
        params: list = [workspace_id]
        if types:
            sql += f" AND type IN ({','.join('?' * len(types))})"
            params.extend(t.value for t in types)
        rows = self.store.query(sql + " ORDER BY type, id", params)
        return [self._record_from_row(r) for r in rows]

    def get_node(self, node_id: str) -> Node | None:
        """Load any node by id, dispatching on its type."""
        record = self.get_record(node_id)
        if record is None:
            return None
        if record.type == NodeType.FEATURE:
            return self.get_feature(node_id)
        if record.type == NodeType.DECISION:
            return self.get_decision(node_id)
        if record.type == NodeType.SYMBOL:
            return self.get_symbol(node_id)
        if record.type == NodeType.PATTERN:
            return self.get_pattern(node_id)
        if record.type == NodeType.CONSTRAINT:
            return self.get_constraint(node_id)
        return self.get_overview(record.workspace_id)

    def set_verification(self, node_id: str, status: VerificationStatus, confidence: float) -> None:
        record = self.get_record(node_id)
        if record is None:
            raise NotFoundError("Node", node_id)
        if record.type == NodeType.OVERVIEW:
            return
        table = NODE_TYPE_TABLES[record.type]
        self.store.execute(
            f"UPDATE {table} SET verification_status = ?, confidence = ? WHERE id = ?",
            (status.value, confidence, node_id),
        )

    def delete_node(self, node_id: str, force: bool = False) -> None:
        record = self.get_record(node_id)
        if record is None:
            raise NotFoundError("Node", node_id)
        if record.type == NodeType.FEATURE:
            self.delete_feature(node_id, force=force)
        else:
            table = NODE_TYPE_TABLES[record.type]
            self.store.execute(f"DELETE FROM {table} WHERE id = ?", (node_id,))
