"""Ingest tests for TaskWing.

Tests how agent findings become knowledge nodes:
- Features and decisions with vectors and decision counts
- Dedupe across agents and across runs
- Relationship resolution by title, including unresolved ones
- Evidence verification downgrading changed claims
- Embedding failures degrading to keyword-only
- Maintenance: check, repair, re-embed and symbol GC
"""

import pytest

from taskwing.errors import CancelledError, ValidationError
from taskwing.cancellation import CancellationToken
from taskwing.knowledge import IngestOptions, KnowledgeService, SearchOptions
from taskwing.knowledge.ingest import FALLBACK_COMPONENT, fuzzy_title_match, merge_text
from taskwing.knowledge.verification import snippet_hash
from taskwing.models import EdgeKind, EvidenceRef, Finding, NodeType, Relationship, VerificationStatus

WS = "ws-ingest"


def auth_findings() -> tuple[list[Finding], list[Relationship]]:
    findings = [
        Finding(agent="doc", type=NodeType.FEATURE, title="Auth", metadata={"one_liner": "JWT auth"}),
        Finding(
            agent="doc",
            type=NodeType.DECISION,
            title="Use JWT",
            body="Tokens are signed JWTs",
            metadata={"feature": "Auth", "reasoning": "stateless"},
        ),
    ]
    return findings, []


class TestBootstrapSmallRepo:
    """A feature and its decision end up linked, searchable and embedded."""

    def test_feature_with_decision(self, service):
        findings, rels = auth_findings()
        report = service.ingest(findings, rels, IngestOptions(workspace_id=WS))

        assert report.created == {"feature": 1, "decision": 1}
        features = service.list_features(WS)
        assert [f.name for f in features] == ["Auth"]
        assert features[0].decision_count == 1
        assert features[0].one_liner == "JWT auth"

    def test_search_finds_auth_first(self, service):
        findings, rels = auth_findings()
        service.ingest(findings, rels, IngestOptions(workspace_id=WS))

        response = service.search("jwt stateless", SearchOptions(limit=3, workspace_id=WS))
        assert response.results
        assert response.results[0].title in ("Auth", "Use JWT")

    def test_vectors_exist_for_both_nodes(self, service, db):
        findings, rels = auth_findings()
        service.ingest(findings, rels, IngestOptions(workspace_id=WS))

        feature = service.list_features(WS)[0]
        decision = service.list_decisions(WS)[0]
        assert db.vectors.get(feature.id) is not None
        assert db.vectors.get(decision.id) is not None
        assert decision.reasoning == "stateless"

    def test_decision_without_feature_goes_to_component(self, service):
        finding = Finding(agent="doc", type=NodeType.DECISION, title="Use SQLite")
        service.ingest([finding], [], IngestOptions(workspace_id=WS))
        assert [f.name for f in service.list_features(WS)] == [FALLBACK_COMPONENT]

    def test_deps_decisions_go_to_technology_stack(self, service):
        finding = Finding(agent="deps", type=NodeType.DECISION, title="Use httpx")
        service.ingest([finding], [], IngestOptions(workspace_id=WS))
        assert [f.name for f in service.list_features(WS)] == ["Technology Stack"]


class TestDedupe:
    """Findings with the same canonical title merge into one node."""

    def test_same_title_from_two_agents(self, service):
        findings = [
            Finding(agent="doc", type=NodeType.FEATURE, title="Auth", body="Login flow"),
            Finding(agent="structure", type=NodeType.FEATURE, title="  auth ", body="Session handling",
                    metadata={"tags": ["python"]}),
        ]
        report = service.ingest(findings, [], IngestOptions(workspace_id=WS))

        assert report.created == {"feature": 1}
        feature = service.list_features(WS)[0]
        assert "Login flow" in feature.description
        assert "Session handling" in feature.description
        assert feature.tags == {"python"}
        assert feature.metadata["agents"] == ["doc", "structure"]

    def test_reingest_is_idempotent(self, service, db):
        findings, rels = auth_findings()
        service.ingest(findings, rels, IngestOptions(workspace_id=WS))
        before = db.stats()

        report = service.ingest(findings, rels, IngestOptions(workspace_id=WS))
        assert report.created == {}
        assert report.updated == {}
        assert report.unchanged == 2
        assert db.stats() == before

    def test_reingest_merges_new_body(self, service):
        service.ingest([Finding(agent="doc", type=NodeType.FEATURE, title="Auth", body="Login")],
                       [], IngestOptions(workspace_id=WS))
        report = service.ingest([Finding(agent="doc", type=NodeType.FEATURE, title="Auth", body="Logout")],
                                [], IngestOptions(workspace_id=WS))
        assert report.updated == {"feature": 1}
        description = service.list_features(WS)[0].description
        assert "Login" in description and "Logout" in description

    def test_finding_without_title_is_skipped(self, service):
        report = service.ingest([Finding(agent="llm", type=NodeType.PATTERN, title=" ")], [],
                                IngestOptions(workspace_id=WS))
        assert report.skipped == 1
        assert report.created == {}

    def test_workspace_required(self, service):
        with pytest.raises(ValidationError):
            service.ingest([], [], IngestOptions(workspace_id=""))


class TestRelationships:
    """Relationships resolve by title within the batch and against stored nodes."""

    def test_depends_on_between_features(self, service, db):
        findings = [
            Finding(agent="structure", type=NodeType.FEATURE, title="api"),
            Finding(agent="structure", type=NodeType.FEATURE, title="core"),
        ]
        rels = [Relationship("api", "core", EdgeKind.DEPENDS_ON, from_type=NodeType.FEATURE,
                             to_type=NodeType.FEATURE)]
        report = service.ingest(findings, rels, IngestOptions(workspace_id=WS, link_semantic=False))

        assert report.edges == 1
        by_name = {f.name: f.id for f in service.list_features(WS)}
        assert service.dependencies(by_name["api"]) == [by_name["core"]]

    def test_unresolved_relationship_is_reported(self, service):
        findings = [Finding(agent="structure", type=NodeType.FEATURE, title="api")]
        rels = [Relationship("api", "ghost", EdgeKind.DEPENDS_ON)]
        report = service.ingest(findings, rels, IngestOptions(workspace_id=WS))
        assert report.edges == 0
        assert report.unresolved == ["api -[depends_on]-> ghost"]

    def test_cycle_in_batch_is_rejected_not_fatal(self, service):
        findings = [
            Finding(agent="structure", type=NodeType.FEATURE, title="a"),
            Finding(agent="structure", type=NodeType.FEATURE, title="b"),
        ]
        rels = [
            Relationship("a", "b", EdgeKind.DEPENDS_ON),
            Relationship("b", "a", EdgeKind.DEPENDS_ON),
        ]
        report = service.ingest(findings, rels, IngestOptions(workspace_id=WS, link_semantic=False))
        assert report.edges == 1
        assert len(report.rejected_edges) == 1

    def test_shared_evidence_file_links_nodes(self, service, write_tree):
        root = write_tree({"auth.py": "def login():\n    pass\n"})
        findings = [
            Finding(agent="doc", type=NodeType.FEATURE, title="Auth", evidence=[EvidenceRef("auth.py", 1, 2)]),
            Finding(agent="doc", type=NodeType.PATTERN, title="Guard clauses", evidence=[EvidenceRef("auth.py")]),
        ]
        report = service.ingest(findings, [], IngestOptions(workspace_id=WS, root=root, link_semantic=False))
        assert report.evidence_edges == 1


class TestEvidenceVerification:
    """Changed evidence downgrades a claim to unverified."""

    @pytest.fixture
    def repo(self, write_tree):
        lines = [f"fn line_{i}() {{}}" for i in range(1, 26)]
        return write_tree({"src/foo.rs": "\n".join(lines) + "\n"})

    def test_stale_hash_marks_unverified(self, service, repo):
        finding = Finding(
            agent="code",
            type=NodeType.DECISION,
            title="Use arenas for parse trees",
            evidence=[EvidenceRef("src/foo.rs", 10, 20, snippet_hash="0" * 64)],
        )
        report = service.ingest([finding], [], IngestOptions(workspace_id=WS, root=repo))
        decision = service.list_decisions(WS)[0]

        assert decision.verification_status == VerificationStatus.UNVERIFIED
        assert decision.confidence == 0.5
        assert report.unverified == [decision.id]

        default = service.search("arenas parse trees", SearchOptions(workspace_id=WS))
        assert decision.id not in [r.node_id for r in default.results]
        included = service.search("arenas parse trees", SearchOptions(workspace_id=WS, include_unverified=True))
        assert decision.id in [r.node_id for r in included.results]

    def test_missing_hash_is_filled_in(self, service, repo):
        finding = Finding(agent="doc", type=NodeType.DECISION, title="Use arenas",
                          evidence=[EvidenceRef("src/foo.rs", 10, 20)])
        service.ingest([finding], [], IngestOptions(workspace_id=WS, root=repo))
        decision = service.list_decisions(WS)[0]

        text = (repo / "src/foo.rs").read_text()
        assert decision.verification_status == VerificationStatus.VERIFIED
        assert decision.evidence[0].snippet_hash == snippet_hash(text, 10, 20)

    def test_evidence_to_missing_file_is_dropped(self, service, repo):
        finding = Finding(agent="doc", type=NodeType.DECISION, title="Use arenas",
                          evidence=[EvidenceRef("src/gone.rs", 1, 2)])
        report = service.ingest([finding], [], IngestOptions(workspace_id=WS, root=repo))
        assert report.dropped_evidence == 1
        assert service.list_decisions(WS)[0].evidence == []


class TestDegradation:
    """Failures outside the store never lose findings."""

    def test_embedder_failure_stores_nodes_without_vectors(self, db, config, make_embedder):
        svc = KnowledgeService(db, embedder=make_embedder(fail=True), config=config)
        try:
            findings, rels = auth_findings()
            report = svc.ingest(findings, rels, IngestOptions(workspace_id=WS))
            assert report.embedding_degraded
            assert report.created == {"feature": 1, "decision": 1}
            assert db.vectors.count() == 0
        finally:
            svc.retriever.close()

    def test_cancelled_ingest_writes_nothing(self, service, db):
        token = CancellationToken()
        token.cancel()
        findings, rels = auth_findings()
        with pytest.raises(CancelledError):
            service.ingest(findings, rels, IngestOptions(workspace_id=WS, cancel=token))
        assert db.stats()["feature"] == 0


class TestMaintenance:
    """Integrity check, repair, re-embedding and symbol GC."""

    @pytest.fixture
    def auth_id(self, service):
        findings, rels = auth_findings()
        service.ingest(findings, rels, IngestOptions(workspace_id=WS))
        return service.list_features(WS)[0].id

    def test_fresh_ingest_is_healthy(self, service, auth_id):
        assert service.check(WS).healthy

    def test_orphan_edges_are_repaired(self, service, db, auth_id):
        db.execute(
            "INSERT INTO edge (from_id, to_id, kind, created_at) VALUES (?, 'deleted-node', 'depends_on', 0)",
            (auth_id,),
        )
        report = service.check(WS)
        assert len(report.orphan_edges) == 1
        assert not report.healthy

        assert service.repair(WS)["orphan_edges"] == 1
        assert service.check(WS).healthy

    def test_missing_index_rows_are_restored(self, service, db, auth_id):
        db.fts.remove_document(auth_id)
        db.vectors.delete(auth_id)
        report = service.check(WS)
        assert report.missing_fts == [auth_id]
        assert report.missing_vectors == [auth_id]

        result = service.repair(WS)
        assert result["fts_restored"] == 1
        assert result["embedded"] == 1
        assert service.check(WS).healthy

    def test_reembed_after_model_change(self, db, config, make_embedder, auth_id):
        svc = KnowledgeService(db, embedder=make_embedder(tag="fake:v2"), config=config)
        try:
            assert len(svc.check(WS).stale_vectors) == 2
            assert svc.reembed(WS) == 2
            assert svc.check(WS).healthy
        finally:
            svc.retriever.close()

    def test_reembed_needs_embedder(self, db, config):
        svc = KnowledgeService(db, config=config)
        try:
            with pytest.raises(ValidationError):
                svc.reembed(WS)
        finally:
            svc.retriever.close()

    def test_symbol_gc_after_grace_period(self, service, db, clock, config):
        symbol = Finding(agent="code", type=NodeType.SYMBOL, title="total", metadata={"file_path": "shop/cart.py"})
        service.ingest([symbol], [], IngestOptions(workspace_id=WS))
        assert service.gc_symbols(WS) == []

        clock.advance(config.symbol_gc_grace_seconds + 1)
        removed = service.gc_symbols(WS)
        assert len(removed) == 1
        assert db.entities.list_symbols(WS) == []


class TestHelpers:
    def test_merge_text_skips_contained(self):
        assert merge_text("Login flow", "flow") == "Login flow"
        assert merge_text("flow", "Login flow") == "Login flow"
        assert merge_text("Login", "Logout") == "Login\n\nLogout"

    def test_fuzzy_title_match(self):
        candidates = {"authentication service": "id-1", "billing": "id-2"}
        assert fuzzy_title_match("billing pipeline retries", candidates) is None
        assert fuzzy_title_match("the authentication service layer", candidates) == "id-1"
