"""Storage layer tests for TaskWing.

Tests the memory.db pathways everything else builds on:
- Schema migration and version checks
- Feature/Decision CRUD with FTS rows kept in step
- Idempotent edges, cycle rejection and cascade on delete
- Graph traversals
- Vector storage and kNN ordering
"""

import sqlite3

import numpy as np
import pytest

from taskwing.db import SCHEMA_VERSION, DatabaseManager
from taskwing.db.manager import translate_sqlite_error
from taskwing.errors import (
    ConflictError,
    CycleError,
    NotFoundError,
    SchemaMismatchError,
    StorageCorruptError,
    StorageError,
    StorageFullError,
    ValidationError,
)
from taskwing.models import Decision, EdgeKind, Feature, NodeType, new_id

WS = "ws-test"


def make_feature(db: DatabaseManager, name: str, one_liner: str = "") -> Feature:
    return db.entities.create_feature(Feature(id=new_id(), workspace_id=WS, name=name, one_liner=one_liner))


class TestSchema:
    """Schema versioning via PRAGMA user_version."""

    def test_fresh_database_is_at_current_version(self, db):
        assert db.schema_version() == SCHEMA_VERSION

    def test_reopen_applies_no_migrations(self, db, tmp_path, clock):
        db.close()
        reopened = DatabaseManager(db.path, clock=clock)
        try:
            assert reopened.schema_version() == SCHEMA_VERSION
        finally:
            reopened.close()

    def test_newer_schema_is_rejected(self, tmp_path):
        path = tmp_path / "future.db"
        conn = sqlite3.connect(path)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        conn.close()

        with pytest.raises(SchemaMismatchError) as exc_info:
            DatabaseManager(path)
        assert exc_info.value.found == SCHEMA_VERSION + 1


class TestFeatureCrud:
    """Feature rows, name uniqueness and decision counts."""

    def test_create_and_get(self, db):
        feature = make_feature(db, "Auth", "JWT auth")
        loaded = db.entities.get_feature(feature.id)
        assert loaded.name == "Auth"
        assert loaded.one_liner == "JWT auth"
        assert loaded.decision_count == 0

    def test_empty_name_rejected(self, db):
        with pytest.raises(ValidationError):
            db.entities.create_feature(Feature(id=new_id(), workspace_id=WS, name="  "))

    def test_duplicate_name_is_case_insensitive_conflict(self, db):
        make_feature(db, "Auth")
        with pytest.raises(ConflictError):
            make_feature(db, "auth")

    def test_same_name_in_other_workspace_is_allowed(self, db):
        make_feature(db, "Auth")
        other = db.entities.create_feature(Feature(id=new_id(), workspace_id="ws-other", name="Auth"))
        assert other.id

    def test_decision_count(self, db):
        feature = make_feature(db, "Auth")
        db.entities.create_decision(Decision(id=new_id(), feature_id=feature.id, title="Use JWT", workspace_id=WS))
        assert db.entities.get_feature(feature.id).decision_count == 1

    def test_create_indexes_fts(self, db):
        feature = make_feature(db, "Billing", "Stripe invoices")
        hits = db.fts.search("stripe", workspace_id=WS)
        assert [h.id for h in hits] == [feature.id]

    def test_delete_feature_blocked_by_dependents(self, db):
        core = make_feature(db, "Core")
        api = make_feature(db, "API")
        db.relationships.add_edge(api.id, core.id, EdgeKind.DEPENDS_ON)

        with pytest.raises(ConflictError):
            db.entities.delete_feature(core.id)

        db.entities.delete_feature(core.id, force=True)
        assert db.entities.get_feature(core.id) is None
        assert db.relationships.get_edges(api.id) == []

    def test_delete_missing_feature(self, db):
        with pytest.raises(NotFoundError):
            db.entities.delete_feature("nope")

    def test_delete_removes_fts_row(self, db):
        feature = make_feature(db, "Search", "bm25 ranking")
        db.entities.delete_feature(feature.id)
        assert db.fts.search("bm25", workspace_id=WS) == []


class TestEdges:
    """RelationshipManager: idempotence, validation, cycles."""

    def test_add_edge_is_idempotent(self, db):
        a = make_feature(db, "A")
        b = make_feature(db, "B")
        db.relationships.add_edge(a.id, b.id, EdgeKind.DEPENDS_ON, confidence=0.5)
        edge = db.relationships.add_edge(a.id, b.id, EdgeKind.DEPENDS_ON, confidence=0.9)
        assert len(db.relationships.get_edges(a.id)) == 1
        assert edge.confidence == 0.9

    def test_related_edges_are_symmetric(self, db):
        a = make_feature(db, "A")
        b = make_feature(db, "B")
        db.relationships.add_edge(a.id, b.id, EdgeKind.RELATED)
        db.relationships.add_edge(b.id, a.id, EdgeKind.RELATED)
        assert len(db.relationships.all_edges(WS)) == 1

    def test_self_edge_rejected(self, db):
        a = make_feature(db, "A")
        with pytest.raises(ValidationError):
            db.relationships.add_edge(a.id, a.id, EdgeKind.RELATED)

    def test_confidence_range_checked(self, db):
        a = make_feature(db, "A")
        b = make_feature(db, "B")
        with pytest.raises(ValidationError):
            db.relationships.add_edge(a.id, b.id, EdgeKind.RELATED, confidence=1.5)

    def test_missing_endpoint(self, db):
        a = make_feature(db, "A")
        with pytest.raises(NotFoundError):
            db.relationships.add_edge(a.id, "missing", EdgeKind.DEPENDS_ON)

    def test_depends_on_cycle_rejected_with_path(self, db):
        a = make_feature(db, "A")
        b = make_feature(db, "B")
        c = make_feature(db, "C")
        db.relationships.add_edge(a.id, b.id, EdgeKind.DEPENDS_ON)
        db.relationships.add_edge(b.id, c.id, EdgeKind.DEPENDS_ON)

        with pytest.raises(CycleError) as exc_info:
            db.relationships.add_edge(c.id, a.id, EdgeKind.DEPENDS_ON)
        assert exc_info.value.path == [c.id, a.id, b.id, c.id]
        assert len(db.relationships.all_edges(WS)) == 2


class TestGraph:
    """Traversals over depends_on edges."""

    @pytest.fixture
    def chain(self, db):
        a, b, c = (make_feature(db, n) for n in "ABC")
        db.relationships.add_edge(a.id, b.id, EdgeKind.DEPENDS_ON)
        db.relationships.add_edge(b.id, c.id, EdgeKind.DEPENDS_ON)
        return a, b, c

    def test_dependencies_nearest_first(self, db, chain):
        a, b, c = chain
        assert db.graph.dependencies(a.id) == [b.id, c.id]

    def test_dependents(self, db, chain):
        a, b, c = chain
        assert db.graph.dependents(c.id) == [b.id, a.id]

    def test_depth_limit(self, db, chain):
        a, b, _ = chain
        assert db.graph.dependencies(a.id, depth=1) == [b.id]

    def test_shortest_paths(self, db, chain):
        a, b, c = chain
        assert db.graph.shortest_paths(a.id, c.id) == [[a.id, b.id, c.id]]
        assert db.graph.shortest_paths(c.id, a.id) == []


class TestVectors:
    """VectorIndex storage and kNN."""

    def test_knn_orders_by_similarity(self, db):
        a = make_feature(db, "A")
        b = make_feature(db, "B")
        db.vectors.put(a.id, "m", np.array([1.0, 0.0, 0.0], dtype=np.float32))
        db.vectors.put(b.id, "m", np.array([0.6, 0.8, 0.0], dtype=np.float32))

        hits = db.vectors.knn(np.array([1.0, 0.1, 0.0]), k=2, model_tag="m")
        assert [h.id for h in hits] == [a.id, b.id]
        assert hits[0].score > hits[1].score

    def test_knn_filters_model_and_type(self, db):
        a = make_feature(db, "A")
        db.vectors.put(a.id, "other", np.array([1.0, 0.0], dtype=np.float32))
        assert db.vectors.knn(np.array([1.0, 0.0]), k=5, model_tag="m") == []
        assert db.vectors.knn(np.array([1.0, 0.0]), k=5, model_tag="other", types=[NodeType.DECISION]) == []

    def test_stale_ids_and_overwrite(self, db):
        a = make_feature(db, "A")
        db.vectors.put(a.id, "old", np.array([1.0, 0.0], dtype=np.float32))
        assert db.vectors.stale_ids("new") == [a.id]
        db.vectors.put(a.id, "new", np.array([0.0, 1.0], dtype=np.float32))
        assert db.vectors.stale_ids("new") == []
        assert db.vectors.count() == 1

    def test_vector_removed_with_node(self, db):
        a = make_feature(db, "A")
        db.vectors.put(a.id, "m", np.array([1.0, 0.0], dtype=np.float32))
        db.entities.delete_feature(a.id)
        assert db.vectors.get(a.id) is None

    def test_knn_sees_nodes_created_after_a_delete(self, db):
        alpha = make_feature(db, "Alpha")
        beta = make_feature(db, "Beta")
        db.vectors.put(alpha.id, "m", np.array([0.0, 1.0], dtype=np.float32))
        db.vectors.put(beta.id, "m", np.array([1.0, 0.0], dtype=np.float32))
        assert db.vectors.knn(np.array([1.0, 0.0]), k=1, model_tag="m")[0].id == beta.id

        db.entities.delete_feature(beta.id)
        gamma = make_feature(db, "Gamma")
        db.vectors.put(gamma.id, "m", np.array([1.0, 0.0], dtype=np.float32))

        ids = [h.id for h in db.vectors.knn(np.array([1.0, 0.0]), k=2, model_tag="m")]
        assert ids == [gamma.id, alpha.id]
        assert beta.id not in ids


class TestTransactions:
    """Nested transactions and rollback."""

    def test_failed_transaction_rolls_back(self, db):
        with pytest.raises(ConflictError):
            with db.transaction():
                make_feature(db, "A")
                make_feature(db, "a")
        assert db.entities.list_features(WS) == []


class TestStorageErrors:
    """sqlite3 failures surface as storage errors."""

    def test_garbage_file_is_corrupt(self, tmp_path):
        path = tmp_path / "memory.db"
        path.write_bytes(b"this is not a sqlite database" * 64)

        with pytest.raises(StorageCorruptError) as exc_info:
            DatabaseManager(path)
        assert exc_info.value.path == str(path)

    def test_disk_full_translates(self, tmp_path):
        err = translate_sqlite_error(sqlite3.OperationalError("database or disk is full"), tmp_path / "memory.db")
        assert isinstance(err, StorageFullError)

    def test_malformed_translates_to_corrupt(self, tmp_path):
        err = translate_sqlite_error(sqlite3.DatabaseError("database disk image is malformed"), "memory.db")
        assert isinstance(err, StorageCorruptError)
        assert err.path == "memory.db"

    def test_unique_violation_translates_to_conflict(self, tmp_path):
        err = translate_sqlite_error(sqlite3.IntegrityError("UNIQUE constraint failed: feature.name"), "memory.db")
        assert isinstance(err, ConflictError)

    def test_other_errors_are_generic_storage_errors(self):
        err = translate_sqlite_error(sqlite3.OperationalError("no such table: widget"), "memory.db")
        assert type(err) is StorageError
