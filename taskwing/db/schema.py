"""Versioned schema for memory.db.

Migrations are applied in order at open and tracked with PRAGMA user_version.
Opening a database written by a newer release fails with SchemaMismatchError.
"""

import sqlite3

from taskwing.errors import SchemaMismatchError
from taskwing.log_config import get_logger

log = get_logger("db.schema")

# Node tables whose deletion must cascade to edges, vectors and FTS rows
NODE_TABLES = ("feature", "decision", "symbol", "pattern", '"constraint"')

_V1_KNOWLEDGE = """
CREATE TABLE workspace (
    id TEXT PRIMARY KEY,
    root_path TEXT NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('single', 'monorepo', 'multi_repo')),
    services TEXT NOT NULL DEFAULT '[]',
    updated_at REAL NOT NULL
);

CREATE TABLE feature (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    one_liner TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    tags TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL CHECK(status IN ('active', 'deprecated', 'planned')) DEFAULT 'active',
    service TEXT,
    verification_status TEXT NOT NULL DEFAULT 'verified',
    confidence REAL NOT NULL DEFAULT 1.0,
    evidence TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE UNIQUE INDEX idx_feature_name ON feature(workspace_id, name_key);

CREATE TABLE decision (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    feature_id TEXT NOT NULL REFERENCES feature(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    title_key TEXT NOT NULL,
    summary TEXT NOT NULL DEFAULT '',
    reasoning TEXT NOT NULL DEFAULT '',
    tradeoffs TEXT NOT NULL DEFAULT '',
    service TEXT,
    verification_status TEXT NOT NULL DEFAULT 'verified',
    confidence REAL NOT NULL DEFAULT 1.0,
    evidence TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX idx_decision_feature ON decision(feature_id);
CREATE INDEX idx_decision_title ON decision(workspace_id, title_key);

CREATE TABLE symbol (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,
    file_path TEXT NOT NULL,
    start_line INTEGER NOT NULL DEFAULT 0,
    end_line INTEGER NOT NULL DEFAULT 0,
    signature TEXT NOT NULL DEFAULT '',
    doc_comment TEXT NOT NULL DEFAULT '',
    module_path TEXT NOT NULL DEFAULT '',
    service TEXT,
    verification_status TEXT NOT NULL DEFAULT 'verified',
    confidence REAL NOT NULL DEFAULT 1.0,
    metadata TEXT NOT NULL DEFAULT '{}',
    last_seen_at REAL NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX idx_symbol_file ON symbol(workspace_id, file_path);
CREATE INDEX idx_symbol_seen ON symbol(workspace_id, last_seen_at);

CREATE TABLE pattern (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    name TEXT NOT NULL,
    name_key TEXT NOT NULL,
    context TEXT NOT NULL DEFAULT '',
    solution TEXT NOT NULL DEFAULT '',
    consequences TEXT NOT NULL DEFAULT '',
    service TEXT,
    verification_status TEXT NOT NULL DEFAULT 'verified',
    confidence REAL NOT NULL DEFAULT 1.0,
    evidence TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX idx_pattern_name ON pattern(workspace_id, name_key);

CREATE TABLE "constraint" (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    title TEXT NOT NULL,
    title_key TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    scope TEXT NOT NULL DEFAULT '',
    service TEXT,
    verification_status TEXT NOT NULL DEFAULT 'verified',
    confidence REAL NOT NULL DEFAULT 1.0,
    evidence TEXT NOT NULL DEFAULT '[]',
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX idx_constraint_title ON "constraint"(workspace_id, title_key);

CREATE TABLE overview (
    workspace_id TEXT PRIMARY KEY,
    id TEXT NOT NULL UNIQUE,
    short_description TEXT NOT NULL DEFAULT '',
    long_description TEXT NOT NULL DEFAULT '',
    generated_at REAL NOT NULL,
    last_edited_at REAL
);

CREATE TABLE edge (
    from_id TEXT NOT NULL,
    to_id TEXT NOT NULL,
    kind TEXT NOT NULL CHECK(kind IN ('depends_on', 'extends', 'replaces', 'related', 'calls', 'implements')),
    confidence REAL NOT NULL DEFAULT 1.0,
    evidence TEXT,
    created_at REAL NOT NULL,
    PRIMARY KEY (from_id, to_id, kind)
);
CREATE INDEX idx_edge_to ON edge(to_id, kind);

CREATE TABLE embedding (
    node_id TEXT PRIMARY KEY,
    model_tag TEXT NOT NULL,
    dim INTEGER NOT NULL,
    vector BLOB NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX idx_embedding_model ON embedding(model_tag);

CREATE VIRTUAL TABLE fts_doc USING fts5(
    node_id UNINDEXED,
    node_type UNINDEXED,
    workspace_id UNINDEXED,
    title,
    body,
    tokenize = 'porter unicode61 remove_diacritics 2'
);

CREATE VIEW node_index AS
    SELECT id, 'feature' AS type, workspace_id, service, name AS title,
           one_liner AS summary, updated_at, verification_status
    FROM feature
    UNION ALL
    SELECT id, 'decision', workspace_id, service, title, summary, updated_at, verification_status
    FROM decision
    UNION ALL
    SELECT id, 'symbol', workspace_id, service, name,
           CASE WHEN signature != '' THEN signature ELSE doc_comment END,
           updated_at, verification_status
    FROM symbol
    UNION ALL
    SELECT id, 'pattern', workspace_id, service, name, context, updated_at, verification_status
    FROM pattern
    UNION ALL
    SELECT id, 'constraint', workspace_id, service, title, description, updated_at, verification_status
    FROM "constraint"
    UNION ALL
    SELECT id, 'overview', workspace_id, NULL, 'Project Overview', short_description,
           COALESCE(last_edited_at, generated_at), 'verified'
    FROM overview;
"""

_NODE_DELETE_TRIGGER = """
CREATE TRIGGER {name}_after_delete AFTER DELETE ON {table} BEGIN
    DELETE FROM edge WHERE from_id = old.id OR to_id = old.id;
    DELETE FROM embedding WHERE node_id = old.id;
    DELETE FROM fts_doc WHERE node_id = old.id;
END;
"""

_V2_PLANS = """
CREATE TABLE plan (
    id TEXT PRIMARY KEY,
    workspace_id TEXT NOT NULL,
    goal TEXT NOT NULL,
    enriched_goal TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL CHECK(status IN ('draft', 'active', 'completed', 'archived')) DEFAULT 'draft',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE UNIQUE INDEX idx_plan_one_active ON plan(workspace_id) WHERE status = 'active';

CREATE TABLE task (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES plan(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    acceptance_criteria TEXT NOT NULL DEFAULT '[]',
    complexity TEXT NOT NULL CHECK(complexity IN ('low', 'medium', 'high')) DEFAULT 'medium',
    priority INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL CHECK(status IN ('pending', 'in_progress', 'blocked', 'completed', 'cancelled'))
        DEFAULT 'pending',
    dependencies TEXT NOT NULL DEFAULT '[]',
    parent_id TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    completed_at REAL
);
CREATE INDEX idx_task_plan ON task(plan_id, status);
"""

_V3_VECTOR_GENERATION = """
CREATE TABLE vector_generation (
    id INTEGER PRIMARY KEY CHECK(id = 1),
    generation INTEGER NOT NULL
);
INSERT INTO vector_generation (id, generation) VALUES (1, 0);

CREATE TRIGGER embedding_after_insert AFTER INSERT ON embedding BEGIN
    UPDATE vector_generation SET generation = generation + 1 WHERE id = 1;
END;
CREATE TRIGGER embedding_after_update AFTER UPDATE ON embedding BEGIN
    UPDATE vector_generation SET generation = generation + 1 WHERE id = 1;
END;
CREATE TRIGGER embedding_after_delete AFTER DELETE ON embedding BEGIN
    UPDATE vector_generation SET generation = generation + 1 WHERE id = 1;
END;
"""


def _v1() -> str:
    triggers = "".join(
        _NODE_DELETE_TRIGGER.format(name=table.strip('"'), table=table)
        for table in (*NODE_TABLES, "overview")
    )
    return _V1_KNOWLEDGE + triggers


def _v2() -> str:
    return _V2_PLANS


def _v3() -> str:
    # Bumped on every embedding write, including trigger-driven deletes
    return _V3_VECTOR_GENERATION


MIGRATIONS = [_v1, _v2, _v3]
SCHEMA_VERSION = len(MIGRATIONS)


def get_version(conn: sqlite3.Connection) -> int:
    return conn.execute("PRAGMA user_version").fetchone()[0]


def migrate(conn: sqlite3.Connection) -> int:
    """Bring the database up to SCHEMA_VERSION.

    Each migration runs as one script inside its own transaction together
    with the version bump, so a failed migration leaves the previous version.

    Returns:
        The number of migrations applied

    Raises:
        SchemaMismatchError: If the database is newer than this release
    """
    current = get_version(conn)
    if current > SCHEMA_VERSION:
        raise SchemaMismatchError(current, SCHEMA_VERSION)

    applied = 0
    for version in range(current + 1, SCHEMA_VERSION + 1):
        log.info(f"Applying schema migration v{version}")
        script = f"BEGIN IMMEDIATE;\n{MIGRATIONS[version - 1]()}\nPRAGMA user_version = {version};\nCOMMIT;"
        try:
            conn.executescript(script)
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        applied += 1
    return applied
