"""Storage layer for TaskWing.

One SQLite file (memory.db) holds the knowledge graph, the FTS5 index, the raw
embedding vectors and the plan/task tables, so a single transaction covers an
entire ingest.

Module Structure:
- manager.py: DatabaseManager (connections, transactions, writer lock)
- schema.py: versioned migrations (PRAGMA user_version)
- store_protocol.py: SQLStore protocol the collaborators depend on
- entity_repository.py: typed node CRUD
- relationship_manager.py: idempotent edge CRUD
- graph_analytics.py: BFS traversals, paths, cycle checks
- fts.py: keyword index and bm25 ranking
- vector_index.py: embedding storage and kNN
- plan_repository.py: plan/task rows

Example:
    from taskwing.db import DatabaseManager

    with DatabaseManager.open(".taskwing/memory/memory.db") as db:
        hits = db.fts.search("jwt auth", limit=5)
"""

from taskwing.db.manager import DatabaseManager, translate_sqlite_error
from taskwing.db.schema import SCHEMA_VERSION

__all__ = ["DatabaseManager", "SCHEMA_VERSION", "translate_sqlite_error"]
