"""Storage manager for the TaskWing memory database.

A single SQLite file (memory.db) holds every entity, the graph edges, the FTS5
index and the raw embedding vectors, so one transaction covers all of them.

Concurrency model:
- Each thread gets its own connection in WAL mode: readers never block readers
- One writer at a time: a reentrant in-process lock plus an advisory flock on
  memory.db.lock to exclude writers in other processes
- Writes inside ``transaction()`` are visible to later reads on the same thread
  before commit; other threads see them after commit
"""

import fcntl
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from taskwing.db import schema
from taskwing.db.entity_repository import EntityRepository
from taskwing.db.fts import FTSIndex
from taskwing.db.graph_analytics import GraphAnalytics
from taskwing.db.plan_repository import PlanRepository
from taskwing.db.relationship_manager import RelationshipManager
from taskwing.db.vector_index import VectorIndex
from taskwing.errors import (
    ConflictError,
    StorageCorruptError,
    StorageError,
    StorageFullError,
    TaskWingError,
)
from taskwing.log_config import get_logger
from taskwing.protocols import Clock, SystemClock

log = get_logger("db")

_SQLITE_FULL = 13
_SQLITE_CORRUPT = 11
_SQLITE_NOTADB = 26


def translate_sqlite_error(exc: sqlite3.Error, path: Path | str) -> TaskWingError:
    """Map a sqlite3 exception onto the storage error taxonomy."""
    code = getattr(exc, "sqlite_errorcode", None)
    text = str(exc).lower()
    if code == _SQLITE_FULL or "disk is full" in text:
        return StorageFullError()
    if code in (_SQLITE_CORRUPT, _SQLITE_NOTADB) or "malformed" in text or "not a database" in text:
        return StorageCorruptError(str(path), str(exc))
    if isinstance(exc, sqlite3.IntegrityError) and "unique" in text:
        return ConflictError(f"Uniqueness violation: {exc}")
    return StorageError(f"Storage operation failed: {exc}")


class DatabaseManager:
    """Owns memory.db connections and exposes the storage operations.

    Entity CRUD, graph queries, FTS and kNN are implemented by the extracted
    collaborators (EntityRepository, RelationshipManager, GraphAnalytics,
    FTSIndex, VectorIndex, PlanRepository); this class wires them to a shared
    connection provider and the writer lock.
    """

    def __init__(
        self,
        path: Path | str,
        clock: Clock | None = None,
        ivf_threshold: int = 100_000,
        ivf_nprobe: int = 8,
    ):
        """Open (and migrate) the database at ``path``.

        Args:
            path: memory.db location; parent directories are created
            clock: Time source for created_at/updated_at (default: system clock)
            ivf_threshold: Vector count above which kNN switches to IVF
            ivf_nprobe: IVF lists probed per query

        Raises:
            StorageCorruptError: If the file is not a healthy SQLite database
            SchemaMismatchError: If the schema is newer than this release
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock or SystemClock()

        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._write_lock = threading.RLock()
        self._lock_depth = 0
        self._lock_file = None
        self._closed = False

        log.info(f"Opening memory database at {self.path}")
        conn = self.connection()
        try:
            row = conn.execute("PRAGMA quick_check").fetchone()
            if row is None or row[0] != "ok":
                raise StorageCorruptError(str(self.path), str(row[0] if row else "quick_check failed"))
            with self.writer_lock():
                applied = schema.migrate(conn)
        except sqlite3.Error as e:
            self.close()
            raise translate_sqlite_error(e, self.path) from e
        except TaskWingError:
            self.close()
            raise
        if applied:
            log.info(f"Applied {applied} schema migration(s), now at v{schema.SCHEMA_VERSION}")

        self.fts = FTSIndex(self)
        self.entities = EntityRepository(self, self.clock, self.fts)
        self.relationships = RelationshipManager(self, self.clock)
        self.graph = GraphAnalytics(self)
        self.vectors = VectorIndex(self, self.clock, ivf_threshold=ivf_threshold, ivf_nprobe=ivf_nprobe)
        self.plans = PlanRepository(self, self.clock)

    @classmethod
    def open(cls, path: Path | str, **kwargs: Any) -> "DatabaseManager":
        return cls(path, **kwargs)

    def close(self) -> None:
        """Close every per-thread connection; the manager is unusable afterwards."""
        with self._connections_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    log.warning(f"Error closing connection: {e}")
            self._connections.clear()
            self._local = threading.local()
            self._closed = True
        log.debug(f"Closed memory database at {self.path}")

    def __enter__(self) -> "DatabaseManager":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # =========================================================================
    # Connections and transactions
    # =========================================================================

    def connection(self) -> sqlite3.Connection:
        """Return this thread's connection, creating it on first use."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        if self._closed:
            raise StorageError("Memory database is closed")
        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=30.0,
                check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=30000")
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, self.path) from e
        self._local.conn = conn
        with self._connections_lock:
            self._connections.append(conn)
        log.trace(f"Opened connection for thread {threading.get_ident()}")
        return conn

    @contextmanager
    def writer_lock(self) -> Iterator[None]:
        """Process-wide write mutex, also held across processes via flock."""
        with self._write_lock:
            if self._lock_depth == 0:
                self._lock_file = open(self.path.with_name(self.path.name + ".lock"), "a+")
                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX)
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0 and self._lock_file is not None:
                    fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
                    self._lock_file.close()
                    self._lock_file = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Atomic write scope; nested calls join the outer transaction.

        On any exception the whole transaction is rolled back and the error
        propagates (sqlite3 errors translated to the storage taxonomy).
        """
        conn = self.connection()
        depth = getattr(self._local, "tx_depth", 0)
        if depth > 0:
            self._local.tx_depth = depth + 1
            try:
                yield conn
            finally:
                self._local.tx_depth = depth
            return

        with self.writer_lock():
            self._local.tx_depth = 1
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise translate_sqlite_error(e, self.path) from e
            finally:
                self._local.tx_depth = 0

    def execute(self, sql: str, params: tuple | list | dict = ()) -> sqlite3.Cursor:
        try:
            return self.connection().execute(sql, params)
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, self.path) from e

    def executemany(self, sql: str, rows: list[tuple]) -> sqlite3.Cursor:
        try:
            return self.connection().executemany(sql, rows)
        except sqlite3.Error as e:
            raise translate_sqlite_error(e, self.path) from e

    def query(self, sql: str, params: tuple | list | dict = ()) -> list[sqlite3.Row]:
        return self.execute(sql, params).fetchall()

    def query_one(self, sql: str, params: tuple | list | dict = ()) -> sqlite3.Row | None:
        return self.execute(sql, params).fetchone()

    # =========================================================================
    # Health
    # =========================================================================

    def schema_version(self) -> int:
        return schema.get_version(self.connection())

    def stats(self) -> dict[str, int]:
        """Row counts per table, for status output and tests."""
        counts = {}
        for table in ("feature", "decision", "symbol", "pattern", '"constraint"', "overview",
                      "edge", "embedding", "fts_doc", "plan", "task"):
            row = self.query_one(f"SELECT count(*) FROM {table}")
            counts[table.strip('"')] = row[0]
        return counts
