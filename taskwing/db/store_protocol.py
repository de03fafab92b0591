"""Storage protocol shared by the repository collaborators.

EntityRepository, RelationshipManager, GraphAnalytics, FTSIndex, VectorIndex
and PlanRepository depend on this interface rather than on DatabaseManager,
so each can be driven by any connection provider.
"""

import sqlite3
from contextlib import AbstractContextManager
from typing import Protocol


class SQLStore(Protocol):
    """Connection provider with error-translating helpers."""

    def execute(self, sql: str, params: tuple | list | dict = ()) -> sqlite3.Cursor:
        ...

    def executemany(self, sql: str, rows: list[tuple]) -> sqlite3.Cursor:
        ...

    def query(self, sql: str, params: tuple | list | dict = ()) -> list[sqlite3.Row]:
        ...

    def query_one(self, sql: str, params: tuple | list | dict = ()) -> sqlite3.Row | None:
        ...

    def transaction(self) -> AbstractContextManager[sqlite3.Connection]:
        """Reentrant atomic write scope holding the writer lock."""
        ...
