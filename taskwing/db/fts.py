"""Full-text index over node titles and bodies (SQLite FTS5).

Tokenization is fixed: FTS5 ``porter unicode61 remove_diacritics 2`` on the
index side (case folding, diacritic removal, Porter stemming). Queries are
split on non-alphanumerics, lowercased, stripped of the stop words below, then
each token is quoted and the tokens are OR-ed. Ranking is ``-bm25`` with the
title column weighted 4x the body, so higher scores are better.
"""

import re

from taskwing.db.store_protocol import SQLStore
from taskwing.log_config import get_logger
from taskwing.models import NodeHit, NodeType

log = get_logger("db.fts")

STOP_WORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been before
    being below between both but by can could did do does doing down during each few for
    from further had has have having he her here hers herself him himself his how i if in
    into is it its itself just me more most my myself no nor not now of off on once only or
    other our ours ourselves out over own same she should so some such than that the their
    theirs them themselves then there these they this those through to too under until up
    very was we were what when where which while who whom why will with would you your
    yours yourself yourselves
    """.split()
)

# Column order: node_id, node_type, workspace_id, title, body
_BM25 = "bm25(fts_doc, 0.0, 0.0, 0.0, 4.0, 1.0)"
_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)

SNIPPET_TOKENS = 16


def tokenize_query(query: str) -> list[str]:
    """Lowercased, stop-word-free, order-preserving unique tokens."""
    seen: list[str] = []
    for tok in _TOKEN_RE.findall(query.lower()):
        if tok in STOP_WORDS or tok in seen:
            continue
        seen.append(tok)
    return seen


def build_match_expression(query: str) -> str | None:
    """FTS5 MATCH expression for a free-text query, or None if nothing is searchable."""
    tokens = tokenize_query(query)
    if not tokens:
        return None
    return " OR ".join(f'"{t}"' for t in tokens)


class FTSIndex:
    """Maintains fts_doc rows and runs ranked keyword queries."""

    def __init__(self, store: SQLStore):
        self.store = store

    def index_document(
        self,
        node_id: str,
        node_type: NodeType,
        workspace_id: str,
        title: str,
        body: str,
    ) -> None:
        """Replace the FTS row for a node (call inside the node's write transaction)."""
        self.store.execute("DELETE FROM fts_doc WHERE node_id = ?", (node_id,))
        self.store.execute(
            "INSERT INTO fts_doc (node_id, node_type, workspace_id, title, body) VALUES (?, ?, ?, ?, ?)",
            (node_id, node_type.value, workspace_id, title, body),
        )

    def remove_document(self, node_id: str) -> None:
        self.store.execute("DELETE FROM fts_doc WHERE node_id = ?", (node_id,))

    def search(
        self,
        query: str,
        limit: int = 20,
        types: list[NodeType] | None = None,
        workspace_id: str | None = None,
    ) -> list[NodeHit]:
        """Ranked keyword search.

        Args:
            query: Free text; tokens are OR-ed
            limit: Maximum hits
            types: Restrict to these node types
            workspace_id: Restrict to one workspace

        Returns:
            Hits ordered by descending bm25-derived score, then node id
        """
        expr = build_match_expression(query)
        if expr is None:
            log.debug(f"FTS query has no searchable tokens: {query!r}")
            return []

        sql = [
            f"SELECT node_id, {_BM25} AS rank_score,",
            f"snippet(fts_doc, 4, '**', '**', '...', {SNIPPET_TOKENS}) AS snip",
            "FROM fts_doc WHERE fts_doc MATCH ?",
        ]
        params: list = [expr]
        if types:
            sql.append(f"AND node_type IN ({','.join('?' * len(types))})")
            params.extend(t.value for t in types)
        if workspace_id:
            sql.append("AND workspace_id = ?")
            params.append(workspace_id)
        sql.append("ORDER BY rank_score ASC, node_id ASC LIMIT ?")
        params.append(limit)

        rows = self.store.query(" ".join(sql), params)
        hits = [NodeHit(id=r["node_id"], score=-float(r["rank_score"]), snippet=r["snip"] or None) for r in rows]
        log.trace(f"FTS '{expr}' -> {len(hits)} hits")
        return hits

    def snippets(self, query: str, node_ids: list[str]) -> dict[str, str]:
        """Highlighted snippets for specific nodes; nodes without a keyword match fall back to body text."""
        if not node_ids:
            return {}
        placeholders = ",".join("?" * len(node_ids))
        result: dict[str, str] = {}
        expr = build_match_expression(query)
        if expr is not None:
            rows = self.store.query(
                f"SELECT node_id, snippet(fts_doc, 4, '**', '**', '...', {SNIPPET_TOKENS}) AS snip "
                f"FROM fts_doc WHERE fts_doc MATCH ? AND node_id IN ({placeholders})",
                [expr, *node_ids],
            )
            result = {r["node_id"]: r["snip"] for r in rows if r["snip"]}
        missing = [n for n in node_ids if n not in result]
        if missing:
            rows = self.store.query(
                f"SELECT node_id, substr(body, 1, 160) AS head FROM fts_doc "
                f"WHERE node_id IN ({','.join('?' * len(missing))})",
                missing,
            )
            for r in rows:
                if r["head"]:
                    result[r["node_id"]] = r["head"]
        return result

    def indexed_ids(self) -> set[str]:
        return {r["node_id"] for r in self.store.query("SELECT node_id FROM fts_doc")}
