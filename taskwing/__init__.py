"""TaskWing - project memory and task planning for AI coding agents.

A local knowledge layer over one workspace with:
- Analyzer agents (structure, code, dependencies, docs, optional LLM)
- SQLite memory with FTS5 keyword search and numpy vector search
- Hybrid retrieval with optional reranking and cited answers
- Plans of dependent tasks driven through an executor stop hook
"""

__version__ = "0.1.0"

from taskwing.config import Config
from taskwing.knowledge import KnowledgeService, SearchOptions
from taskwing.planning import PlanEngine

__all__ = [
    "Config",
    "KnowledgeService",
    "PlanEngine",
    "SearchOptions",
]
