"""Knowledge layer: ingest, hybrid retrieval and answer synthesis.

Module Structure:
- verification.py: evidence snippet hashing and checks
- ingest.py: findings -> nodes, dedupe, linking
- retrieval.py: FTS + vector fusion, filters, rerank
- answer.py: cited answers from retrieval results
- service.py: KnowledgeService facade
"""

from taskwing.knowledge.ingest import IngestOptions, IngestReport, Ingestor
from taskwing.knowledge.retrieval import Retriever, SearchOptions
from taskwing.knowledge.service import IntegrityReport, KnowledgeService

__all__ = [
    "IngestOptions",
    "IngestReport",
    "Ingestor",
    "IntegrityReport",
    "KnowledgeService",
    "Retriever",
    "SearchOptions",
]
