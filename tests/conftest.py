"""Shared pytest fixtures for TaskWing tests."""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterator
from pathlib import Path

import numpy as np
import pytest

from taskwing.config import Config, RetrievalConfig
from taskwing.db import DatabaseManager
from taskwing.errors import ExternalServiceError
from taskwing.knowledge import KnowledgeService
from taskwing.planning import PlanEngine

EMBED_DIM = 64
_WORD = re.compile(r"[a-z0-9]+")


class FakeClock:
    """Settable clock; advance() moves time forward."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeEmbedder:
    """Bag-of-words hashed into a fixed number of buckets.

    Texts that share words get similar vectors, so semantic tests behave
    predictably without a model.
    """

    def __init__(self, tag: str = "fake:bow", fail: bool = False):
        self.tag = tag
        self.fail = fail
        self.calls: list[tuple[list[str], str]] = []

    @property
    def model_tag(self) -> str:
        return self.tag

    def embed_batch(self, texts: list[str], role: str = "document") -> list[np.ndarray]:
        self.calls.append((list(texts), role))
        if self.fail:
            raise ExternalServiceError("embedder", "unavailable", transient=True)
        vectors = []
        for text in texts:
            vec = np.zeros(EMBED_DIM, dtype=np.float32)
            for word in _WORD.findall(text.lower()):
                bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % EMBED_DIM
                vec[bucket] += 1.0
            if not vec.any():
                vec[0] = 1.0
            vectors.append(vec / np.linalg.norm(vec))
        return vectors


class FakeChat:
    """Chat client returning a canned reply; streams it in small chunks."""

    def __init__(self, reply: str = "", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.messages: list[list[dict[str, str]]] = []
        self.tokens_used = 0

    def chat(self, messages, stream: bool = False):
        self.messages.append(messages)
        if self.fail:
            raise ExternalServiceError("llm", "model unavailable", transient=True)
        self.tokens_used += 10
        if stream:
            return iter([self.reply[i:i + 7] for i in range(0, len(self.reply), 7)])
        return self.reply


class FakeReranker:
    """Scores documents by a fixed keyword; optionally fails."""

    def __init__(self, keyword: str = "", fail: bool = False):
        self.keyword = keyword
        self.fail = fail
        self.calls = 0

    def rerank(self, query: str, documents: list[str]) -> list[float]:
        self.calls += 1
        if self.fail:
            raise ExternalServiceError("reranker", "down", transient=True)
        return [1.0 if self.keyword and self.keyword in d.lower() else 0.0 for d in documents]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config rooted in a temp memory dir with external providers disabled."""
    return Config(
        memory_dir=tmp_path / "memory",
        embedding_provider="none",
        chat_model="",
        rerank_provider="none",
        agent_workers=2,
        retrieval=RetrievalConfig(),
    )


@pytest.fixture
def db(tmp_path: Path, clock: FakeClock) -> Iterator[DatabaseManager]:
    manager = DatabaseManager(tmp_path / "memory" / "memory.db", clock=clock)
    yield manager
    manager.close()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def service(db: DatabaseManager, embedder: FakeEmbedder, config: Config) -> Iterator[KnowledgeService]:
    svc = KnowledgeService(db, embedder=embedder, config=config)
    yield svc
    svc.retriever.close()


@pytest.fixture
def engine(db: DatabaseManager) -> PlanEngine:
    return PlanEngine(db)


@pytest.fixture
def write_tree(tmp_path: Path):
    """Factory writing {relative_path: content} under a fresh directory."""

    def _write(files: dict[str, str], name: str = "repo") -> Path:
        root = tmp_path / name
        for rel, content in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        root.mkdir(parents=True, exist_ok=True)
        return root

    return _write


@pytest.fixture
def make_embedder():
    return FakeEmbedder


@pytest.fixture
def make_chat():
    return FakeChat


@pytest.fixture
def make_reranker():
    return FakeReranker
