"""Interfaces for the external collaborators the core consumes.

Storage, embedder, chat client, reranker, clock and filesystem are passed in
explicitly; tests substitute fakes.
"""

import os
import tempfile
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Protocol, runtime_checkable

import numpy as np


@runtime_checkable
class Embedder(Protocol):
    """Batched text embedder.

    ``role`` is "document" at ingest and "query" at search time; asymmetric
    models may prefix inputs differently per role.
    """

    @property
    def model_tag(self) -> str:
        """Stable identifier of the model producing the vectors."""
        ...

    def embed_batch(self, texts: list[str], role: str = "document") -> list[np.ndarray]:
        ...


@runtime_checkable
class ChatClient(Protocol):
    def chat(self, messages: list[dict[str, str]], stream: bool = False) -> str | Iterator[str]:
        """Return the full completion, or an iterator of text chunks when streaming."""
        ...


@runtime_checkable
class Reranker(Protocol):
    def rerank(self, query: str, documents: list[str]) -> list[float]:
        """Relevance score per document, aligned with the input order."""
        ...


class Clock(Protocol):
    def now(self) -> float:
        """Current wall time as epoch seconds."""
        ...


class SystemClock:
    def now(self) -> float:
        return time.time()


class FileSystem(Protocol):
    def exists(self, path: Path) -> bool:
        ...

    def read_bytes(self, path: Path) -> bytes:
        ...

    def write_atomic(self, path: Path, data: bytes) -> None:
        ...

    def remove(self, path: Path) -> None:
        ...


class LocalFileSystem:
    """Real filesystem with temp-file-then-rename writes."""

    def exists(self, path: Path) -> bool:
        return Path(path).exists()

    def read_bytes(self, path: Path) -> bytes:
        return Path(path).read_bytes()

    def write_atomic(self, path: Path, data: bytes) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def remove(self, path: Path) -> None:
        Path(path).unlink(missing_ok=True)
