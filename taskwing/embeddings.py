"""Embedding providers for TaskWing.

Three providers implement the Embedder protocol:
- LiteLLMEmbedder: any hosted model LiteLLM supports (default text-embedding-3-small)
- LocalEmbedder: in-process sentence-transformers (all-MiniLM-L6-v2)
- TEIEmbedder: a text-embeddings-inference server over HTTP (httpx)

All vectors are returned L2-normalized as float32 numpy arrays. Remote calls go
through the retry table in taskwing.retry and a per-provider concurrency bound.
"""

import threading
from typing import TYPE_CHECKING

import httpx
import numpy as np

from taskwing.cancellation import CancellationToken
from taskwing.config import Config
from taskwing.db.vector_index import l2_normalize
from taskwing.errors import ExternalServiceError, ValidationError
from taskwing.log_config import get_logger, log_timing
from taskwing.protocols import Embedder
from taskwing.retry import RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

log = get_logger("embeddings")


def _check_dimensions(vectors: list[np.ndarray], expected: int, provider: str) -> None:
    dims = {int(v.shape[0]) for v in vectors}
    if len(vectors) != expected:
        raise ExternalServiceError(provider, f"returned {len(vectors)} vectors for {expected} inputs")
    if len(dims) > 1:
        raise ExternalServiceError(provider, f"returned mixed dimensions {sorted(dims)}")


class LiteLLMEmbedder:
    """Embeddings via litellm.embedding, batched to respect API limits."""

    def __init__(
        self,
        model: str,
        timeout: float = 30.0,
        batch_size: int = 100,
        dimensions: int | None = None,
        max_concurrent: int = 4,
        policy: RetryPolicy | None = None,
        cancel: CancellationToken | None = None,
    ):
        self.model = model
        self.timeout = timeout
        self.batch_size = batch_size
        self.dimensions = dimensions
        self.policy = policy or RetryPolicy()
        self.cancel = cancel
        self._slots = threading.BoundedSemaphore(max_concurrent)

    @property
    def model_tag(self) -> str:
        suffix = f"@{self.dimensions}" if self.dimensions else ""
        return f"litellm:{self.model}{suffix}"

    def _embed_once(self, batch: list[str]) -> list[np.ndarray]:
        from litellm import embedding

        kwargs = {"model": self.model, "input": batch, "timeout": self.timeout}
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        with self._slots:
            response = embedding(**kwargs)
        return [np.asarray(d["embedding"], dtype=np.float32) for d in response.data]

    def embed_batch(self, texts: list[str], role: str = "document") -> list[np.ndarray]:
        if not texts:
            return []
        vectors: list[np.ndarray] = []
        with log_timing(f"LiteLLM embed {len(texts)} texts ({role})", log):
            for i in range(0, len(texts), self.batch_size):
                batch = texts[i:i + self.batch_size]
                log.debug(f"Embedding batch {i // self.batch_size + 1}: {len(batch)} texts")
                vectors.extend(
                    call_with_retry(
                        lambda b=batch: self._embed_once(b),
                        service="embedder",
                        policy=self.policy,
                        cancel=self.cancel,
                    )
                )
        _check_dimensions(vectors, len(texts), "embedder")
        return [l2_normalize(v) for v in vectors]


class LocalEmbedder:
    """sentence-transformers model loaded lazily and cached on the instance."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model: "SentenceTransformer | None" = None
        self._load_lock = threading.Lock()

    @property
    def model_tag(self) -> str:
        return f"local:{self.model_name}"

    def _get_model(self) -> "SentenceTransformer":
        with self._load_lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError:
                    raise ExternalServiceError(
                        "embedder",
                        "sentence-transformers not installed. Install with: pip install 'taskwing[local]'",
                    )
                log.info(f"Loading SentenceTransformer model {self.model_name} (cached for session)")
                self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_batch(self, texts: list[str], role: str = "document") -> list[np.ndarray]:
        if not texts:
            return []
        model = self._get_model()
        with log_timing(f"Local embed {len(texts)} texts ({role})", log):
            matrix = model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        return [np.asarray(row, dtype=np.float32) for row in matrix]


class TEIEmbedder:
    """Client for a text-embeddings-inference server (POST /embed)."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        batch_size: int = 32,
        max_concurrent: int = 4,
        policy: RetryPolicy | None = None,
        cancel: CancellationToken | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.batch_size = batch_size
        self.policy = policy or RetryPolicy()
        self.cancel = cancel
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._client = client or httpx.Client(base_url=self.base_url, timeout=httpx.Timeout(timeout))

    @property
    def model_tag(self) -> str:
        return f"tei:{self.base_url}"

    def _embed_once(self, batch: list[str]) -> list[np.ndarray]:
        with self._slots:
            response = self._client.post("/embed", json={"inputs": batch, "normalize": True, "truncate": True})
        response.raise_for_status()
        return [np.asarray(v, dtype=np.float32) for v in response.json()]

    def embed_batch(self, texts: list[str], role: str = "document") -> list[np.ndarray]:
        if not texts:
            return []
        vectors: list[np.ndarray] = []
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            vectors.extend(
                call_with_retry(
                    lambda b=batch: self._embed_once(b),
                    service="embedder",
                    policy=self.policy,
                    cancel=self.cancel,
                )
            )
        _check_dimensions(vectors, len(texts), "embedder")
        return [l2_normalize(v) for v in vectors]

    def close(self) -> None:
        self._client.close()


def create_embedder(config: Config) -> Embedder | None:
    """Build the configured embedder, or None when embeddings are disabled."""
    provider = config.embedding_provider.lower()
    policy = RetryPolicy(max_attempts=config.max_retries)
    if provider in ("none", "", "off"):
        log.info("Embeddings disabled; retrieval will be keyword-only")
        return None
    if provider == "litellm":
        return LiteLLMEmbedder(
            config.embedding_model,
            timeout=config.external_timeout,
            max_concurrent=config.max_concurrent_requests,
            policy=policy,
        )
    if provider == "local":
        return LocalEmbedder(config.local_model)
    if provider == "tei":
        return TEIEmbedder(
            config.tei_base_url,
            timeout=config.external_timeout,
            max_concurrent=config.max_concurrent_requests,
            policy=policy,
        )
    raise ValidationError(
        f"Unknown embedding provider '{config.embedding_provider}'",
        hint="Set TASKWING_EMBEDDING_PROVIDER to litellm, local, tei or none.",
    )
