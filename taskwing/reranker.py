"""Cross-encoder and LLM reranking of retrieval candidates.

- TEIReranker: text-embeddings-inference ``/rerank`` endpoint (httpx)
- LLMReranker: asks the chat model for a relevance ordering (json_repair)
- CircuitBreakerReranker: wraps either; after a failure the reranker stays
  disabled for the life of the process and callers fall back to fused order
"""

import threading

import httpx
from json_repair import loads as json_repair_loads

from taskwing.cancellation import CancellationToken
from taskwing.config import Config
from taskwing.errors import ExternalServiceError, ValidationError
from taskwing.log_config import get_logger
from taskwing.protocols import ChatClient, Reranker
from taskwing.retry import RetryPolicy, call_with_retry

log = get_logger("reranker")

RERANK_CONTENT_PREVIEW_LEN = 400


class RerankerDisabledError(ExternalServiceError):
    def __init__(self) -> None:
        super().__init__("reranker", "disabled after an earlier failure")


class TEIReranker:
    """Client for a text-embeddings-inference reranker (POST /rerank)."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        policy: RetryPolicy | None = None,
        cancel: CancellationToken | None = None,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.policy = policy or RetryPolicy()
        self.cancel = cancel
        self._client = client or httpx.Client(base_url=self.base_url, timeout=httpx.Timeout(timeout))

    def _rerank_once(self, query: str, documents: list[str]) -> list[float]:
        response = self._client.post(
            "/rerank",
            json={"query": query, "texts": documents, "raw_scores": False, "truncate": True},
        )
        response.raise_for_status()
        scores = [0.0] * len(documents)
        for item in response.json():
            idx = int(item["index"])
            if 0 <= idx < len(documents):
                scores[idx] = float(item["score"])
        return scores

    def rerank(self, query: str, documents: list[str]) -> list[float]:
        if not documents:
            return []
        return call_with_retry(
            lambda: self._rerank_once(query, documents),
            service="reranker",
            policy=self.policy,
            cancel=self.cancel,
        )

    def close(self) -> None:
        self._client.close()


class LLMReranker:
    """Relevance ordering from the chat model.

    The model returns ``{"indices": [...]}``; the i-th listed document gets
    score 1 - i/n and unlisted documents keep 0.
    """

    def __init__(self, chat: ChatClient):
        self.chat = chat

    def rerank(self, query: str, documents: list[str]) -> list[float]:
        if not documents:
            return []
        listing = "\n".join(
            f"[{i}] {doc[:RERANK_CONTENT_PREVIEW_LEN]}" for i, doc in enumerate(documents)
        )
        prompt = f"""Rank these project-memory entries by relevance to the query.

<query>{query}</query>

<entries>
{listing}
</entries>

Return ONLY valid JSON: {{"indices": [most_relevant_index, second_most_relevant, ...]}}
Indices must be integers from 0 to {len(documents) - 1}."""
        content = self.chat.chat([{"role": "user", "content": prompt}])
        parsed = json_repair_loads(content) if isinstance(content, str) else None
        if not isinstance(parsed, dict) or not isinstance(parsed.get("indices"), list):
            raise ExternalServiceError("reranker", "LLM returned no usable ranking")

        seen: list[int] = []
        for idx in parsed["indices"]:
            if isinstance(idx, int) and 0 <= idx < len(documents) and idx not in seen:
                seen.append(idx)
        scores = [0.0] * len(documents)
        n = len(documents)
        for rank, idx in enumerate(seen):
            scores[idx] = 1.0 - rank / n
        return scores


class CircuitBreakerReranker:
    """Disables the wrapped reranker after ``threshold`` consecutive failures."""

    def __init__(self, inner: Reranker, threshold: int = 1):
        self.inner = inner
        self.threshold = threshold
        self._failures = 0
        self._disabled = False
        self._lock = threading.Lock()

    @property
    def disabled(self) -> bool:
        with self._lock:
            return self._disabled

    def rerank(self, query: str, documents: list[str]) -> list[float]:
        if self.disabled:
            raise RerankerDisabledError()
        try:
            scores = self.inner.rerank(query, documents)
        except ExternalServiceError as e:
            with self._lock:
                self._failures += 1
                if self._failures >= self.threshold:
                    self._disabled = True
                    log.warning(f"Reranker disabled after failure: {e}")
            raise
        if len(scores) != len(documents):
            with self._lock:
                self._disabled = True
            raise ExternalServiceError("reranker", f"returned {len(scores)} scores for {len(documents)} documents")
        with self._lock:
            self._failures = 0
        return scores


def create_reranker(config: Config, chat: ChatClient | None = None) -> Reranker | None:
    """Build the configured reranker wrapped in a circuit breaker, or None."""
    provider = config.rerank_provider.lower()
    if provider in ("none", "", "off"):
        return None
    if provider == "tei":
        inner: Reranker = TEIReranker(
            config.rerank_base_url,
            timeout=min(config.external_timeout, 5.0),
            policy=RetryPolicy(max_attempts=config.max_retries),
        )
    elif provider == "llm":
        if chat is None:
            raise ValidationError("LLM reranking requires a chat model", hint="Set TASKWING_CHAT_MODEL.")
        inner = LLMReranker(chat)
    else:
        raise ValidationError(
            f"Unknown rerank provider '{config.rerank_provider}'",
            hint="Set TASKWING_RERANK_PROVIDER to none, tei or llm.",
        )
    return CircuitBreakerReranker(inner)
