"""External provider tests for TaskWing.

Tests the clients for embeddings, reranking and chat without network access:
- TEI embedder and reranker over an httpx MockTransport
- LLM reranking parsed from JSON replies
- The reranker circuit breaker
- LiteLLM chat completions and streaming with a patched litellm
- Provider selection from config
"""

import json
from types import SimpleNamespace

import httpx
import litellm
import numpy as np
import pytest

from taskwing.config import Config
from taskwing.embeddings import LocalEmbedder, TEIEmbedder, create_embedder
from taskwing.errors import ExternalServiceError, ValidationError
from taskwing.llm import LiteLLMChatClient
from taskwing.reranker import (
    CircuitBreakerReranker,
    LLMReranker,
    RerankerDisabledError,
    TEIReranker,
    create_reranker,
)
from taskwing.retry import RetryPolicy

NO_RETRY = RetryPolicy(max_attempts=1)


def mock_client(handler) -> httpx.Client:
    return httpx.Client(base_url="http://tei.test", transport=httpx.MockTransport(handler))


class TestTEIEmbedder:
    def test_vectors_are_normalized(self):
        def handler(request):
            assert request.url.path == "/embed"
            return httpx.Response(200, json=[[3.0, 4.0], [0.0, 2.0]])

        embedder = TEIEmbedder("http://tei.test", client=mock_client(handler), policy=NO_RETRY)
        vectors = embedder.embed_batch(["a", "b"])
        assert np.allclose(vectors[0], [0.6, 0.8])
        assert np.allclose(vectors[1], [0.0, 1.0])
        assert embedder.model_tag == "tei:http://tei.test"

    def test_batches(self):
        sizes = []

        def handler(request):
            inputs = json.loads(request.content)["inputs"]
            sizes.append(len(inputs))
            return httpx.Response(200, json=[[1.0, 0.0]] * len(inputs))

        embedder = TEIEmbedder("http://tei.test", batch_size=2, client=mock_client(handler), policy=NO_RETRY)
        assert len(embedder.embed_batch(["a", "b", "c"])) == 3
        assert sizes == [2, 1]

    def test_count_mismatch_is_an_error(self):
        embedder = TEIEmbedder(
            "http://tei.test", client=mock_client(lambda r: httpx.Response(200, json=[[1.0]])), policy=NO_RETRY
        )
        with pytest.raises(ExternalServiceError):
            embedder.embed_batch(["a", "b"])

    def test_server_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(503) if len(calls) == 1 else httpx.Response(200, json=[[1.0]])

        policy = RetryPolicy(max_attempts=2, base_delay=0.0)
        embedder = TEIEmbedder("http://tei.test", client=mock_client(handler), policy=policy)
        assert len(embedder.embed_batch(["a"])) == 1
        assert len(calls) == 2

    def test_empty_input(self):
        assert TEIEmbedder("http://tei.test", client=mock_client(lambda r: httpx.Response(500))).embed_batch([]) == []


class TestRerankers:
    def test_tei_scores_by_index(self):
        def handler(request):
            return httpx.Response(200, json=[{"index": 1, "score": 0.9}, {"index": 0, "score": 0.2}])

        reranker = TEIReranker("http://tei.test", client=mock_client(handler), policy=NO_RETRY)
        assert reranker.rerank("q", ["a", "b"]) == [0.2, 0.9]

    def test_llm_ranking(self, make_chat):
        reranker = LLMReranker(make_chat('{"indices": [2, 0, 2, 9]}'))
        scores = reranker.rerank("q", ["a", "b", "c"])
        assert scores[2] == 1.0
        assert scores[0] == pytest.approx(2 / 3)
        assert scores[1] == 0.0

    def test_llm_unusable_reply(self, make_chat):
        with pytest.raises(ExternalServiceError):
            LLMReranker(make_chat("no idea")).rerank("q", ["a"])

    def test_circuit_breaker_opens_after_failure(self, make_reranker):
        inner = make_reranker(fail=True)
        breaker = CircuitBreakerReranker(inner)
        with pytest.raises(ExternalServiceError):
            breaker.rerank("q", ["a"])
        assert breaker.disabled
        with pytest.raises(RerankerDisabledError):
            breaker.rerank("q", ["a"])
        assert inner.calls == 1

    def test_circuit_breaker_passes_scores(self, make_reranker):
        breaker = CircuitBreakerReranker(make_reranker(keyword="csv"))
        assert breaker.rerank("q", ["csv export", "billing"]) == [1.0, 0.0]
        assert not breaker.disabled


class TestChatClient:
    def test_completion_counts_tokens(self, monkeypatch):
        def completion(**kwargs):
            assert kwargs["stream"] is False
            return SimpleNamespace(
                choices=[SimpleNamespace(message=SimpleNamespace(content="hello"))],
                usage=SimpleNamespace(total_tokens=42),
            )

        monkeypatch.setattr(litellm, "completion", completion)
        client = LiteLLMChatClient("test-model", policy=NO_RETRY)
        assert client.chat([{"role": "user", "content": "hi"}]) == "hello"
        assert client.tokens_used == 42

    def test_empty_completion(self, monkeypatch):
        monkeypatch.setattr(
            litellm, "completion", lambda **kw: SimpleNamespace(choices=[], usage=None)
        )
        with pytest.raises(ExternalServiceError):
            LiteLLMChatClient("test-model", policy=NO_RETRY).chat([])

    def test_streaming(self, monkeypatch):
        def chunk(text):
            return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])

        monkeypatch.setattr(litellm, "completion", lambda **kw: iter([chunk("Hel"), chunk(None), chunk("lo")]))
        stream = LiteLLMChatClient("test-model", policy=NO_RETRY).chat([], stream=True)
        assert "".join(stream) == "Hello"

    def test_interrupted_stream(self, monkeypatch):
        def chunks():
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content="partial"))])
            raise httpx.ReadError("connection reset")

        monkeypatch.setattr(litellm, "completion", lambda **kw: chunks())
        stream = LiteLLMChatClient("test-model", policy=NO_RETRY).chat([], stream=True)
        assert next(stream) == "partial"
        with pytest.raises(ExternalServiceError) as exc_info:
            next(stream)
        assert exc_info.value.transient


class TestProviderSelection:
    def test_embedder_none(self, config):
        assert create_embedder(config) is None

    def test_embedder_local(self, config):
        config.embedding_provider = "local"
        assert isinstance(create_embedder(config), LocalEmbedder)

    def test_unknown_embedder(self, config):
        config.embedding_provider = "quantum"
        with pytest.raises(ValidationError):
            create_embedder(config)

    def test_llm_reranker_needs_chat(self, config):
        config.rerank_provider = "llm"
        with pytest.raises(ValidationError):
            create_reranker(config)

    def test_reranker_is_wrapped(self, config, make_chat):
        config.rerank_provider = "llm"
        assert isinstance(create_reranker(config, make_chat("")), CircuitBreakerReranker)
        assert create_reranker(Config(rerank_provider="none")) is None
