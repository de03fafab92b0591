"""Chat client backed by LiteLLM.

Implements the ChatClient protocol with optional token streaming. Opening the
request is retried per taskwing.retry; once a stream has started, chunks are
yielded as they arrive and a mid-stream failure surfaces as
ExternalServiceError.
"""

import threading
from collections.abc import Iterator

from taskwing.cancellation import CancellationToken
from taskwing.config import Config
from taskwing.errors import ExternalServiceError, TaskWingError
from taskwing.log_config import get_logger
from taskwing.retry import RetryPolicy, call_with_retry, is_transient

log = get_logger("llm")


class LiteLLMChatClient:
    """Single-shot chat completions through litellm.completion."""

    def __init__(
        self,
        model: str,
        timeout: float = 30.0,
        temperature: float = 0.1,
        max_tokens: int = 1500,
        max_concurrent: int = 4,
        policy: RetryPolicy | None = None,
        cancel: CancellationToken | None = None,
    ):
        self.model = model
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.policy = policy or RetryPolicy()
        self.cancel = cancel
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self.tokens_used = 0

    @classmethod
    def from_config(cls, config: Config) -> "LiteLLMChatClient":
        return cls(
            config.chat_model,
            timeout=config.external_timeout,
            max_concurrent=config.max_concurrent_requests,
            policy=RetryPolicy(max_attempts=config.max_retries),
        )

    def _open(self, messages: list[dict[str, str]], stream: bool):
        from litellm import completion

        with self._slots:
            return completion(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                timeout=self.timeout,
                stream=stream,
            )

    def chat(self, messages: list[dict[str, str]], stream: bool = False) -> str | Iterator[str]:
        response = call_with_retry(
            lambda: self._open(messages, stream),
            service="llm",
            policy=self.policy,
            cancel=self.cancel,
        )
        if stream:
            return self._iter_stream(response)

        if not response.choices or not response.choices[0].message.content:
            raise ExternalServiceError("llm", "empty completion")
        usage = getattr(response, "usage", None)
        if usage is not None:
            self.tokens_used += getattr(usage, "total_tokens", 0) or 0
        return response.choices[0].message.content

    def _iter_stream(self, response) -> Iterator[str]:
        try:
            for chunk in response:
                if self.cancel is not None:
                    self.cancel.raise_if_cancelled()
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                text = getattr(delta, "content", None)
                if text:
                    yield text
        except TaskWingError:
            raise
        except Exception as e:
            log.warning(f"LLM stream interrupted: {type(e).__name__}: {e}")
            raise ExternalServiceError("llm", f"stream interrupted: {e}", transient=is_transient(e)) from e
