"""Bounded retry for calls to LLM, embedding and reranking services.

Retry table:

    attempt | delay before next attempt
    --------+--------------------------
       1    | 0.5 s
       2    | 1.0 s
       3    | (give up)

Delays double per attempt and are capped at 8 s. Only transient failures are
retried: httpx timeouts and network errors, HTTP 429 and 5xx responses, and
litellm rate-limit, connection, timeout, unavailable and internal-server errors.
Everything else surfaces immediately as ExternalServiceError.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx

from taskwing.cancellation import CancellationToken
from taskwing.errors import CancelledError, ExternalServiceError, TaskWingError
from taskwing.log_config import get_logger

log = get_logger("retry")

T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


def _litellm_transient_types() -> tuple[type[BaseException], ...]:
    import litellm

    names = (
        "RateLimitError",
        "APIConnectionError",
        "Timeout",
        "ServiceUnavailableError",
        "InternalServerError",
    )
    return tuple(getattr(litellm, n) for n in names if hasattr(litellm, n))


def is_transient(exc: BaseException) -> bool:
    """Whether a failed external call is worth retrying."""
    if isinstance(exc, ExternalServiceError):
        return exc.transient
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    if isinstance(exc, _litellm_transient_types()):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status == 429 or status >= 500
    return False


def call_with_retry(
    fn: Callable[[], T],
    *,
    service: str,
    policy: RetryPolicy | None = None,
    cancel: CancellationToken | None = None,
    sleep: Callable[[float], None] | None = None,
) -> T:
    """Invoke ``fn`` under the retry table.

    Args:
        fn: Zero-argument callable performing one attempt
        service: Name used in logs and error messages (e.g. "embedder")
        policy: Retry policy (default: 3 attempts, 0.5 s base)
        cancel: Checked before every attempt and during backoff
        sleep: Injectable sleeper for tests

    Returns:
        The callable's result

    Raises:
        ExternalServiceError: On non-transient failure or exhausted attempts
        CancelledError: If cancelled before or between attempts
    """
    policy = policy or RetryPolicy()
    last_exc: BaseException | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return fn()
        except (CancelledError, KeyboardInterrupt):
            raise
        except TaskWingError as e:
            if not isinstance(e, ExternalServiceError) or not e.transient:
                raise
            last_exc = e
        except Exception as e:
            if not is_transient(e):
                log.warning(f"{service} failed (non-transient): {type(e).__name__}: {e}")
                raise ExternalServiceError(service, f"{type(e).__name__}: {e}") from e
            last_exc = e

        if attempt == policy.max_attempts:
            break
        delay = policy.delay_for(attempt)
        log.debug(f"{service} attempt {attempt} failed ({type(last_exc).__name__}), retrying in {delay:.1f}s")
        if sleep is not None:
            sleep(delay)
        elif cancel is not None:
            if cancel.wait(delay):
                cancel.raise_if_cancelled()
        else:
            time.sleep(delay)

    log.warning(f"{service} failed after {policy.max_attempts} attempts: {last_exc}")
    raise ExternalServiceError(
        service,
        f"gave up after {policy.max_attempts} attempts: {last_exc}",
        transient=True,
    ) from last_exc
