from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from postureguard.core.config import get_settings
from postureguard.core.errors import TransientProviderError
from postureguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry rate limiting, upstream 5xx and network/timeout failures only.
    if isinstance(exc, (TransientProviderError, *TransientException)):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and (status == 429 or status >= 500):
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize provider retry behavior for deterministic policy changes.
    timeout_ms: int
    max_attempts: int
    backoff_ms: int
    max_backoff_ms: int = 30000


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.provider_call_timeout_ms,
        max_attempts=settings.provider_retry_max_attempts,
        backoff_ms=settings.provider_retry_backoff_ms,
        max_backoff_ms=settings.provider_retry_max_backoff_ms,
    )


def backoff_seconds(policy: RetryPolicy, attempt: int, exc: Exception | None = None) -> float:
    # Provider Retry-After hints win over the computed delay, both capped by max_backoff_ms.
    cap_s = policy.max_backoff_ms / 1000.0
    retry_after = getattr(exc, "retry_after_s", None)
    if isinstance(retry_after, (int, float)) and retry_after >= 0:
        return min(float(retry_after), cap_s)
    jitter = random.uniform(0.5, 1.5)
    return min((policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter, cap_s)


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    # Retry helper with jittered backoff for transient failures only.
    policy = policy or default_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            # Track retry volume so operators can detect retry storms.
            increment_counter("provider_retries_total")
            delay = backoff_seconds(policy, attempt, exc)
            logger.info("provider_call_retry attempt=%s delay_s=%.2f error=%s", attempt, delay, exc)
            await sleep(delay)
            attempt += 1
