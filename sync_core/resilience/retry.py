"""
InvoiceSync Retry Wrapper.

Retries a nullary coroutine factory on transient failures:
- Retryable: 408 / 429 / 5xx, timeouts, connection resets
- Terminal: other 4xx, auth, validation — propagate immediately
- Delay before attempt n+1 = base_delay * multiplier ** (n - 1)

No state is kept between calls, so one policy can be shared by any number
of concurrent callers.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar
import asyncio
import logging

import httpx

from sync_core.errors import IntegrationError, TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Classifier = Callable[[BaseException], bool]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.base_delay * (self.multiplier ** (attempt - 1))


@dataclass
class RetryOutcome(Generic[T]):
    """Result of try_with_retry: either a value or the last error."""
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


def is_retryable(exc: BaseException) -> bool:
    """Default classifier."""
    if isinstance(exc, IntegrationError):
        return exc.retryable
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in (408, 429) or status >= 500
    return isinstance(exc, (ConnectionResetError, asyncio.TimeoutError))


async def retry_async(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    classify: Classifier = is_retryable,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Invoke `call` until it succeeds, fails terminally, or attempts run out."""
    attempt = 1
    while True:
        try:
            return await call()
        except Exception as exc:
            if attempt >= policy.max_attempts or not classify(exc):
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "Retrying after %s (attempt %d/%d, sleeping %.2fs)",
                type(exc).__name__, attempt, policy.max_attempts, delay,
            )
            await sleep(delay)
            attempt += 1


async def try_with_retry(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    classify: Classifier = is_retryable,
    sleep: Sleep = asyncio.sleep,
) -> RetryOutcome[T]:
    """Like retry_async, but returns a RetryOutcome instead of raising."""
    attempts = 0

    async def counted() -> T:
        nonlocal attempts
        attempts += 1
        return await call()

    try:
        value = await retry_async(counted, policy, classify, sleep)
    except Exception as exc:
        return RetryOutcome(error=exc, attempts=attempts)
    return RetryOutcome(value=value, attempts=attempts)


def as_transient(exc: httpx.TransportError, platform: str = "") -> TransientNetworkError:
    """Wrap an httpx transport failure in the framework's error type."""
    return TransientNetworkError(f"{type(exc).__name__}: {exc}", platform=platform)
