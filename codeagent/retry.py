"""
Centralized retry/backoff policy.

One RetryPolicy object, parameterized by an error classifier, is used both
for tool dispatch (transient network errors) and for batch summarization
(rate limits).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from .cancellation import AbortedError, CancellationToken
from .registry import ToolExecutionError, ToolValidationError

logger = logging.getLogger("codeagent")

T = TypeVar("T")

TRANSIENT_MARKERS = (
    "econnreset",
    "connection reset",
    "etimedout",
    "timed out",
    "timeout",
    "enotfound",
    "name or service not known",
    "temporary failure in name resolution",
    "getaddrinfo",
    "network",
    "fetch failed",
    "socket hang up",
)


def is_transient_error(exc: BaseException) -> bool:
    """True for connection resets, timeouts, DNS failures and generic network markers."""
    if isinstance(exc, AbortedError):
        return False
    # Tool errors quote model-supplied paths and URLs.
    if isinstance(exc, (ToolExecutionError, ToolValidationError)):
        return False
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, AbortedError):
        return False
    status = getattr(exc, "status_code", None)
    if status == 429:
        return True
    message = str(exc).lower()
    return "429" in message or "rate limit" in message


async def _default_sleep(seconds: float, token: Optional[CancellationToken]) -> None:
    if token is not None:
        await token.sleep(seconds)
    else:
        await asyncio.sleep(seconds)


@dataclass
class RetryPolicy:
    """
    Retry `fn` up to `max_retries` extra times while `classify(exc)` is true.

    Delay before retry number n (0-based) is `base_delay * 2**n`. AbortedError
    is never retried and always propagates.
    """

    max_retries: int
    base_delay: float
    classify: Callable[[BaseException], bool]
    sleep: Callable[[float, Optional[CancellationToken]], Awaitable[None]] = field(default=_default_sleep)

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        token: Optional[CancellationToken] = None,
        label: str = "operation",
    ) -> T:
        attempt = 0
        while True:
            if token is not None:
                token.raise_if_cancelled()
            try:
                return await fn()
            except AbortedError:
                raise
            except Exception as exc:
                if attempt >= self.max_retries or not self.classify(exc):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "retry label=%s attempt=%s delay=%.2f error=%s",
                    label,
                    attempt + 1,
                    delay,
                    exc,
                )
                await self.sleep(delay, token)
                attempt += 1
