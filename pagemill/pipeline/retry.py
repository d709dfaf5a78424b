"""Generic retry-with-backoff helper.

A :class:`RetryPolicy` describes *how* to retry; :func:`retry_with_backoff`
applies it to any zero-argument callable, sync or async.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from pagemill.errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: attempt *n* (0-based) waits ``base * 2**n`` seconds,
    capped at ``max_delay_s``, plus up to ``jitter`` seconds of uniform noise."""

    max_attempts: int = 3
    base_delay_s: float = 0.5
    jitter: float = 0.1
    max_delay_s: float = 10.0
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts!r}")
        if self.base_delay_s < 0 or self.jitter < 0 or self.max_delay_s < 0:
            raise ConfigError("retry delays must not be negative")

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        delay = min(self.base_delay_s * (2 ** attempt), self.max_delay_s)
        return delay + (rng() * self.jitter if self.jitter else 0.0)


async def retry_with_backoff(
    fn: Callable[[], Any],
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    description: str = "operation",
) -> Any:
    """Call *fn* until it succeeds or ``policy.max_attempts`` is exhausted.

    Exceptions outside ``policy.retry_on`` propagate immediately; the last
    retryable exception is re-raised once attempts run out.
    """
    policy = policy or RetryPolicy()
    for attempt in range(policy.max_attempts):
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except policy.retry_on as exc:
            if attempt + 1 >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt + 1, policy.max_attempts, exc, delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
