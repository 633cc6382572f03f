"""Exponential backoff with jitter for async upstream calls."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import ResilienceConfig

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_backoff_seconds: float = 0.2
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 5.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: ResilienceConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_backoff_seconds=config.initial_backoff_seconds,
            backoff_multiplier=config.backoff_multiplier,
            max_backoff_seconds=config.max_backoff_seconds,
            jitter=config.jitter,
        )

    def backoff(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay before retrying after the zero-based ``attempt`` failed."""
        base = min(
            self.initial_backoff_seconds * (self.backoff_multiplier**attempt),
            self.max_backoff_seconds,
        )
        if self.jitter <= 0:
            return base
        spread = (rng or random).uniform(-self.jitter, self.jitter)
        return max(0.0, base * (1.0 + spread))


async def retry_async(
    call: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool],
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``call`` up to ``policy.max_retries`` times.

    Only exceptions accepted by ``is_retryable`` are retried; anything else,
    and the last retryable failure, propagate unchanged. ``asyncio.CancelledError``
    is never retried.

    Args:
        call: Zero-argument coroutine factory
        policy: Backoff parameters
        is_retryable: Predicate deciding whether a failure is transient
        on_retry: Hook invoked with (attempt, error, delay) before sleeping
        sleep: Awaitable sleep, replaceable for cancellation-aware waits

    Returns:
        Result of the first successful attempt
    """
    attempt = 0
    while True:
        try:
            return await call()
        except Exception as e:
            if attempt >= policy.max_retries - 1 or not is_retryable(e):
                raise
            delay = policy.backoff(attempt)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)
            attempt += 1
