# Concurrency primitives shared by the search pipeline and other subsystems:
# an explicit slot pool, a per-key scoped pool and a cancellation token.

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, Optional, TypeVar

from docreuse.similarity.errors import AbortedError

from .observability import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class ConcurrencyLimiter:
    """
    Bounded pool of execution slots.

    One instance is created at process start and passed by reference to every
    consumer, so the cap is shared across subsystems. A limit <= 0 means
    unlimited (slots are still counted).
    """

    def __init__(self, limit: int, name: str = "global"):
        self.name = name
        self.limit = limit
        self._semaphore: Optional[asyncio.Semaphore] = (
            asyncio.Semaphore(limit) if limit > 0 else None
        )
        self._in_use = 0
        self._waiting = 0
        self._peak = 0

    async def acquire(self) -> None:
        if self._semaphore is not None:
            self._waiting += 1
            try:
                await self._semaphore.acquire()
            finally:
                self._waiting -= 1
        self._in_use += 1
        self._peak = max(self._peak, self._in_use)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError(f"Limiter {self.name!r} released more than acquired")
        self._in_use -= 1
        if self._semaphore is not None:
            self._semaphore.release()

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def idle(self) -> bool:
        return self._in_use == 0 and self._waiting == 0

    def metrics(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "limit": self.limit,
            "in_use": self._in_use,
            "waiting": self._waiting,
            "peak": self._peak,
        }


class ScopedLimiter:
    """
    Global limiter plus lazily created per-key limiters (one per owner).

    A per-key limiter is discarded as soon as it is idle.
    """

    def __init__(self, global_limiter: ConcurrencyLimiter, per_key_limit: int = 0):
        self.global_limiter = global_limiter
        self.per_key_limit = per_key_limit
        self._scoped: Dict[str, ConcurrencyLimiter] = {}

    def _scoped_for(self, key: Optional[str]) -> Optional[ConcurrencyLimiter]:
        if key is None or self.per_key_limit <= 0:
            return None
        limiter = self._scoped.get(key)
        if limiter is None:
            limiter = ConcurrencyLimiter(self.per_key_limit, name=f"scope:{key}")
            self._scoped[key] = limiter
        return limiter

    @asynccontextmanager
    async def slot(self, key: Optional[str] = None) -> AsyncIterator[None]:
        scoped = self._scoped_for(key)
        if scoped is not None:
            await scoped.acquire()
        try:
            async with self.global_limiter.slot():
                yield
        finally:
            if scoped is not None:
                scoped.release()
                if scoped.idle and self._scoped.get(key) is scoped:
                    del self._scoped[key]

    @property
    def active_scopes(self) -> int:
        return len(self._scoped)

    def metrics(self) -> Dict[str, Any]:
        return {
            "global": self.global_limiter.metrics(),
            "scopes": {k: v.metrics() for k, v in self._scoped.items()},
        }


class CancellationToken:
    """
    Explicit cancellation signal threaded through every pipeline stage.

    ``guard`` races an awaitable against the token: when the token fires first
    the in-flight call is cancelled and ``AbortedError`` is raised.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.info("Cancellation requested", reason=reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, stage: Optional[str] = None) -> None:
        if self._event.is_set():
            raise AbortedError(
                f"Search aborted: {self._reason}", stage=stage, retryable=False
            )

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T], stage: Optional[str] = None) -> T:
        self.raise_if_cancelled(stage)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise AbortedError(
            f"Search aborted: {self._reason}", stage=stage, retryable=False
        )


async def gather_or_cancel(*aws: Awaitable[Any]) -> list:
    """
    Fan-in like ``asyncio.gather``, but the first failure cancels the siblings.

    Results keep argument order regardless of completion order.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    finally:
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
