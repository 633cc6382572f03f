"""
Collaborator contracts consumed by the pipeline, plus guarded wrappers.

The guarded wrappers add, around every call: the cancellation token, a slot
from the shared concurrency limiter, a per-client circuit breaker, retries with
exponential backoff for idempotent reads, metrics and a client span.
"""

import asyncio
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
    runtime_checkable,
)

import numpy as np

from docreuse.shared.concurrency import CancellationToken, ScopedLimiter
from docreuse.shared.observability import get_logger, trace_upstream_call
from docreuse.shared.observability.metrics import upstream_retries_total
from docreuse.shared.resilience import CircuitBreaker, RetryPolicy, retry_async

from .errors import (
    AbortedError,
    CircuitOpenError,
    SimilarityError,
    UpstreamServiceError,
)
from .filters import CanonicalFilter
from .types import Chunk, ChunkVector, DocumentRecord, DocumentTotals, PageRange, VectorHit

logger = get_logger(__name__)

T = TypeVar("T")

CENTROID_INDEX = "centroids"
CHUNK_INDEX = "chunks"


@runtime_checkable
class VectorIndex(Protocol):
    """Approximate nearest-neighbour search over centroids and chunk vectors."""

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[CanonicalFilter] = None,
        *,
        index: str = CENTROID_INDEX,
    ) -> List[VectorHit]:
        """
        Args:
            vector: Query vector (L2-normalised)
            top_k: Maximum hits to return
            filter: Canonical metadata filter
            index: "centroids" or "chunks"

        Returns:
            Hits ordered by score descending. Chunk hits carry ``document_id``
            and ``chunk_index`` in metadata; centroid hits carry ``document_id``.
        """
        ...

    async def fetch_chunk_vectors(self, ids: Sequence[str]) -> List[ChunkVector]:
        """Fetch stored chunk vectors by ``"{document_id}:{chunk_index}"`` id."""
        ...


@runtime_checkable
class ChunkStore(Protocol):
    """Read-only access to documents and their ordered chunks."""

    async def get_chunks(
        self,
        document_id: str,
        exclude_ranges: Sequence[PageRange] = (),
        page_range: Optional[PageRange] = None,
    ) -> List[Chunk]:
        """
        Ordered chunks of a document, deduplicated by chunk index.

        Chunks overlapping any ``exclude_ranges`` are removed before they are
        returned; when ``page_range`` is given only overlapping chunks are kept.
        """
        ...

    async def get_document(self, document_id: str) -> DocumentRecord:
        """Raises NotFoundError for an unknown id."""
        ...

    async def get_document_totals(self, document_id: str) -> DocumentTotals:
        ...


def is_transient(error: BaseException) -> bool:
    return (
        isinstance(error, UpstreamServiceError)
        and error.retryable
        and not isinstance(error, CircuitOpenError)
    )


class _CallGuard:
    """Shared call path for the guarded clients."""

    def __init__(
        self,
        name: str,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        limiter: ScopedLimiter,
        cancel_token: Optional[CancellationToken] = None,
        owner_id: Optional[str] = None,
    ):
        self.name = name
        self.breaker = breaker
        self.retry_policy = retry_policy
        self.limiter = limiter
        self.cancel_token = cancel_token
        self.owner_id = owner_id

    async def call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        document_id: Optional[str] = None,
    ) -> T:
        def on_retry(attempt: int, error: BaseException, delay: float) -> None:
            upstream_retries_total.labels(client=self.name, operation=operation).inc()
            logger.warning(
                "Retrying upstream call",
                client=self.name,
                operation=operation,
                attempt=attempt + 1,
                max_retries=self.retry_policy.max_retries,
                delay_seconds=round(delay, 3),
                error=type(error).__name__,
            )

        return await retry_async(
            lambda: self._attempt(operation, fn, document_id),
            self.retry_policy,
            is_retryable=is_transient,
            on_retry=on_retry,
            sleep=self._sleep,
        )

    async def _sleep(self, delay: float) -> None:
        if self.cancel_token is None:
            await asyncio.sleep(delay)
        else:
            await self.cancel_token.guard(asyncio.sleep(delay))

    async def _attempt(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        document_id: Optional[str],
    ) -> T:
        if self.cancel_token is not None:
            self.cancel_token.raise_if_cancelled()

        if not self.breaker.allow_request():
            raise CircuitOpenError(
                f"{self.name} circuit breaker is open",
                document_id=document_id,
            )

        try:
            if self.cancel_token is None:
                result = await self._limited(operation, fn)
            else:
                result = await self.cancel_token.guard(self._limited(operation, fn))
        except (AbortedError, asyncio.CancelledError):
            self.breaker.release_probe()
            raise
        except UpstreamServiceError as e:
            self.breaker.record_failure()
            if e.document_id is None:
                e.document_id = document_id
            raise
        except SimilarityError:
            # NotFound and friends are answers, not outages
            self.breaker.record_success()
            raise
        except Exception as e:
            self.breaker.record_failure()
            raise UpstreamServiceError(
                f"{self.name}.{operation} failed: {type(e).__name__}: {e}",
                document_id=document_id,
                cause=e,
            ) from e

        self.breaker.record_success()
        return result

    async def _limited(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        async with self.limiter.slot(self.owner_id):
            with trace_upstream_call(self.name, operation):
                return await fn()


class GuardedVectorIndex:
    """``VectorIndex`` bound to one request's token and owner scope."""

    def __init__(self, inner: VectorIndex, guard: _CallGuard):
        self.inner = inner
        self._guard = guard

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[CanonicalFilter] = None,
        *,
        index: str = CENTROID_INDEX,
    ) -> List[VectorHit]:
        if isinstance(vector, np.ndarray):
            vector = vector.tolist()
        return await self._guard.call(
            f"query_{index}",
            lambda: self.inner.query(vector, top_k, filter, index=index),
        )

    async def fetch_chunk_vectors(self, ids: Sequence[str]) -> List[ChunkVector]:
        return await self._guard.call(
            "fetch_chunk_vectors", lambda: self.inner.fetch_chunk_vectors(ids)
        )


class GuardedChunkStore:
    """``ChunkStore`` bound to one request's token and owner scope."""

    def __init__(self, inner: ChunkStore, guard: _CallGuard):
        self.inner = inner
        self._guard = guard

    async def get_chunks(
        self,
        document_id: str,
        exclude_ranges: Sequence[PageRange] = (),
        page_range: Optional[PageRange] = None,
    ) -> List[Chunk]:
        return await self._guard.call(
            "get_chunks",
            lambda: self.inner.get_chunks(document_id, exclude_ranges, page_range),
            document_id=document_id,
        )

    async def get_document(self, document_id: str) -> DocumentRecord:
        return await self._guard.call(
            "get_document",
            lambda: self.inner.get_document(document_id),
            document_id=document_id,
        )

    async def get_document_totals(self, document_id: str) -> DocumentTotals:
        return await self._guard.call(
            "get_document_totals",
            lambda: self.inner.get_document_totals(document_id),
            document_id=document_id,
        )


class GuardedClients:
    """
    Process-wide breakers and retry policy, producing per-request wrappers.

    Breakers outlive requests; wrappers carry one request's token and owner.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        chunk_store: ChunkStore,
        limiter: ScopedLimiter,
        retry_policy: RetryPolicy,
        index_breaker: CircuitBreaker,
        store_breaker: CircuitBreaker,
    ):
        self.vector_index = vector_index
        self.chunk_store = chunk_store
        self.limiter = limiter
        self.retry_policy = retry_policy
        self.index_breaker = index_breaker
        self.store_breaker = store_breaker

    def for_request(
        self,
        cancel_token: Optional[CancellationToken] = None,
        owner_id: Optional[str] = None,
    ) -> "tuple[GuardedVectorIndex, GuardedChunkStore]":
        index_guard = _CallGuard(
            "vector_index",
            self.index_breaker,
            self.retry_policy,
            self.limiter,
            cancel_token,
            owner_id,
        )
        store_guard = _CallGuard(
            "chunk_store",
            self.store_breaker,
            self.retry_policy,
            self.limiter,
            cancel_token,
            owner_id,
        )
        return (
            GuardedVectorIndex(self.vector_index, index_guard),
            GuardedChunkStore(self.chunk_store, store_guard),
        )

    def health(self) -> Dict[str, Any]:
        return {
            "vector_index_circuit": self.index_breaker.state.value,
            "chunk_store_circuit": self.store_breaker.state.value,
            "limiter": self.limiter.metrics(),
        }
