"""
Similarity search pipeline.

Sequences Stage 0 -> (Stage 1) -> Stage 2 -> ranking, threads one
cancellation token through every call, and assembles counts, timings and
diagnostics. Collaborators and the concurrency limiter are passed in; the
pipeline owns no global state.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional, Sequence, Union

from docreuse.shared.concurrency import CancellationToken, ScopedLimiter
from docreuse.shared.config import Config
from docreuse.shared.observability import get_logger, trace_stage
from docreuse.shared.observability.metrics import (
    similarity_search_total,
    similarity_stage_candidates,
)
from docreuse.shared.resilience import CircuitBreaker, RetryPolicy

from .clients import ChunkStore, GuardedClients, VectorIndex
from .errors import (
    AbortedError,
    NotFoundError,
    SimilarityError,
    UpstreamServiceError,
    ValidationError,
)
from .histogram import similarity_histogram, similarity_stats
from .options import SearchOptions, SearchParameters, parse_options, resolve
from .ranking import rank_results
from .stages.stage0 import select_candidates
from .stages.stage1 import prefilter_candidates
from .stages.stage2 import Stage2Outcome, score_candidates
from .types import (
    Chunk,
    Diagnostics,
    DocumentRecord,
    SearchResponse,
    StageCounts,
    StageTimings,
    ValidationReport,
)
from .vector_ops import centroid_of, is_unit_length

logger = get_logger(__name__)

REPROCESS_HINT = "Document needs reprocessing: re-run ingestion to regenerate chunks and embeddings."

OptionsInput = Union[SearchOptions, Dict[str, Any], None]


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


class SimilarityPipeline:
    """
    Directional content-reuse search.

    Args:
        vector_index: Centroid and chunk ANN index
        chunk_store: Documents and their ordered chunks
        limiter: Process-wide concurrency pool shared with other subsystems
        config: Loaded configuration
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        chunk_store: ChunkStore,
        limiter: ScopedLimiter,
        config: Config,
    ):
        self.config = config
        self.clients = GuardedClients(
            vector_index,
            chunk_store,
            limiter,
            RetryPolicy.from_config(config.resilience),
            CircuitBreaker.from_config("vector_index", config.resilience),
            CircuitBreaker.from_config("chunk_store", config.resilience),
        )

    async def execute_similarity_search(
        self,
        source_id: str,
        options: OptionsInput = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SearchResponse:
        """
        Run the full search for one source document.

        Raises:
            ValidationError: Bad options, or the source is not ready for search
            NotFoundError: Unknown source document
            UpstreamServiceError: Index or store unavailable during Stage 0/1
            AbortedError: The token fired before the response was assembled
        """
        start = time.perf_counter()
        token = cancel_token or CancellationToken()

        try:
            params = resolve(
                source_id, parse_options(source_id, options), self.config.search
            )
            total_timeout = self.config.search.total_timeout_seconds
            run = self._run(params, token, start)
            if total_timeout:
                try:
                    response = await asyncio.wait_for(run, total_timeout)
                except asyncio.TimeoutError:
                    token.cancel("total timeout exceeded")
                    raise AbortedError(
                        f"Search exceeded {total_timeout}s",
                        document_id=source_id,
                        retryable=True,
                    )
            else:
                response = await run
        except SimilarityError as e:
            similarity_search_total.labels(status=e.code).inc()
            logger.warning(
                "Similarity search failed",
                source_document_id=source_id,
                error=e.code,
                stage=e.stage,
                message=e.message,
            )
            raise
        except asyncio.CancelledError:
            token.cancel("task cancelled")
            similarity_search_total.labels(status=AbortedError.code).inc()
            logger.info("Similarity search task cancelled", source_document_id=source_id)
            raise

        status = "success" if response.results else "empty"
        similarity_search_total.labels(status=status).inc()
        return response

    async def execute_selected_search(
        self,
        source_id: str,
        target_document_ids: Sequence[str],
        options: OptionsInput = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SearchResponse:
        """Constrained variant: only ``target_document_ids`` are considered."""
        if isinstance(options, SearchOptions):
            merged = options.model_dump(exclude_unset=True)
        else:
            merged = dict(options or {})
        merged["target_document_ids"] = list(target_document_ids)
        return await self.execute_similarity_search(source_id, merged, cancel_token)

    async def _load_source(
        self, store: ChunkStore, params: SearchParameters
    ) -> "tuple[DocumentRecord, List[Chunk], Any]":
        source_id = params.source_document_id
        document = await store.get_document(source_id)
        if document.owner_id is not None and document.owner_id != params.owner_id:
            # Other tenants' documents are indistinguishable from missing ones
            raise NotFoundError(f"Document {source_id} not found", document_id=source_id)

        chunks = await store.get_chunks(
            source_id, params.exclusions_for(source_id), params.source_page_range
        )
        if not chunks:
            if params.source_page_range is not None or params.exclusions_for(source_id):
                raise ValidationError(
                    "No source chunks remain after page scoping",
                    document_id=source_id,
                    stage="validation",
                    remediation=[
                        "Choose a page range that contains text, or relax the exclusions."
                    ],
                )
            raise ValidationError(
                "Source document has no chunks",
                document_id=source_id,
                stage="validation",
                remediation=[REPROCESS_HINT],
            )

        if params.source_page_range is not None:
            vector = centroid_of(chunks)
        else:
            vector = document.centroid
        if vector is None:
            raise ValidationError(
                "Source document has no centroid embedding",
                document_id=source_id,
                stage="validation",
                remediation=[REPROCESS_HINT],
            )
        return document, chunks, vector

    async def _run(
        self, params: SearchParameters, token: CancellationToken, start: float
    ) -> SearchResponse:
        search_cfg = self.config.search
        index_cfg = self.config.vector_index
        index, store = self.clients.for_request(token, params.owner_id)
        source_id = params.source_document_id
        log = logger.bind(source_document_id=source_id, owner_id=params.owner_id)

        token.raise_if_cancelled("validation")
        _, source_chunks, vector = await self._load_source(store, params)
        source_total = sum(c.token_count for c in source_chunks)
        log.info(
            "Similarity search started",
            source_chunks=len(source_chunks),
            source_tokens=source_total,
            constrained=params.constrained,
            page_range=str(params.source_page_range) if params.source_page_range else None,
        )

        counts = StageCounts()
        timings = StageTimings()

        # Stage 0
        token.raise_if_cancelled("stage0")
        stage_start = time.perf_counter()
        with trace_stage("stage0", source_document_id=source_id):
            try:
                candidates = await asyncio.wait_for(
                    select_candidates(index, vector, params, index_cfg),
                    search_cfg.stage0.timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                raise UpstreamServiceError(
                    f"Stage 0 timed out after {search_cfg.stage0.timeout_seconds}s",
                    document_id=source_id,
                    stage="stage0",
                    cause=e,
                )
        timings.stage0_ms = _elapsed_ms(stage_start)
        counts.stage0_candidates = len(candidates)
        similarity_stage_candidates.labels(stage="stage0").observe(len(candidates))

        # Stage 1
        token.raise_if_cancelled("stage1")
        stage_start = time.perf_counter()
        with trace_stage("stage1", candidates=len(candidates)):
            stage1 = await prefilter_candidates(
                index,
                source_chunks,
                candidates,
                params,
                index_cfg,
                search_cfg.stage1.timeout_seconds,
            )
        timings.stage1_ms = _elapsed_ms(stage_start)
        counts.stage1_candidates = len(stage1.candidates)
        similarity_stage_candidates.labels(stage="stage1").observe(len(stage1.candidates))

        # Stage 2
        token.raise_if_cancelled("stage2")
        stage_start = time.perf_counter()
        with trace_stage("stage2", candidates=len(stage1.candidates)):
            stage2 = await score_candidates(
                store,
                stage1.candidates,
                source_chunks,
                source_total,
                params,
                search_cfg.stage2,
                token,
            )
        timings.stage2_ms = _elapsed_ms(stage_start)

        # Partial results are never returned once cancelled
        token.raise_if_cancelled("stage2")

        results = rank_results(stage2.results, params.max_results)
        counts.final_results = len(results)
        similarity_stage_candidates.labels(stage="final").observe(len(results))
        timings.total_ms = _elapsed_ms(start)

        response = SearchResponse(
            results=results,
            stages=counts,
            timing=timings,
            stage1_status=stage1.status,
            diagnostics=self._diagnostics(stage2) if params.include_diagnostics else None,
        )
        log.info(
            "Similarity search completed",
            stage0_candidates=counts.stage0_candidates,
            stage1_candidates=counts.stage1_candidates,
            stage1_status=stage1.status,
            final_results=counts.final_results,
            partial_failures=len(stage2.partial_failures),
            total_ms=timings.total_ms,
        )
        return response

    @staticmethod
    def _diagnostics(stage2: Stage2Outcome) -> Diagnostics:
        similarities = [m.similarity for r in stage2.results for m in r.matched_chunks]
        return Diagnostics(
            partial_failures=list(stage2.partial_failures),
            timed_out_candidates=list(stage2.timed_out),
            insufficient_evidence=list(stage2.insufficient_evidence),
            similarity_histogram=similarity_histogram(similarities),
            similarity_stats=similarity_stats(similarities),
        )

    async def validate_document_for_similarity(
        self, document_id: str, owner_id: Optional[str] = None
    ) -> ValidationReport:
        """
        Check that a document can act as a search source.

        With ``owner_id`` set, another tenant's document reports as not found.
        Never raises for validation problems; upstream outages still propagate.
        """
        _, store = self.clients.for_request(owner_id=owner_id)
        report = ValidationReport(document_id=document_id, valid=True)

        try:
            document = await store.get_document(document_id)
        except NotFoundError:
            document = None
        if document is None or (
            owner_id is not None
            and document.owner_id is not None
            and document.owner_id != owner_id
        ):
            report.valid = False
            report.errors.append(f"Document {document_id} not found")
            return report

        totals = await store.get_document_totals(document_id)
        if totals.centroid is None:
            report.errors.append("Document has no centroid embedding")
        elif not is_unit_length(totals.centroid):
            report.warnings.append("Document centroid is not unit length")

        if totals.effective_chunk_count <= 0:
            report.errors.append("Document has zero effective chunks")

        chunks = await store.get_chunks(document_id)
        if not chunks:
            report.errors.append("Document has no chunks")
        else:
            chunk_tokens = sum(c.token_count for c in chunks)
            if totals.total_tokens and chunk_tokens != totals.total_tokens:
                report.warnings.append(
                    f"Stored total_tokens ({totals.total_tokens}) differs from "
                    f"chunk token sum ({chunk_tokens})"
                )
            if (
                totals.effective_chunk_count > 0
                and len(chunks) != totals.effective_chunk_count
            ):
                report.warnings.append(
                    f"Stored effective_chunk_count ({totals.effective_chunk_count}) "
                    f"differs from chunk count ({len(chunks)})"
                )

        if report.errors:
            report.valid = False
            report.remediation.append(REPROCESS_HINT)

        logger.info(
            "Document validated",
            document_id=document_id,
            valid=report.valid,
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        return report
