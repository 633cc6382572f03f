"""
Stage 2: adaptive bidirectional scoring of each surviving candidate.

Each candidate is fetched and scored by its own worker; workers share nothing
but the read-only source chunks. A candidate that times out or fails is
dropped and recorded, never failing the request. Cancellation propagates.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from docreuse.shared.concurrency import CancellationToken, gather_or_cancel
from docreuse.shared.config import Stage2Config
from docreuse.shared.observability import get_logger
from docreuse.shared.observability.metrics import (
    similarity_candidate_failures_total,
    similarity_match_score,
)

from ..clients import ChunkStore
from ..core.matching import MatchingParams, match_chunks
from ..core.scoring import (
    EvidenceParams,
    compute_scores,
    evidence_floor,
    explain,
    filter_sections,
    matched_tokens,
)
from ..core.sections import (
    group_matches,
    section_coverage,
    spanned_pages,
    summarize_group,
    summarize_sections,
)
from ..errors import (
    AbortedError,
    NotFoundError,
    PartialFailure,
    SimilarityError,
    UpstreamServiceError,
)
from ..options import SearchParameters
from ..types import Candidate, Chunk, SimilarityResult
from ..vector_ops import cosine_matrix

logger = get_logger(__name__)


@dataclass
class Stage2Outcome:
    results: List[SimilarityResult] = field(default_factory=list)
    partial_failures: List[PartialFailure] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    insufficient_evidence: List[str] = field(default_factory=list)
    workers: int = 0


def matching_params(params: SearchParameters, config: Stage2Config) -> MatchingParams:
    return MatchingParams(
        fallback_threshold=params.stage2_fallback_threshold,
        tie_tolerance=config.tie_tolerance,
        recovery_enabled=config.recovery_enabled,
        recovery_top_k=config.recovery_top_k,
        recovery_max_length_diff=config.recovery_max_length_diff,
    )


def evidence_params(config: Stage2Config) -> EvidenceParams:
    return EvidenceParams(
        min_section_chunks=config.min_section_chunks,
        min_single_chunk_tokens=config.min_single_chunk_tokens,
        min_evidence_tokens=config.min_evidence_tokens,
        min_evidence_fraction=config.min_evidence_fraction,
    )


async def score_candidate(
    store: ChunkStore,
    candidate: Candidate,
    source_chunks: Sequence[Chunk],
    source_total: int,
    params: SearchParameters,
    config: Stage2Config,
) -> Optional[SimilarityResult]:
    """
    Score one candidate against the source.

    Returns:
        The result, or None when no section survives the minimum-evidence rules
    """
    document_id = candidate.document_id
    document = await store.get_document(document_id)
    target_chunks = await store.get_chunks(document_id, params.exclusions_for(document_id))
    if not target_chunks or not source_chunks:
        return None
    target_total = sum(c.token_count for c in target_chunks)

    matrix = cosine_matrix(source_chunks, target_chunks)
    matches = match_chunks(
        matrix,
        source_chunks,
        target_chunks,
        matching_params(params, config),
        candidate.seed_pairs,
    )
    if not matches:
        return None

    evidence = evidence_params(config)
    smaller_total = min(source_total, target_total)
    groups = group_matches(matches, config.max_page_gap)
    sections = [summarize_group(g, config.reusable_threshold) for g in groups]
    kept_matches, kept_sections = filter_sections(groups, sections, smaller_total, evidence)
    if not kept_sections:
        return None

    matched_source, matched_target = matched_tokens(kept_matches)
    if min(matched_source, matched_target) < evidence_floor(smaller_total, evidence):
        return None

    scores = compute_scores(
        matched_source,
        matched_target,
        source_total,
        target_total,
        params.overlap_formula,
    )
    scores.explanation = explain(
        scores,
        summarize_sections(
            kept_sections, config.reusable_threshold, config.review_threshold
        ),
    )
    for match in kept_matches:
        similarity_match_score.observe(match.similarity)

    return SimilarityResult(
        document=document,
        scores=scores,
        matched_source_tokens=matched_source,
        matched_target_tokens=matched_target,
        source_total_tokens=source_total,
        target_total_tokens=target_total,
        matched_chunks=kept_matches,
        sections=kept_sections,
        coverage=section_coverage(
            kept_sections,
            len(spanned_pages(source_chunks)),
            len(spanned_pages(target_chunks)),
        ),
    )


async def score_candidates(
    store: ChunkStore,
    candidates: Sequence[Candidate],
    source_chunks: Sequence[Chunk],
    source_total: int,
    params: SearchParameters,
    config: Stage2Config,
    cancel_token: Optional[CancellationToken] = None,
) -> Stage2Outcome:
    """
    Score candidates in parallel, bounded by the resolved worker count.

    Result order is not meaningful; the ranker decides the final order.

    Raises:
        AbortedError: If the token fires while candidates are in flight
    """
    outcome = Stage2Outcome()
    if not candidates:
        return outcome

    outcome.workers = params.stage2_workers_for(
        len(candidates),
        config.min_parallel_workers,
        config.max_parallel_workers,
        config.candidates_per_worker,
    )
    semaphore = asyncio.Semaphore(outcome.workers)
    timeout = config.candidate_timeout_seconds

    async def run(candidate: Candidate) -> None:
        document_id = candidate.document_id
        async with semaphore:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled("stage2")
            try:
                result = await asyncio.wait_for(
                    score_candidate(
                        store, candidate, source_chunks, source_total, params, config
                    ),
                    timeout,
                )
            except asyncio.TimeoutError:
                similarity_candidate_failures_total.labels(reason="timeout").inc()
                logger.warning(
                    "Candidate scoring timed out",
                    document_id=document_id,
                    timeout_seconds=timeout,
                )
                outcome.timed_out.append(document_id)
                return
            except AbortedError:
                raise
            except SimilarityError as e:
                if isinstance(e, NotFoundError):
                    reason = "not_found"
                elif isinstance(e, UpstreamServiceError):
                    reason = "upstream"
                else:
                    reason = "error"
                similarity_candidate_failures_total.labels(reason=reason).inc()
                logger.warning(
                    "Candidate scoring failed",
                    document_id=document_id,
                    reason=reason,
                    error=e.message,
                )
                outcome.partial_failures.append(
                    PartialFailure.from_exception(document_id, reason, e)
                )
                return
            except Exception as e:
                similarity_candidate_failures_total.labels(reason="error").inc()
                logger.error(
                    "Candidate scoring raised",
                    document_id=document_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                outcome.partial_failures.append(
                    PartialFailure.from_exception(document_id, "error", e)
                )
                return

        if result is None:
            outcome.insufficient_evidence.append(document_id)
        else:
            outcome.results.append(result)

    await gather_or_cancel(*(run(c) for c in candidates))

    # Diagnostics must not depend on completion order
    outcome.timed_out.sort()
    outcome.insufficient_evidence.sort()
    outcome.partial_failures.sort(key=lambda f: f.document_id)

    logger.info(
        "Stage 2 completed",
        candidates=len(candidates),
        workers=outcome.workers,
        results=len(outcome.results),
        insufficient_evidence=len(outcome.insufficient_evidence),
        timed_out=len(outcome.timed_out),
        failed=len(outcome.partial_failures),
    )
    return outcome
