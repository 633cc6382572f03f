"""
Stage 1: chunk-level ANN prefilter for large candidate sets.

Every in-scope source chunk queries the chunk index restricted to the Stage 0
candidates. Hits are tallied per candidate with a count/max reduction that is
merged only after all queries finish, so completion order cannot change the
outcome.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

from docreuse.shared.concurrency import gather_or_cancel
from docreuse.shared.config import VectorIndexConfig
from docreuse.shared.observability import get_logger
from docreuse.shared.observability.metrics import similarity_stage1_runs_total

from ..clients import CHUNK_INDEX, VectorIndex
from ..errors import UpstreamServiceError
from ..options import SearchParameters
from ..types import Candidate, Chunk, VectorHit

logger = get_logger(__name__)

STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_TIMED_OUT = "timed_out"


@dataclass
class Stage1Outcome:
    candidates: List[Candidate]
    status: str
    queries: int = 0


@dataclass
class HitTally:
    hits: int = 0
    best: float = 0.0
    seeds: List[Tuple[int, int, float]] = field(default_factory=list)


def should_run(candidate_count: int, params: SearchParameters) -> bool:
    return params.stage1_enabled and candidate_count > params.stage1_top_k


def _hit_chunk_index(hit: VectorHit) -> int:
    if "chunk_index" in hit.metadata:
        return int(hit.metadata["chunk_index"])
    return int(hit.id.rsplit(":", 1)[1])


def aggregate_hits(
    per_chunk: Iterable[Tuple[int, Sequence[VectorHit]]],
    candidate_ids: Iterable[str],
    document_field: str,
) -> Dict[str, HitTally]:
    """Commutative count/max reduction of chunk hits per candidate document."""
    wanted = set(candidate_ids)
    tallies: Dict[str, HitTally] = {}
    for source_index, hits in per_chunk:
        for hit in hits:
            document_id = hit.metadata.get(document_field)
            if document_id not in wanted:
                continue
            tally = tallies.setdefault(document_id, HitTally())
            tally.hits += 1
            tally.best = max(tally.best, hit.score)
            tally.seeds.append((source_index, _hit_chunk_index(hit), hit.score))
    for tally in tallies.values():
        tally.seeds.sort()
    return tallies


def rank_by_hits(
    candidates: Sequence[Candidate], tallies: Dict[str, HitTally], top_k: int
) -> List[Candidate]:
    """Drop zero-hit candidates; order by hits, best hit, Stage 0 score, then id."""
    ranked = []
    for candidate in candidates:
        tally = tallies.get(candidate.document_id)
        if tally is None or tally.hits == 0:
            continue
        ranked.append(
            Candidate(
                document_id=candidate.document_id,
                stage0_score=candidate.stage0_score,
                stage1_score=tally.best,
                stage1_hits=tally.hits,
                seed_pairs=list(tally.seeds),
            )
        )
    ranked.sort(
        key=lambda c: (-c.stage1_hits, -c.stage1_score, -c.stage0_score, c.document_id)
    )
    return ranked[:top_k]


async def _query_chunks(
    index: VectorIndex,
    source_chunks: Sequence[Chunk],
    candidate_ids: List[str],
    params: SearchParameters,
    config: VectorIndexConfig,
) -> List[Tuple[int, List[VectorHit]]]:
    filters = {
        config.owner_field: {"$eq": params.owner_id},
        config.document_field: {"$in": candidate_ids},
    }
    semaphore = asyncio.Semaphore(params.stage1_max_concurrency)

    async def query_one(chunk: Chunk) -> Tuple[int, List[VectorHit]]:
        async with semaphore:
            hits = await index.query(
                chunk.embedding,
                params.stage1_neighbors_per_chunk,
                filters,
                index=CHUNK_INDEX,
            )
        return chunk.chunk_index, hits

    return await gather_or_cancel(*(query_one(c) for c in source_chunks))


async def prefilter_candidates(
    index: VectorIndex,
    source_chunks: Sequence[Chunk],
    candidates: List[Candidate],
    params: SearchParameters,
    config: VectorIndexConfig,
    timeout_seconds: float,
) -> Stage1Outcome:
    """
    Narrow the Stage 0 set using chunk-level hits.

    Skipped (candidates pass through unchanged) when disabled or when the set is
    not larger than ``stage1_top_k``. A timeout degrades to the Stage 0 set.

    Raises:
        UpstreamServiceError: If the chunk index is unavailable after retries
    """
    if not should_run(len(candidates), params):
        similarity_stage1_runs_total.labels(status=STATUS_SKIPPED).inc()
        logger.info(
            "Stage 1 skipped",
            enabled=params.stage1_enabled,
            candidates=len(candidates),
            stage1_top_k=params.stage1_top_k,
        )
        return Stage1Outcome(list(candidates), STATUS_SKIPPED)

    candidate_ids = [c.document_id for c in candidates]
    try:
        per_chunk = await asyncio.wait_for(
            _query_chunks(index, source_chunks, candidate_ids, params, config),
            timeout_seconds,
        )
    except asyncio.TimeoutError:
        similarity_stage1_runs_total.labels(status=STATUS_TIMED_OUT).inc()
        logger.warning(
            "Stage 1 timed out; using Stage 0 candidates",
            timeout_seconds=timeout_seconds,
            candidates=len(candidates),
        )
        return Stage1Outcome(list(candidates), STATUS_TIMED_OUT)
    except UpstreamServiceError as e:
        e.stage = e.stage or "stage1"
        raise

    tallies = aggregate_hits(per_chunk, candidate_ids, config.document_field)
    narrowed = rank_by_hits(candidates, tallies, params.stage1_top_k)
    similarity_stage1_runs_total.labels(status=STATUS_COMPLETED).inc()
    logger.info(
        "Stage 1 completed",
        queries=len(per_chunk),
        candidates_with_hits=len(tallies),
        kept=len(narrowed),
    )
    return Stage1Outcome(narrowed, STATUS_COMPLETED, queries=len(per_chunk))
