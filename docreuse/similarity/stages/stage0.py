"""
Stage 0: coarse candidate retrieval over document centroids.
"""

from typing import Dict, List, Optional, Sequence

from docreuse.shared.config import VectorIndexConfig
from docreuse.shared.observability import get_logger

from ..clients import CENTROID_INDEX, VectorIndex
from ..errors import UpstreamServiceError
from ..filters import CanonicalFilter, normalize_filters
from ..options import SearchParameters
from ..types import Candidate, VectorHit

logger = get_logger(__name__)


def build_stage0_filter(
    params: SearchParameters, config: VectorIndexConfig
) -> Optional[CanonicalFilter]:
    """
    Caller filters plus the owner scope and the source/target restriction.

    Returns None for a constrained search whose target set is empty once the
    source is removed.
    """
    owner_field = config.owner_field
    document_field = config.document_field
    filters = normalize_filters(
        params.stage0_filters, reserved=(owner_field, document_field)
    )
    filters[owner_field] = {"$eq": params.owner_id}

    if params.constrained:
        targets = [
            t for t in params.target_document_ids if t != params.source_document_id
        ]
        if not targets:
            return None
        filters[document_field] = {"$in": targets}
    else:
        filters[document_field] = {"$ne": params.source_document_id}
    return filters


def rank_hits(
    hits: Sequence[VectorHit], source_id: str, top_k: int, document_field: str
) -> List[Candidate]:
    """Best score per document, ordered by score desc then id asc, truncated to top_k."""
    best: Dict[str, float] = {}
    for hit in hits:
        document_id = hit.metadata.get(document_field) or hit.id
        if document_id == source_id:
            continue
        if document_id not in best or hit.score > best[document_id]:
            best[document_id] = hit.score

    ranked = sorted(best.items(), key=lambda item: (-item[1], item[0]))[:top_k]
    return [Candidate(document_id=doc_id, stage0_score=score) for doc_id, score in ranked]


async def select_candidates(
    index: VectorIndex,
    vector: Sequence[float],
    params: SearchParameters,
    config: VectorIndexConfig,
) -> List[Candidate]:
    """
    Retrieve up to ``stage0_top_k`` candidate documents by centroid similarity.

    Args:
        index: Vector index (guarded for this request)
        vector: Source centroid
        params: Resolved search parameters
        config: Collection and payload field names

    Returns:
        Candidates ordered by centroid score; empty is a valid outcome

    Raises:
        UpstreamServiceError: If the index is unavailable after retries
    """
    filters = build_stage0_filter(params, config)
    if filters is None:
        logger.info(
            "Constrained search has no targets besides the source",
            source_document_id=params.source_document_id,
        )
        return []

    top_k = params.stage0_top_k
    if params.constrained:
        top_k = min(top_k, len(filters[config.document_field]["$in"]))
    limit = top_k * params.stage0_oversample

    try:
        hits = await index.query(vector, limit, filters, index=CENTROID_INDEX)
    except UpstreamServiceError as e:
        e.stage = e.stage or "stage0"
        raise

    candidates = rank_hits(hits, params.source_document_id, top_k, config.document_field)
    logger.info(
        "Stage 0 completed",
        source_document_id=params.source_document_id,
        constrained=params.constrained,
        requested=limit,
        hits=len(hits),
        candidates=len(candidates),
    )
    return candidates
