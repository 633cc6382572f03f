"""
Deterministic ordering of similarity results.

Strict total order, compared exactly (no tolerance bands, so it stays
transitive):
    1. source_score desc
    2. target_score desc
    3. matched_target_tokens desc
    4. candidate upload time desc, missing timestamps last
    5. title asc
    6. document id asc
"""

import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from docreuse.shared.observability import get_logger

from .types import SimilarityResult

logger = get_logger(__name__)


def _upload_key(uploaded_at: Optional[datetime]) -> Tuple[int, float]:
    if uploaded_at is None:
        return (1, 0.0)
    if uploaded_at.tzinfo is None:
        # Naive timestamps are treated as UTC
        uploaded_at = uploaded_at.replace(tzinfo=timezone.utc)
    return (0, -uploaded_at.timestamp())


def ranking_key(result: SimilarityResult) -> tuple:
    return (
        -result.scores.source_score,
        -result.scores.target_score,
        -result.matched_target_tokens,
        _upload_key(result.document.uploaded_at),
        result.document.title or "",
        result.document.id,
    )


def rank_results(
    results: Sequence[SimilarityResult], max_results: Optional[int] = None
) -> List[SimilarityResult]:
    """Order all results, then truncate to ``max_results``."""
    start = time.perf_counter()
    ranked = sorted(results, key=ranking_key)
    if max_results is not None:
        ranked = ranked[:max_results]
    logger.debug(
        "Results ranked",
        candidates=len(results),
        returned=len(ranked),
        duration_ms=round((time.perf_counter() - start) * 1000, 3),
    )
    return ranked
