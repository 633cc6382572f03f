"""
Chunk-to-chunk matching between a source document and one candidate.

Pipeline per candidate:
    1. bidirectional argmax proposals over the cosine matrix, plus Stage 1 seeds
    2. non-max suppression so each chunk index is used at most once
    3. threshold at the fallback acceptance bar
    4. optional reciprocal top-k recovery among chunks still unmatched

Rows and columns are positions in the ordered chunk lists; matches report
chunk indices.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Set, Tuple

import numpy as np

from ..types import Chunk, Match, PageRange

# (row, col, similarity, origin)
Proposal = Tuple[int, int, float, str]

ORIGIN_PRIORITY = {"bidirectional": 0, "seed": 1, "recovered": 2}


@dataclass
class MatchingParams:
    fallback_threshold: float = 0.8
    tie_tolerance: float = 1e-3
    recovery_enabled: bool = True
    recovery_top_k: int = 5
    recovery_max_length_diff: float = 0.4


def _page_distance(a: PageRange, b: PageRange) -> int:
    return abs(a.start - b.start)


def _best_position(
    scores: np.ndarray,
    own_pages: PageRange,
    other_pages: Sequence[PageRange],
    tolerance: float,
) -> int:
    """Argmax with near ties broken by closer page, then lower position."""
    best = float(scores.max())
    tied = np.flatnonzero(scores >= best - tolerance)
    if tied.size == 1:
        return int(tied[0])
    return int(min(tied, key=lambda j: (_page_distance(own_pages, other_pages[j]), j)))


def propose_bidirectional(
    matrix: np.ndarray,
    source: Sequence[Chunk],
    target: Sequence[Chunk],
    tolerance: float = 1e-3,
) -> List[Proposal]:
    if matrix.size == 0:
        return []
    source_pages = [c.page_range for c in source]
    target_pages = [c.page_range for c in target]

    proposals = []
    for i in range(matrix.shape[0]):
        j = _best_position(matrix[i], source_pages[i], target_pages, tolerance)
        proposals.append((i, j, float(matrix[i, j]), "bidirectional"))
    for j in range(matrix.shape[1]):
        i = _best_position(matrix[:, j], target_pages[j], source_pages, tolerance)
        proposals.append((i, j, float(matrix[i, j]), "bidirectional"))
    return proposals


def seed_proposals(
    matrix: np.ndarray,
    source: Sequence[Chunk],
    target: Sequence[Chunk],
    seed_pairs: Iterable[Tuple[int, int, float]],
) -> List[Proposal]:
    """Stage 1 hits rescored with their exact cosine; out-of-scope chunks are skipped."""
    row_of = {c.chunk_index: i for i, c in enumerate(source)}
    col_of = {c.chunk_index: j for j, c in enumerate(target)}
    proposals = []
    for source_index, target_index, _ann_score in seed_pairs:
        i = row_of.get(source_index)
        j = col_of.get(target_index)
        if i is None or j is None:
            continue
        proposals.append((i, j, float(matrix[i, j]), "seed"))
    return proposals


def non_max_suppression(
    proposals: Iterable[Proposal],
    used_rows: Set[int] = frozenset(),
    used_cols: Set[int] = frozenset(),
) -> List[Proposal]:
    """
    Greedy one-to-one selection.

    Duplicate pairs collapse to one; the rest are taken in
    ``(similarity desc, row asc, col asc)`` order while neither side is used.
    """
    unique: Dict[Tuple[int, int], Proposal] = {}
    for proposal in proposals:
        key = (proposal[0], proposal[1])
        kept = unique.get(key)
        if kept is None or ORIGIN_PRIORITY[proposal[3]] < ORIGIN_PRIORITY[kept[3]]:
            unique[key] = proposal

    rows = set(used_rows)
    cols = set(used_cols)
    accepted = []
    for proposal in sorted(unique.values(), key=lambda p: (-p[2], p[0], p[1])):
        i, j = proposal[0], proposal[1]
        if i in rows or j in cols:
            continue
        rows.add(i)
        cols.add(j)
        accepted.append(proposal)
    return accepted


def _length_diff(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return abs(len(a) - len(b)) / longest


def _top_positions(scores: np.ndarray, positions: Sequence[int], k: int, threshold: float) -> Set[int]:
    ranked = sorted(
        (p for p in positions if scores[p] >= threshold),
        key=lambda p: (-scores[p], p),
    )
    return set(ranked[:k])


def recover_unmatched(
    matrix: np.ndarray,
    source: Sequence[Chunk],
    target: Sequence[Chunk],
    used_rows: Set[int],
    used_cols: Set[int],
    params: MatchingParams,
) -> List[Proposal]:
    """
    Reciprocal top-k pairing among chunks left unmatched on both sides.

    A pair qualifies when each side lists the other among its ``recovery_top_k``
    most similar unmatched counterparts at or above the threshold and the text
    lengths differ by at most ``recovery_max_length_diff`` of the longer text.
    """
    free_rows = [i for i in range(matrix.shape[0]) if i not in used_rows]
    free_cols = [j for j in range(matrix.shape[1]) if j not in used_cols]
    if not free_rows or not free_cols:
        return []

    threshold = params.fallback_threshold
    k = params.recovery_top_k
    row_top = {i: _top_positions(matrix[i], free_cols, k, threshold) for i in free_rows}
    col_top = {j: _top_positions(matrix[:, j], free_rows, k, threshold) for j in free_cols}

    proposals = []
    for i in free_rows:
        for j in row_top[i]:
            if i not in col_top[j]:
                continue
            if _length_diff(source[i].text, target[j].text) > params.recovery_max_length_diff:
                continue
            proposals.append((i, j, float(matrix[i, j]), "recovered"))

    return non_max_suppression(proposals, used_rows, used_cols)


def _to_match(proposal: Proposal, source: Sequence[Chunk], target: Sequence[Chunk]) -> Match:
    i, j, similarity, origin = proposal
    s, t = source[i], target[j]
    return Match(
        source_chunk_index=s.chunk_index,
        target_chunk_index=t.chunk_index,
        similarity=similarity,
        source_tokens=s.token_count,
        target_tokens=t.token_count,
        source_pages=s.page_range,
        target_pages=t.page_range,
        origin=origin,
    )


def match_chunks(
    matrix: np.ndarray,
    source: Sequence[Chunk],
    target: Sequence[Chunk],
    params: MatchingParams,
    seed_pairs: Iterable[Tuple[int, int, float]] = (),
) -> List[Match]:
    """
    Retained one-to-one matches, ordered by source chunk index.

    Args:
        matrix: Cosine matrix, rows = source chunks, columns = target chunks
        source: Ordered in-scope source chunks
        target: Ordered in-scope candidate chunks
        params: Thresholds and recovery settings
        seed_pairs: Stage 1 (source index, target index, score) hits
    """
    if matrix.size == 0:
        return []

    proposals = propose_bidirectional(matrix, source, target, params.tie_tolerance)
    proposals.extend(seed_proposals(matrix, source, target, seed_pairs))

    accepted = [
        p
        for p in non_max_suppression(proposals)
        if p[2] >= params.fallback_threshold
    ]

    if params.recovery_enabled:
        used_rows = {p[0] for p in accepted}
        used_cols = {p[1] for p in accepted}
        accepted.extend(
            recover_unmatched(matrix, source, target, used_rows, used_cols, params)
        )

    matches = [_to_match(p, source, target) for p in accepted]
    matches.sort(key=lambda m: m.source_chunk_index)
    return matches
