"""
Minimum-evidence rules and directional token-weighted scores.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from docreuse.shared.config import OverlapFormula

from ..types import Match, Section, SimilarityScores


@dataclass
class EvidenceParams:
    min_section_chunks: int = 2
    min_single_chunk_tokens: int = 200
    min_evidence_tokens: int = 400
    min_evidence_fraction: float = 0.05


def section_has_evidence(
    section: Section, smaller_total: int, params: EvidenceParams
) -> bool:
    """Short sections need enough source tokens; the bar never exceeds the smaller document."""
    if section.chunk_count >= params.min_section_chunks:
        return True
    return section.source_tokens >= min(params.min_single_chunk_tokens, smaller_total)


def evidence_floor(smaller_total: int, params: EvidenceParams) -> int:
    wanted = max(
        params.min_evidence_tokens,
        math.ceil(params.min_evidence_fraction * smaller_total),
    )
    return min(wanted, smaller_total)


def filter_sections(
    groups: Sequence[Sequence[Match]],
    sections: Sequence[Section],
    smaller_total: int,
    params: EvidenceParams,
) -> Tuple[List[Match], List[Section]]:
    """Drop sections without enough evidence, together with their matches."""
    kept_matches: List[Match] = []
    kept_sections: List[Section] = []
    for group, section in zip(groups, sections):
        if section_has_evidence(section, smaller_total, params):
            kept_matches.extend(group)
            kept_sections.append(section)
    return kept_matches, kept_sections


def overlap_score(
    source_score: float, target_score: float, formula: OverlapFormula = OverlapFormula.MIN
) -> float:
    if formula == OverlapFormula.HARMONIC:
        if source_score + target_score == 0:
            return 0.0
        return 2 * source_score * target_score / (source_score + target_score)
    return min(source_score, target_score)


def matched_tokens(matches: Sequence[Match]) -> Tuple[int, int]:
    """Token sums over distinct source and target chunks."""
    source = {m.source_chunk_index: m.source_tokens for m in matches}
    target = {m.target_chunk_index: m.target_tokens for m in matches}
    return sum(source.values()), sum(target.values())


def compute_scores(
    matched_source: int,
    matched_target: int,
    source_total: int,
    target_total: int,
    formula: OverlapFormula = OverlapFormula.MIN,
    explanation: str = "",
) -> SimilarityScores:
    source_score = matched_source / source_total if source_total else 0.0
    target_score = matched_target / target_total if target_total else 0.0
    source_score = min(1.0, max(0.0, source_score))
    target_score = min(1.0, max(0.0, target_score))
    return SimilarityScores(
        source_score=source_score,
        target_score=target_score,
        overlap_score=overlap_score(source_score, target_score, formula),
        length_ratio=source_total / target_total if target_total else 0.0,
        explanation=explanation,
    )


def explain(scores: SimilarityScores, section_summary: str) -> str:
    return (
        f"{scores.source_score:.0%} of the source reappears in this document and "
        f"{scores.target_score:.0%} of this document is explained by the source. "
        f"{section_summary}"
    )
