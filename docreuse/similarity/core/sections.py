"""
Group retained matches into page-range sections and describe them.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..types import Chunk, Match, PageRange, Section, SectionCoverage


def _near(pages: PageRange, span: PageRange, gap: int) -> bool:
    return pages.start <= span.end + gap and pages.end >= span.start - gap


def group_matches(matches: Sequence[Match], max_page_gap: int = 1) -> List[List[Match]]:
    """
    Split matches into runs that are contiguous on both sides.

    Matches are visited by (source start page, source chunk index). A match
    extends the open group when its source pages start within ``max_page_gap``
    of the group's source end and its target pages lie within ``max_page_gap``
    of the group's target range.
    """
    ordered = sorted(matches, key=lambda m: (m.source_pages.start, m.source_chunk_index))
    groups: List[List[Match]] = []
    source_span: Optional[PageRange] = None
    target_span: Optional[PageRange] = None

    for match in ordered:
        if (
            groups
            and match.source_pages.start <= source_span.end + max_page_gap
            and _near(match.target_pages, target_span, max_page_gap)
        ):
            groups[-1].append(match)
            source_span = source_span.union(match.source_pages)
            target_span = target_span.union(match.target_pages)
        else:
            groups.append([match])
            source_span = match.source_pages
            target_span = match.target_pages
    return groups


def summarize_group(group: Sequence[Match], reusable_threshold: float = 0.85) -> Section:
    source_range = group[0].source_pages
    target_range = group[0].target_pages
    for match in group[1:]:
        source_range = source_range.union(match.source_pages)
        target_range = target_range.union(match.target_pages)
    avg_score = sum(m.similarity for m in group) / len(group)
    return Section(
        source_page_range=source_range,
        target_page_range=target_range,
        avg_score=avg_score,
        chunk_count=len(group),
        source_tokens=sum(m.source_tokens for m in group),
        target_tokens=sum(m.target_tokens for m in group),
        reusable=avg_score >= reusable_threshold,
    )


def build_sections(
    matches: Sequence[Match],
    max_page_gap: int = 1,
    reusable_threshold: float = 0.85,
) -> List[Section]:
    return [
        summarize_group(group, reusable_threshold)
        for group in group_matches(matches, max_page_gap)
    ]


def classify_sections(
    sections: Sequence[Section],
    reusable_threshold: float = 0.85,
    review_threshold: float = 0.65,
) -> Dict[str, List[Section]]:
    buckets: Dict[str, List[Section]] = {
        "highly_reusable": [],
        "needs_review": [],
        "low_similarity": [],
    }
    for section in sections:
        if section.avg_score >= reusable_threshold:
            buckets["highly_reusable"].append(section)
        elif section.avg_score >= review_threshold:
            buckets["needs_review"].append(section)
        else:
            buckets["low_similarity"].append(section)
    return buckets


def spanned_pages(chunks: Iterable[Chunk]) -> Set[int]:
    pages: Set[int] = set()
    for chunk in chunks:
        pages.update(range(chunk.start_page, chunk.end_page + 1))
    return pages


def section_coverage(
    sections: Sequence[Section],
    source_page_total: int,
    target_page_total: int,
) -> SectionCoverage:
    """
    Pages covered by sections on each side, as page lists and percentages.

    Percentages are 0 when a side has no pages and never exceed 100.
    """
    source_pages: Set[int] = set()
    target_pages: Set[int] = set()
    for section in sections:
        source_pages.update(
            range(section.source_page_range.start, section.source_page_range.end + 1)
        )
        target_pages.update(
            range(section.target_page_range.start, section.target_page_range.end + 1)
        )

    def percent(covered: Set[int], total: int) -> float:
        if total <= 0:
            return 0.0
        return min(100.0, len(covered) / total * 100)

    return SectionCoverage(
        source_pages=sorted(source_pages),
        target_pages=sorted(target_pages),
        source_page_total=source_page_total,
        target_page_total=target_page_total,
        source_percent=percent(source_pages, source_page_total),
        target_percent=percent(target_pages, target_page_total),
    )


def summarize_sections(
    sections: Sequence[Section],
    reusable_threshold: float = 0.85,
    review_threshold: float = 0.65,
) -> str:
    if not sections:
        return "No reusable sections found."
    buckets = classify_sections(sections, reusable_threshold, review_threshold)
    parts = []
    if buckets["highly_reusable"]:
        parts.append(f"{len(buckets['highly_reusable'])} highly reusable")
    if buckets["needs_review"]:
        parts.append(f"{len(buckets['needs_review'])} needing review")
    if buckets["low_similarity"]:
        parts.append(f"{len(buckets['low_similarity'])} low similarity")
    best = max(sections, key=lambda s: (s.avg_score, s.source_tokens))
    noun = "section" if len(sections) == 1 else "sections"
    return (
        f"{len(sections)} {noun} ({', '.join(parts)}); strongest: source pages "
        f"{best.source_page_range} -> target pages {best.target_page_range} "
        f"at {best.avg_score:.0%}."
    )
