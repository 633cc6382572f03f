"""
Request options for a similarity search.

``SearchOptions`` enumerates every recognised option; unknown keys are
rejected. ``resolve()`` merges it with the YAML search defaults into the
``SearchParameters`` struct the stages consume. Validation happens once, at the
orchestrator boundary.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic import validator

from docreuse.shared.config import OverlapFormula, SearchConfig

from .errors import ValidationError
from .filters import CanonicalFilter, normalize_filters
from .types import PageRange

# Key in exclude_ranges applied to every document
ALL_DOCUMENTS = "*"


class SearchOptions(BaseModel):
    source_document_id: Optional[str] = None
    owner_id: str = Field(..., min_length=1)
    stage0_top_k: Optional[int] = Field(default=None, gt=0)
    stage0_filters: Dict[str, Any] = Field(default_factory=dict)
    target_document_ids: Optional[List[str]] = None
    stage1_top_k: Optional[int] = Field(default=None, gt=0)
    stage1_enabled: Optional[bool] = None
    stage1_neighbors_per_chunk: Optional[int] = Field(default=None, gt=0)
    stage2_parallel_workers: Optional[int] = Field(default=None, gt=0)
    stage2_fallback_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_results: Optional[int] = Field(default=None, gt=0)
    source_page_range: Optional[PageRange] = None
    exclude_ranges: Dict[str, List[PageRange]] = Field(default_factory=dict)
    include_diagnostics: bool = False

    class Config:
        extra = "forbid"

    @validator("stage0_filters")
    def validate_filters(cls, v):
        # Raises on unknown operators; the canonical form is rebuilt in resolve()
        normalize_filters(v)
        return v

    @validator("target_document_ids")
    def dedupe_targets(cls, v):
        if v is None:
            return v
        seen = []
        for doc_id in v:
            doc_id = doc_id.strip()
            if doc_id and doc_id not in seen:
                seen.append(doc_id)
        return seen

    @validator("source_page_range", pre=True)
    def parse_source_page_range(cls, v):
        if v is None or v == "":
            return None
        return PageRange.parse(v)

    @validator("exclude_ranges", pre=True)
    def parse_exclude_ranges(cls, v):
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("exclude_ranges must map document ids (or '*') to ranges")
        parsed = {}
        for doc_id, ranges in v.items():
            if isinstance(ranges, (str, int, dict, PageRange)):
                ranges = [ranges]
            elif not isinstance(ranges, (list, tuple)):
                raise ValueError(
                    f"exclude_ranges[{doc_id!r}] must be a page range or a list of ranges"
                )
            parsed[str(doc_id)] = [PageRange.parse(r) for r in ranges]
        return parsed


@dataclass
class SearchParameters:
    """Fully resolved options for one search; every value is explicit."""

    source_document_id: str
    owner_id: str
    stage0_top_k: int
    stage0_oversample: int
    stage0_filters: CanonicalFilter
    target_document_ids: Optional[List[str]]
    stage1_enabled: bool
    stage1_top_k: int
    stage1_neighbors_per_chunk: int
    stage1_max_concurrency: int
    stage2_parallel_workers: Optional[int]
    stage2_fallback_threshold: float
    max_results: int
    overlap_formula: OverlapFormula
    source_page_range: Optional[PageRange] = None
    exclude_ranges: Dict[str, List[PageRange]] = field(default_factory=dict)
    include_diagnostics: bool = False

    @property
    def constrained(self) -> bool:
        return self.target_document_ids is not None

    def exclusions_for(self, document_id: str) -> List[PageRange]:
        """Exclusion ranges for one document: its own plus the '*' ranges."""
        ranges = list(self.exclude_ranges.get(ALL_DOCUMENTS, []))
        ranges.extend(self.exclude_ranges.get(document_id, []))
        return ranges

    def stage2_workers_for(
        self, candidate_count: int, minimum: int, maximum: int, per_worker: int
    ) -> int:
        """Explicit worker count, or one worker per ``per_worker`` candidates, clamped."""
        if self.stage2_parallel_workers is not None:
            return self.stage2_parallel_workers
        wanted = math.ceil(candidate_count / per_worker) if candidate_count else 1
        return max(minimum, min(maximum, wanted))


def parse_options(
    source_id: str, options: Union[SearchOptions, Dict[str, Any], None]
) -> SearchOptions:
    """
    Validate raw options.

    Raises:
        ValidationError: On unknown keys, out-of-range values or a conflicting
            source document id
    """
    if not source_id or not str(source_id).strip():
        raise ValidationError(
            "Source document id is required",
            remediation=["Provide the id of a processed source document."],
        )
    try:
        if isinstance(options, SearchOptions):
            parsed = options
        else:
            parsed = SearchOptions(**(options or {}))
    except PydanticValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        raise ValidationError(
            "Invalid search options: " + "; ".join(problems),
            document_id=source_id,
            remediation=["Correct the listed options and retry."],
            cause=e,
        )

    if parsed.source_document_id and parsed.source_document_id != source_id:
        raise ValidationError(
            "source_document_id in options does not match the requested document",
            document_id=source_id,
        )
    return parsed


def resolve(
    source_id: str, options: SearchOptions, config: SearchConfig
) -> SearchParameters:
    """Merge validated options with configured defaults."""
    stage0, stage1, stage2 = config.stage0, config.stage1, config.stage2

    return SearchParameters(
        source_document_id=source_id,
        owner_id=options.owner_id,
        stage0_top_k=options.stage0_top_k or stage0.top_k,
        stage0_oversample=stage0.oversample,
        stage0_filters=normalize_filters(options.stage0_filters),
        target_document_ids=options.target_document_ids,
        stage1_enabled=(
            stage1.enabled if options.stage1_enabled is None else options.stage1_enabled
        ),
        stage1_top_k=options.stage1_top_k or stage1.top_k,
        stage1_neighbors_per_chunk=(
            options.stage1_neighbors_per_chunk or stage1.neighbors_per_chunk
        ),
        stage1_max_concurrency=stage1.max_concurrency,
        stage2_parallel_workers=(
            options.stage2_parallel_workers or stage2.parallel_workers
        ),
        stage2_fallback_threshold=(
            stage2.fallback_threshold
            if options.stage2_fallback_threshold is None
            else options.stage2_fallback_threshold
        ),
        max_results=options.max_results or stage2.max_results,
        overlap_formula=stage2.overlap_formula,
        source_page_range=options.source_page_range,
        exclude_ranges=dict(options.exclude_ranges),
        include_diagnostics=options.include_diagnostics,
    )
