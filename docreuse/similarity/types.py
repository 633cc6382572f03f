"""
Transient objects of the similarity pipeline.

Everything here is rebuilt per request and never cached across requests:
chunks and embeddings may change between searches.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import PartialFailure


@dataclass(frozen=True, order=True)
class PageRange:
    """Inclusive page range, rendered as ``"12"`` or ``"12-20"``."""

    start: int
    end: int

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Invalid page range {self.start}-{self.end}")

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"

    @classmethod
    def parse(cls, value: Any) -> "PageRange":
        """Accept ``"12"``, ``"12-20"``, ``[12, 20]`` or a mapping with start/end."""
        if isinstance(value, PageRange):
            return value
        try:
            return cls._parse(value)
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Cannot parse page range from {value!r}") from e

    @classmethod
    def _parse(cls, value: Any) -> "PageRange":
        if isinstance(value, dict):
            start = int(value["start"])
            return cls(start, int(value.get("end", start)))
        if isinstance(value, (list, tuple)) and len(value) == 2:
            return cls(int(value[0]), int(value[1]))
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(value, value)
        if isinstance(value, str):
            text = value.strip()
            if "-" in text:
                start, _, end = text.partition("-")
                return cls(int(start), int(end))
            return cls(int(text), int(text))
        raise TypeError(type(value).__name__)

    def overlaps(self, other: "PageRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    def union(self, other: "PageRange") -> "PageRange":
        return PageRange(min(self.start, other.start), max(self.end, other.end))

    @property
    def pages(self) -> int:
        return self.end - self.start + 1


@dataclass
class DocumentRecord:
    """Document-level data owned by the ingestion subsystem (read-only here)."""

    id: str
    centroid: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    total_tokens: int = 0
    effective_chunk_count: int = 0
    title: str = ""
    filename: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    page_count: Optional[int] = None
    owner_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "filename": self.filename,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
            "page_count": self.page_count,
            "total_tokens": self.total_tokens,
        }


@dataclass
class DocumentTotals:
    total_tokens: int
    effective_chunk_count: int
    centroid: Optional[np.ndarray] = field(default=None, repr=False)


@dataclass(frozen=True)
class Chunk:
    document_id: str
    chunk_index: int
    text: str
    token_count: int
    start_page: int
    end_page: int
    embedding: np.ndarray = field(repr=False, compare=False)

    @property
    def chunk_id(self) -> str:
        return f"{self.document_id}:{self.chunk_index}"

    @property
    def page_range(self) -> PageRange:
        return PageRange(self.start_page, self.end_page)


@dataclass
class VectorHit:
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChunkVector:
    id: str
    values: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Candidate:
    """A document that survived Stage 0 (and possibly Stage 1)."""

    document_id: str
    stage0_score: float
    stage1_score: Optional[float] = None
    stage1_hits: int = 0
    # (source chunk index, target chunk index, ANN score) from Stage 1
    seed_pairs: List[Tuple[int, int, float]] = field(default_factory=list)


@dataclass
class Match:
    source_chunk_index: int
    target_chunk_index: int
    similarity: float
    source_tokens: int
    target_tokens: int
    source_pages: PageRange
    target_pages: PageRange
    origin: str = "bidirectional"  # bidirectional, seed, recovered

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_chunk_index": self.source_chunk_index,
            "target_chunk_index": self.target_chunk_index,
            "similarity": self.similarity,
            "source_pages": str(self.source_pages),
            "target_pages": str(self.target_pages),
            "origin": self.origin,
        }


@dataclass
class Section:
    source_page_range: PageRange
    target_page_range: PageRange
    avg_score: float
    chunk_count: int
    source_tokens: int
    target_tokens: int
    reusable: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_page_range": str(self.source_page_range),
            "target_page_range": str(self.target_page_range),
            "avg_score": self.avg_score,
            "chunk_count": self.chunk_count,
            "source_tokens": self.source_tokens,
            "target_tokens": self.target_tokens,
            "reusable": self.reusable,
        }


@dataclass
class SectionCoverage:
    """Pages touched by sections on each side, against each side's in-scope page count."""

    source_pages: List[int]
    target_pages: List[int]
    source_page_total: int
    target_page_total: int
    source_percent: float
    target_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_pages": list(self.source_pages),
            "target_pages": list(self.target_pages),
            "source_page_total": self.source_page_total,
            "target_page_total": self.target_page_total,
            "source_percent": round(self.source_percent, 2),
            "target_percent": round(self.target_percent, 2),
        }


@dataclass
class SimilarityScores:
    source_score: float
    target_score: float
    overlap_score: float
    length_ratio: float
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_score": self.source_score,
            "target_score": self.target_score,
            "overlap_score": self.overlap_score,
            "length_ratio": self.length_ratio,
            "explanation": self.explanation,
        }


@dataclass
class SimilarityResult:
    document: DocumentRecord
    scores: SimilarityScores
    matched_source_tokens: int
    matched_target_tokens: int
    source_total_tokens: int
    target_total_tokens: int
    matched_chunks: List[Match] = field(default_factory=list)
    sections: List[Section] = field(default_factory=list)
    coverage: Optional[SectionCoverage] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document": self.document.to_dict(),
            "scores": self.scores.to_dict(),
            "matched_source_tokens": self.matched_source_tokens,
            "matched_target_tokens": self.matched_target_tokens,
            "source_total_tokens": self.source_total_tokens,
            "target_total_tokens": self.target_total_tokens,
            "matched_chunk_count": len(self.matched_chunks),
            "sections": [s.to_dict() for s in self.sections],
            "coverage": self.coverage.to_dict() if self.coverage else None,
        }


@dataclass
class StageCounts:
    stage0_candidates: int = 0
    stage1_candidates: int = 0
    final_results: int = 0


@dataclass
class StageTimings:
    stage0_ms: float = 0.0
    stage1_ms: float = 0.0
    stage2_ms: float = 0.0
    total_ms: float = 0.0


@dataclass
class Diagnostics:
    partial_failures: List[PartialFailure] = field(default_factory=list)
    timed_out_candidates: List[str] = field(default_factory=list)
    insufficient_evidence: List[str] = field(default_factory=list)
    similarity_histogram: List[int] = field(default_factory=list)
    similarity_stats: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partial_failures": [f.to_dict() for f in self.partial_failures],
            "timed_out_candidates": list(self.timed_out_candidates),
            "insufficient_evidence": list(self.insufficient_evidence),
            "similarity_histogram": list(self.similarity_histogram),
            "similarity_stats": dict(self.similarity_stats),
        }


@dataclass
class SearchResponse:
    results: List[SimilarityResult]
    stages: StageCounts
    timing: StageTimings
    stage1_status: str  # completed, skipped, timed_out
    diagnostics: Optional[Diagnostics] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "results": [r.to_dict() for r in self.results],
            "stages": {
                "stage0_candidates": self.stages.stage0_candidates,
                "stage1_candidates": self.stages.stage1_candidates,
                "final_results": self.stages.final_results,
            },
            "timing": {
                "stage0_ms": self.timing.stage0_ms,
                "stage1_ms": self.timing.stage1_ms,
                "stage2_ms": self.timing.stage2_ms,
                "total_ms": self.timing.total_ms,
            },
            "stage1_status": self.stage1_status,
        }
        if self.diagnostics is not None:
            payload["diagnostics"] = self.diagnostics.to_dict()
        return payload


@dataclass
class ValidationReport:
    document_id: str
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    remediation: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "document_id": self.document_id,
            "valid": self.valid,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "remediation": list(self.remediation),
        }
