# Chunk-set hygiene applied by every ChunkStore implementation

import math
from typing import Iterable, List, Optional, Sequence

from .types import Chunk, PageRange


def estimate_token_count(text: str) -> int:
    """Roughly four characters per token; never below one."""
    return max(1, math.ceil(len(text or "") / 4))


def is_excluded(chunk: Chunk, exclude_ranges: Sequence[PageRange]) -> bool:
    pages = chunk.page_range
    return any(pages.overlaps(r) for r in exclude_ranges)


def select_chunks(
    chunks: Iterable[Chunk],
    exclude_ranges: Sequence[PageRange] = (),
    page_range: Optional[PageRange] = None,
) -> List[Chunk]:
    """
    Order by chunk index, keep the first chunk per index, then apply page scoping.

    A chunk is dropped when it touches any excluded page; with ``page_range``
    only chunks overlapping that range are kept.
    """
    by_index = {}
    for chunk in chunks:
        if chunk.chunk_index not in by_index:
            by_index[chunk.chunk_index] = chunk

    selected = []
    for index in sorted(by_index):
        chunk = by_index[index]
        if exclude_ranges and is_excluded(chunk, exclude_ranges):
            continue
        if page_range is not None and not chunk.page_range.overlaps(page_range):
            continue
        selected.append(chunk)
    return selected
