# Distribution summaries of retained match similarities for diagnostics

from typing import Dict, List, Sequence

import numpy as np

HISTOGRAM_BINS = 20


def similarity_histogram(values: Sequence[float], bins: int = HISTOGRAM_BINS) -> List[int]:
    """Counts over ``bins`` equal-width bins spanning [0, 1]; 1.0 lands in the last bin."""
    if not len(values):
        return [0] * bins
    counts, _ = np.histogram(np.clip(values, 0.0, 1.0), bins=bins, range=(0.0, 1.0))
    return [int(c) for c in counts]


def similarity_stats(values: Sequence[float]) -> Dict[str, float]:
    if not len(values):
        return {"count": 0}
    arr = np.asarray(values, dtype=np.float64)
    return {
        "count": int(arr.size),
        "min": float(arr.min()),
        "max": float(arr.max()),
        "mean": float(arr.mean()),
        "median": float(np.median(arr)),
        "p95": float(np.percentile(arr, 95)),
    }
