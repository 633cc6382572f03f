# Vector maths on chunk embeddings (numpy)

from typing import Optional, Sequence

import numpy as np

from .types import Chunk

UNIT_TOLERANCE = 1e-3


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """L2-normalise each row; zero rows stay zero."""
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


def normalize(vector: Sequence[float]) -> np.ndarray:
    return normalize_rows(np.asarray(vector, dtype=np.float64))[0]


def embedding_matrix(chunks: Sequence[Chunk]) -> np.ndarray:
    if not chunks:
        return np.zeros((0, 0), dtype=np.float64)
    return normalize_rows(np.vstack([c.embedding for c in chunks]))


def cosine_matrix(source: Sequence[Chunk], target: Sequence[Chunk]) -> np.ndarray:
    """
    Pairwise cosine similarity ``S = A @ B.T``, clipped to [0, 1].

    Raises:
        ValueError: If the two chunk sets have different dimensionality
    """
    if not source or not target:
        return np.zeros((len(source), len(target)), dtype=np.float64)
    a = embedding_matrix(source)
    b = embedding_matrix(target)
    if a.shape[1] != b.shape[1]:
        raise ValueError(
            f"Embedding dimension mismatch: source {a.shape[1]}-D, target {b.shape[1]}-D"
        )
    return np.clip(a @ b.T, 0.0, 1.0)


def centroid_of(chunks: Sequence[Chunk]) -> Optional[np.ndarray]:
    """Normalised mean of the chunks' normalised embeddings."""
    if not chunks:
        return None
    mean = embedding_matrix(chunks).mean(axis=0)
    if not np.any(mean):
        return None
    return normalize(mean)


def is_unit_length(vector: Sequence[float], tolerance: float = UNIT_TOLERANCE) -> bool:
    return abs(float(np.linalg.norm(np.asarray(vector, dtype=np.float64))) - 1.0) <= tolerance
