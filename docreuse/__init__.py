"""Directional content-reuse search over precomputed chunk embeddings."""

__version__ = "0.1.0"
