"""Directional content-reuse search: centroid retrieval, chunk prefilter, adaptive scoring."""
