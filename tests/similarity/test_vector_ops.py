import numpy as np
import pytest

from docreuse.similarity.chunks import estimate_token_count, select_chunks
from docreuse.similarity.histogram import similarity_histogram, similarity_stats
from docreuse.similarity.types import PageRange
from docreuse.similarity.vector_ops import (
    centroid_of,
    cosine_matrix,
    is_unit_length,
    normalize,
    normalize_rows,
)
from tests.fakes import basis, blend, make_chunks


def test_normalize_rows_leaves_zero_rows():
    rows = normalize_rows(np.array([[3.0, 4.0], [0.0, 0.0]]))
    assert rows[0] == pytest.approx([0.6, 0.8])
    assert rows[1].tolist() == [0.0, 0.0]


def test_cosine_matrix_is_clipped_to_unit_interval():
    source = make_chunks("s", [basis(0), -basis(1)])
    target = make_chunks("t", [blend(0, 5, 0.9), basis(1)])
    matrix = cosine_matrix(source, target)
    assert matrix.shape == (2, 2)
    assert matrix[0, 0] == pytest.approx(0.9)
    assert matrix[1, 1] == 0.0
    assert matrix.min() >= 0.0 and matrix.max() <= 1.0


def test_cosine_matrix_rejects_dimension_mismatch():
    source = make_chunks("s", [basis(0, dim=8)])
    target = make_chunks("t", [basis(0, dim=16)])
    with pytest.raises(ValueError, match="dimension"):
        cosine_matrix(source, target)


def test_cosine_matrix_of_empty_side_is_empty():
    assert cosine_matrix([], make_chunks("t", [basis(0)])).shape == (0, 1)


def test_centroid_is_unit_length():
    centroid = centroid_of(make_chunks("d", [basis(0), basis(1)]))
    assert is_unit_length(centroid)
    assert centroid[0] == pytest.approx(centroid[1])
    assert centroid_of([]) is None


def test_normalize_scales_to_unit_length():
    assert is_unit_length(normalize([2.0, 0.0, 0.0]))
    assert not is_unit_length([2.0, 0.0])


def test_estimate_token_count():
    assert estimate_token_count("") == 1
    assert estimate_token_count("abcd") == 1
    assert estimate_token_count("abcde") == 2


def test_select_chunks_orders_dedupes_and_scopes():
    chunks = make_chunks("d", [basis(i) for i in range(5)])
    shuffled = [chunks[3], chunks[0], chunks[4], chunks[1], chunks[2], chunks[0]]
    assert [c.chunk_index for c in select_chunks(shuffled)] == [0, 1, 2, 3, 4]

    excluded = select_chunks(chunks, exclude_ranges=[PageRange(2, 3)])
    assert [c.start_page for c in excluded] == [1, 4, 5]

    scoped = select_chunks(chunks, page_range=PageRange(4, 9))
    assert [c.start_page for c in scoped] == [4, 5]


def test_histogram_has_twenty_bins_and_counts_one_in_last():
    counts = similarity_histogram([0.0, 0.82, 0.97, 1.0])
    assert len(counts) == 20
    assert sum(counts) == 4
    assert counts[0] == 1
    assert counts[16] == 1
    assert counts[19] == 2


def test_stats_of_empty_values():
    assert similarity_stats([]) == {"count": 0}
    stats = similarity_stats([0.8, 0.9, 1.0])
    assert stats["count"] == 3
    assert stats["median"] == pytest.approx(0.9)
