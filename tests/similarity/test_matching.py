import numpy as np
import pytest

from docreuse.similarity.core.matching import (
    MatchingParams,
    match_chunks,
    non_max_suppression,
    propose_bidirectional,
)
from docreuse.similarity.vector_ops import cosine_matrix
from tests.fakes import basis, blend, make_chunks


def _match(source, target, seeds=(), **overrides):
    params = MatchingParams(**overrides)
    return match_chunks(cosine_matrix(source, target), source, target, params, seeds)


def _crossed_pair():
    """Second source/target chunks only pair with each other once the first pair is taken."""
    source = make_chunks("s", [basis(0), blend(0, 1, 0.95)])
    target = make_chunks("t", [basis(0), blend(0, 2, 0.85)])
    return source, target


def test_identical_documents_match_one_to_one():
    vectors = [basis(i) for i in range(4)]
    matches = _match(make_chunks("s", vectors), make_chunks("t", vectors))
    assert [(m.source_chunk_index, m.target_chunk_index) for m in matches] == [
        (0, 0),
        (1, 1),
        (2, 2),
        (3, 3),
    ]
    assert all(m.similarity == pytest.approx(1.0) for m in matches)


def test_two_sources_competing_for_one_target_keep_only_the_best():
    source = make_chunks("s", [blend(0, 10, 0.9), blend(0, 11, 0.95)])
    target = make_chunks("t", [basis(0)])
    matches = _match(source, target)
    assert len(matches) == 1
    assert matches[0].source_chunk_index == 1
    assert matches[0].similarity == pytest.approx(0.95)


def test_pairs_below_threshold_are_dropped():
    source = make_chunks("s", [basis(0)])
    target = make_chunks("t", [blend(0, 5, 0.7)])
    assert _match(source, target) == []
    assert len(_match(source, target, fallback_threshold=0.6)) == 1


def test_unmatched_pair_is_recovered_reciprocally():
    source, target = _crossed_pair()
    matches = _match(source, target)
    assert [(m.source_chunk_index, m.target_chunk_index, m.origin) for m in matches] == [
        (0, 0, "bidirectional"),
        (1, 1, "recovered"),
    ]
    assert matches[1].similarity == pytest.approx(0.95 * 0.85)


def test_recovery_can_be_disabled():
    source, target = _crossed_pair()
    assert len(_match(source, target, recovery_enabled=False)) == 1


def test_recovery_rejects_very_different_lengths():
    source = make_chunks("s", [basis(0), blend(0, 1, 0.95)], texts=["a" * 400, "a" * 400])
    target = make_chunks("t", [basis(0), blend(0, 2, 0.85)], texts=["a" * 400, "a" * 100])
    assert len(_match(source, target)) == 1


def test_seed_pairs_feed_the_suppression_step():
    source, target = _crossed_pair()
    matches = _match(source, target, seeds=[(1, 1, 0.9)], recovery_enabled=False)
    assert [(m.source_chunk_index, m.target_chunk_index, m.origin) for m in matches] == [
        (0, 0, "bidirectional"),
        (1, 1, "seed"),
    ]


def test_out_of_scope_seeds_are_ignored():
    source, target = _crossed_pair()
    matches = _match(source, target, seeds=[(7, 0, 0.99), (0, 9, 0.99)], recovery_enabled=False)
    assert len(matches) == 1


def test_near_tie_prefers_closer_page():
    source = make_chunks("s", [basis(0)], pages=[5])
    target = make_chunks("t", [basis(0), blend(0, 3, 0.9999)], pages=[1, 5])
    matrix = cosine_matrix(source, target)
    proposals = propose_bidirectional(matrix, source, target, tolerance=1e-3)
    # Row proposal comes first
    assert proposals[0][:2] == (0, 1)


def test_suppression_orders_by_similarity_then_position():
    proposals = [
        (1, 0, 0.9, "bidirectional"),
        (0, 0, 0.9, "bidirectional"),
        (0, 1, 0.95, "seed"),
        (0, 1, 0.95, "bidirectional"),
    ]
    accepted = non_max_suppression(proposals)
    assert accepted == [(0, 1, 0.95, "bidirectional"), (1, 0, 0.9, "bidirectional")]


def test_matches_never_share_a_chunk():
    rng = np.random.default_rng(7)
    source = make_chunks("s", np.abs(rng.normal(size=(30, 16))))
    target = make_chunks("t", np.abs(rng.normal(size=(25, 16))))
    matches = _match(source, target, fallback_threshold=0.0)
    sources = [m.source_chunk_index for m in matches]
    targets = [m.target_chunk_index for m in matches]
    assert len(set(sources)) == len(sources)
    assert len(set(targets)) == len(targets)
    assert sources == sorted(sources)
    assert matches
