import pytest

from docreuse.shared.config import SearchConfig
from docreuse.similarity.errors import ValidationError
from docreuse.similarity.options import SearchOptions, parse_options, resolve
from docreuse.similarity.types import PageRange


def test_owner_is_required():
    with pytest.raises(ValidationError) as exc_info:
        parse_options("doc-1", {})
    assert "owner_id" in str(exc_info.value)
    assert exc_info.value.status_code == 400


def test_unknown_option_is_rejected():
    with pytest.raises(ValidationError, match="stage9_top_k"):
        parse_options("doc-1", {"owner_id": "o1", "stage9_top_k": 3})


def test_out_of_range_option_is_rejected():
    with pytest.raises(ValidationError):
        parse_options("doc-1", {"owner_id": "o1", "stage2_fallback_threshold": 1.5})


def test_blank_source_id_is_rejected():
    with pytest.raises(ValidationError):
        parse_options("  ", {"owner_id": "o1"})


def test_conflicting_source_id_is_rejected():
    with pytest.raises(ValidationError, match="does not match"):
        parse_options("doc-1", {"owner_id": "o1", "source_document_id": "doc-2"})


def test_bad_filter_operator_is_a_validation_error():
    with pytest.raises(ValidationError):
        parse_options("doc-1", {"owner_id": "o1", "stage0_filters": {"x": {"$like": "a"}}})


def test_targets_are_deduplicated_in_order():
    options = SearchOptions(owner_id="o1", target_document_ids=["b", "a", "b", " ", "a"])
    assert options.target_document_ids == ["b", "a"]


def test_page_ranges_are_parsed():
    options = SearchOptions(
        owner_id="o1",
        source_page_range="3-7",
        exclude_ranges={"*": "1", "doc-2": ["10-12", [20, 21]]},
    )
    assert options.source_page_range == PageRange(3, 7)
    assert options.exclude_ranges["*"] == [PageRange(1, 1)]
    assert options.exclude_ranges["doc-2"] == [PageRange(10, 12), PageRange(20, 21)]


def test_inverted_page_range_is_rejected():
    with pytest.raises(ValidationError):
        parse_options("doc-1", {"owner_id": "o1", "source_page_range": "9-3"})


@pytest.mark.parametrize(
    "page_range",
    [{"end": 3}, [None, 3], ["a", "b"], "x-y", [1, 2, 3], 2.5, True],
)
def test_malformed_source_page_range_is_a_validation_error(page_range):
    with pytest.raises(ValidationError) as exc_info:
        parse_options("doc-1", {"owner_id": "o1", "source_page_range": page_range})
    assert "source_page_range" in exc_info.value.message


@pytest.mark.parametrize(
    "exclude_ranges",
    [{"*": None}, {"*": 3.5}, {"doc-2": [None]}, {"doc-2": [{"end": 4}]}, ["1-2"]],
)
def test_malformed_exclude_ranges_are_a_validation_error(exclude_ranges):
    with pytest.raises(ValidationError) as exc_info:
        parse_options("doc-1", {"owner_id": "o1", "exclude_ranges": exclude_ranges})
    assert "exclude_ranges" in exc_info.value.message


def test_page_range_parse_raises_value_error():
    for value in ({"end": 3}, [None, 3], object()):
        with pytest.raises(ValueError):
            PageRange.parse(value)
    assert PageRange.parse({"start": 4}) == PageRange(4, 4)


def test_resolve_falls_back_to_config_defaults():
    params = resolve("doc-1", SearchOptions(owner_id="o1"), SearchConfig())
    assert params.stage0_top_k == 600
    assert params.stage1_top_k == 250
    assert params.stage1_enabled is True
    assert params.stage2_fallback_threshold == pytest.approx(0.8)
    assert params.max_results == 30
    assert not params.constrained


def test_resolve_prefers_request_options():
    options = SearchOptions(
        owner_id="o1",
        stage0_top_k=10,
        stage1_enabled=False,
        stage2_fallback_threshold=0.0,
        max_results=3,
        target_document_ids=["x"],
        stage0_filters={"lang": "en"},
    )
    params = resolve("doc-1", options, SearchConfig())
    assert params.stage0_top_k == 10
    assert params.stage1_enabled is False
    assert params.stage2_fallback_threshold == 0.0
    assert params.max_results == 3
    assert params.constrained
    assert params.stage0_filters == {"lang": {"$eq": "en"}}


def test_exclusions_combine_wildcard_and_document_ranges():
    options = SearchOptions(
        owner_id="o1", exclude_ranges={"*": ["1"], "doc-2": ["5-6"]}
    )
    params = resolve("doc-1", options, SearchConfig())
    assert params.exclusions_for("doc-2") == [PageRange(1, 1), PageRange(5, 6)]
    assert params.exclusions_for("doc-3") == [PageRange(1, 1)]


@pytest.mark.parametrize(
    "candidates,expected",
    [(0, 4), (8, 4), (100, 13), (1000, 28)],
)
def test_worker_count_scales_with_candidates(candidates, expected):
    params = resolve("doc-1", SearchOptions(owner_id="o1"), SearchConfig())
    assert params.stage2_workers_for(candidates, 4, 28, 8) == expected


def test_explicit_worker_count_wins():
    params = resolve(
        "doc-1", SearchOptions(owner_id="o1", stage2_parallel_workers=2), SearchConfig()
    )
    assert params.stage2_workers_for(1000, 4, 28, 8) == 2
