import pytest

from docreuse.shared.config import (
    Config,
    OverlapFormula,
    Stage2Config,
    get_config,
    load_config,
    reload_config,
    validate_config_at_startup,
    Settings,
)


def test_development_yaml_loads_search_defaults(monkeypatch):
    monkeypatch.setenv("ENV", "development")
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    reload_config()
    cfg = get_config()
    assert cfg.search.stage0.top_k == 600
    assert cfg.search.stage1.top_k == 250
    assert cfg.search.stage2.fallback_threshold == pytest.approx(0.8)
    assert cfg.search.stage2.overlap_formula == OverlapFormula.MIN
    assert cfg.search.stage2.parallel_workers is None


def test_reload_config_respects_config_path_and_log_level(monkeypatch, tmp_path):
    path = tmp_path / "custom.yaml"
    path.write_text(
        "search:\n"
        "  stage2:\n"
        "    parallel_workers: 1\n"
        "    overlap_formula: harmonic\n"
    )
    monkeypatch.setenv("CONFIG_PATH", str(path))
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    cfg, _ = reload_config()
    assert cfg.search.stage2.parallel_workers == 1
    assert cfg.search.stage2.overlap_formula == OverlapFormula.HARMONIC
    assert cfg.app.log_level == "DEBUG"

    # Clean up env for downstream tests
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    reload_config()


def test_explicit_missing_config_path_raises(monkeypatch, tmp_path):
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "nope.yaml"))
    with pytest.raises(FileNotFoundError):
        load_config()


def test_missing_environment_file_falls_back_to_defaults(monkeypatch):
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.setenv("ENV", "no-such-environment")
    cfg, settings = load_config()
    assert settings.env == "no-such-environment"
    assert cfg.search.stage2.max_results == 30


def test_review_threshold_cannot_exceed_reusable_threshold():
    with pytest.raises(ValueError):
        Stage2Config(reusable_threshold=0.7, review_threshold=0.9)


def test_startup_validation_rejects_inverted_worker_bounds():
    cfg = Config(search={"stage2": {"min_parallel_workers": 10, "max_parallel_workers": 2}})
    with pytest.raises(ValueError, match="min_parallel_workers"):
        validate_config_at_startup(cfg, Settings())


def test_startup_validation_rejects_shared_collection():
    cfg = Config(
        vector_index={"centroid_collection": "docs", "chunk_collection": "docs"}
    )
    with pytest.raises(ValueError, match="must differ"):
        validate_config_at_startup(cfg, Settings())


def test_constrained_profile_limits_workers_and_pools(monkeypatch):
    monkeypatch.setenv("ENV", "constrained")
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    cfg, settings = load_config()
    assert settings.env == "constrained"
    assert cfg.search.stage2.parallel_workers == 1
    assert cfg.search.stage1.max_concurrency == 2
    assert cfg.concurrency.global_limit == 4
    assert cfg.concurrency.per_owner_limit == 2
    # Unlisted values keep their defaults
    assert cfg.search.stage0.top_k == 600
