# Shared fixtures: in-memory corpus, fake collaborators and a fast-retry config

import os
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Set test environment
os.environ["ENV"] = "development"
os.environ.pop("CONFIG_PATH", None)

from docreuse.shared.concurrency import ConcurrencyLimiter, ScopedLimiter  # noqa: E402
from docreuse.shared.config import Config, ResilienceConfig  # noqa: E402
from docreuse.similarity.orchestrator import SimilarityPipeline  # noqa: E402
from tests.fakes import Corpus, FakeChunkStore, FakeVectorIndex  # noqa: E402


@pytest.fixture
def config() -> Config:
    """Default config with instant retries"""
    return Config(
        resilience=ResilienceConfig(
            max_retries=3,
            initial_backoff_seconds=0.0,
            max_backoff_seconds=0.0,
            jitter=0.0,
        )
    )


@pytest.fixture
def corpus() -> Corpus:
    return Corpus()


@pytest.fixture
def vector_index(corpus) -> FakeVectorIndex:
    return FakeVectorIndex(corpus)


@pytest.fixture
def chunk_store(corpus) -> FakeChunkStore:
    return FakeChunkStore(corpus)


@pytest.fixture
def limiter() -> ScopedLimiter:
    return ScopedLimiter(ConcurrencyLimiter(16), per_key_limit=0)


@pytest.fixture
def pipeline(vector_index, chunk_store, limiter, config) -> SimilarityPipeline:
    return SimilarityPipeline(vector_index, chunk_store, limiter, config)
