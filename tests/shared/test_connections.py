import pytest

from docreuse.shared.config import Config, Settings
from docreuse.shared.connections import ConnectionManager


def _manager(**concurrency):
    config = Config(concurrency=concurrency) if concurrency else Config()
    return ConnectionManager(settings=Settings(), config=config)


def test_limiter_follows_concurrency_config():
    manager = _manager(global_limit=3, per_owner_limit=1)
    limiter = manager.get_limiter()
    assert limiter.global_limiter.limit == 3
    assert limiter.per_key_limit == 1
    assert manager.get_limiter() is limiter


@pytest.mark.asyncio
async def test_close_all_resets_resources():
    manager = _manager()
    client = manager.get_qdrant_client()
    assert manager.get_qdrant_client() is client

    await manager.close_all()

    assert manager._qdrant_client is None
    assert manager.get_limiter() is not None
