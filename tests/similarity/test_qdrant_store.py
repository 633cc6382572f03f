from types import SimpleNamespace

import pytest

from docreuse.shared.config import VectorIndexConfig
from docreuse.similarity.clients import CHUNK_INDEX, ChunkStore, VectorIndex
from docreuse.similarity.errors import NotFoundError, UpstreamServiceError
from docreuse.similarity.qdrant_store import (
    QdrantChunkStore,
    QdrantVectorIndex,
    point_id,
)
from docreuse.similarity.types import PageRange


class StubQdrantClient:
    """Records calls and replays canned points."""

    def __init__(self, points=None, pages=None, error=None):
        self.points = points or []
        self.pages = pages or []
        self.error = error
        self.calls = []

    async def query_points(self, **kwargs):
        self.calls.append(("query_points", kwargs))
        if self.error:
            raise self.error
        return SimpleNamespace(points=self.points)

    async def retrieve(self, **kwargs):
        self.calls.append(("retrieve", kwargs))
        if self.error:
            raise self.error
        wanted = set(kwargs["ids"])
        return [p for p in self.points if str(p.id) in wanted]

    async def scroll(self, **kwargs):
        self.calls.append(("scroll", kwargs))
        if self.error:
            raise self.error
        index = 0 if kwargs["offset"] is None else kwargs["offset"]
        next_offset = index + 1 if index + 1 < len(self.pages) else None
        return self.pages[index], next_offset


def _point(pid, payload, vector=None, score=0.0):
    return SimpleNamespace(id=pid, payload=payload, vector=vector, score=score)


CONFIG = VectorIndexConfig()


def test_adapters_satisfy_protocols():
    client = StubQdrantClient()
    assert isinstance(QdrantVectorIndex(client, CONFIG), VectorIndex)
    assert isinstance(QdrantChunkStore(client, CONFIG), ChunkStore)


@pytest.mark.asyncio
async def test_query_translates_filter_and_maps_hits():
    client = StubQdrantClient(
        points=[
            _point("p1", {"document_id": "d1", "chunk_index": 3, "text": "secret"}, score=0.91),
            _point("p2", {"chunk_index": 1}, score=0.5),
        ]
    )
    index = QdrantVectorIndex(client, CONFIG)

    hits = await index.query(
        [0.1, 0.2], 5, {"owner_id": {"$eq": "o1"}}, index=CHUNK_INDEX
    )

    assert [(h.id, h.score) for h in hits] == [("d1:3", 0.91)]
    assert "text" not in hits[0].metadata
    _, kwargs = client.calls[0]
    assert kwargs["collection_name"] == CONFIG.chunk_collection
    assert kwargs["limit"] == 5
    assert kwargs["query_filter"].must[0].key == "owner_id"


@pytest.mark.asyncio
async def test_query_failure_is_upstream_error():
    index = QdrantVectorIndex(StubQdrantClient(error=ConnectionError("refused")), CONFIG)
    with pytest.raises(UpstreamServiceError):
        await index.query([0.1], 3)


@pytest.mark.asyncio
async def test_get_document_reads_centroid_point():
    client = StubQdrantClient(
        points=[
            _point(
                point_id("d1"),
                {
                    "document_id": "d1",
                    "owner_id": "o1",
                    "title": "Manual",
                    "uploaded_at": "2026-01-02T03:04:05Z",
                    "total_tokens": 1200,
                    "effective_chunk_count": 12,
                },
                vector=[0.6, 0.8],
            )
        ]
    )
    document = await QdrantChunkStore(client, CONFIG).get_document("d1")

    assert document.title == "Manual"
    assert document.owner_id == "o1"
    assert document.total_tokens == 1200
    assert document.uploaded_at.year == 2026 and document.uploaded_at.tzinfo is not None
    assert document.centroid.tolist() == pytest.approx([0.6, 0.8])


@pytest.mark.asyncio
async def test_get_document_missing_is_not_found():
    with pytest.raises(NotFoundError):
        await QdrantChunkStore(StubQdrantClient(), CONFIG).get_document("ghost")


@pytest.mark.asyncio
async def test_get_chunks_pages_through_scroll_and_scopes():
    def chunk(index, page, text="abcdefgh", tokens=None):
        payload = {"chunk_index": index, "start_page": page, "end_page": page, "text": text}
        if tokens is not None:
            payload["token_count"] = tokens
        return _point(f"c{index}", payload, vector=[1.0, 0.0])

    client = StubQdrantClient(
        pages=[
            [chunk(2, 3, tokens=50), chunk(0, 1, tokens=40)],
            [chunk(1, 2), chunk(0, 1, tokens=99), _point("bad", {"start_page": 1}, vector=[1.0])],
        ]
    )
    store = QdrantChunkStore(client, CONFIG)

    chunks = await store.get_chunks("d1")
    assert [c.chunk_index for c in chunks] == [0, 1, 2]
    assert chunks[0].token_count == 40
    assert chunks[1].token_count == 2
    assert len([c for c in client.calls if c[0] == "scroll"]) == 2

    scoped = await store.get_chunks("d1", exclude_ranges=[PageRange(1, 1)])
    assert [c.chunk_index for c in scoped] == [1, 2]


@pytest.mark.asyncio
async def test_fetch_chunk_vectors_maps_point_ids_back():
    client = StubQdrantClient(
        points=[
            _point(point_id("d1:0"), {"document_id": "d1", "text": "t"}, vector={"": [0.1, 0.2]}),
            _point(point_id("d1:1"), {"document_id": "d1"}, vector=None),
        ]
    )
    vectors = await QdrantVectorIndex(client, CONFIG).fetch_chunk_vectors(["d1:0", "d1:1"])

    assert [(v.id, v.values) for v in vectors] == [("d1:0", [0.1, 0.2])]
    assert "text" not in vectors[0].metadata
    assert await QdrantVectorIndex(client, CONFIG).fetch_chunk_vectors([]) == []
