# In-memory collaborators for pipeline tests (no Qdrant needed)

import asyncio
import math
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from docreuse.similarity.chunks import select_chunks
from docreuse.similarity.clients import CENTROID_INDEX, CHUNK_INDEX
from docreuse.similarity.errors import NotFoundError, UpstreamServiceError
from docreuse.similarity.types import (
    Chunk,
    ChunkVector,
    DocumentRecord,
    DocumentTotals,
    PageRange,
    VectorHit,
)
from docreuse.similarity.vector_ops import centroid_of, normalize

DIM = 128


def basis(k: int, dim: int = DIM) -> np.ndarray:
    v = np.zeros(dim)
    v[k] = 1.0
    return v


def blend(k: int, noise: int, similarity: float, dim: int = DIM) -> np.ndarray:
    """Unit vector with cosine ``similarity`` to ``basis(k)``."""
    v = similarity * basis(k, dim)
    v[noise] = math.sqrt(max(0.0, 1.0 - similarity**2))
    return v


def make_chunks(
    document_id: str,
    vectors: Sequence[np.ndarray],
    tokens: int = 100,
    pages: Optional[Sequence[int]] = None,
    texts: Optional[Sequence[str]] = None,
) -> List[Chunk]:
    chunks = []
    for i, vector in enumerate(vectors):
        page = pages[i] if pages is not None else i + 1
        chunks.append(
            Chunk(
                document_id=document_id,
                chunk_index=i,
                text=texts[i] if texts is not None else "x" * (tokens * 4),
                token_count=tokens,
                start_page=page,
                end_page=page,
                embedding=np.asarray(vector, dtype=np.float64),
            )
        )
    return chunks


def matches_filter(payload: Dict[str, Any], canonical: Optional[Dict[str, Dict[str, Any]]]) -> bool:
    for key, ops in (canonical or {}).items():
        value = payload.get(key)
        for op, operand in ops.items():
            if op == "$eq" and value != operand:
                return False
            if op == "$ne" and value == operand:
                return False
            if op == "$in" and value not in operand:
                return False
            if op == "$nin" and value in operand:
                return False
    return True


class Corpus:
    """Documents and chunks shared by the fake index and store."""

    def __init__(self):
        self.documents: Dict[str, DocumentRecord] = {}
        self.chunks: Dict[str, List[Chunk]] = {}

    def add(
        self,
        document_id: str,
        chunks: List[Chunk],
        owner_id: str = "owner-1",
        title: Optional[str] = None,
        uploaded_at: Optional[datetime] = None,
        centroid: Any = "auto",
    ) -> DocumentRecord:
        record = DocumentRecord(
            id=document_id,
            centroid=centroid_of(chunks) if centroid == "auto" else centroid,
            total_tokens=sum(c.token_count for c in chunks),
            effective_chunk_count=len(chunks),
            title=title if title is not None else document_id,
            uploaded_at=uploaded_at,
            page_count=max((c.end_page for c in chunks), default=0),
            owner_id=owner_id,
        )
        self.documents[document_id] = record
        self.chunks[document_id] = chunks
        return record


class FakeVectorIndex:
    """Exact cosine search over the corpus, with call accounting and fault injection."""

    def __init__(self, corpus: Corpus):
        self.corpus = corpus
        self.calls: Counter = Counter()
        self.filters: List[Dict[str, Any]] = []
        self.fail_next: Dict[str, int] = {}
        self.fail_always: Dict[str, BaseException] = {}
        self.delay: Dict[str, float] = {}

    async def query(self, vector, top_k, filter=None, *, index=CENTROID_INDEX) -> List[VectorHit]:
        self.calls[index] += 1
        self.filters.append({"index": index, "filter": filter, "top_k": top_k})
        if self.delay.get(index):
            await asyncio.sleep(self.delay[index])
        if index in self.fail_always:
            raise self.fail_always[index]
        if self.fail_next.get(index, 0) > 0:
            self.fail_next[index] -= 1
            raise UpstreamServiceError(f"{index} temporarily unavailable")

        query = normalize(vector)
        hits = []
        if index == CENTROID_INDEX:
            for doc in self.corpus.documents.values():
                if doc.centroid is None:
                    continue
                payload = {"document_id": doc.id, "owner_id": doc.owner_id}
                if matches_filter(payload, filter):
                    hits.append(VectorHit(doc.id, float(query @ normalize(doc.centroid)), payload))
        elif index == CHUNK_INDEX:
            for doc_id, chunks in self.corpus.chunks.items():
                owner = self.corpus.documents[doc_id].owner_id
                for chunk in chunks:
                    payload = {
                        "document_id": doc_id,
                        "owner_id": owner,
                        "chunk_index": chunk.chunk_index,
                    }
                    if matches_filter(payload, filter):
                        score = float(query @ normalize(chunk.embedding))
                        hits.append(VectorHit(chunk.chunk_id, score, payload))
        else:
            raise ValueError(index)
        hits.sort(key=lambda h: (-h.score, h.id))
        return hits[:top_k]

    async def fetch_chunk_vectors(self, ids: Sequence[str]) -> List[ChunkVector]:
        self.calls["fetch"] += 1
        out = []
        for chunk_id in ids:
            doc_id, _, index = chunk_id.rpartition(":")
            for chunk in self.corpus.chunks.get(doc_id, []):
                if chunk.chunk_index == int(index):
                    out.append(ChunkVector(chunk_id, chunk.embedding.tolist(), {"document_id": doc_id}))
        return out


class FakeChunkStore:
    """ChunkStore over the corpus; per-document delays, failures and start events."""

    def __init__(self, corpus: Corpus):
        self.corpus = corpus
        self.calls: Counter = Counter()
        self.delay: Dict[str, float] = {}
        self.failures: Dict[str, BaseException] = {}
        self.started: Dict[str, asyncio.Event] = {}

    async def get_document(self, document_id: str) -> DocumentRecord:
        self.calls["get_document"] += 1
        if document_id in self.failures:
            raise self.failures[document_id]
        if document_id not in self.corpus.documents:
            raise NotFoundError(f"Document {document_id} not found", document_id=document_id)
        return self.corpus.documents[document_id]

    async def get_document_totals(self, document_id: str) -> DocumentTotals:
        self.calls["get_document_totals"] += 1
        doc = await self.get_document(document_id)
        return DocumentTotals(doc.total_tokens, doc.effective_chunk_count, doc.centroid)

    async def get_chunks(
        self,
        document_id: str,
        exclude_ranges: Sequence[PageRange] = (),
        page_range: Optional[PageRange] = None,
    ) -> List[Chunk]:
        self.calls["get_chunks"] += 1
        if document_id in self.started:
            self.started[document_id].set()
        if self.delay.get(document_id):
            await asyncio.sleep(self.delay[document_id])
        if document_id in self.failures:
            raise self.failures[document_id]
        return select_chunks(self.corpus.chunks.get(document_id, []), exclude_ranges, page_range)
