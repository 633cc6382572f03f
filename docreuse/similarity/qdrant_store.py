"""
Qdrant-backed VectorIndex and ChunkStore.

Two collections:
    centroids: one point per document, vector = L2-normalised centroid,
        payload document_id, owner_id, title, filename, uploaded_at,
        total_tokens, effective_chunk_count, page_count
    chunks: one point per chunk, payload document_id, owner_id, chunk_index,
        text, token_count, start_page, end_page

Point ids are UUIDv5 of the logical id (document id, or
``"{document_id}:{chunk_index}"`` for chunks).
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from qdrant_client import AsyncQdrantClient
from qdrant_client.models import FieldCondition, Filter, MatchValue

from docreuse.shared.config import VectorIndexConfig
from docreuse.shared.observability import get_logger

from .chunks import estimate_token_count, select_chunks
from .clients import CENTROID_INDEX, CHUNK_INDEX
from .errors import NotFoundError, UpstreamServiceError
from .filters import CanonicalFilter, to_qdrant_filter
from .types import Chunk, ChunkVector, DocumentRecord, DocumentTotals, PageRange, VectorHit

logger = get_logger(__name__)


def point_id(logical_id: str) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, logical_id))


def chunk_id(document_id: str, chunk_index: int) -> str:
    return f"{document_id}:{chunk_index}"


def _extract_vector(raw: Any) -> Optional[List[float]]:
    if raw is None:
        return None
    if isinstance(raw, dict):
        # Named vectors: single-vector collections store one entry
        if not raw:
            return None
        raw = next(iter(raw.values()))
    return list(raw)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable upload timestamp", value=str(value))
        return None


class QdrantVectorIndex:
    """VectorIndex over the centroid and chunk collections."""

    def __init__(self, client: AsyncQdrantClient, config: VectorIndexConfig):
        self.client = client
        self.config = config

    def _collection(self, index: str) -> str:
        if index == CENTROID_INDEX:
            return self.config.centroid_collection
        if index == CHUNK_INDEX:
            return self.config.chunk_collection
        raise ValueError(f"Unknown index {index!r}")

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filter: Optional[CanonicalFilter] = None,
        *,
        index: str = CENTROID_INDEX,
    ) -> List[VectorHit]:
        collection = self._collection(index)
        try:
            response = await self.client.query_points(
                collection_name=collection,
                query=list(vector),
                limit=top_k,
                query_filter=to_qdrant_filter(filter or {}),
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise UpstreamServiceError(
                f"Qdrant query on {collection} failed: {type(e).__name__}: {e}",
                cause=e,
            ) from e

        doc_field = self.config.document_field
        hits = []
        for point in response.points:
            payload = dict(point.payload or {})
            payload.pop("text", None)
            document_id = payload.get(doc_field)
            if document_id is None:
                logger.warning(
                    "Skipping point without document id",
                    collection=collection,
                    point_id=str(point.id),
                )
                continue
            if index == CHUNK_INDEX:
                logical_id = chunk_id(document_id, int(payload.get("chunk_index", 0)))
            else:
                logical_id = document_id
            hits.append(VectorHit(id=logical_id, score=float(point.score), metadata=payload))
        return hits

    async def fetch_chunk_vectors(self, ids: Sequence[str]) -> List[ChunkVector]:
        if not ids:
            return []
        collection = self.config.chunk_collection
        by_point = {point_id(i): i for i in ids}
        try:
            points = await self.client.retrieve(
                collection_name=collection,
                ids=list(by_point),
                with_payload=True,
                with_vectors=True,
            )
        except Exception as e:
            raise UpstreamServiceError(
                f"Qdrant retrieve on {collection} failed: {type(e).__name__}: {e}",
                cause=e,
            ) from e

        vectors = []
        for point in points:
            values = _extract_vector(point.vector)
            if values is None:
                continue
            payload = dict(point.payload or {})
            payload.pop("text", None)
            vectors.append(
                ChunkVector(
                    id=by_point.get(str(point.id), str(point.id)),
                    values=values,
                    metadata=payload,
                )
            )
        return vectors


class QdrantChunkStore:
    """ChunkStore reading documents from the centroid collection and chunks from the chunk collection."""

    def __init__(self, client: AsyncQdrantClient, config: VectorIndexConfig):
        self.client = client
        self.config = config

    async def get_document(self, document_id: str) -> DocumentRecord:
        collection = self.config.centroid_collection
        try:
            points = await self.client.retrieve(
                collection_name=collection,
                ids=[point_id(document_id)],
                with_payload=True,
                with_vectors=True,
            )
        except Exception as e:
            raise UpstreamServiceError(
                f"Qdrant retrieve on {collection} failed: {type(e).__name__}: {e}",
                document_id=document_id,
                cause=e,
            ) from e

        if not points:
            raise NotFoundError(
                f"Document {document_id} not found", document_id=document_id
            )

        point = points[0]
        payload = point.payload or {}
        values = _extract_vector(point.vector)
        return DocumentRecord(
            id=document_id,
            centroid=np.asarray(values, dtype=np.float32) if values else None,
            total_tokens=int(payload.get("total_tokens") or 0),
            effective_chunk_count=int(payload.get("effective_chunk_count") or 0),
            title=str(payload.get("title") or ""),
            filename=payload.get("filename"),
            uploaded_at=_parse_timestamp(payload.get("uploaded_at")),
            page_count=payload.get("page_count"),
            owner_id=payload.get(self.config.owner_field),
            metadata={
                k: v
                for k, v in payload.items()
                if k
                not in (
                    "title",
                    "filename",
                    "uploaded_at",
                    "total_tokens",
                    "effective_chunk_count",
                    "page_count",
                )
            },
        )

    async def get_document_totals(self, document_id: str) -> DocumentTotals:
        document = await self.get_document(document_id)
        return DocumentTotals(
            total_tokens=document.total_tokens,
            effective_chunk_count=document.effective_chunk_count,
            centroid=document.centroid,
        )

    async def get_chunks(
        self,
        document_id: str,
        exclude_ranges: Sequence[PageRange] = (),
        page_range: Optional[PageRange] = None,
    ) -> List[Chunk]:
        collection = self.config.chunk_collection
        scroll_filter = Filter(
            must=[
                FieldCondition(
                    key=self.config.document_field,
                    match=MatchValue(value=document_id),
                )
            ]
        )

        chunks: List[Chunk] = []
        offset = None
        while True:
            try:
                points, offset = await self.client.scroll(
                    collection_name=collection,
                    scroll_filter=scroll_filter,
                    limit=self.config.scroll_page_size,
                    offset=offset,
                    with_payload=True,
                    with_vectors=True,
                )
            except Exception as e:
                raise UpstreamServiceError(
                    f"Qdrant scroll on {collection} failed: {type(e).__name__}: {e}",
                    document_id=document_id,
                    cause=e,
                ) from e

            for point in points:
                chunk = self._to_chunk(document_id, point.payload or {}, point.vector)
                if chunk is not None:
                    chunks.append(chunk)
            if offset is None:
                break

        selected = select_chunks(chunks, exclude_ranges, page_range)
        logger.debug(
            "Loaded chunks",
            document_id=document_id,
            stored=len(chunks),
            selected=len(selected),
        )
        return selected

    def _to_chunk(
        self, document_id: str, payload: Dict[str, Any], raw_vector: Any
    ) -> Optional[Chunk]:
        values = _extract_vector(raw_vector)
        if values is None or "chunk_index" not in payload:
            logger.warning(
                "Skipping malformed chunk point",
                document_id=document_id,
                has_vector=values is not None,
            )
            return None

        text = str(payload.get("text") or "")
        token_count = payload.get("token_count")
        if not token_count or int(token_count) < 1:
            token_count = estimate_token_count(text)
        start_page = int(payload.get("start_page") or 1)
        end_page = int(payload.get("end_page") or start_page)

        return Chunk(
            document_id=document_id,
            chunk_index=int(payload["chunk_index"]),
            text=text,
            token_count=int(token_count),
            start_page=start_page,
            end_page=max(start_page, end_page),
            embedding=np.asarray(values, dtype=np.float32),
        )
