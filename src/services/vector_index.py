"""Qdrant-backed vector index for knowledge documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock
from typing import Iterable, Protocol, Sequence
from uuid import UUID

from qdrant_client import QdrantClient
from qdrant_client.http import models

from config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexedVector:
    """Vector plus the payload fields needed for filtered search."""

    document_id: UUID
    owner_id: str
    source_type: str
    vector: Sequence[float]


@dataclass(frozen=True)
class VectorMatch:
    """Nearest-neighbor hit with cosine similarity."""

    document_id: UUID
    similarity: float


class VectorIndex(Protocol):
    """Storage interface for document vectors."""

    def upsert(self, item: IndexedVector) -> None:
        """Insert or replace one document vector."""
        ...

    def upsert_many(self, items: Sequence[IndexedVector]) -> None:
        """Insert or replace several document vectors."""
        ...

    def delete(self, document_ids: Iterable[UUID]) -> None:
        """Remove vectors for the given documents."""
        ...

    def search(
        self,
        *,
        owner_id: str,
        vector: Sequence[float],
        limit: int,
        threshold: float,
        source_types: Sequence[str] | None = None,
    ) -> list[VectorMatch]:
        """Return matches with similarity >= threshold, best first."""
        ...


class QdrantVectorIndex:
    """Vector index storing one Qdrant point per document, keyed by document id."""

    def __init__(
        self,
        client: QdrantClient | None = None,
        *,
        collection: str | None = None,
    ) -> None:
        self._client = client or QdrantClient(
            url=settings.qdrant.url,
            timeout=settings.qdrant.timeout,
        )
        self._collection = collection or settings.qdrant.collection
        self._lock = Lock()
        self._collection_ready = False

    def upsert(self, item: IndexedVector) -> None:
        self.upsert_many([item])

    def upsert_many(self, items: Sequence[IndexedVector]) -> None:
        if not items:
            return
        self._ensure_collection(len(items[0].vector))
        points = [
            models.PointStruct(
                id=str(item.document_id),
                vector=[float(value) for value in item.vector],
                payload={
                    "document_id": str(item.document_id),
                    "owner_id": item.owner_id,
                    "source_type": item.source_type,
                },
            )
            for item in items
        ]
        self._client.upsert(collection_name=self._collection, points=points, wait=True)
        logger.debug("Indexed %s vector(s) into %s", len(points), self._collection)

    def delete(self, document_ids: Iterable[UUID]) -> None:
        ids = [str(document_id) for document_id in document_ids]
        if not ids or not self._client.collection_exists(self._collection):
            return
        self._client.delete(
            collection_name=self._collection,
            points_selector=models.PointIdsList(points=ids),
            wait=True,
        )

    def search(
        self,
        *,
        owner_id: str,
        vector: Sequence[float],
        limit: int,
        threshold: float,
        source_types: Sequence[str] | None = None,
    ) -> list[VectorMatch]:
        if limit <= 0 or not self._client.collection_exists(self._collection):
            return []
        must: list[models.FieldCondition] = [
            models.FieldCondition(key="owner_id", match=models.MatchValue(value=owner_id)),
        ]
        if source_types:
            must.append(
                models.FieldCondition(
                    key="source_type",
                    match=models.MatchAny(any=list(source_types)),
                )
            )
        response = self._client.query_points(
            collection_name=self._collection,
            query=[float(value) for value in vector],
            query_filter=models.Filter(must=must),
            limit=limit,
            score_threshold=threshold,
            with_payload=True,
        )
        matches: list[VectorMatch] = []
        for point in response.points:
            score = float(point.score)
            # score_threshold is advisory for some distance configs; enforce it here.
            if score < threshold:
                continue
            payload = point.payload or {}
            if payload.get("owner_id") != owner_id:
                continue
            document_id = payload.get("document_id") or point.id
            matches.append(VectorMatch(document_id=UUID(str(document_id)), similarity=score))
        matches.sort(key=lambda match: match.similarity, reverse=True)
        return matches

    def _ensure_collection(self, vector_size: int) -> None:
        """Create the cosine-distance collection if it does not exist yet."""
        if self._collection_ready:
            return
        with self._lock:
            if self._collection_ready:
                return
            if not self._client.collection_exists(self._collection):
                self._client.create_collection(
                    collection_name=self._collection,
                    vectors_config=models.VectorParams(
                        size=vector_size,
                        distance=models.Distance.COSINE,
                    ),
                )
                for field in ("owner_id", "source_type"):
                    self._client.create_payload_index(
                        collection_name=self._collection,
                        field_name=field,
                        field_schema=models.PayloadSchemaType.KEYWORD,
                    )
                logger.info(
                    "Created vector collection %s (size=%s)", self._collection, vector_size
                )
            self._collection_ready = True
