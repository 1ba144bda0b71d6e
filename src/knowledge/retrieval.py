"""Vector similarity retrieval over indexed documents."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from config import settings
from models import Document
from services.embeddings import EmbeddingError, EmbeddingGateway
from services.vector_index import VectorIndex, VectorMatch

logger = logging.getLogger(__name__)

_MAX_FETCH_MULTIPLIER = 8


@dataclass(frozen=True)
class RetrievedDocument:
    """Document content surfaced by a similarity search."""

    document_id: UUID
    source_type: str
    source_id: str
    content: str
    similarity: float
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at_source: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-safe representation for tool results."""
        return {
            "document_id": str(self.document_id),
            "source_type": self.source_type,
            "source_id": self.source_id,
            "content": self.content,
            "similarity": round(self.similarity, 4),
            "metadata": dict(self.metadata),
            "created_at_source": (
                self.created_at_source.isoformat() if self.created_at_source else None
            ),
        }


class KnowledgeRetriever:
    """Ranks an owner's documents by cosine similarity to a query."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        gateway: EmbeddingGateway,
        index: VectorIndex,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._index = index

    def search(
        self,
        owner_id: str,
        query_embedding: Sequence[float],
        *,
        limit: int,
        threshold: float,
        source_types: Sequence[str] | None = None,
    ) -> list[RetrievedDocument]:
        """Return documents with similarity >= threshold, most similar first.

        Only documents whose embedding is currently complete are returned, so a
        vector left over from content that has since changed is never surfaced.
        Such leftovers can occupy top-k slots in the index, so the index is
        queried with a growing window until ``limit`` documents qualify or the
        index runs out of candidates.
        """
        if limit <= 0:
            return []
        window = limit
        max_window = limit * _MAX_FETCH_MULTIPLIER
        while True:
            matches = self._index.search(
                owner_id=owner_id,
                vector=query_embedding,
                limit=window,
                threshold=threshold,
                source_types=source_types,
            )
            results = self._load_complete(owner_id, matches, threshold, source_types)
            if len(results) >= limit or len(matches) < window or window >= max_window:
                break
            logger.debug(
                "Widening vector search: window=%s qualifying=%s", window, len(results)
            )
            window = min(window * 2, max_window)
        return results[:limit]

    def _load_complete(
        self,
        owner_id: str,
        matches: Sequence[VectorMatch],
        threshold: float,
        source_types: Sequence[str] | None,
    ) -> list[RetrievedDocument]:
        matches = [match for match in matches if match.similarity >= threshold]
        if not matches:
            return []
        with closing(self._session_factory()) as session:
            rows = (
                session.query(Document)
                .filter(Document.id.in_([match.document_id for match in matches]))
                .filter(Document.owner_id == owner_id)
                .filter(Document.embedding_status == "complete")
                .all()
            )
            by_id = {row.id: row for row in rows}
            results: list[RetrievedDocument] = []
            for match in sorted(matches, key=lambda item: item.similarity, reverse=True):
                row = by_id.get(match.document_id)
                if row is None:
                    continue
                if source_types and row.source_type not in source_types:
                    continue
                results.append(
                    RetrievedDocument(
                        document_id=row.id,
                        source_type=row.source_type,
                        source_id=row.source_id,
                        content=row.content or "",
                        similarity=match.similarity,
                        metadata=dict(row.doc_metadata or {}),
                        created_at_source=row.created_at_source,
                    )
                )
        return results

    def search_knowledge(
        self,
        owner_id: str,
        query_text: str,
        *,
        limit: int | None = None,
        threshold: float | None = None,
        source_types: Sequence[str] | None = None,
    ) -> list[RetrievedDocument]:
        """Embed a text query and search; embedding failures yield no results."""
        if not query_text or not query_text.strip():
            return []
        try:
            vector = self._gateway.embed(query_text)
        except EmbeddingError as exc:
            logger.warning("Knowledge search degraded, query embedding failed: %s", exc.describe())
            return []
        return self.search(
            owner_id,
            vector,
            limit=limit or settings.retrieval.search_limit,
            threshold=settings.retrieval.search_threshold if threshold is None else threshold,
            source_types=source_types,
        )

    def search_for_tool(
        self,
        owner_id: str,
        query: str,
        *,
        source_types: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Adapter used by the search_knowledge action."""
        results = self.search_knowledge(
            owner_id,
            query,
            limit=limit,
            source_types=source_types,
        )
        return [result.to_dict() for result in results]
