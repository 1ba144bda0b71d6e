"""Knowledge upsert pipeline: persist documents first, embed them eventually.

Document rows are written immediately with an embedding status that the
pipeline advances independently of content updates:

    pending -> complete
    pending -> failed -> (retry) -> complete | failed | permanently_failed

A missing embedding key leaves documents ``pending`` without consuming retry
budget, so configuring the key later lets the maintenance sweep catch up.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Sequence
from uuid import UUID, uuid4

from sqlalchemy import and_, case, func, null
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from config import settings
from knowledge.content import has_embeddable_content, prepare_content
from models import SOURCE_TYPES, Document
from observability import log_context
from scheduler.retry_policy import RetryPolicy, should_retry
from services.embeddings import EmbeddingError, EmbeddingErrorKind, EmbeddingGateway
from services.job_queue import JobQueue, enqueue_document_embedding
from services.vector_index import IndexedVector, VectorIndex
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

PENDING = "pending"
COMPLETE = "complete"
FAILED = "failed"
PERMANENTLY_FAILED = "permanently_failed"


class DocumentNotFound(LookupError):
    """Raised when a document id does not exist."""

    def __init__(self, document_id: UUID) -> None:
        self.document_id = document_id
        super().__init__(f"Document {document_id} not found.")


@dataclass(frozen=True)
class DocumentInput:
    """One external fact to index."""

    owner_id: str
    source_type: str
    source_id: str
    content: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at_source: datetime | None = None


@dataclass(frozen=True)
class _EmbeddingJob:
    """Snapshot of the fields an embedding attempt depends on."""

    document_id: UUID
    owner_id: str
    source_type: str
    content: str | None
    text: str


def _insert_for(session: Session):
    """Return the dialect ``insert`` construct that supports ON CONFLICT."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")


def _validate_input(document: DocumentInput) -> None:
    if not document.owner_id:
        raise ValueError("owner_id is required.")
    if document.source_type not in SOURCE_TYPES:
        raise ValueError(f"Unknown source_type: {document.source_type}")
    if not document.source_id:
        raise ValueError("source_id is required.")


def upsert_document_row(session: Session, document: DocumentInput, *, now: datetime) -> UUID:
    """Insert or update a document by natural key and return its id.

    Content and metadata are last-write-wins. When the content changes the
    embedding state is re-armed (``pending``, or ``complete`` for empty text)
    and the stale vector cleared; when it is unchanged the embedding state is
    preserved so repeated syncs do not re-embed. ``embedding_retry_count`` and
    ``created_at`` are never overwritten.
    """
    _validate_input(document)
    table = Document.__table__
    embeddable = has_embeddable_content(document.content)
    stmt = _insert_for(session)(table).values(
        {
            "id": uuid4(),
            "owner_id": document.owner_id,
            "source_type": document.source_type,
            "source_id": document.source_id,
            "content": document.content,
            "metadata": dict(document.metadata or {}),
            "embedding": None,
            "embedding_status": PENDING if embeddable else COMPLETE,
            "embedding_retry_count": 0,
            "embedding_error": None,
            "embedding_failed_at": None,
            "embedding_generated_at": None,
            "created_at_source": ensure_utc(document.created_at_source),
            "created_at": now,
            "updated_at": now,
        }
    )
    excluded = stmt.excluded
    unchanged = table.c.content.is_not_distinct_from(excluded.content)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.owner_id, table.c.source_type, table.c.source_id],
        set_={
            table.c.content: excluded.content,
            table.c["metadata"]: excluded["metadata"],
            table.c.created_at_source: excluded.created_at_source,
            table.c.updated_at: excluded.updated_at,
            table.c.embedding_status: case(
                (unchanged, table.c.embedding_status), else_=excluded.embedding_status
            ),
            table.c.embedding: case((unchanged, table.c.embedding), else_=null()),
            table.c.embedding_error: case((unchanged, table.c.embedding_error), else_=null()),
            table.c.embedding_failed_at: case(
                (unchanged, table.c.embedding_failed_at), else_=null()
            ),
            table.c.embedding_generated_at: case(
                (unchanged, table.c.embedding_generated_at), else_=null()
            ),
        },
    )
    session.execute(stmt)
    document_id = (
        session.query(Document.id)
        .filter(Document.owner_id == document.owner_id)
        .filter(Document.source_type == document.source_type)
        .filter(Document.source_id == document.source_id)
        .scalar()
    )
    return document_id


class KnowledgePipeline:
    """Keeps the document table and vector index eventually consistent."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        gateway: EmbeddingGateway,
        index: VectorIndex,
        queue: JobQueue,
        policy: RetryPolicy | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._index = index
        self._queue = queue
        self._policy = policy or RetryPolicy.for_embeddings()
        self._now = now or (lambda: datetime.now(timezone.utc))

    def upsert(
        self,
        owner_id: str,
        source_type: str,
        source_id: str,
        content: str | None,
        metadata: dict[str, Any] | None = None,
        *,
        created_at_source: datetime | None = None,
        inline: bool = True,
    ) -> Document:
        """Persist a document, then embed it inline once or enqueue the attempt."""
        document = DocumentInput(
            owner_id=owner_id,
            source_type=source_type,
            source_id=source_id,
            content=content,
            metadata=dict(metadata or {}),
            created_at_source=created_at_source,
        )
        with closing(self._session_factory()) as session:
            document_id = upsert_document_row(session, document, now=self._now())
            session.commit()
            row = session.get(Document, document_id, populate_existing=True)
            status = row.embedding_status
            # New text (or none) leaves no current vector; drop any indexed one.
            clear_vector = row.embedding is None
        if clear_vector:
            self._index.delete([document_id])

        logger.info(
            "Document upserted: document=%s source=%s:%s status=%s",
            document_id,
            source_type,
            source_id,
            status,
        )
        if status == PENDING:
            if inline:
                return self.embed_document(document_id)
            enqueue_document_embedding(self._queue, document_id)
        return self.get_document(document_id)

    def get_document(self, document_id: UUID) -> Document:
        """Load a document detached from its session."""
        with closing(self._session_factory()) as session:
            row = session.get(Document, document_id)
            if row is None:
                raise DocumentNotFound(document_id)
            session.expunge(row)
            return row

    def embed_document(self, document_id: UUID) -> Document:
        """Run one embedding attempt; safe to call repeatedly for the same id."""
        with log_context({"document_id": document_id}):
            job = self._load_job(document_id)
            if job is None:
                return self.get_document(document_id)
            try:
                vector = self._gateway.embed(job.text)
            except EmbeddingError as exc:
                return self._record_failure(job, exc)
            try:
                self._index.upsert(
                    IndexedVector(
                        document_id=job.document_id,
                        owner_id=job.owner_id,
                        source_type=job.source_type,
                        vector=vector,
                    )
                )
            except Exception as exc:
                logger.exception("Vector index write failed: document=%s", document_id)
                failure = EmbeddingError(EmbeddingErrorKind.API_ERROR, f"index error: {exc}")
                return self._record_failure(job, failure)
            return self._record_success(job, vector)

    def _load_job(self, document_id: UUID) -> _EmbeddingJob | None:
        """Snapshot an embeddable document, or return None if there is nothing to do."""
        with closing(self._session_factory()) as session:
            row = session.get(Document, document_id)
            if row is None:
                raise DocumentNotFound(document_id)
            if row.embedding_status in (COMPLETE, PERMANENTLY_FAILED):
                logger.debug(
                    "Skipping embedding: document=%s status=%s",
                    document_id,
                    row.embedding_status,
                )
                return None
            if not has_embeddable_content(row.content):
                row.embedding_status = COMPLETE
                row.embedding_error = None
                session.commit()
                return None
            return _EmbeddingJob(
                document_id=row.id,
                owner_id=row.owner_id,
                source_type=row.source_type,
                content=row.content,
                text=prepare_content(row.content, row.doc_metadata),
            )

    def _record_success(self, job: _EmbeddingJob, vector: Sequence[float]) -> Document:
        now = self._now()
        with closing(self._session_factory()) as session:
            row = session.get(Document, job.document_id)
            if row is None:
                raise DocumentNotFound(job.document_id)
            if row.content != job.content:
                # A newer upsert re-armed the document; its own attempt will index it.
                logger.info("Discarding stale embedding: document=%s", job.document_id)
            elif row.embedding_status not in (COMPLETE, PERMANENTLY_FAILED):
                row.embedding = [float(value) for value in vector]
                row.embedding_status = COMPLETE
                row.embedding_generated_at = now
                row.embedding_error = None
                row.embedding_failed_at = None
                session.commit()
                logger.info(
                    "Embedding generated: document=%s retries=%s",
                    job.document_id,
                    row.embedding_retry_count,
                )
        return self.get_document(job.document_id)

    def _record_failure(self, job: _EmbeddingJob, exc: EmbeddingError) -> Document:
        now = self._now()
        retry_count = 0
        retry_at: datetime | None = None
        outcome = "ignored"
        with closing(self._session_factory()) as session:
            row = session.get(Document, job.document_id)
            if row is None:
                raise DocumentNotFound(job.document_id)
            stale = row.content != job.content or row.embedding_status in (
                COMPLETE,
                PERMANENTLY_FAILED,
            )
            if stale:
                logger.info("Ignoring failure for superseded attempt: document=%s", job.document_id)
            elif exc.kind == EmbeddingErrorKind.NO_API_KEY and not self._gateway.configured:
                row.embedding_error = exc.describe()
                session.commit()
                outcome = "unconfigured"
            else:
                retry_count = int(row.embedding_retry_count or 0) + 1
                row.embedding_retry_count = retry_count
                row.embedding_error = exc.describe()
                row.embedding_failed_at = now
                if not should_retry(retry_count, self._policy.max_attempts):
                    row.embedding_status = PERMANENTLY_FAILED
                    outcome = "permanently_failed"
                else:
                    row.embedding_status = FAILED
                    retry_at = self._policy.retry_at(now, retry_count)
                    outcome = "failed"
                session.commit()

        if outcome == "unconfigured":
            logger.warning("Embedding skipped, no API key configured: document=%s", job.document_id)
        elif outcome == "permanently_failed":
            logger.error(
                "Embedding permanently failed: document=%s retries=%s error=%s",
                job.document_id,
                retry_count,
                exc.describe(),
            )
        elif outcome == "failed" and retry_at is not None:
            logger.warning(
                "Embedding failed: document=%s retries=%s error=%s retry_at=%s",
                job.document_id,
                retry_count,
                exc.describe(),
                retry_at.isoformat(),
            )
            enqueue_document_embedding(self._queue, job.document_id, retry_at)
        return self.get_document(job.document_id)

    def sweep(self, *, limit: int | None = None) -> dict[str, int]:
        """Re-enqueue pending documents and failed documents past their backoff."""
        now = self._now()
        if not self._gateway.configured:
            logger.warning("Embedding sweep skipped: embedding gateway is not configured")
            return {"pending": 0, "failed_due": 0, "enqueued": 0}
        batch = limit or settings.embeddings.sweep_batch_size
        with closing(self._session_factory()) as session:
            pending_ids = [
                row.id
                for row in session.query(Document.id)
                .filter(Document.embedding_status == PENDING)
                .order_by(Document.updated_at.asc())
                .limit(batch)
            ]
            failed = (
                session.query(Document)
                .filter(Document.embedding_status == FAILED)
                .order_by(Document.embedding_failed_at.asc())
                .limit(batch)
                .all()
            )
            due_failed_ids = [
                row.id
                for row in failed
                if row.embedding_failed_at is None
                or self._policy.retry_at(
                    ensure_utc(row.embedding_failed_at),
                    max(int(row.embedding_retry_count or 0), 1),
                )
                <= now
            ]
        enqueued = 0
        for document_id in [*pending_ids, *due_failed_ids]:
            enqueue_document_embedding(self._queue, document_id)
            enqueued += 1
        stats = self.statistics()
        logger.info(
            "Embedding sweep completed: pending=%s failed_due=%s enqueued=%s status_counts=%s",
            len(pending_ids),
            len(due_failed_ids),
            enqueued,
            stats["by_status"],
        )
        return {"pending": len(pending_ids), "failed_due": len(due_failed_ids), "enqueued": enqueued}

    def bulk_upsert(self, items: Sequence[tuple[DocumentInput, Sequence[float]]]) -> int:
        """Backfill documents whose embeddings were computed in one batch."""
        if not items:
            return 0
        now = self._now()
        indexed: list[IndexedVector] = []
        with closing(self._session_factory()) as session:
            document_ids = [
                upsert_document_row(session, document, now=now) for document, _ in items
            ]
            rows = {
                row.id: row
                for row in session.query(Document).filter(Document.id.in_(document_ids))
            }
            for document_id, (document, vector) in zip(document_ids, items):
                row = rows[document_id]
                row.embedding = [float(value) for value in vector]
                row.embedding_status = COMPLETE
                row.embedding_generated_at = now
                row.embedding_error = None
                row.embedding_failed_at = None
                indexed.append(
                    IndexedVector(
                        document_id=document_id,
                        owner_id=document.owner_id,
                        source_type=document.source_type,
                        vector=vector,
                    )
                )
            session.commit()
        self._index.upsert_many(indexed)
        logger.info("Bulk upsert completed: documents=%s", len(indexed))
        return len(indexed)

    def embed_and_bulk_upsert(self, documents: Sequence[DocumentInput]) -> int:
        """Embed documents in one gateway request and store them as a batch.

        Documents without embeddable text go through the regular upsert path.
        """
        embeddable = [doc for doc in documents if has_embeddable_content(doc.content)]
        for doc in documents:
            if not has_embeddable_content(doc.content):
                self.upsert(
                    doc.owner_id,
                    doc.source_type,
                    doc.source_id,
                    doc.content,
                    doc.metadata,
                    created_at_source=doc.created_at_source,
                )
        if not embeddable:
            return 0
        vectors = self._gateway.embed_many(
            [prepare_content(doc.content, doc.metadata) for doc in embeddable]
        )
        return self.bulk_upsert(list(zip(embeddable, vectors)))

    def delete_by_source(
        self,
        owner_id: str,
        source_type: str,
        source_ids: Iterable[str],
    ) -> int:
        """Delete documents whose upstream facts were deleted."""
        source_ids = list(source_ids)
        if not source_ids:
            return 0
        with closing(self._session_factory()) as session:
            rows = (
                session.query(Document)
                .filter(Document.owner_id == owner_id)
                .filter(Document.source_type == source_type)
                .filter(Document.source_id.in_(source_ids))
                .all()
            )
            document_ids = [row.id for row in rows]
            for row in rows:
                session.delete(row)
            session.commit()
        self._index.delete(document_ids)
        logger.info(
            "Documents deleted: owner=%s source_type=%s count=%s",
            owner_id,
            source_type,
            len(document_ids),
        )
        return len(document_ids)

    def statistics(self, owner_id: str | None = None) -> dict[str, dict[str, int]]:
        """Count documents by embedding status and by source type."""
        with closing(self._session_factory()) as session:
            status_query = session.query(Document.embedding_status, func.count(Document.id))
            source_query = session.query(Document.source_type, func.count(Document.id))
            if owner_id is not None:
                status_query = status_query.filter(Document.owner_id == owner_id)
                source_query = source_query.filter(Document.owner_id == owner_id)
            by_status = {status: 0 for status in (PENDING, COMPLETE, FAILED, PERMANENTLY_FAILED)}
            for status, count in status_query.group_by(Document.embedding_status):
                by_status[status] = int(count)
            by_source = {
                source_type: int(count)
                for source_type, count in source_query.group_by(Document.source_type)
            }
        return {"by_status": by_status, "by_source_type": by_source}

    def failed_documents(self, owner_id: str, *, limit: int = 50) -> list[Document]:
        """Return permanently failed documents awaiting operator attention."""
        with closing(self._session_factory()) as session:
            rows = (
                session.query(Document)
                .filter(
                    and_(
                        Document.owner_id == owner_id,
                        Document.embedding_status == PERMANENTLY_FAILED,
                    )
                )
                .order_by(Document.embedding_failed_at.desc())
                .limit(limit)
                .all()
            )
            for row in rows:
                session.expunge(row)
            return rows
