"""Unit tests for the knowledge upsert and embedding pipeline."""

from __future__ import annotations

import uuid
from contextlib import closing
from datetime import timedelta

import pytest

import services.embeddings as embeddings_module
from helpers.fakes import FakeEmbeddingGateway, FixedClock, InMemoryVectorIndex, RecordingJobQueue
from knowledge.pipeline import DocumentInput, DocumentNotFound, KnowledgePipeline
from models import Document
from scheduler.retry_policy import RetryPolicy
from services.embeddings import EmbeddingError, EmbeddingErrorKind, LiteLlmEmbeddingGateway
from services.job_queue import EMBED_DOCUMENT_JOB


def _pipeline(session_factory, gateway=None):
    clock = FixedClock()
    queue = RecordingJobQueue()
    index = InMemoryVectorIndex()
    gateway = gateway or FakeEmbeddingGateway()
    pipeline = KnowledgePipeline(
        session_factory=session_factory,
        gateway=gateway,
        index=index,
        queue=queue,
        policy=RetryPolicy(max_attempts=5, backoff_base_seconds=60, backoff_cap_seconds=3600),
        now=clock,
    )
    return pipeline, gateway, index, queue, clock


def _count(session_factory) -> int:
    with closing(session_factory()) as session:
        return session.query(Document).count()


def test_upsert_embeds_inline(sqlite_session_factory) -> None:
    """Inline upserts store the document and its vector in one call."""
    pipeline, gateway, index, _, _ = _pipeline(sqlite_session_factory)

    document = pipeline.upsert(
        "owner-1",
        "email",
        "msg-1",
        "Your invoice is attached.",
        {"from": "billing@example.com", "subject": "Invoice #42"},
    )

    assert document.embedding_status == "complete"
    assert document.embedding == [1.0, 0.0, 0.0]
    assert document.embedding_generated_at is not None
    assert gateway.calls == ["[from: billing@example.com, subject: Invoice #42] Your invoice is attached."]
    assert set(index.items) == {document.id}


def test_upsert_is_idempotent_by_natural_key(sqlite_session_factory) -> None:
    """Repeating an upsert with unchanged content keeps one row and skips re-embedding."""
    pipeline, gateway, _, _, _ = _pipeline(sqlite_session_factory)

    first = pipeline.upsert("owner-1", "note", "note-1", "Prefers mornings.")
    second = pipeline.upsert("owner-1", "note", "note-1", "Prefers mornings.", {"contact_email": "j@x.io"})

    assert second.id == first.id
    assert second.embedding_status == "complete"
    assert second.doc_metadata == {"contact_email": "j@x.io"}
    assert len(gateway.calls) == 1
    assert _count(sqlite_session_factory) == 1


def test_changed_content_rearms_embedding(sqlite_session_factory) -> None:
    """New content clears the old vector and embeds again."""
    pipeline, gateway, _, queue, _ = _pipeline(sqlite_session_factory)
    first = pipeline.upsert("owner-1", "note", "note-1", "Prefers mornings.")

    updated = pipeline.upsert("owner-1", "note", "note-1", "Prefers afternoons.", inline=False)

    assert updated.id == first.id
    assert updated.embedding_status == "pending"
    assert updated.embedding is None
    assert queue.named(EMBED_DOCUMENT_JOB) == [({"document_id": str(first.id)}, None)]


def test_same_source_id_for_other_owner_is_separate(sqlite_session_factory) -> None:
    """Natural keys are scoped to the owner."""
    pipeline, _, _, _, _ = _pipeline(sqlite_session_factory)

    mine = pipeline.upsert("owner-1", "contact", "c-1", "Jane")
    theirs = pipeline.upsert("owner-2", "contact", "c-1", "Jane")

    assert mine.id != theirs.id
    assert _count(sqlite_session_factory) == 2


def test_empty_content_is_complete_without_embedding(sqlite_session_factory) -> None:
    """Documents without text are never sent to the embedding model."""
    pipeline, gateway, index, queue, _ = _pipeline(sqlite_session_factory)

    document = pipeline.upsert("owner-1", "calendar_event", "evt-1", "   ")

    assert document.embedding_status == "complete"
    assert document.embedding is None
    assert gateway.calls == []
    assert index.items == {}
    assert queue.jobs == []


def test_failures_back_off_then_fail_permanently(sqlite_session_factory) -> None:
    """Five consecutive failures mark the document permanently failed."""
    pipeline, gateway, _, queue, clock = _pipeline(sqlite_session_factory)
    gateway.fail_next(*[EmbeddingError(EmbeddingErrorKind.API_ERROR, "boom") for _ in range(5)])

    document = pipeline.upsert("owner-1", "email", "msg-1", "Hello there")
    assert document.embedding_status == "failed"
    assert document.embedding_retry_count == 1
    assert document.embedding_error == "api_error: boom"
    assert queue.named(EMBED_DOCUMENT_JOB)[-1][1] == clock() + timedelta(seconds=60)

    for expected_count in (2, 3, 4):
        document = pipeline.embed_document(document.id)
        assert document.embedding_status == "failed"
        assert document.embedding_retry_count == expected_count

    document = pipeline.embed_document(document.id)
    assert document.embedding_status == "permanently_failed"
    assert document.embedding_retry_count == 5

    clock.advance(days=1)
    queue.jobs.clear()
    assert pipeline.sweep()["enqueued"] == 0
    assert pipeline.embed_document(document.id).embedding_status == "permanently_failed"
    assert len(gateway.calls) == 5
    assert [row.id for row in pipeline.failed_documents("owner-1")] == [document.id]
    assert pipeline.failed_documents("owner-2") == []


def test_retry_succeeds_after_transient_failure(sqlite_session_factory) -> None:
    """A later attempt completes a failed document without resetting its retry count."""
    pipeline, gateway, _, _, _ = _pipeline(sqlite_session_factory)
    gateway.fail_next(EmbeddingError(EmbeddingErrorKind.RATE_LIMITED))

    failed = pipeline.upsert("owner-1", "email", "msg-1", "Hello there")
    assert failed.embedding_error == "rate_limited"

    document = pipeline.embed_document(failed.id)

    assert document.embedding_status == "complete"
    assert document.embedding_error is None
    assert document.embedding_retry_count == 1


def test_missing_api_key_leaves_document_pending(sqlite_session_factory) -> None:
    """An unconfigured gateway does not consume retry budget."""
    pipeline, _, _, queue, _ = _pipeline(
        sqlite_session_factory, FakeEmbeddingGateway(configured=False)
    )

    document = pipeline.upsert("owner-1", "email", "msg-1", "Hello there")

    assert document.embedding_status == "pending"
    assert document.embedding_retry_count == 0
    assert document.embedding_error == "no_api_key"
    assert pipeline.sweep() == {"pending": 0, "failed_due": 0, "enqueued": 0}
    assert queue.jobs == []


def test_sweep_enqueues_pending_and_due_failures(sqlite_session_factory) -> None:
    """The sweep picks up pending documents and failures past their backoff."""
    pipeline, gateway, _, queue, clock = _pipeline(sqlite_session_factory)
    pending = pipeline.upsert("owner-1", "note", "note-1", "Pending note", inline=False)
    gateway.fail_next(EmbeddingError(EmbeddingErrorKind.TIMEOUT))
    failed = pipeline.upsert("owner-1", "note", "note-2", "Failing note")
    queue.jobs.clear()

    early = pipeline.sweep()
    assert early == {"pending": 1, "failed_due": 0, "enqueued": 1}

    clock.advance(seconds=61)
    queue.jobs.clear()
    later = pipeline.sweep()
    assert later == {"pending": 1, "failed_due": 1, "enqueued": 2}
    submitted = {payload["document_id"] for payload, _ in queue.named(EMBED_DOCUMENT_JOB)}
    assert submitted == {str(pending.id), str(failed.id)}


def test_stale_embedding_is_discarded(sqlite_session_factory) -> None:
    """A vector computed for superseded content is not stored."""
    hooks = []

    def vector_for(text: str):
        for hook in hooks:
            hook()
        return [0.0, 1.0, 0.0]

    pipeline, _, _, _, _ = _pipeline(sqlite_session_factory, FakeEmbeddingGateway(vector_for))
    original = pipeline.upsert("owner-1", "note", "note-1", "Old text", inline=False)
    hooks.append(lambda: pipeline.upsert("owner-1", "note", "note-1", "New text", inline=False))

    document = pipeline.embed_document(original.id)

    assert document.content == "New text"
    assert document.embedding_status == "pending"
    assert document.embedding is None


def test_index_failure_counts_as_embedding_failure(sqlite_session_factory) -> None:
    """A vector store outage is recorded as a retryable failure."""
    pipeline, _, index, _, _ = _pipeline(sqlite_session_factory)
    index.fail_upserts = True

    document = pipeline.upsert("owner-1", "note", "note-1", "Some note")

    assert document.embedding_status == "failed"
    assert document.embedding_error.startswith("api_error: index error")


def test_bulk_upsert_stores_precomputed_vectors(sqlite_session_factory) -> None:
    """Backfills write complete documents and index them in one batch."""
    pipeline, gateway, index, _, _ = _pipeline(sqlite_session_factory)
    items = [
        (DocumentInput("owner-1", "email", f"msg-{n}", f"Body {n}"), [float(n), 1.0, 0.0])
        for n in range(3)
    ]

    assert pipeline.bulk_upsert(items) == 3

    assert len(index.items) == 3
    assert gateway.calls == []
    stats = pipeline.statistics("owner-1")
    assert stats["by_status"]["complete"] == 3
    assert stats["by_source_type"] == {"email": 3}


def test_embed_and_bulk_upsert_batches_embeddable_documents(sqlite_session_factory) -> None:
    """Embeddable documents share one gateway request; empty ones go through upsert."""
    pipeline, gateway, index, _, _ = _pipeline(sqlite_session_factory)

    stored = pipeline.embed_and_bulk_upsert(
        [
            DocumentInput("owner-1", "contact", "c-1", "Jane Doe"),
            DocumentInput("owner-1", "contact", "c-2", ""),
        ]
    )

    assert stored == 1
    assert gateway.calls == ["Jane Doe"]
    assert len(index.items) == 1
    assert pipeline.statistics()["by_status"]["complete"] == 2


def test_delete_by_source_removes_rows_and_vectors(sqlite_session_factory) -> None:
    """Deleting upstream facts removes their documents and vectors."""
    pipeline, _, index, _, _ = _pipeline(sqlite_session_factory)
    keep = pipeline.upsert("owner-1", "email", "msg-1", "Keep me")
    pipeline.upsert("owner-1", "email", "msg-2", "Delete me")

    assert pipeline.delete_by_source("owner-1", "email", ["msg-2", "msg-404"]) == 1

    assert set(index.items) == {keep.id}
    assert _count(sqlite_session_factory) == 1


def test_unknown_document_raises(sqlite_session_factory) -> None:
    """Embedding jobs for deleted documents surface DocumentNotFound."""
    pipeline, _, _, _, _ = _pipeline(sqlite_session_factory)
    with pytest.raises(DocumentNotFound):
        pipeline.embed_document(uuid.uuid4())


def test_upsert_rejects_unknown_source_type(sqlite_session_factory) -> None:
    """Only the known document sources can be indexed."""
    pipeline, _, _, _, _ = _pipeline(sqlite_session_factory)
    with pytest.raises(ValueError, match="Unknown source_type"):
        pipeline.upsert("owner-1", "tweet", "t-1", "hello")


class _OpenGate:
    name = "embeddings"

    def wait(self) -> float:
        return 0.0


class AuthenticationError(Exception):
    """Stand-in for the provider's credential exception."""


class _RejectingLiteLLM:
    def __init__(self) -> None:
        self.requests = 0

    def embedding(self, **kwargs):
        self.requests += 1
        raise AuthenticationError("invalid api key")


def test_rejected_api_key_exhausts_retry_budget(sqlite_session_factory, monkeypatch) -> None:
    """A key the provider refuses fails permanently instead of being swept forever."""
    provider = _RejectingLiteLLM()
    monkeypatch.setattr(embeddings_module, "_load_litellm_module", lambda: provider)
    gateway = LiteLlmEmbeddingGateway(
        model="text-embedding-3-small", api_key="sk-rejected", dimensions=3, gate=_OpenGate()
    )
    pipeline, _, _, _, clock = _pipeline(sqlite_session_factory, gateway)

    document = pipeline.upsert("owner-1", "email", "msg-1", "Hello there")
    assert document.embedding_status == "failed"
    assert document.embedding_retry_count == 1
    assert document.embedding_error.startswith("api_error: authentication rejected")

    swept = None
    for _ in range(10):
        clock.advance(hours=2)
        swept = pipeline.sweep()
        document = pipeline.embed_document(document.id)

    assert document.embedding_status == "permanently_failed"
    assert document.embedding_retry_count == 5
    assert provider.requests == 5
    assert swept["enqueued"] == 0


def test_changed_content_drops_indexed_vector(sqlite_session_factory) -> None:
    """Re-arming a document removes its old vector from the index."""
    pipeline, _, index, _, _ = _pipeline(sqlite_session_factory)
    first = pipeline.upsert("owner-1", "note", "note-1", "Prefers mornings.")
    assert first.id in index.items

    pipeline.upsert("owner-1", "note", "note-1", "Prefers afternoons.", inline=False)

    assert first.id not in index.items
