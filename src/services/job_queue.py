"""Durable job queue seam backed by Celery ``send_task``."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Mapping, Protocol
from uuid import UUID

logger = logging.getLogger(__name__)

EXECUTE_TASK_JOB = "tasks.execute"
EMBED_DOCUMENT_JOB = "knowledge.embed_document"
RUN_INSTRUCTION_JOB = "agent.run_instruction"
PROCESS_EVENT_JOB = "events.process"


class JobQueue(Protocol):
    """At-least-once job submission; handlers must be idempotent."""

    def enqueue(
        self,
        job_name: str,
        payload: Mapping[str, object],
        run_at: datetime | None = None,
    ) -> None:
        """Submit a job for execution no earlier than ``run_at``."""
        ...


def _get_celery_app():
    """Import the Celery app lazily to avoid import cycles."""
    from scheduler.celery_app import celery_app

    return celery_app


class CeleryJobQueue:
    """Job queue that routes named jobs to Celery workers."""

    def __init__(self, *, send_task: Callable[..., object] | None = None) -> None:
        self._send_task = send_task

    def enqueue(
        self,
        job_name: str,
        payload: Mapping[str, object],
        run_at: datetime | None = None,
    ) -> None:
        sender = self._send_task or _get_celery_app().send_task
        options: dict[str, object] = {}
        if run_at is not None:
            options["eta"] = _ensure_timezone(run_at)
        sender(job_name, kwargs=dict(payload), **options)
        logger.debug("Enqueued %s run_at=%s", job_name, run_at)


def enqueue_task_execution(
    queue: JobQueue,
    task_id: UUID,
    run_at: datetime | None = None,
) -> None:
    """Schedule an execution attempt for a task."""
    queue.enqueue(EXECUTE_TASK_JOB, {"task_id": str(task_id)}, run_at)


def enqueue_document_embedding(
    queue: JobQueue,
    document_id: UUID,
    run_at: datetime | None = None,
) -> None:
    """Schedule an embedding attempt for a document."""
    queue.enqueue(EMBED_DOCUMENT_JOB, {"document_id": str(document_id)}, run_at)


def _ensure_timezone(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
