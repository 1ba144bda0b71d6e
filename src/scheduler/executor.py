"""Task executor driving one attempt of the task state machine.

Each attempt claims the task (``attempts`` +1, ``in_progress``), validates
its parameters, dispatches to the action gateway and records one of three
outcomes: completed, waiting for an external signal, or failed. Failures
either return the task to ``pending`` with a backoff delay or terminate it
once the attempt budget is spent. Facts produced by successful actions are
handed to the knowledge pipeline after the task row is committed.
"""

from __future__ import annotations

import json
import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session

from actions.errors import (
    ActionError,
    ActionErrorKind,
    ToolValidationError,
    UnexpectedActionError,
    describe_error,
)
from actions.gateway import (
    ActionFailed,
    ActionGateway,
    ActionOutcome,
    ActionSucceeded,
    ActionWaiting,
    KnowledgeFact,
)
from actions.validation import validate_tool_params
from agent.conversations import add_message
from config import settings
from knowledge.pipeline import KnowledgePipeline
from models import Task
from observability import log_context
from scheduler import data_access
from scheduler.data_access import TaskCreateInput
from scheduler.retry_policy import RetryPolicy, resolve_retry_policy, should_retry
from scheduler.state_machine import COMPLETED, FAILED, IN_PROGRESS, PENDING, WAITING
from services.job_queue import JobQueue, enqueue_task_execution

logger = logging.getLogger(__name__)

AUTHORIZATION_RETRIES_KEY = "authorization_retries"


@dataclass(frozen=True)
class _Attempt:
    """Snapshot of a claimed task, detached from its session."""

    task_id: UUID
    owner_id: str
    type: str
    parameters: dict[str, Any]
    context: dict[str, Any]
    attempts: int
    conversation_id: UUID | None


@dataclass
class _Recorded:
    task: Task
    facts: tuple[KnowledgeFact, ...] = ()
    run_at: datetime | None = None
    tool_message: str | None = None
    enqueue: bool = False


def format_tool_response(task_type: str, result: dict[str, Any]) -> str:
    """Summarize a completed task for the conversation that requested it."""
    if task_type == "send_email" and result.get("message_id"):
        return f"Email sent successfully (ID: {result['message_id']})"
    if task_type == "create_contact" and result.get("contact_id"):
        return f"Contact created successfully (ID: {result['contact_id']})"
    if task_type == "create_calendar_event" and result.get("event_id"):
        return f"Calendar event created (ID: {result['event_id']})"
    return f"{task_type} completed: {json.dumps(result, default=str, sort_keys=True)}"


class TaskExecutor:
    """Runs task attempts against the action gateway."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        gateway: ActionGateway,
        pipeline: KnowledgePipeline,
        queue: JobQueue,
        policy: RetryPolicy | None = None,
        lease_seconds: int | None = None,
        default_wait_minutes: int | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gateway = gateway
        self._pipeline = pipeline
        self._queue = queue
        self._policy = resolve_retry_policy(policy)
        self._lease_seconds = lease_seconds or settings.tasks.lease_seconds
        self._default_wait_minutes = default_wait_minutes or settings.tasks.default_wait_minutes
        self._now = now or (lambda: datetime.now(timezone.utc))

    def create_task(self, task_input: TaskCreateInput) -> tuple[Task, bool]:
        """Persist a task and enqueue its first attempt when newly created."""
        with closing(self._session_factory()) as session:
            task, created = data_access.create_task(session, task_input, now=self._now())
            session.commit()
            session.refresh(task)
            session.expunge(task)
        if created:
            enqueue_task_execution(self._queue, task.id, task.scheduled_at)
        return task, created

    def execute(self, task_id: UUID) -> Task | None:
        """Run one attempt; returns the task as recorded, or None if it does not exist."""
        with log_context({"task_id": str(task_id), "job": "tasks.execute"}):
            attempt, current = self._claim(task_id)
            if attempt is None:
                return current
            with log_context({"owner_id": attempt.owner_id}):
                outcome = self._run(attempt)
                recorded = self._record(attempt, outcome)
                if recorded is None:
                    return self._load(task_id)
                self._after_commit(attempt, recorded)
                return recorded.task

    def _claim(self, task_id: UUID) -> tuple[_Attempt | None, Task | None]:
        now = self._now()
        with closing(self._session_factory()) as session:
            task = data_access.claim_task(
                session, task_id, now=now, lease_seconds=self._lease_seconds
            )
            if task is None:
                session.rollback()
                existing = data_access.get_task(session, task_id)
                if existing is None:
                    logger.warning("Task not found; dropping execution job")
                    return None, None
                logger.info(
                    "Task not claimable: status=%s scheduled_at=%s",
                    existing.status,
                    existing.scheduled_at,
                )
                session.expunge(existing)
                return None, existing
            session.commit()
            attempt = _Attempt(
                task_id=task.id,
                owner_id=task.owner_id,
                type=task.type,
                parameters=dict(task.parameters or {}),
                context=dict(task.context or {}),
                attempts=int(task.attempts),
                conversation_id=task.conversation_id,
            )
        logger.info("Task attempt started: type=%s attempt=%s", attempt.type, attempt.attempts)
        return attempt, None

    def _run(self, attempt: _Attempt) -> ActionOutcome:
        try:
            params = validate_tool_params(attempt.type, attempt.parameters)
        except ToolValidationError as exc:
            return ActionFailed(exc)
        try:
            return self._gateway.execute(
                attempt.type,
                attempt.owner_id,
                params,
                attempt.context,
                task_id=attempt.task_id,
            )
        except Exception as exc:  # noqa: BLE001 - worker boundary
            logger.exception("Unexpected error while executing task: type=%s", attempt.type)
            return ActionFailed(UnexpectedActionError(f"{type(exc).__name__}: {exc}"))

    def _record(self, attempt: _Attempt, outcome: ActionOutcome) -> _Recorded | None:
        now = self._now()
        with closing(self._session_factory()) as session:
            task = data_access.get_task(session, attempt.task_id)
            if task is None or task.status != IN_PROGRESS:
                logger.warning(
                    "Task left in_progress during the attempt; discarding outcome: status=%s",
                    None if task is None else task.status,
                )
                return None
            if isinstance(outcome, ActionSucceeded):
                recorded = self._record_success(session, task, outcome, now)
            elif isinstance(outcome, ActionWaiting):
                recorded = self._record_waiting(session, task, outcome, now)
            else:
                recorded = self._record_failure(session, task, outcome.error, now)
            session.commit()
            session.refresh(recorded.task)
            session.expunge(recorded.task)
        return recorded

    def _record_success(
        self, session: Session, task: Task, outcome: ActionSucceeded, now: datetime
    ) -> _Recorded:
        data_access.transition_task(session, task, COMPLETED, now=now, result=dict(outcome.result))
        logger.info("Task completed: type=%s attempts=%s", task.type, task.attempts)
        return _Recorded(
            task=task,
            facts=tuple(outcome.facts),
            tool_message=format_tool_response(task.type, dict(outcome.result)),
        )

    def _record_waiting(
        self, session: Session, task: Task, outcome: ActionWaiting, now: datetime
    ) -> _Recorded:
        wait_minutes = outcome.wait_minutes or self._default_wait_minutes
        run_at = now + timedelta(minutes=wait_minutes)
        merged = dict(task.context or {})
        merged.update(outcome.context)
        merged["wait_minutes"] = wait_minutes
        data_access.transition_task(
            session, task, WAITING, now=now, context=merged, scheduled_at=run_at
        )
        logger.info(
            "Task waiting: wait_type=%s recheck_at=%s",
            merged.get("wait_type"),
            run_at.isoformat(),
        )
        return _Recorded(task=task, run_at=run_at, enqueue=True)

    def _record_failure(
        self, session: Session, task: Task, error: ActionError, now: datetime
    ) -> _Recorded:
        message = error.format()
        context = dict(task.context or {})
        retry = error.retryable and should_retry(task.attempts, self._policy.max_attempts)
        if error.kind == ActionErrorKind.AUTHORIZATION:
            used = int(context.get(AUTHORIZATION_RETRIES_KEY, 0))
            if used >= 1:
                retry = False
            elif retry:
                context[AUTHORIZATION_RETRIES_KEY] = used + 1

        if not retry:
            data_access.transition_task(session, task, FAILED, now=now, error=message)
            logger.warning(
                "Task failed: kind=%s attempts=%s error=%s",
                error.kind.value,
                task.attempts,
                message,
            )
            return _Recorded(
                task=task,
                tool_message=f"{task.type} failed: {describe_error(error.kind, error.message)}",
            )

        run_at = self._policy.retry_at(now, task.attempts)
        data_access.transition_task(
            session,
            task,
            PENDING,
            now=now,
            error=message,
            context=context,
            scheduled_at=run_at,
        )
        logger.info(
            "Task attempt failed; retrying: kind=%s attempt=%s retry_at=%s",
            error.kind.value,
            task.attempts,
            run_at.isoformat(),
        )
        return _Recorded(task=task, run_at=run_at, enqueue=True)

    def _after_commit(self, attempt: _Attempt, recorded: _Recorded) -> None:
        if recorded.enqueue:
            enqueue_task_execution(self._queue, attempt.task_id, recorded.run_at)
        for fact in recorded.facts:
            self._pipeline.upsert(
                attempt.owner_id,
                fact.source_type,
                fact.source_id,
                fact.content,
                fact.metadata,
                created_at_source=fact.created_at_source,
                inline=False,
            )
        if recorded.tool_message and attempt.conversation_id is not None:
            with closing(self._session_factory()) as session:
                add_message(
                    session,
                    attempt.conversation_id,
                    "tool",
                    recorded.tool_message,
                    tool_call_id=attempt.context.get("tool_call_id") or str(attempt.task_id),
                )
                session.commit()

    def _load(self, task_id: UUID) -> Task | None:
        with closing(self._session_factory()) as session:
            task = data_access.get_task(session, task_id)
            if task is not None:
                session.expunge(task)
            return task

    def sweep(self, *, limit: int | None = None) -> int:
        """Resubmit non-terminal tasks whose scheduled time has elapsed."""
        batch = limit or settings.tasks.sweep_batch_size
        with closing(self._session_factory()) as session:
            due = data_access.list_due_tasks(session, self._now(), limit=batch)
            task_ids = [task.id for task in due]
        for task_id in task_ids:
            enqueue_task_execution(self._queue, task_id)
        if task_ids:
            logger.info("Task sweep resubmitted %s task(s)", len(task_ids))
        return len(task_ids)

    def mark_failed(self, task_id: UUID, reason: str) -> Task:
        """Force-terminate a task that is stuck in a non-terminal state."""
        with closing(self._session_factory()) as session:
            task = data_access.mark_failed(session, task_id, reason, now=self._now())
            session.commit()
            session.refresh(task)
            session.expunge(task)
        return task

    def wake_waiting_tasks(self, owner_id: str, sender: str) -> list[UUID]:
        """Recheck waiting tasks immediately when the expected sender writes in."""
        now = self._now()
        with closing(self._session_factory()) as session:
            tasks = data_access.list_tasks_awaiting_reply(session, owner_id, sender)
            for task in tasks:
                data_access.reschedule_task(session, task, now)
            session.commit()
            task_ids = [task.id for task in tasks]
        for task_id in task_ids:
            enqueue_task_execution(self._queue, task_id)
        if task_ids:
            logger.info("Woke %s waiting task(s) for reply from %s", len(task_ids), sender)
        return task_ids
