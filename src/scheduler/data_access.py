"""Data access layer for agent tasks."""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import TASK_TYPES, Task
from scheduler.state_machine import (
    ACTIVE_STATUSES,
    COMPLETED,
    FAILED,
    IN_PROGRESS,
    WAITING,
    ensure_transition,
    is_terminal,
)

logger = logging.getLogger(__name__)

UNSET = object()


class TaskNotFound(LookupError):
    """Raised when a task id does not exist."""

    def __init__(self, task_id: UUID) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found.")


@dataclass(frozen=True)
class TaskCreateInput:
    """Inputs for creating a task from a tool call or a fired rule."""

    owner_id: str
    type: str
    parameters: dict[str, Any] = field(default_factory=dict)
    conversation_id: UUID | None = None
    message_id: UUID | None = None
    scheduled_at: datetime | None = None
    dedup_token: str | None = None
    context: dict[str, Any] = field(default_factory=dict)


def _normalize_timestamp(value: datetime, label: str) -> datetime:
    """Require timezone-aware timestamps and normalize them to UTC."""
    if value.tzinfo is None:
        raise ValueError(f"{label} must be timezone-aware.")
    return value.astimezone(timezone.utc)


def compute_idempotency_key(
    owner_id: str,
    task_type: str,
    parameters: dict[str, Any],
    dedup_token: str,
) -> str:
    """Hash the logical identity of a task so redelivered events map to one row."""
    material = json.dumps(
        [owner_id, task_type, parameters, dedup_token],
        sort_keys=True,
        default=str,
        separators=(",", ":"),
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def get_task(session: Session, task_id: UUID) -> Task | None:
    """Return a task by id, refreshing any cached instance."""
    return session.get(Task, task_id, populate_existing=True)


def get_task_by_idempotency_key(session: Session, owner_id: str, key: str) -> Task | None:
    """Return the task that already claimed an idempotency key, if any."""
    return (
        session.query(Task)
        .filter(Task.owner_id == owner_id)
        .filter(Task.idempotency_key == key)
        .first()
    )


def create_task(
    session: Session,
    task_input: TaskCreateInput,
    *,
    now: datetime | None = None,
) -> tuple[Task, bool]:
    """Create a pending task, returning ``(task, created)``.

    When a dedup token is supplied, a second call for the same owner, type,
    parameters and token returns the existing task instead of inserting a
    duplicate. A concurrent duplicate insert rolls back the session before
    returning the winner.
    """
    if task_input.type not in TASK_TYPES:
        raise ValueError(f"Unknown task type: {task_input.type}")
    if not task_input.owner_id:
        raise ValueError("owner_id is required.")

    key = None
    if task_input.dedup_token:
        key = compute_idempotency_key(
            task_input.owner_id,
            task_input.type,
            task_input.parameters,
            task_input.dedup_token,
        )
        existing = get_task_by_idempotency_key(session, task_input.owner_id, key)
        if existing is not None:
            logger.info("Task already exists for idempotency key: task=%s", existing.id)
            return existing, False

    timestamp = _normalize_timestamp(now or datetime.now(timezone.utc), "created_at")
    scheduled_at = None
    if task_input.scheduled_at is not None:
        scheduled_at = _normalize_timestamp(task_input.scheduled_at, "scheduled_at")
    task = Task(
        owner_id=task_input.owner_id,
        conversation_id=task_input.conversation_id,
        message_id=task_input.message_id,
        type=task_input.type,
        status="pending",
        parameters=dict(task_input.parameters),
        context=dict(task_input.context),
        attempts=0,
        scheduled_at=scheduled_at,
        idempotency_key=key,
        created_at=timestamp,
        updated_at=timestamp,
    )
    session.add(task)
    try:
        session.flush()
    except IntegrityError:
        if key is None:
            raise
        session.rollback()
        existing = get_task_by_idempotency_key(session, task_input.owner_id, key)
        if existing is None:
            raise
        return existing, False
    logger.info("Task created: task=%s type=%s owner=%s", task.id, task.type, task.owner_id)
    return task, True


def claim_task(
    session: Session,
    task_id: UUID,
    *,
    now: datetime,
    lease_seconds: int,
) -> Task | None:
    """Atomically start an attempt, returning None if another worker owns it.

    The conditional update increments ``attempts``, moves the task to
    ``in_progress`` and pushes ``scheduled_at`` out by the lease so the sweep
    only recovers the attempt if this worker dies.
    """
    now = _normalize_timestamp(now, "now")
    lease_until = now + timedelta(seconds=lease_seconds)
    result = session.execute(
        update(Task)
        .where(Task.id == task_id)
        .where(Task.status.in_(ACTIVE_STATUSES))
        .where(or_(Task.scheduled_at.is_(None), Task.scheduled_at <= now))
        .values(
            status=IN_PROGRESS,
            attempts=Task.attempts + 1,
            scheduled_at=lease_until,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return get_task(session, task_id)


def list_due_tasks(session: Session, now: datetime, *, limit: int) -> list[Task]:
    """Return non-terminal tasks whose scheduled time has elapsed or is unset."""
    now = _normalize_timestamp(now, "now")
    return (
        session.query(Task)
        .filter(Task.status.in_(ACTIVE_STATUSES))
        .filter(or_(Task.scheduled_at.is_(None), Task.scheduled_at <= now))
        .order_by(Task.created_at.asc())
        .limit(limit)
        .all()
    )


def transition_task(
    session: Session,
    task: Task,
    target: str,
    *,
    now: datetime,
    result: Any = UNSET,
    error: Any = UNSET,
    context: Any = UNSET,
    scheduled_at: Any = UNSET,
    override: bool = False,
) -> Task:
    """Move a task along a defined edge and apply the accompanying field updates."""
    ensure_transition(task.status, target, override=override)
    timestamp = _normalize_timestamp(now, "now")
    task.status = target
    if result is not UNSET:
        task.result = result
    if error is not UNSET:
        task.error = error
    if context is not UNSET:
        task.context = dict(context)
    if scheduled_at is not UNSET:
        task.scheduled_at = scheduled_at
    if target == COMPLETED:
        task.error = None
        task.completed_at = timestamp
        task.scheduled_at = None
    elif target == FAILED:
        task.result = None
        task.scheduled_at = None
    task.updated_at = timestamp
    session.flush()
    return task


def mark_failed(
    session: Session,
    task_id: UUID,
    reason: str,
    *,
    now: datetime | None = None,
) -> Task:
    """Operator override that force-terminates a stuck task."""
    task = get_task(session, task_id)
    if task is None:
        raise TaskNotFound(task_id)
    transition_task(
        session,
        task,
        FAILED,
        now=now or datetime.now(timezone.utc),
        error=reason,
        override=True,
    )
    logger.warning("Task marked failed by operator: task=%s reason=%s", task_id, reason)
    return task


def list_tasks_awaiting_reply(session: Session, owner_id: str, sender: str) -> list[Task]:
    """Return waiting tasks whose context expects an email from ``sender``."""
    sender = sender.strip().lower()
    waiting = (
        session.query(Task)
        .filter(Task.owner_id == owner_id)
        .filter(Task.status == WAITING)
        .all()
    )
    matches: list[Task] = []
    for task in waiting:
        context = task.context or {}
        if context.get("wait_type") != "email_response":
            continue
        expected = str(context.get("wait_for_email") or "").strip().lower()
        if expected and expected == sender:
            matches.append(task)
    return matches


def reschedule_task(session: Session, task: Task, run_at: datetime) -> Task:
    """Move a non-terminal task's next eligible time without changing status."""
    if is_terminal(task.status):
        raise ValueError("terminal tasks cannot be rescheduled.")
    task.scheduled_at = _normalize_timestamp(run_at, "run_at")
    session.flush()
    return task
