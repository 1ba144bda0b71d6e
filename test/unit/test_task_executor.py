"""Unit tests for the task executor attempt lifecycle."""

from __future__ import annotations

import uuid
from contextlib import closing
from dataclasses import dataclass
from datetime import timedelta

from actions.clients import ActionClients
from actions.errors import AuthorizationError, ProviderError
from actions.gateway import ActionGateway, ActionRequest, ActionSucceeded
from actions.handlers import ActionHandlers
from agent.conversations import create_conversation
from helpers.fakes import (
    FakeCalendarClient,
    FakeCrmClient,
    FakeEmbeddingGateway,
    FakeMailClient,
    FixedClock,
    InMemoryVectorIndex,
    RecordingJobQueue,
)
from knowledge.pipeline import KnowledgePipeline
from models import Document, Message
from scheduler.data_access import TaskCreateInput
from scheduler.executor import TaskExecutor, format_tool_response
from scheduler.retry_policy import RetryPolicy
from services.job_queue import EMBED_DOCUMENT_JOB, EXECUTE_TASK_JOB


@dataclass
class _Harness:
    executor: TaskExecutor
    pipeline: KnowledgePipeline
    queue: RecordingJobQueue
    clock: FixedClock
    index: InMemoryVectorIndex
    mail: FakeMailClient
    crm: FakeCrmClient


def _harness(session_factory, gateway: ActionGateway | None = None) -> _Harness:
    clock = FixedClock()
    queue = RecordingJobQueue()
    index = InMemoryVectorIndex()
    mail = FakeMailClient()
    crm = FakeCrmClient()
    pipeline = KnowledgePipeline(
        session_factory=session_factory,
        gateway=FakeEmbeddingGateway(),
        index=index,
        queue=queue,
        now=clock,
    )
    if gateway is None:
        clients = ActionClients(mail=mail, calendar=FakeCalendarClient(), crm=crm)
        handlers = ActionHandlers(
            clients,
            lambda *args, **kwargs: [],
            meeting_wait_minutes=30,
            now=clock,
        )
        gateway = handlers.register_all(ActionGateway())
    executor = TaskExecutor(
        session_factory=session_factory,
        gateway=gateway,
        pipeline=pipeline,
        queue=queue,
        policy=RetryPolicy(max_attempts=3, backoff_base_seconds=60, backoff_cap_seconds=3600),
        lease_seconds=300,
        now=clock,
    )
    return _Harness(executor, pipeline, queue, clock, index, mail, crm)


def _email_task(**overrides) -> TaskCreateInput:
    values = {
        "owner_id": "owner-1",
        "type": "send_email",
        "parameters": {"to": "jane@example.com", "subject": "Hello", "body": "Checking in."},
    }
    values.update(overrides)
    return TaskCreateInput(**values)


def test_create_task_enqueues_first_attempt(sqlite_session_factory) -> None:
    """Newly created tasks are submitted once; duplicates are not resubmitted."""
    harness = _harness(sqlite_session_factory)
    task_input = _email_task(dedup_token="call_1")

    task, created = harness.executor.create_task(task_input)
    again, created_again = harness.executor.create_task(task_input)

    assert created is True
    assert created_again is False
    assert again.id == task.id
    assert harness.queue.named(EXECUTE_TASK_JOB) == [({"task_id": str(task.id)}, None)]


def test_create_contact_completes_and_indexes_contact(sqlite_session_factory) -> None:
    """A successful contact creation completes the task and indexes the contact."""
    harness = _harness(sqlite_session_factory)
    task, _ = harness.executor.create_task(
        TaskCreateInput(
            owner_id="owner-1",
            type="create_contact",
            parameters={"email": "jane@example.com", "first_name": "Jane", "company": "Acme"},
        )
    )

    result = harness.executor.execute(task.id)

    assert result.status == "completed"
    assert result.attempts == 1
    assert result.result["contact_id"] == "contact-1"
    with closing(sqlite_session_factory()) as session:
        document = (
            session.query(Document)
            .filter(Document.source_type == "contact")
            .filter(Document.source_id == "contact-1")
            .one()
        )
        assert document.embedding_status == "pending"
        assert "Jane" in document.content
        document_id = document.id
    assert harness.queue.named(EMBED_DOCUMENT_JOB) == [({"document_id": str(document_id)}, None)]

    embedded = harness.pipeline.embed_document(document_id)

    assert embedded.embedding_status == "complete"
    assert document_id in harness.index.items


def test_validation_failure_is_terminal_after_one_attempt(sqlite_session_factory) -> None:
    """Invalid parameters fail the task without calling the provider."""
    harness = _harness(sqlite_session_factory)
    task, _ = harness.executor.create_task(
        _email_task(parameters={"to": "not-an-email", "subject": "Hi", "body": "Hello"})
    )

    result = harness.executor.execute(task.id)

    assert result.status == "failed"
    assert result.attempts == 1
    assert result.error.startswith("Validation Error: Invalid email format")
    assert harness.mail.sent == []
    assert len(harness.queue.named(EXECUTE_TASK_JOB)) == 1


def test_terminal_tasks_are_never_re_run(sqlite_session_factory) -> None:
    """Completed tasks ignore redelivered jobs and sweeps."""
    harness = _harness(sqlite_session_factory)
    task, _ = harness.executor.create_task(_email_task())
    harness.executor.execute(task.id)
    harness.clock.advance(hours=2)

    again = harness.executor.execute(task.id)

    assert again.status == "completed"
    assert again.attempts == 1
    assert len(harness.mail.sent) == 1
    assert harness.executor.sweep() == 0


def test_transient_failures_back_off_then_fail(sqlite_session_factory) -> None:
    """Retryable errors return the task to pending until attempts are exhausted."""

    def flaky(request: ActionRequest):
        raise ProviderError("upstream 503")

    harness = _harness(sqlite_session_factory, ActionGateway({"send_email": flaky}))
    task, _ = harness.executor.create_task(_email_task())
    start = harness.clock()

    first = harness.executor.execute(task.id)
    assert first.status == "pending"
    assert first.attempts == 1
    assert first.error == "API Error: upstream 503"
    assert first.scheduled_at == start + timedelta(seconds=60)
    assert harness.queue.named(EXECUTE_TASK_JOB)[-1] == (
        {"task_id": str(task.id)},
        start + timedelta(seconds=60),
    )

    early = harness.executor.execute(task.id)
    assert early.status == "pending"
    assert early.attempts == 1

    harness.clock.advance(seconds=60)
    second = harness.executor.execute(task.id)
    assert second.status == "pending"
    assert second.attempts == 2
    assert second.scheduled_at == harness.clock() + timedelta(seconds=120)

    harness.clock.advance(seconds=120)
    third = harness.executor.execute(task.id)
    assert third.status == "failed"
    assert third.attempts == 3
    assert third.error == "API Error: upstream 503"


def test_authorization_errors_get_one_retry(sqlite_session_factory) -> None:
    """An expired credential is retried once before the task fails."""

    def expired(request: ActionRequest):
        raise AuthorizationError("token expired")

    harness = _harness(sqlite_session_factory, ActionGateway({"send_email": expired}))
    task, _ = harness.executor.create_task(_email_task())

    first = harness.executor.execute(task.id)
    assert first.status == "pending"
    assert first.context["authorization_retries"] == 1

    harness.clock.advance(seconds=60)
    second = harness.executor.execute(task.id)
    assert second.status == "failed"
    assert second.attempts == 2
    assert second.error == "Authorization Error: token expired"


def test_unexpected_exceptions_are_recorded(sqlite_session_factory) -> None:
    """Exceptions outside the error taxonomy are recorded as retryable failures."""

    def broken(request: ActionRequest):
        raise RuntimeError("kaboom")

    harness = _harness(sqlite_session_factory, ActionGateway({"send_email": broken}))
    task, _ = harness.executor.create_task(_email_task())

    result = harness.executor.execute(task.id)

    assert result.status == "pending"
    assert result.error == "Unexpected Error: RuntimeError: kaboom"


def test_schedule_meeting_waits_for_reply(sqlite_session_factory) -> None:
    """A meeting request waits until the contact replies, then completes."""
    harness = _harness(sqlite_session_factory)
    task, _ = harness.executor.create_task(
        TaskCreateInput(
            owner_id="owner-1",
            type="schedule_meeting",
            parameters={"contact_email": "sam@example.com", "meeting_title": "Quarterly sync"},
        )
    )
    start = harness.clock()

    waiting = harness.executor.execute(task.id)

    assert waiting.status == "waiting"
    assert waiting.context["wait_type"] == "email_response"
    assert waiting.context["wait_for_email"] == "sam@example.com"
    assert waiting.context["wait_minutes"] == 30
    assert waiting.scheduled_at == start + timedelta(minutes=30)
    assert harness.mail.sent[0]["subject"] == "Meeting request: Quarterly sync"

    harness.clock.advance(minutes=5)
    harness.mail.replies.append(
        {"from": "sam@example.com", "message_id": "reply-1", "subject": "Re", "body": "Tue works"}
    )
    woken = harness.executor.wake_waiting_tasks("owner-1", "sam@example.com")
    assert woken == [task.id]

    done = harness.executor.execute(task.id)

    assert done.status == "completed"
    assert done.attempts == 2
    assert done.result["status"] == "reply_received"
    assert done.result["reply_body"] == "Tue works"


def test_waiting_task_rechecks_without_reply(sqlite_session_factory) -> None:
    """A re-check that finds no reply keeps the task waiting."""
    harness = _harness(sqlite_session_factory)
    task, _ = harness.executor.create_task(
        TaskCreateInput(
            owner_id="owner-1",
            type="schedule_meeting",
            parameters={"contact_email": "sam@example.com", "meeting_title": "Sync"},
        )
    )
    harness.executor.execute(task.id)
    harness.clock.advance(minutes=30)

    recheck = harness.executor.execute(task.id)

    assert recheck.status == "waiting"
    assert recheck.attempts == 2
    assert recheck.context["wait_for_email"] == "sam@example.com"
    assert "last_checked_at" in recheck.context


def test_outcome_discarded_when_task_failed_during_attempt(sqlite_session_factory) -> None:
    """An operator failing the task mid-attempt wins over the handler outcome."""
    holder: dict[str, TaskExecutor] = {}

    def interrupted(request: ActionRequest):
        holder["executor"].mark_failed(request.task_id, "cancelled by operator")
        return ActionSucceeded(result={"message_id": "late"})

    harness = _harness(sqlite_session_factory, ActionGateway({"send_email": interrupted}))
    holder["executor"] = harness.executor
    task, _ = harness.executor.create_task(_email_task())

    result = harness.executor.execute(task.id)

    assert result.status == "failed"
    assert result.error == "cancelled by operator"
    assert result.result is None


def test_completed_task_posts_tool_message(sqlite_session_factory) -> None:
    """Completion appends a tool message to the originating conversation."""
    harness = _harness(sqlite_session_factory)
    with closing(sqlite_session_factory()) as session:
        conversation = create_conversation(session, "owner-1")
        session.commit()
        conversation_id = conversation.id
    task, _ = harness.executor.create_task(
        _email_task(conversation_id=conversation_id, context={"tool_call_id": "call_7"})
    )

    harness.executor.execute(task.id)

    with closing(sqlite_session_factory()) as session:
        messages = session.query(Message).filter(Message.conversation_id == conversation_id).all()
        assert len(messages) == 1
        assert messages[0].role == "tool"
        assert messages[0].tool_call_id == "call_7"
        assert messages[0].content == "Email sent successfully (ID: msg-1)"


def test_failed_task_posts_readable_error(sqlite_session_factory) -> None:
    """Terminal failures are explained in the originating conversation."""
    harness = _harness(sqlite_session_factory)
    with closing(sqlite_session_factory()) as session:
        conversation = create_conversation(session, "owner-1")
        session.commit()
        conversation_id = conversation.id
    task, _ = harness.executor.create_task(
        _email_task(
            conversation_id=conversation_id,
            parameters={"to": "jane@example.com", "body": "No subject"},
        )
    )

    harness.executor.execute(task.id)

    with closing(sqlite_session_factory()) as session:
        message = session.query(Message).filter(Message.conversation_id == conversation_id).one()
        assert message.role == "tool"
        assert message.tool_call_id == str(task.id)
        assert message.content.startswith(
            "send_email failed: I couldn't run that action because some details were missing"
        )


def test_sweep_resubmits_due_tasks(sqlite_session_factory) -> None:
    """The sweep resubmits tasks whose scheduled time has elapsed."""
    harness = _harness(sqlite_session_factory)
    first, _ = harness.executor.create_task(_email_task())
    second, _ = harness.executor.create_task(
        _email_task(scheduled_at=harness.clock() + timedelta(hours=1))
    )
    harness.queue.jobs.clear()

    assert harness.executor.sweep() == 1
    assert harness.queue.named(EXECUTE_TASK_JOB) == [({"task_id": str(first.id)}, None)]

    harness.clock.advance(hours=1)
    harness.queue.jobs.clear()
    assert harness.executor.sweep() == 2
    submitted = {payload["task_id"] for payload, _ in harness.queue.named(EXECUTE_TASK_JOB)}
    assert submitted == {str(first.id), str(second.id)}


def test_execute_missing_task_returns_none(sqlite_session_factory) -> None:
    """Jobs for unknown task ids are dropped."""
    harness = _harness(sqlite_session_factory)
    assert harness.executor.execute(uuid.uuid4()) is None


def test_format_tool_response_summaries() -> None:
    """Tool responses summarize well-known results and fall back to JSON."""
    assert format_tool_response("create_contact", {"contact_id": "c1"}) == (
        "Contact created successfully (ID: c1)"
    )
    assert format_tool_response("create_calendar_event", {"event_id": "e1"}) == (
        "Calendar event created (ID: e1)"
    )
    assert format_tool_response("add_note", {"note_id": "n1"}) == 'add_note completed: {"note_id": "n1"}'
