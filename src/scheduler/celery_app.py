"""Celery entry point for agent tasks, embedding retries and event processing."""

from __future__ import annotations

import logging
from typing import Any, Callable
from uuid import UUID

from celery import Celery
from celery.signals import worker_process_init

from actions.clients import ActionClients
from actions.handlers import build_action_gateway
from agent.runner import AgentRunner
from automation.events import EventProcessor
from config import settings
from knowledge.context_builder import ContextBuilder
from knowledge.pipeline import KnowledgePipeline
from knowledge.retrieval import KnowledgeRetriever
from llm import LLMClient
from observability import configure_logging
from scheduler.executor import TaskExecutor
from services.database import get_sync_session
from services.embeddings import EmbeddingGateway, build_embedding_gateway
from services.job_queue import (
    EMBED_DOCUMENT_JOB,
    EXECUTE_TASK_JOB,
    PROCESS_EVENT_JOB,
    RUN_INSTRUCTION_JOB,
    CeleryJobQueue,
    JobQueue,
)
from services.vector_index import QdrantVectorIndex, VectorIndex

LOGGER = logging.getLogger(__name__)

TASK_SWEEP_JOB = "tasks.sweep"
KNOWLEDGE_SWEEP_JOB = "knowledge.sweep"

celery_app = Celery("agent")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.result_backend = settings.celery.result_backend
celery_app.conf.task_default_queue = settings.celery.queue_name
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule[TASK_SWEEP_JOB] = {
    "task": TASK_SWEEP_JOB,
    "schedule": float(settings.tasks.sweep_interval_seconds),
}
beat_schedule[KNOWLEDGE_SWEEP_JOB] = {
    "task": KNOWLEDGE_SWEEP_JOB,
    "schedule": float(settings.embeddings.sweep_interval_seconds),
}
celery_app.conf.beat_schedule = beat_schedule


@worker_process_init.connect
def _configure_worker_logging(**_kwargs: Any) -> None:
    """Install structured logging in each worker process."""
    configure_logging(level=settings.log_level, json_output=settings.log_json, service="worker")


def _session_factory():
    """Return a new synchronous SQLAlchemy session for worker jobs."""
    return get_sync_session()


_action_clients = ActionClients()


def configure_action_clients(clients: ActionClients) -> None:
    """Install the mail, calendar and CRM clients used by action handlers."""
    global _action_clients
    _action_clients = clients


def _default_queue_factory() -> JobQueue:
    return CeleryJobQueue(send_task=celery_app.send_task)


def _default_embedding_gateway_factory() -> EmbeddingGateway:
    return build_embedding_gateway()


def _default_vector_index_factory() -> VectorIndex:
    return QdrantVectorIndex()


_queue_factory: Callable[[], JobQueue] = _default_queue_factory
_embedding_gateway_factory: Callable[[], EmbeddingGateway] = _default_embedding_gateway_factory
_vector_index_factory: Callable[[], VectorIndex] = _default_vector_index_factory


def _default_pipeline_factory() -> KnowledgePipeline:
    return KnowledgePipeline(
        session_factory=_session_factory,
        gateway=_embedding_gateway_factory(),
        index=_vector_index_factory(),
        queue=_queue_factory(),
    )


def _default_retriever_factory() -> KnowledgeRetriever:
    return KnowledgeRetriever(
        session_factory=_session_factory,
        gateway=_embedding_gateway_factory(),
        index=_vector_index_factory(),
    )


_pipeline_factory: Callable[[], KnowledgePipeline] = _default_pipeline_factory
_retriever_factory: Callable[[], KnowledgeRetriever] = _default_retriever_factory


def _default_executor_factory() -> TaskExecutor:
    retriever = _retriever_factory()
    return TaskExecutor(
        session_factory=_session_factory,
        gateway=build_action_gateway(_action_clients, retriever.search_for_tool),
        pipeline=_pipeline_factory(),
        queue=_queue_factory(),
    )


_executor_factory: Callable[[], TaskExecutor] = _default_executor_factory


def _default_event_processor_factory() -> EventProcessor:
    executor = _executor_factory()
    return EventProcessor(
        session_factory=_session_factory,
        queue=_queue_factory(),
        wake_waiting_tasks=executor.wake_waiting_tasks,
    )


def _default_agent_runner_factory() -> AgentRunner:
    return AgentRunner(
        session_factory=_session_factory,
        llm=LLMClient(),
        context_builder=ContextBuilder(_retriever_factory()),
        executor=_executor_factory(),
    )


_event_processor_factory: Callable[[], EventProcessor] = _default_event_processor_factory
_agent_runner_factory: Callable[[], AgentRunner] = _default_agent_runner_factory


@celery_app.task(name=EXECUTE_TASK_JOB)
def execute_task(task_id: str) -> dict[str, Any]:
    """Run one attempt of an agent task."""
    task = _executor_factory().execute(UUID(task_id))
    if task is None:
        return {"task_id": task_id, "status": "missing"}
    return {"task_id": task_id, "status": task.status, "attempts": task.attempts}


@celery_app.task(name=TASK_SWEEP_JOB)
def sweep_tasks() -> dict[str, int]:
    """Celery beat job that resubmits due non-terminal tasks."""
    return {"resubmitted": _executor_factory().sweep()}


@celery_app.task(name=EMBED_DOCUMENT_JOB)
def embed_document(document_id: str) -> dict[str, Any]:
    """Run one embedding attempt for a document."""
    document = _pipeline_factory().embed_document(UUID(document_id))
    return {
        "document_id": document_id,
        "embedding_status": document.embedding_status,
        "retry_count": document.embedding_retry_count,
    }


@celery_app.task(name=KNOWLEDGE_SWEEP_JOB)
def sweep_documents() -> dict[str, int]:
    """Celery beat job that re-enqueues pending and retry-due documents."""
    return _pipeline_factory().sweep()


@celery_app.task(name=RUN_INSTRUCTION_JOB)
def run_instruction(
    instruction_id: str,
    owner_id: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
    event_id: str | None = None,
) -> dict[str, Any]:
    """Run the agent for an instruction whose conditions matched an event."""
    turn = _agent_runner_factory().run_instruction(
        UUID(instruction_id),
        owner_id,
        event_type,
        payload or {},
        event_id=event_id,
    )
    if turn is None:
        return {"instruction_id": instruction_id, "status": "skipped"}
    return {
        "instruction_id": instruction_id,
        "status": "error" if turn.error else "ok",
        "conversation_id": str(turn.conversation_id),
        "task_ids": [str(task_id) for task_id in turn.task_ids],
    }


@celery_app.task(name=PROCESS_EVENT_JOB)
def process_event(
    owner_id: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
    event_id: str | None = None,
) -> dict[str, Any]:
    """Match an external event against the owner's standing instructions."""
    matched = _event_processor_factory().process_external_event(
        owner_id,
        event_type,
        payload or {},
        event_id=event_id,
    )
    LOGGER.info("Event job completed: type=%s matched=%s", event_type, len(matched))
    return {"matched_instructions": [str(instruction_id) for instruction_id in matched]}
