"""Data models for the agent task and knowledge pipeline."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base

# SQLAlchemy base
Base = declarative_base()

TASK_TYPES = (
    "send_email",
    "create_calendar_event",
    "create_contact",
    "update_contact",
    "add_note",
    "schedule_meeting",
    "search_knowledge",
)
TASK_STATUSES = ("pending", "in_progress", "waiting", "completed", "failed")
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed"})
SOURCE_TYPES = ("email", "contact", "note", "calendar_event")
EMBEDDING_STATUSES = ("pending", "complete", "failed", "permanently_failed")
TRIGGER_TYPES = (
    "manual",
    "email_received",
    "calendar_event_created",
    "contact_created",
    "contact_updated",
    "scheduled",
)
MESSAGE_ROLES = ("system", "user", "assistant", "tool")

TaskTypeEnum = Enum(*TASK_TYPES, name="task_type", native_enum=False)
TaskStatusEnum = Enum(*TASK_STATUSES, name="task_status", native_enum=False)
SourceTypeEnum = Enum(*SOURCE_TYPES, name="source_type", native_enum=False)
EmbeddingStatusEnum = Enum(*EMBEDDING_STATUSES, name="embedding_status", native_enum=False)
TriggerTypeEnum = Enum(*TRIGGER_TYPES, name="trigger_type", native_enum=False)
MessageRoleEnum = Enum(*MESSAGE_ROLES, name="message_role", native_enum=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Conversation(Base):
    """Chat thread that owns messages and the tasks they spawn."""

    __tablename__ = "conversations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(200), nullable=False, index=True)
    title = Column(String(500), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


class Message(Base):
    """Single turn in a conversation."""

    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(Uuid(as_uuid=True), ForeignKey("conversations.id"), nullable=False)
    role = Column(MessageRoleEnum, nullable=False)
    content = Column(Text, nullable=False, default="")
    tool_call_id = Column(String(200), nullable=True)
    tool_calls = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)


class Task(Base):
    """Unit of agent-initiated side-effecting work."""

    __tablename__ = "tasks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(200), nullable=False)
    conversation_id = Column(Uuid(as_uuid=True), ForeignKey("conversations.id"), nullable=True)
    message_id = Column(Uuid(as_uuid=True), ForeignKey("messages.id"), nullable=True)
    type = Column(TaskTypeEnum, nullable=False)
    status = Column(TaskStatusEnum, nullable=False, default="pending")
    parameters = Column(JSON, nullable=False, default=dict)
    context = Column(JSON, nullable=False, default=dict)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    idempotency_key = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    __table_args__ = (
        UniqueConstraint("owner_id", "idempotency_key", name="uq_tasks_owner_idempotency"),
        Index("ix_tasks_status_scheduled", "status", "scheduled_at"),
    )


class Document(Base):
    """Indexed external fact with an optional embedding."""

    __tablename__ = "documents"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(200), nullable=False)
    source_type = Column(SourceTypeEnum, nullable=False)
    source_id = Column(String(500), nullable=False)
    content = Column(Text, nullable=True)
    # Named doc_metadata because ``metadata`` is reserved on declarative classes.
    doc_metadata = Column("metadata", JSON, nullable=False, default=dict)
    embedding = Column(JSON, nullable=True)
    embedding_status = Column(EmbeddingStatusEnum, nullable=False, default="pending")
    embedding_retry_count = Column(Integer, nullable=False, default=0)
    embedding_failed_at = Column(DateTime(timezone=True), nullable=True)
    embedding_error = Column(Text, nullable=True)
    embedding_generated_at = Column(DateTime(timezone=True), nullable=True)
    created_at_source = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)
    __table_args__ = (
        UniqueConstraint("owner_id", "source_type", "source_id", name="uq_documents_natural_key"),
        Index("ix_documents_embedding_status", "embedding_status"),
    )


class Instruction(Base):
    """Standing automation rule evaluated against external events."""

    __tablename__ = "instructions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(200), nullable=False)
    instruction = Column(Text, nullable=False)
    trigger_type = Column(TriggerTypeEnum, nullable=False)
    conditions = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    __table_args__ = (Index("ix_instructions_owner_trigger", "owner_id", "trigger_type"),)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _normalize_timestamps(target: Base, *names: str) -> None:
    """Attach UTC to loaded naive timestamps without triggering attribute loads."""
    for name in names:
        value = target.__dict__.get(name)
        if value is not None and value.tzinfo is None:
            setattr(target, name, _ensure_aware_timestamp(value))


@event.listens_for(Task, "load")
def _normalize_task_on_load(target: Task, _context: object) -> None:
    """Ensure loaded task timestamps retain timezone awareness."""
    _normalize_timestamps(target, "scheduled_at", "completed_at", "created_at", "updated_at")


@event.listens_for(Document, "load")
def _normalize_document_on_load(target: Document, _context: object) -> None:
    """Ensure loaded document timestamps retain timezone awareness."""
    _normalize_timestamps(
        target,
        "embedding_failed_at",
        "embedding_generated_at",
        "created_at_source",
        "created_at",
        "updated_at",
    )


@event.listens_for(Instruction, "load")
def _normalize_instruction_on_load(target: Instruction, _context: object) -> None:
    """Ensure loaded instruction expiry retains timezone awareness."""
    _normalize_timestamps(target, "expires_at", "created_at")


@event.listens_for(Message, "load")
def _normalize_message_on_load(target: Message, _context: object) -> None:
    """Ensure loaded message timestamps retain timezone awareness."""
    _normalize_timestamps(target, "created_at")


@event.listens_for(Task, "refresh")
def _normalize_task_on_refresh(target: Task, _context: object, _attrs: object) -> None:
    """Keep timestamps aware after a refresh following commit."""
    _normalize_timestamps(target, "scheduled_at", "completed_at", "created_at", "updated_at")


@event.listens_for(Document, "refresh")
def _normalize_document_on_refresh(target: Document, _context: object, _attrs: object) -> None:
    """Keep timestamps aware after a refresh following commit."""
    _normalize_document_on_load(target, _context)
