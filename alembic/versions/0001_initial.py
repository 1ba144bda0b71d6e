"""Create conversation, task, document and instruction tables.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_TASK_TYPES = (
    "send_email",
    "create_calendar_event",
    "create_contact",
    "update_contact",
    "add_note",
    "schedule_meeting",
    "search_knowledge",
)


def _enum(*values: str, name: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    """Create the core tables with their natural-key and scheduling indexes."""
    op.create_table(
        "conversations",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(length=200), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_conversations_owner_id", "conversations", ["owner_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("conversations.id"),
            nullable=False,
        ),
        sa.Column(
            "role",
            _enum("system", "user", "assistant", "tool", name="message_role"),
            nullable=False,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tool_call_id", sa.String(length=200), nullable=True),
        sa.Column("tool_calls", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_messages_conversation_created", "messages", ["conversation_id", "created_at"]
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(length=200), nullable=False),
        sa.Column(
            "conversation_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("conversations.id"),
            nullable=True,
        ),
        sa.Column("message_id", sa.Uuid(as_uuid=True), sa.ForeignKey("messages.id"), nullable=True),
        sa.Column("type", _enum(*_TASK_TYPES, name="task_type"), nullable=False),
        sa.Column(
            "status",
            _enum("pending", "in_progress", "waiting", "completed", "failed", name="task_status"),
            nullable=False,
        ),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("context", sa.JSON(), nullable=False),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("owner_id", "idempotency_key", name="uq_tasks_owner_idempotency"),
    )
    op.create_index("ix_tasks_status_scheduled", "tasks", ["status", "scheduled_at"])

    op.create_table(
        "documents",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(length=200), nullable=False),
        sa.Column(
            "source_type",
            _enum("email", "contact", "note", "calendar_event", name="source_type"),
            nullable=False,
        ),
        sa.Column("source_id", sa.String(length=500), nullable=False),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("embedding", sa.JSON(), nullable=True),
        sa.Column(
            "embedding_status",
            _enum("pending", "complete", "failed", "permanently_failed", name="embedding_status"),
            nullable=False,
        ),
        sa.Column("embedding_retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("embedding_failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("embedding_error", sa.Text(), nullable=True),
        sa.Column("embedding_generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at_source", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "owner_id", "source_type", "source_id", name="uq_documents_natural_key"
        ),
    )
    op.create_index("ix_documents_embedding_status", "documents", ["embedding_status"])

    op.create_table(
        "instructions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("owner_id", sa.String(length=200), nullable=False),
        sa.Column("instruction", sa.Text(), nullable=False),
        sa.Column(
            "trigger_type",
            _enum(
                "manual",
                "email_received",
                "calendar_event_created",
                "contact_created",
                "contact_updated",
                "scheduled",
                name="trigger_type",
            ),
            nullable=False,
        ),
        sa.Column("conditions", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_instructions_owner_trigger", "instructions", ["owner_id", "trigger_type"])


def downgrade() -> None:
    """Drop the core tables in dependency order."""
    op.drop_index("ix_instructions_owner_trigger", table_name="instructions")
    op.drop_table("instructions")
    op.drop_index("ix_documents_embedding_status", table_name="documents")
    op.drop_table("documents")
    op.drop_index("ix_tasks_status_scheduled", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_messages_conversation_created", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversations_owner_id", table_name="conversations")
    op.drop_table("conversations")
