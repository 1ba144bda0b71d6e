"""Conversation and message persistence helpers."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from models import MESSAGE_ROLES, Conversation, Message

logger = logging.getLogger(__name__)


def create_conversation(session: Session, owner_id: str, title: str | None = None) -> Conversation:
    """Insert a new conversation for an owner."""
    conversation = Conversation(owner_id=owner_id, title=title)
    session.add(conversation)
    session.flush()
    return conversation


def get_conversation(session: Session, owner_id: str, conversation_id: UUID) -> Conversation | None:
    """Return the conversation when it belongs to ``owner_id``."""
    conversation = session.get(Conversation, conversation_id)
    if conversation is None or conversation.owner_id != owner_id:
        return None
    return conversation


def add_message(
    session: Session,
    conversation_id: UUID,
    role: str,
    content: str,
    *,
    tool_call_id: str | None = None,
    tool_calls: list[dict[str, Any]] | None = None,
) -> Message:
    """Append a message and bump the conversation's ``updated_at``."""
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Unsupported message role: {role}")
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation_id,
        role=role,
        content=content or "",
        tool_call_id=tool_call_id,
        tool_calls=tool_calls,
        created_at=now,
    )
    session.add(message)
    conversation = session.get(Conversation, conversation_id)
    if conversation is not None:
        conversation.updated_at = now
    session.flush()
    return message


def recent_messages(session: Session, conversation_id: UUID, *, limit: int) -> list[Message]:
    """Return the latest ``limit`` messages in chronological order."""
    if limit <= 0:
        return []
    rows = (
        session.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def history_entries(messages: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert stored messages into chat-completion history entries.

    Tool results complete asynchronously, so they rarely sit directly after
    the assistant turn that requested them. Both sides of a tool exchange are
    therefore rendered as plain assistant text.
    """
    entries: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "tool":
            entries.append({"role": "assistant", "content": f"[tool result] {message.content}"})
        elif message.role == "assistant" and message.tool_calls:
            names = ", ".join(str(call.get("name")) for call in message.tool_calls)
            text = message.content or ""
            entries.append(
                {"role": "assistant", "content": f"{text}\n[requested tools: {names}]".strip()}
            )
        else:
            entries.append({"role": message.role, "content": message.content})
    return entries
