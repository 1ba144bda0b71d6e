"""Agent turns: ground a prompt, ask the LLM, and turn tool calls into tasks."""

from __future__ import annotations

import json
import logging
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from actions.tools import TOOL_DEFINITIONS
from agent.conversations import (
    add_message,
    create_conversation,
    get_conversation,
    history_entries,
    recent_messages,
)
from config import settings
from knowledge.context_builder import ContextBuilder
from llm import AgentReply, LLMClient, LLMError, ToolCall
from models import TASK_TYPES, Instruction
from observability import log_context
from scheduler.data_access import TaskCreateInput
from scheduler.executor import TaskExecutor

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a helpful assistant with access to the user's email, calendar and CRM.
Answer questions using the provided context when it is relevant. When the user
asks you to take an action, call the matching tool with complete parameters.
Actions run in the background; tell the user what you started rather than
claiming it already finished."""

INSTRUCTION_PROMPT = """Execute the following instruction based on the triggered event:

Instruction: {instruction}

Event Type: {event_type}
Event Data: {event_data}

Please take the appropriate action based on this instruction and event."""


class ConversationNotFound(LookupError):
    """Raised when a conversation does not exist for the owner."""


@dataclass(frozen=True)
class AgentTurn:
    """Result of one agent turn."""

    conversation_id: UUID
    content: str
    task_ids: tuple[UUID, ...] = ()
    error: str | None = None


def build_instruction_prompt(instruction: str, event_type: str, payload: Mapping[str, Any]) -> str:
    """Render the prompt used when a standing instruction fires."""
    return INSTRUCTION_PROMPT.format(
        instruction=instruction,
        event_type=event_type,
        event_data=json.dumps(dict(payload), indent=2, sort_keys=True, default=str),
    )


def _serialize_tool_calls(calls: Sequence[ToolCall]) -> list[dict[str, Any]]:
    return [{"id": call.id, "name": call.name, "arguments": call.arguments} for call in calls]


class AgentRunner:
    """Coordinates retrieval, the LLM and task creation for one turn."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        llm: LLMClient,
        context_builder: ContextBuilder,
        executor: TaskExecutor,
        history_turns: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._llm = llm
        self._context_builder = context_builder
        self._executor = executor
        self._history_turns = history_turns or settings.llm.history_turns

    def respond(self, owner_id: str, conversation_id: UUID, text: str) -> AgentTurn:
        """Answer a chat message, creating tasks for any requested actions."""
        with log_context({"owner_id": owner_id, "job": "agent.respond"}):
            with closing(self._session_factory()) as session:
                if get_conversation(session, owner_id, conversation_id) is None:
                    raise ConversationNotFound(f"Conversation {conversation_id} not found.")
            return self._turn(owner_id, conversation_id, text, dedup_prefix=None)

    def run_instruction(
        self,
        instruction_id: UUID,
        owner_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        event_id: str | None = None,
    ) -> AgentTurn | None:
        """Run a standing instruction against the event that triggered it."""
        with log_context({"owner_id": owner_id, "job": "agent.run_instruction"}):
            with closing(self._session_factory()) as session:
                instruction = session.get(Instruction, instruction_id)
                if instruction is None or instruction.owner_id != owner_id or not instruction.is_active:
                    logger.warning("Instruction unavailable; skipping run: instruction=%s", instruction_id)
                    return None
                prompt = build_instruction_prompt(instruction.instruction, event_type, payload)
                conversation = create_conversation(session, owner_id, title=f"Automated: {event_type}")
                session.commit()
                conversation_id = conversation.id
            dedup_prefix = f"{event_id}:{instruction_id}" if event_id else None
            return self._turn(owner_id, conversation_id, prompt, dedup_prefix=dedup_prefix)

    def _turn(
        self,
        owner_id: str,
        conversation_id: UUID,
        text: str,
        *,
        dedup_prefix: str | None,
    ) -> AgentTurn:
        with closing(self._session_factory()) as session:
            history = history_entries(
                recent_messages(session, conversation_id, limit=self._history_turns)
            )
            add_message(session, conversation_id, "user", text)
            session.commit()

        grounding = self._context_builder.build(owner_id, text)
        try:
            reply = self._llm.converse(
                SYSTEM_PROMPT,
                history,
                grounding.text,
                TOOL_DEFINITIONS,
                new_message=text,
            )
        except LLMError as exc:
            logger.error("LLM call failed: kind=%s error=%s", exc.kind, exc.message)
            message = exc.user_message()
            self._store_assistant(conversation_id, message, AgentReply(content=message))
            return AgentTurn(conversation_id=conversation_id, content=message, error=exc.kind)

        message_id = self._store_assistant(conversation_id, reply.content, reply)
        task_ids = self._create_tasks(owner_id, conversation_id, message_id, reply, dedup_prefix)
        return AgentTurn(conversation_id=conversation_id, content=reply.content, task_ids=task_ids)

    def _store_assistant(self, conversation_id: UUID, content: str, reply: AgentReply) -> UUID:
        with closing(self._session_factory()) as session:
            message = add_message(
                session,
                conversation_id,
                "assistant",
                content,
                tool_calls=_serialize_tool_calls(reply.tool_calls) or None,
            )
            session.commit()
            return message.id

    def _create_tasks(
        self,
        owner_id: str,
        conversation_id: UUID,
        message_id: UUID,
        reply: AgentReply,
        dedup_prefix: str | None,
    ) -> tuple[UUID, ...]:
        task_ids: list[UUID] = []
        for index, call in enumerate(reply.tool_calls):
            if call.name not in TASK_TYPES:
                logger.warning("Ignoring tool call for unknown action: %s", call.name)
                continue
            token = f"{dedup_prefix}:{index}" if dedup_prefix else call.id or None
            task, _ = self._executor.create_task(
                TaskCreateInput(
                    owner_id=owner_id,
                    type=call.name,
                    parameters=dict(call.arguments),
                    conversation_id=conversation_id,
                    message_id=message_id,
                    dedup_token=token,
                    context={"tool_call_id": call.id} if call.id else {},
                )
            )
            task_ids.append(task.id)
        return tuple(task_ids)
