"""Retrieval-augmented context assembly for LLM calls."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

from config import settings
from knowledge.retrieval import KnowledgeRetriever, RetrievedDocument

_MAX_DOCUMENT_CHARS = 1500
_CONTEXT_HEADER = "Relevant context from your data:"


def _clip(text: str, limit: int = _MAX_DOCUMENT_CHARS) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def format_document(document: RetrievedDocument) -> str:
    """Render one retrieved document as a labelled context line."""
    meta = document.metadata
    content = _clip(document.content)
    date = meta.get("date") or (
        document.created_at_source.date().isoformat() if document.created_at_source else None
    )
    date_suffix = f" ({date})" if date else ""
    if document.source_type == "email":
        if meta.get("direction") == "sent":
            return f"Email to {meta.get('to', 'unknown recipient')}{date_suffix}: {content}"
        return f"Email from {meta.get('from', 'unknown sender')}{date_suffix}: {content}"
    if document.source_type == "contact":
        name = meta.get("name") or meta.get("email") or document.source_id
        return f"Contact: {name}: {content}"
    if document.source_type == "note":
        subject = meta.get("contact_email")
        label = f"Note about {subject}" if subject else "Note"
        return f"{label}{date_suffix}: {content}"
    if document.source_type == "calendar_event":
        title = meta.get("title") or "Calendar event"
        when = meta.get("start_time")
        when_suffix = f" ({when})" if when else ""
        return f"Calendar event {title}{when_suffix}: {content}"
    return f"{document.source_type}: {content}"


def build_grounding_context(documents: Sequence[RetrievedDocument]) -> str:
    """Render retrieved documents into one grounding block; empty when none matched."""
    if not documents:
        return ""
    body = "\n\n".join(format_document(document) for document in documents)
    return f"{_CONTEXT_HEADER}\n{body}"


def compose_messages(
    system_prompt: str,
    grounding_context: str,
    history: Sequence[Mapping[str, Any]],
    new_message: str | None = None,
    *,
    history_turns: int | None = None,
) -> list[dict[str, Any]]:
    """Build the chat message list: system prompt, grounding, recent turns, new message."""
    turns = settings.llm.history_turns if history_turns is None else history_turns
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    if grounding_context:
        messages.append({"role": "system", "content": grounding_context})
    recent = list(history)[-turns:] if turns > 0 else []
    for entry in recent:
        message = {"role": entry["role"], "content": entry.get("content") or ""}
        if entry.get("tool_call_id"):
            message["tool_call_id"] = entry["tool_call_id"]
        if entry.get("tool_calls"):
            message["tool_calls"] = entry["tool_calls"]
        messages.append(message)
    if new_message:
        messages.append({"role": "user", "content": new_message})
    return messages


@dataclass(frozen=True)
class GroundedContext:
    """Grounding text plus the documents it was built from."""

    text: str
    documents: tuple[RetrievedDocument, ...] = field(default_factory=tuple)


class ContextBuilder:
    """Retrieves documents for a query and renders them as grounding context."""

    def __init__(
        self,
        retriever: KnowledgeRetriever,
        *,
        limit: int | None = None,
        threshold: float | None = None,
    ) -> None:
        self._retriever = retriever
        self._limit = limit or settings.retrieval.context_limit
        self._threshold = (
            settings.retrieval.context_threshold if threshold is None else threshold
        )

    def build(self, owner_id: str, query_text: str) -> GroundedContext:
        documents = self._retriever.search_knowledge(
            owner_id,
            query_text,
            limit=self._limit,
            threshold=self._threshold,
        )
        return GroundedContext(text=build_grounding_context(documents), documents=tuple(documents))
