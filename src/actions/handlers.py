"""Handlers implementing each agent action type."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from actions.clients import ActionClients
from actions.errors import NotFoundError
from actions.gateway import (
    ActionGateway,
    ActionOutcome,
    ActionRequest,
    ActionSucceeded,
    ActionWaiting,
    KnowledgeFact,
)
from config import settings
from time_utils import parse_iso_datetime

logger = logging.getLogger(__name__)

KnowledgeSearch = Callable[..., list[dict[str, Any]]]

_CONTACT_FIELDS = ("first_name", "last_name", "email", "company", "phone", "notes")


def _contact_fact(contact_id: str, properties: dict[str, Any]) -> KnowledgeFact:
    """Describe a CRM contact as indexable text."""
    name = " ".join(
        part for part in (properties.get("first_name"), properties.get("last_name")) if part
    )
    lines = []
    if name:
        lines.append(f"Name: {name}")
    for key in ("email", "company", "phone", "notes"):
        if properties.get(key):
            lines.append(f"{key.capitalize()}: {properties[key]}")
    metadata = {key: properties[key] for key in _CONTACT_FIELDS if properties.get(key)}
    if name:
        metadata["name"] = name
    return KnowledgeFact(
        source_type="contact",
        source_id=str(contact_id),
        content="\n".join(lines),
        metadata=metadata,
    )


class ActionHandlers:
    """Side-effecting operations behind the action gateway."""

    def __init__(
        self,
        clients: ActionClients,
        search: KnowledgeSearch,
        *,
        meeting_wait_minutes: int | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._clients = clients
        self._search = search
        self._meeting_wait_minutes = (
            meeting_wait_minutes or settings.tasks.meeting_reply_wait_minutes
        )
        self._now = now or (lambda: datetime.now(timezone.utc))

    def register_all(self, gateway: ActionGateway) -> ActionGateway:
        """Register every handler on the gateway."""
        gateway.register("send_email", self.send_email)
        gateway.register("create_calendar_event", self.create_calendar_event)
        gateway.register("create_contact", self.create_contact)
        gateway.register("update_contact", self.update_contact)
        gateway.register("add_note", self.add_note)
        gateway.register("schedule_meeting", self.schedule_meeting)
        gateway.register("search_knowledge", self.search_knowledge)
        return gateway

    def send_email(self, request: ActionRequest) -> ActionOutcome:
        params = request.params
        sent = self._clients.mail.send_email(
            request.owner_id,
            to=params["to"],
            subject=params["subject"],
            body=params["body"],
            cc=params.get("cc"),
            bcc=params.get("bcc"),
        )
        message_id = str(sent.get("message_id") or f"task:{request.task_id}")
        sent_at = self._now()
        fact = KnowledgeFact(
            source_type="email",
            source_id=message_id,
            content=f"Subject: {params['subject']}\n\n{params['body']}",
            metadata={
                "direction": "sent",
                "to": params["to"],
                "subject": params["subject"],
                "date": sent_at.isoformat(),
            },
            created_at_source=sent_at,
        )
        return ActionSucceeded(
            result={"message_id": message_id, "thread_id": sent.get("thread_id"), "to": params["to"]},
            facts=(fact,),
        )

    def create_calendar_event(self, request: ActionRequest) -> ActionOutcome:
        params = request.params
        event = self._clients.calendar.create_event(
            request.owner_id,
            title=params["title"],
            start_time=params["start_time"],
            end_time=params["end_time"],
            description=params.get("description"),
            location=params.get("location"),
            attendees=params.get("attendees"),
        )
        event_id = str(event["id"])
        content_parts = [params["title"]]
        if params.get("description"):
            content_parts.append(params["description"])
        metadata = {
            "title": params["title"],
            "start_time": params["start_time"],
            "end_time": params["end_time"],
        }
        if params.get("location"):
            metadata["location"] = params["location"]
        if params.get("attendees"):
            metadata["attendees"] = list(params["attendees"])
        fact = KnowledgeFact(
            source_type="calendar_event",
            source_id=event_id,
            content="\n".join(content_parts),
            metadata=metadata,
            created_at_source=parse_iso_datetime(params["start_time"]),
        )
        return ActionSucceeded(
            result={"event_id": event_id, "title": params["title"], "link": event.get("link")},
            facts=(fact,),
        )

    def create_contact(self, request: ActionRequest) -> ActionOutcome:
        params = request.params
        properties = {key: params[key] for key in _CONTACT_FIELDS if params.get(key)}
        crm = self._clients.crm
        # Redelivered jobs must not create a second contact for the same address.
        existing = crm.find_contact_by_email(request.owner_id, params["email"])
        if existing is not None:
            contact = existing
            created = False
        else:
            contact = crm.create_contact(request.owner_id, properties)
            created = True
        contact_id = str(contact["id"])
        stored = dict(contact.get("properties") or properties)
        return ActionSucceeded(
            result={"contact_id": contact_id, "email": params["email"], "created": created},
            facts=(_contact_fact(contact_id, stored),),
        )

    def update_contact(self, request: ActionRequest) -> ActionOutcome:
        params = request.params
        crm = self._clients.crm
        contact = crm.find_contact_by_email(request.owner_id, params["email"])
        if contact is None:
            raise NotFoundError(f"No contact found with email {params['email']}")
        contact_id = str(contact["id"])
        updated = crm.update_contact(request.owner_id, contact_id, params["properties"])
        merged = dict(contact.get("properties") or {})
        merged.update(updated.get("properties") or params["properties"])
        merged.setdefault("email", params["email"])
        return ActionSucceeded(
            result={"contact_id": contact_id, "updated_properties": sorted(params["properties"])},
            facts=(_contact_fact(contact_id, merged),),
        )

    def add_note(self, request: ActionRequest) -> ActionOutcome:
        params = request.params
        crm = self._clients.crm
        contact = crm.find_contact_by_email(request.owner_id, params["contact_email"])
        if contact is None:
            raise NotFoundError(f"No contact found with email {params['contact_email']}")
        contact_id = str(contact["id"])
        note = crm.create_note(request.owner_id, contact_id, params["note_content"])
        note_id = str(note["id"])
        fact = KnowledgeFact(
            source_type="note",
            source_id=note_id,
            content=params["note_content"],
            metadata={"contact_email": params["contact_email"], "contact_id": contact_id},
            created_at_source=self._now(),
        )
        return ActionSucceeded(
            result={"note_id": note_id, "contact_id": contact_id},
            facts=(fact,),
        )

    def schedule_meeting(self, request: ActionRequest) -> ActionOutcome:
        """Email proposed times, then wait for the contact to reply.

        The first attempt sends the request and returns a waiting outcome. Each
        re-check looks for a reply sent after the request and completes once
        one arrives.
        """
        if request.context.get("wait_type") == "email_response":
            return self._check_meeting_reply(request)

        params = request.params
        body = _meeting_request_body(params)
        sent = self._clients.mail.send_email(
            request.owner_id,
            to=params["contact_email"],
            subject=f"Meeting request: {params['meeting_title']}",
            body=body,
        )
        requested_at = self._now()
        context = {
            "wait_type": "email_response",
            "wait_for_email": params["contact_email"],
            "email_message_id": sent.get("message_id"),
            "thread_id": sent.get("thread_id"),
            "requested_at": requested_at.isoformat(),
            "meeting_details": {
                "title": params["meeting_title"],
                "duration_minutes": params["duration_minutes"],
                "preferred_times": params.get("preferred_times") or [],
            },
        }
        logger.info(
            "Meeting request sent; waiting for reply: task=%s contact=%s",
            request.task_id,
            params["contact_email"],
        )
        return ActionWaiting(context=context, wait_minutes=self._meeting_wait_minutes)

    def _check_meeting_reply(self, request: ActionRequest) -> ActionOutcome:
        context = request.context
        since = parse_iso_datetime(context.get("requested_at")) or self._now()
        reply = self._clients.mail.find_reply(
            request.owner_id,
            from_email=context["wait_for_email"],
            since=since,
            thread_id=context.get("thread_id"),
        )
        checked_at = self._now().isoformat()
        if reply is None:
            return ActionWaiting(
                context={"last_checked_at": checked_at},
                wait_minutes=self._meeting_wait_minutes,
            )
        reply_id = str(reply.get("message_id") or f"reply:{request.task_id}")
        received_at = parse_iso_datetime(reply.get("received_at"))
        fact = KnowledgeFact(
            source_type="email",
            source_id=reply_id,
            content=f"Subject: {reply.get('subject', '')}\n\n{reply.get('body', '')}",
            metadata={
                "direction": "received",
                "from": context["wait_for_email"],
                "subject": reply.get("subject", ""),
                "date": received_at.isoformat() if received_at else checked_at,
            },
            created_at_source=received_at,
        )
        return ActionSucceeded(
            result={
                "status": "reply_received",
                "reply_message_id": reply_id,
                "reply_body": reply.get("body", ""),
                "meeting_details": context.get("meeting_details", {}),
            },
            facts=(fact,),
        )

    def search_knowledge(self, request: ActionRequest) -> ActionOutcome:
        params = request.params
        results = self._search(
            request.owner_id,
            params["query"],
            source_types=params.get("source_types"),
            limit=params.get("limit"),
        )
        return ActionSucceeded(result={"query": params["query"], "count": len(results), "results": results})


def _meeting_request_body(params: dict[str, Any]) -> str:
    lines = []
    if params.get("message"):
        lines.extend([params["message"], ""])
    lines.append(
        f"I'd like to schedule \"{params['meeting_title']}\" "
        f"({params['duration_minutes']} minutes)."
    )
    slots: Sequence[dict[str, str]] = params.get("preferred_times") or []
    if slots:
        lines.append("Would any of these times work for you?")
        lines.extend(f"- {slot['date']} at {slot['time']}" for slot in slots)
    else:
        lines.append("Please let me know a few times that work for you.")
    return "\n".join(lines)


def build_action_gateway(clients: ActionClients, search: KnowledgeSearch) -> ActionGateway:
    """Build a gateway with every built-in handler registered."""
    return ActionHandlers(clients, search).register_all(ActionGateway())
