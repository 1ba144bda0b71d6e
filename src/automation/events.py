"""Entry point turning external events into agent work."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Any, Callable, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from automation.conditions import matches
from models import TRIGGER_TYPES, Instruction
from observability import log_context
from services.job_queue import RUN_INSTRUCTION_JOB, JobQueue
from time_utils import ensure_utc

logger = logging.getLogger(__name__)

WakeWaitingTasks = Callable[[str, str], list[UUID]]


@dataclass(frozen=True)
class _Rule:
    id: UUID
    conditions: dict[str, Any]


def sender_address(payload: Mapping[str, Any]) -> str | None:
    """Return the bare sender address of an inbound email payload."""
    raw = payload.get("from")
    if not raw:
        return None
    _, address = parseaddr(str(raw))
    return address.lower() or None


class EventProcessor:
    """Matches external events against standing instructions."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        queue: JobQueue,
        wake_waiting_tasks: WakeWaitingTasks | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._queue = queue
        self._wake_waiting_tasks = wake_waiting_tasks
        self._now = now or (lambda: datetime.now(timezone.utc))

    def process_external_event(
        self,
        owner_id: str,
        event_type: str,
        payload: Mapping[str, Any],
        event_id: str | None = None,
    ) -> list[UUID]:
        """Wake waiting tasks and enqueue an agent run per matching instruction.

        Returns the ids of the instructions whose conditions matched.
        """
        with log_context({"owner_id": owner_id, "job": "events.process"}):
            if event_type not in TRIGGER_TYPES:
                logger.warning("Ignoring event with unknown type: %s", event_type)
                return []
            payload = dict(payload or {})
            if event_type == "email_received" and self._wake_waiting_tasks is not None:
                sender = sender_address(payload)
                if sender:
                    self._wake_waiting_tasks(owner_id, sender)

            matched: list[UUID] = []
            for rule in self._active_rules(owner_id, event_type):
                if not matches(rule.conditions, payload):
                    continue
                matched.append(rule.id)
                self._queue.enqueue(
                    RUN_INSTRUCTION_JOB,
                    {
                        "instruction_id": str(rule.id),
                        "owner_id": owner_id,
                        "event_type": event_type,
                        "payload": payload,
                        "event_id": event_id,
                    },
                )
            logger.info(
                "Event processed: type=%s matched_instructions=%s",
                event_type,
                len(matched),
            )
            return matched

    def _active_rules(self, owner_id: str, event_type: str) -> list[_Rule]:
        now = self._now()
        with closing(self._session_factory()) as session:
            rows = (
                session.query(Instruction)
                .filter(Instruction.owner_id == owner_id)
                .filter(Instruction.trigger_type == event_type)
                .filter(Instruction.is_active.is_(True))
                .order_by(Instruction.created_at.asc())
                .all()
            )
            return [
                _Rule(id=row.id, conditions=dict(row.conditions or {}))
                for row in rows
                if row.expires_at is None or ensure_utc(row.expires_at) > now
            ]
