"""Action gateway dispatching validated task parameters to per-type handlers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Protocol, Union
from uuid import UUID

from actions.errors import ActionError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KnowledgeFact:
    """New or changed external fact produced by a side effect."""

    source_type: str
    source_id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at_source: datetime | None = None


@dataclass(frozen=True)
class ActionRequest:
    """Inputs handed to a handler for one attempt."""

    task_type: str
    owner_id: str
    params: dict[str, Any]
    context: dict[str, Any] = field(default_factory=dict)
    task_id: UUID | None = None


@dataclass(frozen=True)
class ActionSucceeded:
    """The side effect happened; ``facts`` feed the knowledge index."""

    result: dict[str, Any]
    facts: tuple[KnowledgeFact, ...] = ()


@dataclass(frozen=True)
class ActionWaiting:
    """Completion depends on a future external signal."""

    context: dict[str, Any]
    wait_minutes: int


@dataclass(frozen=True)
class ActionFailed:
    """The side effect did not happen."""

    error: ActionError


ActionOutcome = Union[ActionSucceeded, ActionWaiting, ActionFailed]


class ActionHandler(Protocol):
    """Callable implementing one action type."""

    def __call__(self, request: ActionRequest) -> ActionOutcome:
        """Run the side effect for one attempt."""
        ...


class ActionGateway:
    """Registry of handlers keyed by task type.

    Declared ``ActionError``s are converted into ``ActionFailed`` outcomes.
    Anything else propagates to the worker boundary, which records it as a
    failure after logging the traceback.
    """

    def __init__(self, handlers: Mapping[str, ActionHandler] | None = None) -> None:
        self._handlers: dict[str, ActionHandler] = dict(handlers or {})

    def register(self, task_type: str, handler: ActionHandler) -> None:
        """Register or replace the handler for a task type."""
        self._handlers[task_type] = handler

    def supports(self, task_type: str) -> bool:
        """Return True when a handler is registered for the type."""
        return task_type in self._handlers

    def execute(
        self,
        task_type: str,
        owner_id: str,
        params: Mapping[str, Any],
        context: Mapping[str, Any] | None = None,
        *,
        task_id: UUID | None = None,
    ) -> ActionOutcome:
        """Dispatch one attempt to the handler registered for ``task_type``."""
        handler = self._handlers.get(task_type)
        if handler is None:
            return ActionFailed(ConfigurationError(f"No handler registered for {task_type}"))
        request = ActionRequest(
            task_type=task_type,
            owner_id=owner_id,
            params=dict(params),
            context=dict(context or {}),
            task_id=task_id,
        )
        try:
            return handler(request)
        except ActionError as exc:
            logger.info(
                "Action %s failed: kind=%s retryable=%s message=%s",
                task_type,
                exc.kind.value,
                exc.retryable,
                exc.message,
            )
            return ActionFailed(exc)
