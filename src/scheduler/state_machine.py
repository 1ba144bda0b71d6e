"""Allowed task status transitions."""

from __future__ import annotations

from models import TERMINAL_TASK_STATUSES

PENDING = "pending"
IN_PROGRESS = "in_progress"
WAITING = "waiting"
COMPLETED = "completed"
FAILED = "failed"

ACTIVE_STATUSES = (PENDING, IN_PROGRESS, WAITING)

_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({IN_PROGRESS}),
    # in_progress -> pending is the "retry later" edge after a transient failure.
    IN_PROGRESS: frozenset({COMPLETED, FAILED, WAITING, PENDING}),
    WAITING: frozenset({IN_PROGRESS}),
    COMPLETED: frozenset(),
    FAILED: frozenset(),
}

# Operator "mark failed" may terminate any non-terminal task.
_OVERRIDE_TRANSITIONS: dict[str, frozenset[str]] = {
    status: frozenset({FAILED}) for status in ACTIVE_STATUSES
}


class InvalidTaskTransition(ValueError):
    """Raised when a status change would violate the task lifecycle."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Task cannot move from {current} to {target}.")


def is_terminal(status: str) -> bool:
    """Return True when no further transitions are allowed."""
    return status in TERMINAL_TASK_STATUSES


def can_transition(current: str, target: str, *, override: bool = False) -> bool:
    """Return True when ``current -> target`` is a defined edge."""
    if target in _TRANSITIONS.get(current, frozenset()):
        return True
    return override and target in _OVERRIDE_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str, *, override: bool = False) -> None:
    """Raise InvalidTaskTransition unless ``current -> target`` is allowed."""
    if not can_transition(current, target, override=override):
        raise InvalidTaskTransition(current, target)
