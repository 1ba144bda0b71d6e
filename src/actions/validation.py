"""Per-action parameter validation run before any side effect."""

from __future__ import annotations

import re
from datetime import date, time
from typing import Any, Callable, Mapping

from actions.errors import ToolValidationError
from models import SOURCE_TYPES
from time_utils import parse_iso_datetime

_EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_PHONE_DIGITS = re.compile(r"\d{3,}")

MIN_MEETING_MINUTES = 15
MAX_MEETING_MINUTES = 480
DEFAULT_MEETING_MINUTES = 30


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _require(params: Mapping[str, Any], fields: tuple[str, ...]) -> None:
    missing = [name for name in fields if _is_missing(params.get(name))]
    if missing:
        raise ToolValidationError(f"Missing required fields: {', '.join(missing)}")


def _text(
    params: Mapping[str, Any],
    name: str,
    *,
    max_length: int,
    min_length: int = 0,
) -> str | None:
    """Validate an optional string field's type and length."""
    value = params.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ToolValidationError(f"{name} must be a string")
    length = len(value.strip())
    if length < min_length or len(value) > max_length:
        if min_length:
            raise ToolValidationError(
                f"{name} must be between {min_length} and {max_length} characters"
            )
        raise ToolValidationError(f"{name} must be at most {max_length} characters")
    return value


def _email(value: Any, name: str) -> str:
    if not isinstance(value, str) or not _EMAIL_PATTERN.match(value.strip()):
        raise ToolValidationError(f"Invalid email format for {name}: {value}")
    return value.strip()


def _email_list(params: Mapping[str, Any], name: str) -> list[str] | None:
    value = params.get(name)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ToolValidationError(f"{name} must be a list of email addresses")
    return [_email(item, name) for item in value]


def _validate_send_email(params: dict[str, Any]) -> dict[str, Any]:
    _require(params, ("to", "subject", "body"))
    params["to"] = _email(params["to"], "to")
    _text(params, "subject", min_length=1, max_length=200)
    _text(params, "body", min_length=1, max_length=10000)
    for name in ("cc", "bcc"):
        addresses = _email_list(params, name)
        if addresses is not None:
            params[name] = addresses
    return params


def _validate_preferred_times(value: Any) -> list[dict[str, str]]:
    if not isinstance(value, list):
        raise ToolValidationError("preferred_times must be a list of {date, time} objects")
    slots: list[dict[str, str]] = []
    for slot in value:
        if not isinstance(slot, Mapping) or _is_missing(slot.get("date")) or _is_missing(
            slot.get("time")
        ):
            raise ToolValidationError("preferred_times must be a list of {date, time} objects")
        try:
            date.fromisoformat(str(slot["date"]))
            time.fromisoformat(str(slot["time"]))
        except ValueError as exc:
            raise ToolValidationError(
                f"Invalid preferred time: {slot['date']} {slot['time']}"
            ) from exc
        slots.append({"date": str(slot["date"]), "time": str(slot["time"])})
    return slots


def _validate_schedule_meeting(params: dict[str, Any]) -> dict[str, Any]:
    _require(params, ("contact_email", "meeting_title"))
    params["contact_email"] = _email(params["contact_email"], "contact_email")
    _text(params, "meeting_title", min_length=1, max_length=200)
    _text(params, "message", max_length=5000)
    duration = params.get("duration_minutes", DEFAULT_MEETING_MINUTES)
    if duration is None:
        duration = DEFAULT_MEETING_MINUTES
    if isinstance(duration, bool) or not isinstance(duration, int):
        raise ToolValidationError("duration_minutes must be an integer")
    if not MIN_MEETING_MINUTES <= duration <= MAX_MEETING_MINUTES:
        raise ToolValidationError(
            f"duration_minutes must be between {MIN_MEETING_MINUTES} and {MAX_MEETING_MINUTES}"
        )
    params["duration_minutes"] = duration
    if params.get("preferred_times") is not None:
        params["preferred_times"] = _validate_preferred_times(params["preferred_times"])
    return params


def _validate_create_calendar_event(params: dict[str, Any]) -> dict[str, Any]:
    _require(params, ("title", "start_time", "end_time"))
    _text(params, "title", min_length=1, max_length=200)
    start = parse_iso_datetime(params["start_time"])
    if start is None:
        raise ToolValidationError("start_time must be a valid ISO 8601 datetime")
    end = parse_iso_datetime(params["end_time"])
    if end is None:
        raise ToolValidationError("end_time must be a valid ISO 8601 datetime")
    if start >= end:
        raise ToolValidationError("start_time must be before end_time")
    _text(params, "description", max_length=5000)
    _text(params, "location", max_length=500)
    attendees = _email_list(params, "attendees")
    if attendees is not None:
        params["attendees"] = attendees
    return params


def _validate_create_contact(params: dict[str, Any]) -> dict[str, Any]:
    _require(params, ("email",))
    params["email"] = _email(params["email"], "email")
    _text(params, "first_name", max_length=100)
    _text(params, "last_name", max_length=100)
    _text(params, "company", max_length=200)
    _text(params, "notes", max_length=5000)
    phone = _text(params, "phone", max_length=50)
    if phone is not None and not _PHONE_DIGITS.search(phone):
        raise ToolValidationError("phone must contain at least 3 digits")
    return params


def _validate_update_contact(params: dict[str, Any]) -> dict[str, Any]:
    _require(params, ("email", "properties"))
    params["email"] = _email(params["email"], "email")
    properties = params["properties"]
    if not isinstance(properties, Mapping) or not properties:
        raise ToolValidationError("properties must be a non-empty object")
    params["properties"] = dict(properties)
    return params


def _validate_add_note(params: dict[str, Any]) -> dict[str, Any]:
    _require(params, ("contact_email", "note_content"))
    params["contact_email"] = _email(params["contact_email"], "contact_email")
    _text(params, "note_content", min_length=1, max_length=5000)
    return params


def _validate_search_knowledge(params: dict[str, Any]) -> dict[str, Any]:
    _require(params, ("query",))
    _text(params, "query", min_length=1, max_length=500)
    source_types = params.get("source_types")
    if source_types is not None:
        if not isinstance(source_types, list) or any(
            item not in SOURCE_TYPES for item in source_types
        ):
            raise ToolValidationError(
                f"source_types must be a subset of: {', '.join(SOURCE_TYPES)}"
            )
    limit = params.get("limit")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise ToolValidationError("limit must be a positive integer")
    return params


_VALIDATORS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "send_email": _validate_send_email,
    "schedule_meeting": _validate_schedule_meeting,
    "create_calendar_event": _validate_create_calendar_event,
    "create_contact": _validate_create_contact,
    "update_contact": _validate_update_contact,
    "add_note": _validate_add_note,
    "search_knowledge": _validate_search_knowledge,
}


def validate_tool_params(task_type: str, params: Any) -> dict[str, Any]:
    """Validate parameters for an action type and return a normalized copy.

    Raises ToolValidationError with a message suitable for storing on the task.
    """
    validator = _VALIDATORS.get(task_type)
    if validator is None:
        raise ToolValidationError(f"Unsupported task type: {task_type}")
    if not isinstance(params, Mapping):
        raise ToolValidationError("Parameters must be an object")
    return validator(dict(params))
