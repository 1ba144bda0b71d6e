"""Unit tests for per-type action parameter validation."""

from __future__ import annotations

import pytest

from actions.errors import ToolValidationError
from actions.validation import validate_tool_params


def test_send_email_requires_fields() -> None:
    """Missing required fields are reported by name."""
    with pytest.raises(ToolValidationError, match="subject"):
        validate_tool_params("send_email", {"to": "a@example.com", "body": "Hi"})


def test_send_email_rejects_malformed_address() -> None:
    """Recipient addresses must look like email addresses."""
    with pytest.raises(ToolValidationError, match="Invalid email format for to"):
        validate_tool_params("send_email", {"to": "nobody", "subject": "Hi", "body": "Hi"})


def test_send_email_normalizes_copies() -> None:
    """Valid cc lists are kept and addresses are stripped."""
    params = validate_tool_params(
        "send_email",
        {"to": " a@example.com ", "subject": "Hi", "body": "Hi", "cc": ["b@example.com"]},
    )
    assert params["to"] == "a@example.com"
    assert params["cc"] == ["b@example.com"]


def test_send_email_subject_length_bound() -> None:
    """Subjects longer than 200 characters are rejected."""
    with pytest.raises(ToolValidationError, match="subject must be between 1 and 200"):
        validate_tool_params("send_email", {"to": "a@example.com", "subject": "x" * 201, "body": "b"})


def test_schedule_meeting_defaults_duration() -> None:
    """Meetings default to a 30 minute duration."""
    params = validate_tool_params(
        "schedule_meeting", {"contact_email": "sam@example.com", "meeting_title": "Sync"}
    )
    assert params["duration_minutes"] == 30


@pytest.mark.parametrize("duration", [10, 500, "60"])
def test_schedule_meeting_rejects_bad_duration(duration) -> None:
    """Durations must be integers within the allowed window."""
    with pytest.raises(ToolValidationError, match="duration_minutes"):
        validate_tool_params(
            "schedule_meeting",
            {"contact_email": "sam@example.com", "meeting_title": "Sync", "duration_minutes": duration},
        )


def test_schedule_meeting_validates_preferred_times() -> None:
    """Preferred slots must carry a parseable date and time."""
    params = validate_tool_params(
        "schedule_meeting",
        {
            "contact_email": "sam@example.com",
            "meeting_title": "Sync",
            "preferred_times": [{"date": "2025-03-04", "time": "14:00"}],
        },
    )
    assert params["preferred_times"] == [{"date": "2025-03-04", "time": "14:00"}]
    with pytest.raises(ToolValidationError, match="Invalid preferred time"):
        validate_tool_params(
            "schedule_meeting",
            {
                "contact_email": "sam@example.com",
                "meeting_title": "Sync",
                "preferred_times": [{"date": "next tuesday", "time": "2pm"}],
            },
        )


def test_calendar_event_requires_ordered_times() -> None:
    """Events must start before they end."""
    with pytest.raises(ToolValidationError, match="start_time must be before end_time"):
        validate_tool_params(
            "create_calendar_event",
            {
                "title": "Review",
                "start_time": "2025-03-04T15:00:00Z",
                "end_time": "2025-03-04T14:00:00Z",
            },
        )


def test_calendar_event_rejects_unparseable_time() -> None:
    """Event times must be ISO 8601."""
    with pytest.raises(ToolValidationError, match="start_time must be a valid ISO 8601"):
        validate_tool_params(
            "create_calendar_event",
            {"title": "Review", "start_time": "tomorrow", "end_time": "2025-03-04T14:00:00Z"},
        )


def test_create_contact_checks_phone_digits() -> None:
    """Phone numbers need at least three digits."""
    with pytest.raises(ToolValidationError, match="phone"):
        validate_tool_params("create_contact", {"email": "jane@example.com", "phone": "ab"})


def test_update_contact_requires_properties() -> None:
    """Updates must change at least one property."""
    with pytest.raises(ToolValidationError, match="properties must be a non-empty object"):
        validate_tool_params("update_contact", {"email": "jane@example.com", "properties": {}})


def test_search_knowledge_checks_source_types() -> None:
    """Source type filters must name known document sources."""
    params = validate_tool_params("search_knowledge", {"query": "invoice", "source_types": ["email"]})
    assert params["source_types"] == ["email"]
    with pytest.raises(ToolValidationError, match="source_types must be a subset"):
        validate_tool_params("search_knowledge", {"query": "invoice", "source_types": ["tweets"]})


def test_unknown_type_and_non_mapping_params() -> None:
    """Unsupported types and non-object parameters are rejected."""
    with pytest.raises(ToolValidationError, match="Unsupported task type"):
        validate_tool_params("launch_rocket", {})
    with pytest.raises(ToolValidationError, match="Parameters must be an object"):
        validate_tool_params("add_note", ["not", "a", "mapping"])


def test_validation_errors_format_for_storage() -> None:
    """Validation errors carry the Validation Error prefix and are not retryable."""
    with pytest.raises(ToolValidationError) as excinfo:
        validate_tool_params("add_note", {"contact_email": "jane@example.com"})
    assert excinfo.value.retryable is False
    assert excinfo.value.format().startswith("Validation Error: ")
