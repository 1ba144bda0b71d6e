"""Function-calling schemas advertised to the LLM, one per task type."""

from __future__ import annotations

from typing import Any

from models import SOURCE_TYPES


def _function(name: str, description: str, properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        },
    }


_EMAIL_LIST = {"type": "array", "items": {"type": "string"}}

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    _function(
        "search_knowledge",
        "Search through emails, contacts, notes and calendar events to find information",
        {
            "query": {"type": "string", "description": "The search query"},
            "source_types": {
                "type": "array",
                "items": {"type": "string", "enum": list(SOURCE_TYPES)},
                "description": "Types of sources to search (optional, searches all if not specified)",
            },
            "limit": {"type": "integer", "description": "Maximum number of results"},
        },
        ["query"],
    ),
    _function(
        "send_email",
        "Send an email on behalf of the user",
        {
            "to": {"type": "string", "description": "Recipient email address"},
            "subject": {"type": "string", "description": "Email subject"},
            "body": {"type": "string", "description": "Email body (plain text)"},
            "cc": {**_EMAIL_LIST, "description": "CC recipients (optional)"},
            "bcc": {**_EMAIL_LIST, "description": "BCC recipients (optional)"},
        },
        ["to", "subject", "body"],
    ),
    _function(
        "schedule_meeting",
        "Schedule a meeting by emailing proposed times and waiting for the reply",
        {
            "contact_email": {"type": "string", "description": "Email of the person to schedule with"},
            "meeting_title": {"type": "string", "description": "Title or purpose of the meeting"},
            "duration_minutes": {
                "type": "integer",
                "description": "Duration of the meeting in minutes",
                "minimum": 15,
                "maximum": 480,
            },
            "preferred_times": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "date": {"type": "string", "description": "Date in YYYY-MM-DD format"},
                        "time": {"type": "string", "description": "Time in HH:MM format (24-hour)"},
                    },
                    "required": ["date", "time"],
                },
                "description": "Proposed meeting times (optional)",
            },
            "message": {"type": "string", "description": "Additional message for the scheduling email"},
        },
        ["contact_email", "meeting_title"],
    ),
    _function(
        "create_calendar_event",
        "Create an event in the user's calendar",
        {
            "title": {"type": "string", "description": "Event title"},
            "start_time": {"type": "string", "description": "Start time in ISO 8601 format"},
            "end_time": {"type": "string", "description": "End time in ISO 8601 format"},
            "description": {"type": "string", "description": "Event description (optional)"},
            "location": {"type": "string", "description": "Event location (optional)"},
            "attendees": {**_EMAIL_LIST, "description": "Attendee email addresses (optional)"},
        },
        ["title", "start_time", "end_time"],
    ),
    _function(
        "create_contact",
        "Create a new contact in the CRM",
        {
            "email": {"type": "string", "description": "Contact email address"},
            "first_name": {"type": "string", "description": "Contact first name"},
            "last_name": {"type": "string", "description": "Contact last name"},
            "company": {"type": "string", "description": "Contact company (optional)"},
            "phone": {"type": "string", "description": "Contact phone number (optional)"},
            "notes": {"type": "string", "description": "Initial notes about the contact (optional)"},
        },
        ["email"],
    ),
    _function(
        "update_contact",
        "Update properties of an existing CRM contact",
        {
            "email": {"type": "string", "description": "Email of the contact to update"},
            "properties": {"type": "object", "description": "Properties to set on the contact"},
        },
        ["email", "properties"],
    ),
    _function(
        "add_note",
        "Add a note to a CRM contact",
        {
            "contact_email": {"type": "string", "description": "Email of the contact"},
            "note_content": {"type": "string", "description": "Note text"},
        },
        ["contact_email", "note_content"],
    ),
]


def tool_names() -> list[str]:
    """Return the names of every advertised tool."""
    return [tool["function"]["name"] for tool in TOOL_DEFINITIONS]
