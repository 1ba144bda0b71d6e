"""Time helpers for UTC storage and ISO-8601 parsing."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach or convert to UTC, treating naive values as already UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime.

    Returns None for empty or unparseable input so validators can report a
    domain-specific message.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return ensure_utc(parsed)
