"""Collaborator interfaces for the mail, calendar and CRM providers.

Provider adapters translate their own failures into ``actions.errors`` types:
expired credentials become AuthorizationError (after the adapter's own refresh
attempt), throttling becomes RateLimitedError, and so on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol, Sequence

from actions.errors import ConfigurationError


class MailClient(Protocol):
    """Outbound mail and reply lookup."""

    def send_email(
        self,
        owner_id: str,
        *,
        to: str,
        subject: str,
        body: str,
        cc: Sequence[str] | None = None,
        bcc: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """Send a message and return provider ids (``message_id``, ``thread_id``)."""
        ...

    def find_reply(
        self,
        owner_id: str,
        *,
        from_email: str,
        since: datetime,
        thread_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Return the first message from ``from_email`` received after ``since``."""
        ...


class CalendarClient(Protocol):
    """Calendar event creation."""

    def create_event(
        self,
        owner_id: str,
        *,
        title: str,
        start_time: str,
        end_time: str,
        description: str | None = None,
        location: str | None = None,
        attendees: Sequence[str] | None = None,
    ) -> dict[str, Any]:
        """Create an event and return it with its provider ``id``."""
        ...


class CrmClient(Protocol):
    """Contact and note management."""

    def find_contact_by_email(self, owner_id: str, email: str) -> dict[str, Any] | None:
        """Return the contact (``id`` plus ``properties``) or None."""
        ...

    def create_contact(self, owner_id: str, properties: dict[str, Any]) -> dict[str, Any]:
        """Create a contact and return it with its provider ``id``."""
        ...

    def update_contact(
        self,
        owner_id: str,
        contact_id: str,
        properties: dict[str, Any],
    ) -> dict[str, Any]:
        """Update contact properties and return the updated contact."""
        ...

    def create_note(self, owner_id: str, contact_id: str, content: str) -> dict[str, Any]:
        """Attach a note to a contact and return it with its provider ``id``."""
        ...


class _UnconfiguredClient:
    """Placeholder used until a provider adapter is wired in."""

    def __init__(self, integration: str) -> None:
        self._integration = integration

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        def _raise(*args: object, **kwargs: object) -> None:
            raise ConfigurationError(f"{self._integration} integration is not configured.")

        return _raise


def _unconfigured_mail() -> MailClient:
    return _UnconfiguredClient("Mail")  # type: ignore[return-value]


def _unconfigured_calendar() -> CalendarClient:
    return _UnconfiguredClient("Calendar")  # type: ignore[return-value]


def _unconfigured_crm() -> CrmClient:
    return _UnconfiguredClient("CRM")  # type: ignore[return-value]


@dataclass
class ActionClients:
    """Bundle of provider clients used by action handlers."""

    mail: MailClient = field(default_factory=_unconfigured_mail)
    calendar: CalendarClient = field(default_factory=_unconfigured_calendar)
    crm: CrmClient = field(default_factory=_unconfigured_crm)
