"""Error taxonomy for side-effecting actions."""

from __future__ import annotations

from enum import Enum


class ActionErrorKind(str, Enum):
    """Machine-readable categories that drive retry decisions."""

    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    AUTHORIZATION = "authorization"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    PROVIDER = "provider"
    NOT_FOUND = "not_found"
    UNEXPECTED = "unexpected"


# Kinds that will never succeed by retrying the same input.
NON_RETRYABLE_KINDS = frozenset(
    {
        ActionErrorKind.VALIDATION,
        ActionErrorKind.CONFIGURATION,
        ActionErrorKind.NOT_FOUND,
    }
)

_ERROR_PREFIXES = {
    ActionErrorKind.VALIDATION: "Validation Error",
    ActionErrorKind.CONFIGURATION: "Configuration Error",
    ActionErrorKind.AUTHORIZATION: "Authorization Error",
    ActionErrorKind.RATE_LIMITED: "API Error",
    ActionErrorKind.TIMEOUT: "API Error",
    ActionErrorKind.PROVIDER: "API Error",
    ActionErrorKind.NOT_FOUND: "Not Found",
    ActionErrorKind.UNEXPECTED: "Unexpected Error",
}


class ActionError(Exception):
    """Base error raised by action handlers and their collaborators."""

    kind = ActionErrorKind.PROVIDER

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE_KINDS

    def format(self) -> str:
        """Return the error text stored on the task record."""
        return format_error(self.kind, self.message)


class ToolValidationError(ActionError):
    """Parameters failed the per-type schema checks."""

    kind = ActionErrorKind.VALIDATION


class ConfigurationError(ActionError):
    """A required integration or credential is not configured."""

    kind = ActionErrorKind.CONFIGURATION


class AuthorizationError(ActionError):
    """The collaborator rejected the credential; one refresh attempt is allowed."""

    kind = ActionErrorKind.AUTHORIZATION


class RateLimitedError(ActionError):
    """The provider throttled the request."""

    kind = ActionErrorKind.RATE_LIMITED


class ProviderTimeoutError(ActionError):
    """The provider did not answer within the request timeout."""

    kind = ActionErrorKind.TIMEOUT


class ProviderError(ActionError):
    """The provider returned an error response."""

    kind = ActionErrorKind.PROVIDER


class NotFoundError(ActionError):
    """A referenced record (contact, thread) does not exist."""

    kind = ActionErrorKind.NOT_FOUND


class UnexpectedActionError(ActionError):
    """An exception outside the declared taxonomy escaped a handler."""

    kind = ActionErrorKind.UNEXPECTED


def format_error(kind: ActionErrorKind | str, message: str) -> str:
    """Format an error as ``<Prefix>: <message>`` for operator inspection."""
    prefix = _ERROR_PREFIXES.get(ActionErrorKind(kind), "Error")
    return f"{prefix}: {message}"


def describe_error(kind: ActionErrorKind | str, detail: str | None = None) -> str:
    """Return a human-readable message for the chat surface."""
    kind = ActionErrorKind(kind)
    if kind == ActionErrorKind.VALIDATION:
        return f"I couldn't run that action because some details were missing or invalid: {detail}"
    if kind == ActionErrorKind.CONFIGURATION:
        return "This integration isn't configured yet. Please connect it in settings and try again."
    if kind == ActionErrorKind.AUTHORIZATION:
        return "The connected account's authentication expired. Please reconnect it and try again."
    if kind == ActionErrorKind.RATE_LIMITED:
        return "The service rate limit was reached, please retry shortly."
    if kind == ActionErrorKind.TIMEOUT:
        return "The service took too long to respond. Please try again later."
    if kind == ActionErrorKind.NOT_FOUND:
        return f"I couldn't find what that action refers to: {detail}"
    if kind == ActionErrorKind.PROVIDER and detail:
        return f"The service returned an error: {detail}"
    return "Something went wrong while running that action."
