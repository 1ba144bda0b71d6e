"""Retry and backoff policy helpers for tasks and embedding retries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from config import settings


@dataclass(frozen=True)
class RetryPolicy:
    """Capped exponential backoff configuration."""

    max_attempts: int
    backoff_base_seconds: int
    backoff_cap_seconds: int

    @staticmethod
    def for_tasks() -> "RetryPolicy":
        """Build the task executor policy from settings."""
        config = settings.tasks
        return RetryPolicy(
            max_attempts=int(config.max_attempts),
            backoff_base_seconds=int(config.backoff_base_seconds),
            backoff_cap_seconds=int(config.backoff_cap_seconds),
        )

    @staticmethod
    def for_embeddings() -> "RetryPolicy":
        """Build the document embedding policy from settings."""
        config = settings.embeddings
        return RetryPolicy(
            max_attempts=int(config.max_retries),
            backoff_base_seconds=int(config.backoff_base_seconds),
            backoff_cap_seconds=int(config.backoff_cap_seconds),
        )

    def delay_seconds(self, retry_count: int) -> int:
        """Return the backoff delay for the given retry count."""
        return compute_backoff_delay_seconds(
            retry_count,
            self.backoff_base_seconds,
            self.backoff_cap_seconds,
        )

    def retry_at(self, finished_at: datetime, retry_count: int) -> datetime:
        """Return when the next attempt becomes eligible."""
        return finished_at + timedelta(seconds=self.delay_seconds(retry_count))


def resolve_retry_policy(policy: RetryPolicy | None) -> RetryPolicy:
    """Return a validated retry policy, defaulting to task settings when unset."""
    resolved = policy or RetryPolicy.for_tasks()
    _validate_policy(resolved)
    return resolved


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    """Return whether another retry attempt is permitted."""
    return int(attempt_count) < int(max_attempts)


def compute_backoff_delay_seconds(
    retry_count: int,
    backoff_base_seconds: int,
    backoff_cap_seconds: int,
) -> int:
    """Compute ``min(base * 2^(n-1), cap)`` for retry count ``n``."""
    if retry_count <= 0:
        raise ValueError("retry_count must be >= 1.")
    if backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if backoff_cap_seconds < 0:
        raise ValueError("backoff_cap_seconds must be >= 0.")
    # Cap the exponent so very large counts cannot build huge integers.
    exponent = min(retry_count - 1, 62)
    return min(backoff_base_seconds * (2**exponent), backoff_cap_seconds)


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    if policy.backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if policy.backoff_cap_seconds < 0:
        raise ValueError("backoff_cap_seconds must be >= 0.")
