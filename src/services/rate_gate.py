"""Minimum-interval gates shared by callers of the same external dependency.

The task executor and the knowledge pipeline both call the embedding model and
the LLM. Routing every call through one gate per dependency keeps consecutive
requests at least ``min_interval_seconds`` apart so neither caller can burst
past the provider's rate limit on its own.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Protocol

from redis import Redis

from config import settings

logger = logging.getLogger(__name__)


class IntervalGate(Protocol):
    """Blocks the caller until the next call to a dependency is allowed."""

    name: str

    def wait(self) -> float:
        """Block until a call may proceed and return the seconds waited."""
        ...


class LocalIntervalGate:
    """In-process gate serializing callers with a lock and a monotonic clock."""

    def __init__(
        self,
        name: str,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self._interval = max(float(min_interval_seconds), 0.0)
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_call: float | None = None

    def wait(self) -> float:
        if self._interval == 0:
            return 0.0
        with self._lock:
            now = self._clock()
            delay = 0.0
            if self._last_call is not None:
                delay = max(self._last_call + self._interval - now, 0.0)
            if delay > 0:
                self._sleep(delay)
            self._last_call = now + delay
        if delay > 0:
            logger.debug("Rate gate %s delayed call by %.3fs", self.name, delay)
        return delay


class RedisIntervalGate:
    """Cross-process gate built on a Redis key that expires after the interval."""

    def __init__(
        self,
        name: str,
        min_interval_seconds: float,
        client: Redis,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.name = name
        self._interval_ms = max(int(float(min_interval_seconds) * 1000), 0)
        self._client = client
        self._sleep = sleep
        self._key = f"agent:rate_gate:{name}"

    def wait(self) -> float:
        if self._interval_ms == 0:
            return 0.0
        waited = 0.0
        while True:
            if self._client.set(self._key, "1", nx=True, px=self._interval_ms):
                if waited > 0:
                    logger.debug("Rate gate %s delayed call by %.3fs", self.name, waited)
                return waited
            ttl_ms = self._client.pttl(self._key)
            delay = ttl_ms / 1000 if ttl_ms and ttl_ms > 0 else 0.01
            self._sleep(delay)
            waited += delay


_GATES: dict[str, IntervalGate] = {}
_GATES_LOCK = threading.Lock()


def _build_gate(name: str) -> IntervalGate:
    """Construct the configured gate implementation for a dependency."""
    interval = settings.rate_limits.min_interval_seconds.get(name, 0.0)
    if settings.rate_limits.backend == "redis":
        client = Redis.from_url(
            settings.redis.url,
            socket_connect_timeout=5,
            socket_timeout=5,
            decode_responses=True,
        )
        return RedisIntervalGate(name, interval, client)
    return LocalIntervalGate(name, interval)


def get_gate(name: str) -> IntervalGate:
    """Return the process-wide gate for a dependency, creating it on first use."""
    with _GATES_LOCK:
        gate = _GATES.get(name)
        if gate is None:
            gate = _build_gate(name)
            _GATES[name] = gate
        return gate
