"""Per-endpoint minimum-interval limiter shared by every run in the process."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from threading import Condition
from typing import Deque, Mapping, Protocol

import structlog

from ..errors import RateLimitTimeout

SEARCH_ENDPOINT = "search"
DETAIL_ENDPOINT = "detail"


class Clock(Protocol):
    """Time source used by the limiter and the retry backoff."""

    def now(self) -> float:
        """Monotonic seconds."""

    def wait(self, condition: Condition, timeout: float | None) -> None:
        """Block on ``condition`` (already held) for at most ``timeout`` seconds."""

    def sleep(self, seconds: float) -> None:
        """Pause the calling thread."""


class SystemClock:
    def now(self) -> float:
        return time.monotonic()

    def wait(self, condition: Condition, timeout: float | None) -> None:
        condition.wait(timeout)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


@dataclass(slots=True)
class _Lane:
    last_reserved: float | None = None
    waiters: Deque[object] = field(default_factory=deque)


class RateLimiter:
    """Reserve call slots per endpoint, at least ``min_interval`` seconds apart.

    Waiters on one endpoint are served strictly in arrival order: only the
    head of a lane may reserve, and the reservation time becomes the new
    reference for the next caller. Lanes never block each other.
    """

    def __init__(
        self,
        min_interval: float = 5.0,
        clock: Clock | None = None,
        intervals: Mapping[str, float] | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self.clock = clock or SystemClock()
        self.intervals = dict(intervals or {})
        self.logger = logger or structlog.get_logger("priorart_engine.rate_limiter")
        self._condition = Condition()
        self._lanes: dict[str, _Lane] = {}

    def interval_for(self, endpoint: str) -> float:
        return self.intervals.get(endpoint, self.min_interval)

    def acquire(self, endpoint: str, timeout: float | None = None) -> float:
        """Block until ``endpoint`` may be called; return the reserved timestamp.

        Raises ``RateLimitTimeout`` when ``timeout`` elapses first; the caller
        is then removed from the queue so it never delays later waiters.
        """

        token = object()
        interval = self.interval_for(endpoint)
        with self._condition:
            lane = self._lanes.setdefault(endpoint, _Lane())
            deadline = None if timeout is None else self.clock.now() + timeout
            lane.waiters.append(token)
            try:
                while True:
                    now = self.clock.now()
                    wait_for: float | None = None
                    if lane.waiters[0] is token:
                        ready_at = now if lane.last_reserved is None else lane.last_reserved + interval
                        if now >= ready_at:
                            lane.last_reserved = now
                            return now
                        wait_for = ready_at - now
                    if deadline is not None:
                        remaining = deadline - now
                        if remaining <= 0:
                            self.logger.warning(
                                "rate_limit_timeout", endpoint=endpoint, timeout=timeout
                            )
                            raise RateLimitTimeout(endpoint, timeout or 0.0)
                        wait_for = remaining if wait_for is None else min(wait_for, remaining)
                    self.clock.wait(self._condition, wait_for)
            finally:
                lane.waiters.remove(token)
                self._condition.notify_all()

    def pending(self, endpoint: str) -> int:
        with self._condition:
            lane = self._lanes.get(endpoint)
            return len(lane.waiters) if lane else 0

    def last_reserved(self, endpoint: str) -> float | None:
        with self._condition:
            lane = self._lanes.get(endpoint)
            return lane.last_reserved if lane else None


__all__ = [
    "Clock",
    "DETAIL_ENDPOINT",
    "RateLimiter",
    "SEARCH_ENDPOINT",
    "SystemClock",
]
