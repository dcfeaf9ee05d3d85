"""Retry bookkeeping for transient provider failures."""

from __future__ import annotations

from dataclasses import dataclass

from ..config.models import RetryConfig


@dataclass(slots=True)
class RetryPolicy:
    """Exponential backoff: ``base * factor ** (attempt - 1)``, capped."""

    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            backoff_base=config.backoff_base_seconds,
            backoff_factor=config.backoff_factor,
            backoff_max=config.backoff_max_seconds,
        )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay(self, attempt: int) -> float:
        """Pause after the ``attempt``-th failed attempt (1-based)."""

        raw = self.backoff_base * (self.backoff_factor ** max(attempt - 1, 0))
        return min(raw, self.backoff_max)

    def start(self) -> "RetryContext":
        return RetryContext(max_attempts=self.max_attempts)


@dataclass
class RetryContext:
    """Mutable attempt counter shared by one logical call."""

    attempt: int = 1
    max_attempts: int = 1
    last_exception: Exception | None = None

    def record_failure(self, error: Exception) -> None:
        self.last_exception = error
        self.attempt += 1

    def should_retry(self) -> bool:
        return self.attempt <= self.max_attempts


__all__ = ["RetryContext", "RetryPolicy"]
