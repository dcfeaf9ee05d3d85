"""Exception hierarchy shared by the engine components."""

from __future__ import annotations


class PriorArtError(Exception):
    """Base class for every error raised by the engine."""


class BundleValidationError(PriorArtError):
    """The approved bundle is malformed; a run is never started for it."""

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class InvariantViolation(PriorArtError):
    """An internal invariant does not hold; the run terminates as FAILED."""


class InvalidTransition(PriorArtError):
    """A run state transition was requested that the state machine forbids."""


class RunNotFoundError(PriorArtError, LookupError):
    """No run exists for the requested identifier."""


class ShortlistOverrideError(PriorArtError):
    """A manual shortlist decision cannot be applied."""


class RateLimitTimeout(PriorArtError, TimeoutError):
    """Rate limiter acquisition exceeded the caller's deadline."""

    def __init__(self, endpoint: str, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.2f}s waiting for endpoint '{endpoint}'")
        self.endpoint = endpoint
        self.timeout = timeout


class ProviderError(PriorArtError):
    """Failure reported by the external search provider."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        # Network requests spent before the error surfaced
        self.attempts = attempts


class TransientProviderError(ProviderError):
    """Timeout, transport error or 5xx; retried before giving up."""


class QuotaExceededError(ProviderError):
    """The provider signalled that the search quota is exhausted."""


class RecordNotFoundError(ProviderError):
    """The provider does not know the requested identifier."""


__all__ = [
    "BundleValidationError",
    "InvalidTransition",
    "InvariantViolation",
    "PriorArtError",
    "ProviderError",
    "QuotaExceededError",
    "RateLimitTimeout",
    "RecordNotFoundError",
    "RunNotFoundError",
    "ShortlistOverrideError",
    "TransientProviderError",
]
