"""Run state machine expressed as a pure transition function."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum

from ..errors import InvalidTransition
from ..models import RunStatus


class RunEvent(str, Enum):
    DISPATCHED = "dispatched"
    VARIANTS_SETTLED = "variants_settled"
    MERGED = "merged"
    SHORTLISTED = "shortlisted"
    DETAILS_FETCHED = "details_fetched"
    QUOTA_EXCEEDED = "quota_exceeded"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class RunState:
    status: RunStatus = RunStatus.PENDING
    warnings: tuple[str, ...] = ()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def with_warning(self, message: str) -> "RunState":
        return replace(self, warnings=(*self.warnings, message))


_FORWARD: dict[tuple[RunStatus, RunEvent], RunStatus] = {
    (RunStatus.PENDING, RunEvent.DISPATCHED): RunStatus.RUNNING_VARIANTS,
    (RunStatus.RUNNING_VARIANTS, RunEvent.VARIANTS_SETTLED): RunStatus.MERGING,
    (RunStatus.MERGING, RunEvent.MERGED): RunStatus.SHORTLISTING,
    (RunStatus.SHORTLISTING, RunEvent.SHORTLISTED): RunStatus.FETCHING_DETAILS,
}

# Stages that can observe a quota signal from an external call
_EXTERNAL_CALL_STAGES = frozenset({RunStatus.RUNNING_VARIANTS, RunStatus.FETCHING_DETAILS})
_CANCELLABLE = frozenset({RunStatus.PENDING, RunStatus.RUNNING_VARIANTS})


def transition(state: RunState, event: RunEvent) -> RunState:
    """Return the state that follows ``event``; raise ``InvalidTransition`` otherwise."""

    if state.is_terminal:
        raise InvalidTransition(f"Run is already {state.status.value}; cannot apply {event.value}")

    if event is RunEvent.INTERNAL_ERROR:
        return replace(state, status=RunStatus.FAILED)
    if event is RunEvent.QUOTA_EXCEEDED:
        if state.status in _EXTERNAL_CALL_STAGES:
            return replace(state, status=RunStatus.CREDIT_EXHAUSTED)
    elif event is RunEvent.CANCELLED:
        if state.status in _CANCELLABLE:
            return replace(state, status=RunStatus.CANCELLED)
    elif event is RunEvent.DETAILS_FETCHED:
        if state.status is RunStatus.FETCHING_DETAILS:
            final = RunStatus.COMPLETED_WITH_WARNINGS if state.warnings else RunStatus.COMPLETED
            return replace(state, status=final)
    else:
        target = _FORWARD.get((state.status, event))
        if target is not None:
            return replace(state, status=target)
    raise InvalidTransition(f"Cannot apply {event.value} while {state.status.value}")


__all__ = ["RunEvent", "RunState", "transition"]
