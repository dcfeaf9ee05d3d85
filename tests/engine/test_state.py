from __future__ import annotations

import pytest

from priorart_engine.engine import RunEvent, RunState, transition
from priorart_engine.errors import InvalidTransition
from priorart_engine.models import RunStatus


def _walk(*events: RunEvent, state: RunState | None = None) -> RunState:
    state = state or RunState()
    for event in events:
        state = transition(state, event)
    return state


HAPPY_PATH = (
    RunEvent.DISPATCHED,
    RunEvent.VARIANTS_SETTLED,
    RunEvent.MERGED,
    RunEvent.SHORTLISTED,
    RunEvent.DETAILS_FETCHED,
)


def test_happy_path_completes() -> None:
    statuses = []
    state = RunState()
    for event in HAPPY_PATH:
        state = transition(state, event)
        statuses.append(state.status)
    assert statuses == [
        RunStatus.RUNNING_VARIANTS,
        RunStatus.MERGING,
        RunStatus.SHORTLISTING,
        RunStatus.FETCHING_DETAILS,
        RunStatus.COMPLETED,
    ]


def test_warnings_complete_with_warnings() -> None:
    state = _walk(*HAPPY_PATH[:4]).with_warning("Detail fetch failed for US1B2")
    final = transition(state, RunEvent.DETAILS_FETCHED)
    assert final.status is RunStatus.COMPLETED_WITH_WARNINGS
    assert final.warnings == ("Detail fetch failed for US1B2",)


@pytest.mark.parametrize("prefix", [HAPPY_PATH[:1], HAPPY_PATH[:4]])
def test_quota_during_external_calls(prefix) -> None:
    assert transition(_walk(*prefix), RunEvent.QUOTA_EXCEEDED).status is RunStatus.CREDIT_EXHAUSTED


@pytest.mark.parametrize("prefix", [(), HAPPY_PATH[:2], HAPPY_PATH[:3]])
def test_quota_outside_external_calls_is_invalid(prefix) -> None:
    with pytest.raises(InvalidTransition):
        transition(_walk(*prefix), RunEvent.QUOTA_EXCEEDED)


@pytest.mark.parametrize("prefix", [(), HAPPY_PATH[:1], HAPPY_PATH[:3]])
def test_internal_error_fails_any_active_run(prefix) -> None:
    assert transition(_walk(*prefix), RunEvent.INTERNAL_ERROR).status is RunStatus.FAILED


def test_cancel_only_before_merging() -> None:
    assert transition(RunState(), RunEvent.CANCELLED).status is RunStatus.CANCELLED
    assert transition(_walk(RunEvent.DISPATCHED), RunEvent.CANCELLED).status is RunStatus.CANCELLED
    with pytest.raises(InvalidTransition):
        transition(_walk(*HAPPY_PATH[:2]), RunEvent.CANCELLED)


def test_terminal_states_reject_events() -> None:
    done = _walk(*HAPPY_PATH)
    for event in RunEvent:
        with pytest.raises(InvalidTransition):
            transition(done, event)


def test_out_of_order_event_rejected() -> None:
    with pytest.raises(InvalidTransition):
        transition(RunState(), RunEvent.MERGED)
