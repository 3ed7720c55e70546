from __future__ import annotations

from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from calls import (
    Action,
    CallSlots,
    CallState,
    CompletionEvent,
    EventKind,
    InvalidTransition,
    transition,
)
from records import CallStatus, GenerationRequest, ResponseFragment


def _request(request_id: int = 0) -> GenerationRequest:
    return GenerationRequest(request_id=request_id, prompt="hi", temperature=1.0, generation_length=4)


def test_started_call_issues_first_read() -> None:
    state, actions = transition(CallState.CREATED, CompletionEvent(0, EventKind.STARTED, ok=True))
    assert state is CallState.STREAMING
    assert actions == [Action.ISSUE_READ]


def test_failed_start_goes_terminal_and_requests_status() -> None:
    state, actions = transition(CallState.CREATED, CompletionEvent(0, EventKind.STARTED, ok=False))
    assert state is CallState.TERMINAL
    assert actions == [Action.ISSUE_FINISH]


def test_successful_read_records_fragment_then_reads_again() -> None:
    event = CompletionEvent(
        0, EventKind.READ, ok=True, fragment=ResponseFragment(request_id=0, generated="x")
    )
    state, actions = transition(CallState.STREAMING, event)
    assert state is CallState.STREAMING
    assert actions == [Action.RECORD_FRAGMENT, Action.ISSUE_READ]


def test_exhausted_stream_requests_final_status() -> None:
    state, actions = transition(CallState.STREAMING, CompletionEvent(0, EventKind.READ, ok=False))
    assert state is CallState.TERMINAL
    assert actions == [Action.ISSUE_FINISH]


def test_final_status_records_finish_and_releases() -> None:
    event = CompletionEvent(0, EventKind.FINISHED, ok=False, status=CallStatus(ok=False, code="INTERNAL"))
    state, actions = transition(CallState.TERMINAL, event)
    assert state is CallState.TERMINAL
    assert actions == [Action.RECORD_FINISH, Action.RELEASE]


@pytest.mark.parametrize(
    ("state", "kind"),
    [
        (CallState.CREATED, EventKind.READ),
        (CallState.CREATED, EventKind.FINISHED),
        (CallState.STREAMING, EventKind.STARTED),
        (CallState.STREAMING, EventKind.FINISHED),
        (CallState.TERMINAL, EventKind.READ),
        (CallState.TERMINAL, EventKind.STARTED),
    ],
)
def test_unexpected_events_are_rejected(state: CallState, kind: EventKind) -> None:
    with pytest.raises(InvalidTransition):
        transition(state, CompletionEvent(0, kind, ok=True))


def test_every_transition_issues_at_most_one_operation() -> None:
    issuing = {Action.ISSUE_READ, Action.ISSUE_FINISH}
    cases = [
        (CallState.CREATED, EventKind.STARTED, True),
        (CallState.CREATED, EventKind.STARTED, False),
        (CallState.STREAMING, EventKind.READ, True),
        (CallState.STREAMING, EventKind.READ, False),
        (CallState.TERMINAL, EventKind.FINISHED, True),
    ]
    for state, kind, ok in cases:
        _, actions = transition(state, CompletionEvent(0, kind, ok=ok))
        assert sum(1 for action in actions if action in issuing) <= 1


def test_call_slots_acquire_get_release() -> None:
    slots = CallSlots()
    slot = slots.acquire(_request(3))

    assert slot.state is CallState.CREATED
    assert slots.get(3) is slot
    assert len(slots) == 1

    slots.release(3)
    assert slots.get(3) is None
    assert len(slots) == 0


def test_call_slots_reject_reuse_of_released_id() -> None:
    slots = CallSlots()
    slots.acquire(_request(1))
    with pytest.raises(ValueError):
        slots.acquire(_request(1))
    slots.release(1)
    with pytest.raises(ValueError):
        slots.acquire(_request(1))


def test_call_slots_unknown_id_returns_none() -> None:
    assert CallSlots().get(99) is None
