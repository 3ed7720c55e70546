"""Per-call state machine for streamed generation calls.

``transition`` is a pure function of (state, event); whoever drains the
completion queue executes the returned actions. Exactly one transport
operation is outstanding per call: every action list contains at most one of
``ISSUE_READ`` / ``ISSUE_FINISH``, and nothing is issued after the finish
status has been consumed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from threading import Lock

from records import CallStatus, GenerationRequest, ResponseFragment


class CallState(Enum):
    CREATED = "created"
    STREAMING = "streaming"
    TERMINAL = "terminal"


class EventKind(Enum):
    STARTED = "started"
    READ = "read"
    FINISHED = "finished"


class Action(Enum):
    ISSUE_READ = "issue_read"
    ISSUE_FINISH = "issue_finish"
    RECORD_FRAGMENT = "record_fragment"
    RECORD_FINISH = "record_finish"
    RELEASE = "release"


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    tag: int
    kind: EventKind
    ok: bool
    fragment: ResponseFragment | None = None
    status: CallStatus | None = None


def transition(state: CallState, event: CompletionEvent) -> tuple[CallState, list[Action]]:
    if state is CallState.CREATED and event.kind is EventKind.STARTED:
        if event.ok:
            return CallState.STREAMING, [Action.ISSUE_READ]
        return CallState.TERMINAL, [Action.ISSUE_FINISH]

    if state is CallState.STREAMING and event.kind is EventKind.READ:
        if event.ok:
            return CallState.STREAMING, [Action.RECORD_FRAGMENT, Action.ISSUE_READ]
        return CallState.TERMINAL, [Action.ISSUE_FINISH]

    if state is CallState.TERMINAL and event.kind is EventKind.FINISHED:
        return CallState.TERMINAL, [Action.RECORD_FINISH, Action.RELEASE]

    raise InvalidTransition(
        f"Invalid event {event.kind.value!r} for call {event.tag} in state {state.value!r}"
    )


@dataclass(slots=True)
class CallSlot:
    request: GenerationRequest
    state: CallState = CallState.CREATED


class CallSlots:
    """Arena of in-flight call slots indexed by request id."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._slots: dict[int, CallSlot] = {}
        self._released: set[int] = set()

    def acquire(self, request: GenerationRequest) -> CallSlot:
        with self._lock:
            tag = request.request_id
            if tag in self._slots or tag in self._released:
                raise ValueError(f"Call slot {tag} already used")
            slot = CallSlot(request=request)
            self._slots[tag] = slot
            return slot

    def get(self, tag: int) -> CallSlot | None:
        with self._lock:
            return self._slots.get(tag)

    def release(self, tag: int) -> None:
        with self._lock:
            if self._slots.pop(tag, None) is not None:
                self._released.add(tag)

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)
