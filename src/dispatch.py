from __future__ import annotations

import logging
from threading import Thread

from calls import Action, CallSlot, CallSlots, CompletionEvent, transition
from coordinator import RunCoordinator
from transport import CompletionQueue, TransportProtocol


logger = logging.getLogger(__name__)


class CompletionDispatchLoop:
    """Single consumer of the completion queue.

    All call-state transitions happen on this loop, so slots need no locking
    of their own. The loop stops once every registered request is finished.
    """

    def __init__(
        self,
        completion_queue: CompletionQueue,
        slots: CallSlots,
        transport: TransportProtocol,
        coordinator: RunCoordinator,
        poll_interval_s: float = 0.1,
    ) -> None:
        self.completion_queue = completion_queue
        self.slots = slots
        self.transport = transport
        self.coordinator = coordinator
        self.poll_interval_s = poll_interval_s
        self.dispatched_events = 0
        self.rejected_events = 0
        self._thread: Thread | None = None

    def start(self) -> Thread:
        if self._thread is not None:
            raise RuntimeError("Dispatch loop already started")
        self._thread = Thread(target=self._run_guarded, name="llm-qps-dispatch", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        logger.info("Wait for response")
        while not self.coordinator.is_finished:
            # Bounded waits so a run with nothing left in flight still exits.
            event = self.completion_queue.next(timeout=self.poll_interval_s)
            if event is None:
                continue
            self.dispatch(event)
        logger.debug(
            "Dispatch loop done: dispatched=%d rejected=%d pending=%d",
            self.dispatched_events,
            self.rejected_events,
            len(self.completion_queue),
        )

    def dispatch(self, event: CompletionEvent) -> None:
        slot = self.slots.get(event.tag)
        if slot is None:
            self.rejected_events += 1
            logger.warning(
                "Dropping %s event for unknown or finished call %d", event.kind.value, event.tag
            )
            return

        next_state, actions = transition(slot.state, event)
        slot.state = next_state
        self.dispatched_events += 1
        for action in actions:
            self._apply(action, slot, event)

    def _apply(self, action: Action, slot: CallSlot, event: CompletionEvent) -> None:
        tag = event.tag
        if action is Action.ISSUE_READ:
            self.transport.read(tag)
        elif action is Action.ISSUE_FINISH:
            self.transport.finish(tag)
        elif action is Action.RECORD_FRAGMENT:
            fragment = event.fragment
            if fragment is None:
                return
            self.coordinator.record_first_token(fragment.request_id)
            self.coordinator.append_text(fragment.request_id, fragment.generated)
        elif action is Action.RECORD_FINISH:
            status = event.status
            success = event.ok
            error_message = None
            if not success:
                code = status.code if status is not None else "UNKNOWN"
                details = status.details if status is not None else None
                error_message = f"{code}: {details}" if details else code
                logger.warning(
                    "RPC failed for request %d: %s", slot.request.request_id, error_message
                )
            else:
                logger.debug("Server Response Completed: %d", slot.request.request_id)
            self.coordinator.record_finish(
                slot.request.request_id, success=success, error_message=error_message
            )
        elif action is Action.RELEASE:
            self.slots.release(tag)
            self.transport.release(tag)

    def _run_guarded(self) -> None:
        try:
            self.run()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Completion dispatch loop crashed")
            self.coordinator.fail(exc)
