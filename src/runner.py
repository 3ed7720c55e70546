from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable

from calls import CallSlots
from coordinator import RunCoordinator
from dispatch import CompletionDispatchLoop
from metrics import RunStats, compute_run_stats
from records import GenerationRequest, TimingRecord
from scheduler import ArrivalScheduler
from transport import TransportProtocol


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunResult:
    stats: RunStats
    records: list[TimingRecord]
    responses: dict[int, str]
    started_at: float
    ended_at: float
    submit_delays: list[float]


class BenchmarkRunner:
    """Submission role: issues every call at its arrival time, then waits."""

    def __init__(
        self,
        transport: TransportProtocol,
        coordinator: RunCoordinator,
        scheduler: ArrivalScheduler,
        clock: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport = transport
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.clock = clock or coordinator.clock
        self.sleep_fn = sleep_fn
        self.slots = CallSlots()

    def run(self, requests: list[GenerationRequest]) -> RunResult:
        if not requests:
            raise ValueError("No requests to send")
        if len(requests) != self.coordinator.total_requests:
            raise ValueError(
                f"Coordinator tracks {self.coordinator.total_requests} requests, got {len(requests)}"
            )

        dispatch_loop = CompletionDispatchLoop(
            completion_queue=self.transport.completion_queue,
            slots=self.slots,
            transport=self.transport,
            coordinator=self.coordinator,
        )
        dispatch_loop.start()

        started_at = self.coordinator.mark_started()
        logger.info(
            "Sending %d requests with %r", len(requests), self.scheduler
        )
        submit_delays: list[float] = []
        for request in requests:
            self.slots.acquire(request)
            self.coordinator.mark_submitted(request.request_id)
            self.transport.start_call(request.request_id, request)

            if self.scheduler.unbounded:
                submit_delays.append(0.0)
                continue
            delay = self.scheduler.next_delay()
            submit_delays.append(delay)
            self.sleep_fn(delay)

        self.coordinator.wait_until_finished()
        ended_at = self.clock()
        dispatch_loop.join()
        held = len(self.slots)
        if held:
            logger.warning("%d call slot(s) still held after the run", held)
        logger.info("All %d requests finished", len(requests))

        records = self.coordinator.records()
        return RunResult(
            stats=compute_run_stats(records, run_started_at=started_at, run_ended_at=ended_at),
            records=records,
            responses=self.coordinator.responses(),
            started_at=started_at,
            ended_at=ended_at,
            submit_delays=submit_delays,
        )
