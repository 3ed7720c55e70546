from __future__ import annotations

import logging
from threading import Condition, Lock
import time
from typing import Callable

from records import GenerationRequest, TimingRecord


logger = logging.getLogger(__name__)

RequestFinishedCallback = Callable[[TimingRecord], None]


class RunCoordinator:
    """Shared run state for the submission role and the dispatch loop.

    Timing records, accumulated response text and the finished counter all sit
    behind one lock; the completion condition is built on the same lock.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.perf_counter,
        on_request_finished: RequestFinishedCallback | None = None,
    ) -> None:
        self.clock = clock
        self.on_request_finished = on_request_finished
        self._lock = Lock()
        self._finished_cond = Condition(self._lock)
        self._records: dict[int, TimingRecord] = {}
        self._responses: dict[int, str] = {}
        self._finished_count = 0
        self._started_at: float | None = None
        self._failure: BaseException | None = None

    def register(
        self, request: GenerationRequest, prompt_tokens: int, output_tokens: int
    ) -> TimingRecord:
        record = TimingRecord(
            request_id=request.request_id,
            prompt_tokens=prompt_tokens,
            output_tokens=output_tokens,
        )
        with self._lock:
            if self._started_at is not None:
                raise RuntimeError("Cannot register requests after the run started")
            if request.request_id in self._records:
                raise ValueError(f"Duplicate request id: {request.request_id}")
            self._records[request.request_id] = record
        return record

    @property
    def total_requests(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def finished_count(self) -> int:
        with self._lock:
            return self._finished_count

    @property
    def is_finished(self) -> bool:
        with self._lock:
            return self._finished_count >= len(self._records)

    @property
    def started_at(self) -> float | None:
        return self._started_at

    def mark_started(self) -> float:
        with self._lock:
            self._started_at = self.clock()
            return self._started_at

    def mark_submitted(self, request_id: int) -> None:
        now = self.clock()
        with self._lock:
            record = self._records.get(request_id)
            if record is not None:
                record.submitted_at = now

    def record_first_token(self, request_id: int) -> bool:
        now = self.clock()
        with self._lock:
            record = self._records.get(request_id)
            if record is None:
                logger.warning("Response for unknown request id %d", request_id)
                return False
            if not record.awaiting_first_token or record.finished_at is not None:
                return False
            record.prefill_at = now
            record.awaiting_first_token = False
            return True

    def append_text(self, request_id: int, fragment: str) -> None:
        with self._lock:
            if request_id not in self._records:
                return
            self._responses[request_id] = self._responses.get(request_id, "") + fragment

    def record_finish(
        self, request_id: int, success: bool, error_message: str | None = None
    ) -> int:
        """Stamp the finish time once per request and bump the finished counter."""
        now = self.clock()
        with self._lock:
            record = self._records.get(request_id)
            if record is None:
                logger.warning("Finish for unknown request id %d", request_id)
                return self._finished_count
            if record.finished_at is not None:
                logger.warning("Request %d already finished", request_id)
                return self._finished_count

            record.finished_at = now
            # A stream that never produced a fragment has no usable timings.
            record.success = success and not record.awaiting_first_token
            if error_message is None and success and record.awaiting_first_token:
                error_message = "stream ended without a response"
            record.error_message = error_message
            self._finished_count += 1
            finished_count = self._finished_count
            total = len(self._records)
            if finished_count >= total:
                self._finished_cond.notify_all()

        logger.info("Finish: %d/%d", finished_count, total)
        if self.on_request_finished is not None:
            try:
                self.on_request_finished(record)
            except Exception:  # noqa: BLE001
                logger.debug("on_request_finished callback failed", exc_info=True)
        return finished_count

    def fail(self, exc: BaseException) -> None:
        with self._lock:
            self._failure = exc
            self._finished_cond.notify_all()

    def wait_until_finished(self, timeout: float | None = None) -> bool:
        with self._lock:
            done = self._finished_cond.wait_for(
                lambda: self._failure is not None
                or self._finished_count >= len(self._records),
                timeout=timeout,
            )
            if self._failure is not None:
                raise RuntimeError("Completion dispatch loop crashed") from self._failure
            return done

    def records(self) -> list[TimingRecord]:
        with self._lock:
            return [self._records[request_id] for request_id in sorted(self._records)]

    def responses(self) -> dict[int, str]:
        with self._lock:
            return dict(self._responses)
