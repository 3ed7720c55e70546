"""Serial driver for an in-process generation worker.

Requests are handed to the worker one after another; the caller blocks until
every request has produced its last fragment or been reported as failed.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from threading import Condition
import time
from typing import Callable, Protocol

from records import GenerationRequest, ResponseFragment


logger = logging.getLogger(__name__)


class ResponseCollector:
    def __init__(self, wanted: int) -> None:
        self.wanted = wanted
        self.failed: set[int] = set()
        self._done: set[int] = set()
        self._responses: dict[int, str] = {}
        self._cond = Condition()

    def send(self, fragment: ResponseFragment) -> None:
        with self._cond:
            self._responses[fragment.request_id] = (
                self._responses.get(fragment.request_id, "") + fragment.generated
            )
            if fragment.is_last:
                self._done.add(fragment.request_id)
                self._cond.notify_all()

    def notify_failure(self, request_id: int) -> None:
        logger.warning("Worker reported failure for request %d", request_id)
        with self._cond:
            self.failed.add(request_id)
            self._done.add(request_id)
            self._cond.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self._done) >= self.wanted, timeout=timeout)

    def responses(self) -> dict[int, str]:
        with self._cond:
            return dict(self._responses)


@dataclass(slots=True)
class OfflineResult:
    responses: dict[int, str]
    failed: list[int]
    generation_time_s: float


class RequestProcessor(Protocol):
    def process(self, request: GenerationRequest, connection: ResponseCollector) -> None:
        ...


class OfflineGenerator:
    def __init__(
        self,
        processor: RequestProcessor,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.processor = processor
        self.clock = clock

    def generate(
        self, requests: list[GenerationRequest], timeout: float | None = None
    ) -> OfflineResult:
        collector = ResponseCollector(wanted=len(requests))
        started_at = self.clock()
        for request in requests:
            self.processor.process(request, collector)
        if not collector.wait(timeout=timeout):
            raise TimeoutError(f"Worker did not finish {len(requests)} requests in time")
        generation_time_s = self.clock() - started_at
        logger.info("generation time: %.3f s", generation_time_s)
        return OfflineResult(
            responses=collector.responses(),
            failed=sorted(collector.failed),
            generation_time_s=generation_time_s,
        )
