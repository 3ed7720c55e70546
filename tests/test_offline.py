from __future__ import annotations

from pathlib import Path
import sys
from threading import Thread

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from offline import OfflineGenerator, ResponseCollector
from records import GenerationRequest, ResponseFragment


class EchoWorker:
    """Answers each prompt word by word on a background thread."""

    def __init__(self) -> None:
        self.threads: list[Thread] = []

    def process(self, request: GenerationRequest, connection: ResponseCollector) -> None:
        def emit() -> None:
            words = request.prompt.split()
            for index, word in enumerate(words):
                connection.send(
                    ResponseFragment(
                        request_id=request.request_id,
                        generated=word.upper(),
                        is_last=index == len(words) - 1,
                    )
                )

        thread = Thread(target=emit)
        self.threads.append(thread)
        thread.start()


class FailingWorker:
    def process(self, request: GenerationRequest, connection: ResponseCollector) -> None:
        connection.notify_failure(request.request_id)


class SilentWorker:
    def process(self, request: GenerationRequest, connection: ResponseCollector) -> None:
        return None


def _requests(*prompts: str) -> list[GenerationRequest]:
    return [
        GenerationRequest(request_id=index, prompt=prompt, temperature=1.0, generation_length=64)
        for index, prompt in enumerate(prompts)
    ]


def test_offline_generator_collects_every_response() -> None:
    worker = EchoWorker()
    result = OfflineGenerator(worker).generate(
        _requests("Hello, my name is", "The capital of France is"), timeout=5.0
    )
    for thread in worker.threads:
        thread.join()

    assert result.responses == {0: "HELLO,MYNAMEIS", 1: "THECAPITALOFFRANCEIS"}
    assert result.failed == []


def test_offline_generator_counts_failures_as_done() -> None:
    result = OfflineGenerator(FailingWorker()).generate(_requests("a", "b"), timeout=1.0)
    assert result.responses == {}
    assert result.failed == [0, 1]


def test_offline_generator_times_out_when_worker_never_answers() -> None:
    with pytest.raises(TimeoutError):
        OfflineGenerator(SilentWorker()).generate(_requests("a"), timeout=0.05)


def test_collector_waits_for_last_fragment_only() -> None:
    collector = ResponseCollector(wanted=1)
    collector.send(ResponseFragment(request_id=0, generated="x"))
    assert collector.wait(timeout=0.01) is False
    collector.send(ResponseFragment(request_id=0, generated="y", is_last=True))
    assert collector.wait(timeout=0.01) is True
    assert collector.responses() == {0: "xy"}


def test_offline_generator_reports_generation_time() -> None:
    ticks = iter([10.0, 12.5])
    result = OfflineGenerator(FailingWorker(), clock=lambda: next(ticks)).generate(
        _requests("a"), timeout=1.0
    )
    assert result.generation_time_s == pytest.approx(2.5)
