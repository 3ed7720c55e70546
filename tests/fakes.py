from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from calls import CompletionEvent, EventKind
from records import CallStatus, GenerationRequest, ResponseFragment
from transport import CompletionQueue


class StepClock:
    def __init__(self, start: float = 0.0, step: float = 0.1) -> None:
        self.current = start - step
        self.step = step
        self._lock = Lock()

    def __call__(self) -> float:
        with self._lock:
            self.current += self.step
            return self.current


class WordTokenizer:
    def encode(self, text: str) -> list[int]:
        return [len(word) for word in text.split()]


@dataclass
class CallScript:
    fragments: list[str] = field(default_factory=lambda: ["A", "B", "C"])
    start_ok: bool = True
    status: CallStatus = field(default_factory=lambda: CallStatus(ok=True))


class FakeTransport:
    """Completes every operation immediately and records the op order per call."""

    def __init__(
        self,
        scripts: dict[int, CallScript] | None = None,
        default_script: CallScript | None = None,
    ) -> None:
        self.completion_queue = CompletionQueue()
        self.scripts = scripts or {}
        self.default_script = default_script or CallScript()
        self.operations: dict[int, list[str]] = {}
        self.released: set[int] = set()
        self.violations: list[str] = []
        self.closed = False
        self._positions: dict[int, int] = {}
        self._lock = Lock()

    def _script(self, tag: int) -> CallScript:
        return self.scripts.get(tag, self.default_script)

    def _record(self, tag: int, operation: str) -> None:
        with self._lock:
            if tag in self.released:
                self.violations.append(f"{operation} after release of {tag}")
            self.operations.setdefault(tag, []).append(operation)

    def start_call(self, tag: int, request: GenerationRequest) -> None:
        self._record(tag, "start")
        script = self._script(tag)
        self._positions[tag] = 0
        self.completion_queue.post(CompletionEvent(tag, EventKind.STARTED, ok=script.start_ok))

    def read(self, tag: int) -> None:
        self._record(tag, "read")
        script = self._script(tag)
        position = self._positions[tag]
        if position >= len(script.fragments):
            self.completion_queue.post(CompletionEvent(tag, EventKind.READ, ok=False))
            return
        self._positions[tag] = position + 1
        fragment = ResponseFragment(
            request_id=tag,
            generated=script.fragments[position],
            is_last=position == len(script.fragments) - 1,
        )
        self.completion_queue.post(CompletionEvent(tag, EventKind.READ, ok=True, fragment=fragment))

    def finish(self, tag: int) -> None:
        self._record(tag, "finish")
        script = self._script(tag)
        status = script.status
        if not script.start_ok:
            status = CallStatus(ok=False, code="UNAVAILABLE", details="connect failed")
        self.completion_queue.post(
            CompletionEvent(tag, EventKind.FINISHED, ok=status.ok, status=status)
        )

    def release(self, tag: int) -> None:
        with self._lock:
            self.released.add(tag)

    def close(self) -> None:
        self.closed = True
