from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import logging
from queue import Empty, Queue
from threading import Lock
from typing import Any, Protocol

import grpc

from calls import CompletionEvent, EventKind
from protocol import GENERATION_METHOD, BatchedRequest, Response, decode_response, encode_request
from records import CallStatus, GenerationRequest


logger = logging.getLogger(__name__)


class CompletionQueue:
    """Shared channel of completed transport operations."""

    def __init__(self) -> None:
        self._queue: Queue[CompletionEvent] = Queue()

    def post(self, event: CompletionEvent) -> None:
        self._queue.put(event)

    def next(self, timeout: float | None = None) -> CompletionEvent | None:
        try:
            return self._queue.get(timeout=timeout)
        except Empty:
            return None

    def __len__(self) -> int:
        return self._queue.qsize()


class TransportProtocol(Protocol):
    """Asynchronous streamed-call client.

    Every operation completes by posting exactly one event for ``tag`` to
    ``completion_queue``; none of them raise for per-call failures.
    """

    completion_queue: CompletionQueue

    def start_call(self, tag: int, request: GenerationRequest) -> None:
        ...

    def read(self, tag: int) -> None:
        ...

    def finish(self, tag: int) -> None:
        ...

    def release(self, tag: int) -> None:
        ...

    def close(self) -> None:
        ...


class GrpcTransport:
    def __init__(
        self,
        target: str,
        max_workers: int | None = None,
        completion_queue: CompletionQueue | None = None,
    ) -> None:
        self.target = target
        self.completion_queue = completion_queue or CompletionQueue()
        self._channel = grpc.insecure_channel(target)
        self._generation = self._channel.unary_stream(
            GENERATION_METHOD,
            request_serializer=BatchedRequest.SerializeToString,
            response_deserializer=Response.FromString,
        )
        # Reads block until the server streams the next fragment, so each
        # in-flight call can pin a worker thread.
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="llm-qps-read"
        )
        self._lock = Lock()
        self._calls: dict[int, Any] = {}
        self._start_failures: dict[int, CallStatus] = {}
        logger.debug("Opened channel to %s (max_workers=%s)", target, max_workers)

    def start_call(self, tag: int, request: GenerationRequest) -> None:
        try:
            call = self._generation(encode_request(request))
        except (grpc.RpcError, ValueError) as exc:
            logger.warning("Failed to start call %d: %s", tag, exc)
            with self._lock:
                self._start_failures[tag] = CallStatus(
                    ok=False, code="UNAVAILABLE", details=str(exc)
                )
            self.completion_queue.post(CompletionEvent(tag, EventKind.STARTED, ok=False))
            return

        with self._lock:
            self._calls[tag] = call
        self.completion_queue.post(CompletionEvent(tag, EventKind.STARTED, ok=True))

    def read(self, tag: int) -> None:
        self._executor.submit(self._read, tag)

    def finish(self, tag: int) -> None:
        self._executor.submit(self._finish, tag)

    def release(self, tag: int) -> None:
        with self._lock:
            call = self._calls.pop(tag, None)
            self._start_failures.pop(tag, None)
        if call is not None and not call.done():
            call.cancel()

    def close(self) -> None:
        with self._lock:
            calls = list(self._calls.values())
            self._calls.clear()
        for call in calls:
            if not call.done():
                call.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._channel.close()
        logger.debug("Closed channel to %s", self.target)

    def _get_call(self, tag: int) -> Any | None:
        with self._lock:
            return self._calls.get(tag)

    def _read(self, tag: int) -> None:
        call = self._get_call(tag)
        if call is None:
            self.completion_queue.post(CompletionEvent(tag, EventKind.READ, ok=False))
            return

        try:
            message = next(call)
        except StopIteration:
            event = CompletionEvent(tag, EventKind.READ, ok=False)
        except grpc.RpcError as exc:
            logger.debug("Read failed for call %d: %s", tag, exc)
            event = CompletionEvent(tag, EventKind.READ, ok=False)
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error while reading call %d", tag)
            event = CompletionEvent(tag, EventKind.READ, ok=False)
        else:
            event = CompletionEvent(
                tag, EventKind.READ, ok=True, fragment=decode_response(message)
            )
        self.completion_queue.post(event)

    def _finish(self, tag: int) -> None:
        call = self._get_call(tag)
        if call is None:
            with self._lock:
                status = self._start_failures.get(tag) or CallStatus(
                    ok=False, code="UNKNOWN", details="call was never established"
                )
        else:
            try:
                code = call.code()
                status = CallStatus(
                    ok=code == grpc.StatusCode.OK,
                    code=code.name if code is not None else "UNKNOWN",
                    details=call.details() or None,
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected error while finishing call %d", tag)
                status = CallStatus(ok=False, code="UNKNOWN", details=str(exc))
        self.completion_queue.post(
            CompletionEvent(tag, EventKind.FINISHED, ok=status.ok, status=status)
        )
