from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    request_id: int
    prompt: str
    temperature: float
    generation_length: int


@dataclass(slots=True)
class TimingRecord:
    request_id: int
    prompt_tokens: int
    output_tokens: int
    awaiting_first_token: bool = True
    submitted_at: float | None = None
    prefill_at: float | None = None
    finished_at: float | None = None
    success: bool = False
    error_message: str | None = None


@dataclass(frozen=True, slots=True)
class ResponseFragment:
    request_id: int
    generated: str
    is_last: bool = False


@dataclass(frozen=True, slots=True)
class CallStatus:
    ok: bool
    code: str = "OK"
    details: str | None = None
