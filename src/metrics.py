from __future__ import annotations

from dataclasses import dataclass, field
from math import ceil, floor

from records import TimingRecord


MS_PER_S = 1000.0


@dataclass(slots=True)
class RequestLatency:
    request_id: int
    prefill_ms: float
    decode_per_token_ms: float | None
    e2e_ms: float
    ttft_ms: float | None


@dataclass(slots=True)
class RunStats:
    benchmark_time_s: float
    request_count: int
    completed_count: int
    failed_count: int
    total_input_tokens: int
    total_output_tokens: int
    avg_input_tokens: float | None
    avg_output_tokens: float | None
    time_per_output_token_ms: float | None
    avg_prefill_latency_ms: float | None
    avg_decode_latency_per_token_ms: float | None
    avg_e2e_latency_ms: float | None
    decode_excluded_count: int
    output_tokens_per_s: float
    total_tokens_per_s: float
    requests_per_s: float
    ttft_quantiles_ms: dict[str, float | int | None] = field(default_factory=dict)
    e2e_quantiles_ms: dict[str, float | int | None] = field(default_factory=dict)


def _quantile_cont(values: list[float], percentile: float) -> float | None:
    if not values:
        return None
    if len(values) == 1:
        return float(values[0])

    sorted_values = sorted(values)
    position = (len(sorted_values) - 1) * percentile
    lower_index = floor(position)
    upper_index = ceil(position)
    if lower_index == upper_index:
        return float(sorted_values[lower_index])

    left = sorted_values[lower_index]
    right = sorted_values[upper_index]
    fraction = position - lower_index
    return float(left + (right - left) * fraction)


def quantile_summary(values: list[float]) -> dict[str, float | int | None]:
    return {
        "count": len(values),
        "p50": _quantile_cont(values, 0.50),
        "p90": _quantile_cont(values, 0.90),
        "p95": _quantile_cont(values, 0.95),
        "p99": _quantile_cont(values, 0.99),
    }


def _average(total: float, count: int) -> float | None:
    if count <= 0:
        return None
    return total / count


def compute_request_latency(record: TimingRecord, run_started_at: float) -> RequestLatency:
    """Latencies of one finished, successful request in milliseconds.

    Prefill and end-to-end latency are measured from the run start. Decode
    latency per token is undefined (None) when fewer than two output tokens
    were requested.
    """
    if record.prefill_at is None or record.finished_at is None:
        raise ValueError(f"Request {record.request_id} has no complete timings")

    prefill_ms = (record.prefill_at - run_started_at) * MS_PER_S
    e2e_ms = (record.finished_at - run_started_at) * MS_PER_S
    decode_per_token_ms = None
    if record.output_tokens > 1:
        decode_per_token_ms = (
            (record.finished_at - record.prefill_at) * MS_PER_S / (record.output_tokens - 1)
        )
    ttft_ms = None
    if record.submitted_at is not None:
        ttft_ms = (record.prefill_at - record.submitted_at) * MS_PER_S

    return RequestLatency(
        request_id=record.request_id,
        prefill_ms=prefill_ms,
        decode_per_token_ms=decode_per_token_ms,
        e2e_ms=e2e_ms,
        ttft_ms=ttft_ms,
    )


def _is_complete(record: TimingRecord) -> bool:
    return record.success and record.prefill_at is not None and record.finished_at is not None


def compute_run_stats(
    records: list[TimingRecord], run_started_at: float, run_ended_at: float
) -> RunStats:
    completed = [record for record in records if _is_complete(record)]
    latencies = [compute_request_latency(record, run_started_at) for record in completed]
    completed_count = len(completed)

    total_input_tokens = sum(record.prompt_tokens for record in completed)
    total_output_tokens = sum(record.output_tokens for record in completed)
    decode_values = [
        latency.decode_per_token_ms
        for latency in latencies
        if latency.decode_per_token_ms is not None
    ]
    ttft_values = [latency.ttft_ms for latency in latencies if latency.ttft_ms is not None]
    e2e_values = [latency.e2e_ms for latency in latencies]

    benchmark_time_s = max(run_ended_at - run_started_at, 0.0)
    time_per_output_token_ms = None
    if total_output_tokens > 0:
        time_per_output_token_ms = benchmark_time_s * MS_PER_S / total_output_tokens

    def per_second(value: float) -> float:
        return value / benchmark_time_s if benchmark_time_s > 0 else 0.0

    return RunStats(
        benchmark_time_s=benchmark_time_s,
        request_count=len(records),
        completed_count=completed_count,
        failed_count=len(records) - completed_count,
        total_input_tokens=total_input_tokens,
        total_output_tokens=total_output_tokens,
        avg_input_tokens=_average(total_input_tokens, completed_count),
        avg_output_tokens=_average(total_output_tokens, completed_count),
        time_per_output_token_ms=time_per_output_token_ms,
        avg_prefill_latency_ms=_average(
            sum(latency.prefill_ms for latency in latencies), completed_count
        ),
        avg_decode_latency_per_token_ms=_average(sum(decode_values), len(decode_values)),
        avg_e2e_latency_ms=_average(sum(e2e_values), completed_count),
        decode_excluded_count=completed_count - len(decode_values),
        output_tokens_per_s=per_second(total_output_tokens),
        total_tokens_per_s=per_second(total_input_tokens + total_output_tokens),
        requests_per_s=per_second(completed_count),
        ttft_quantiles_ms=quantile_summary(ttft_values),
        e2e_quantiles_ms=quantile_summary(e2e_values),
    )
