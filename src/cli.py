from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
import json
import logging
import os
from pathlib import Path
import sys
from threading import Lock
import time
import uuid

import typer

from bench_config import BenchConfig, load_config
from coordinator import RunCoordinator
from corpus import DatasetError, build_corpus, load_dataset_pairs
from records import GenerationRequest, TimingRecord
from runner import BenchmarkRunner, RunResult
from scheduler import ArrivalScheduler, parse_request_rate
from storage import BenchmarkStorage
from tokenizer_loader import TokenizerLoadError, load_tokenizer
from transport import GrpcTransport


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from LLM_QPS_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("LLM_QPS_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="Streaming RPC LLM load generator")
report_app = typer.Typer(no_args_is_help=True, help="Report commands")
app.add_typer(report_app, name="report")


RESPONSE_SEPARATOR = "==================================="


@dataclass(slots=True)
class _RunProgress:
    run_id: str
    total_requests: int
    enabled: bool = True
    min_update_interval_s: float = 0.2
    completed_requests: int = field(init=False, default=0)
    failed_requests: int = field(init=False, default=0)
    _lock: Lock = field(init=False, repr=False)
    _interactive: bool = field(init=False, repr=False)
    _start_perf: float = field(init=False, repr=False)
    _last_emit_perf: float = field(init=False, default=0.0, repr=False)
    _finalized: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self._lock = Lock()
        self._interactive = bool(self.enabled and sys.stderr.isatty())
        self._start_perf = time.perf_counter()

    def start(self, target: str, request_rate: str) -> None:
        if not self.enabled:
            return
        typer.echo(
            (
                f"[run] run_id={self.run_id} target={target} "
                f"total_requests={self.total_requests} request_rate={request_rate}"
            ),
            err=True,
        )

    def on_request_finished(self, record: TimingRecord) -> None:
        if not self.enabled:
            return

        with self._lock:
            self.completed_requests += 1
            if not record.success:
                self.failed_requests += 1

            now = time.perf_counter()
            finished = self.completed_requests >= self.total_requests
            if not finished and now - self._last_emit_perf < self.min_update_interval_s:
                return
            self._last_emit_perf = now
            self._emit_progress(now=now, final=finished)

    def finalize(self) -> None:
        if not self.enabled:
            return

        with self._lock:
            if self._finalized:
                return
            self._finalized = True
            if self.completed_requests < self.total_requests:
                self._emit_progress(now=time.perf_counter(), final=True)

    def _emit_progress(self, now: float, final: bool) -> None:
        percent = (
            (self.completed_requests / self.total_requests) * 100.0
            if self.total_requests > 0
            else 100.0
        )
        elapsed_s = max(now - self._start_perf, 1e-9)
        line = (
            f"[progress] {self.completed_requests}/{self.total_requests} ({percent:5.1f}%) "
            f"fail={self.failed_requests} rps={self.completed_requests / elapsed_s:6.2f}"
        )
        if self._interactive and not final:
            typer.echo(f"\r{line}", err=True, nl=False)
            return
        if self._interactive:
            typer.echo(f"\r{line}", err=True)
            return
        typer.echo(line, err=True)


def _format_number(value: object, unit: str = "") -> str:
    if value is None:
        return "-"
    suffix = f" {unit}" if unit else ""
    return f"{float(value):.2f}{suffix}"


def _format_count(value: object) -> str:
    if value is None:
        return "-"
    return f"{float(value):.0f}"


def _render_result_lines(summary: dict[str, object]) -> list[str]:
    lines = [
        f"[RESULT] benchmark time: {_format_number(summary.get('benchmark_time_s'), 's')}",
        f"[RESULT] request count: {summary.get('request_count', 0)}",
        f"[RESULT] failed request count: {summary.get('failed_count', 0)}",
        (
            f"[RESULT] avg input len: {_format_count(summary.get('avg_input_tokens'))}, "
            f"total input len: {summary.get('total_input_tokens', 0)}"
        ),
        (
            f"[RESULT] avg gen len: {_format_count(summary.get('avg_output_tokens'))}, "
            f"total gen len: {summary.get('total_output_tokens', 0)}"
        ),
        f"[RESULT] time per token: {_format_number(summary.get('time_per_output_token_ms'), 'ms')}",
        f"[RESULT] avg latency prefill: {_format_number(summary.get('avg_prefill_latency_ms'), 'ms')}",
        (
            "[RESULT] avg latency decoding: "
            f"{_format_number(summary.get('avg_decode_latency_per_token_ms'), 'ms')}"
        ),
        f"[RESULT] avg latency per prompt: {_format_number(summary.get('avg_e2e_latency_ms'), 'ms')}",
        f"[RESULT] tokens out per sec: {_format_number(summary.get('output_tokens_per_s'))}",
        f"[RESULT] tokens inout per sec: {_format_number(summary.get('total_tokens_per_s'))}",
        f"[RESULT] requests per sec: {_format_number(summary.get('requests_per_s'))}",
    ]
    decode_excluded = int(summary.get("decode_excluded_count") or 0)
    if decode_excluded:
        lines.append(
            f"[RESULT] decode latency skipped for {decode_excluded} request(s) with gen len <= 1"
        )

    for label, key in (("ttft", "ttft_quantiles_ms"), ("e2e", "e2e_quantiles_ms")):
        quantiles = summary.get(key) or {}
        if not isinstance(quantiles, dict) or not quantiles.get("count"):
            continue
        values = " ".join(
            f"{name}={_format_number(quantiles.get(name))}" for name in ("p50", "p90", "p95", "p99")
        )
        lines.append(f"[RESULT] {label} (ms): {values}")
    return lines


def _render_responses(requests: list[GenerationRequest], responses: dict[int, str]) -> str:
    lines = [RESPONSE_SEPARATOR]
    for request in requests:
        lines.append(f"Prompt: {request.prompt}")
        lines.append(f"Answer: {responses.get(request.request_id, '')}")
        lines.append(RESPONSE_SEPARATOR)
    return "\n".join(lines)


def _resolve_config(config: Path | None, **overrides: object) -> BenchConfig:
    base = BenchConfig()
    if config is not None:
        if not config.exists():
            raise ValueError(f"Config file not found: {config}")
        base = load_config(config)
    return base.merged(**overrides)


def _persist_run(
    db: Path,
    run_id: str,
    settings: BenchConfig,
    result: RunResult,
    wall_started_at: float,
) -> None:
    storage = BenchmarkStorage(db)
    try:
        storage.create_run(
            run_id=run_id,
            started_at=wall_started_at,
            config_json=json.dumps(asdict(settings), ensure_ascii=True),
        )
        storage.insert_request_records(
            run_id=run_id, records=result.records, run_started_at=result.started_at
        )
        storage.finish_run(
            run_id=run_id,
            finished_at=wall_started_at + result.stats.benchmark_time_s,
            summary=asdict(result.stats),
        )
    finally:
        storage.close()


@app.command("run")
def run_benchmark(
    target: str | None = typer.Option(None, "--target", help="Service address (ip:port)"),
    tokenizer: str | None = typer.Option(
        None,
        "--tokenizer",
        help="Path to a sentencepiece model, or litellm:<model>",
    ),
    dataset: Path | None = typer.Option(None, "--dataset", help="Path to the dataset (.json or .jsonl)"),
    request_rate: str | None = typer.Option(
        None,
        "--request-rate",
        "--request_rate",
        help=(
            "Number of requests per second. If this is inf, then all the requests are sent at "
            "time 0. Otherwise, we use Poisson process to synthesize the request arrival times."
        ),
    ),
    seed: int | None = typer.Option(None, "--seed", help="Seed for arrival sampling"),
    limit: int | None = typer.Option(None, "--limit", "-n", min=1, help="Use only the first N pairs"),
    db: Path | None = typer.Option(None, "--db", "-d", help="DuckDB file to persist the run"),
    config: Path | None = typer.Option(None, "--config", help="TOML file with a [benchmark] table"),
    json_output: bool = typer.Option(False, "--json", help="Also print the summary as JSON"),
    show_responses: bool = typer.Option(
        False, "--show-responses", help="Print prompts and generated answers"
    ),
    progress: bool = typer.Option(
        True,
        "--progress/--no-progress",
        help="Show live progress on stderr",
    ),
    run_id: str | None = typer.Option(
        None, "--run-id", help="Optional run id", hidden=True
    ),
) -> None:
    try:
        settings = _resolve_config(
            config,
            target=target,
            tokenizer=tokenizer,
            dataset=str(dataset) if dataset is not None else None,
            request_rate=request_rate,
            seed=seed,
            limit=limit,
            db=str(db) if db is not None else None,
        )
        rate = parse_request_rate(settings.request_rate)
    except ValueError as exc:
        typer.echo(f"Invalid configuration: {exc}")
        raise typer.Exit(1)

    if not settings.tokenizer:
        typer.echo("A tokenizer is required (--tokenizer).")
        raise typer.Exit(1)
    if not settings.dataset:
        typer.echo("A dataset is required (--dataset).")
        raise typer.Exit(1)

    try:
        loaded_tokenizer = load_tokenizer(settings.tokenizer)
    except TokenizerLoadError as exc:
        typer.echo(str(exc))
        raise typer.Exit(1)

    dataset_path = Path(settings.dataset)
    if not dataset_path.exists():
        typer.echo(f"Dataset not found: {dataset_path}")
        raise typer.Exit(1)
    logger.debug("Loading dataset from %s", dataset_path)
    try:
        pairs = load_dataset_pairs(dataset_path)
    except DatasetError as exc:
        typer.echo(f"Failed to load dataset: {exc}")
        raise typer.Exit(1)

    actual_run_id = run_id or f"run-{uuid.uuid4().hex[:8]}"
    run_progress = _RunProgress(run_id=actual_run_id, total_requests=0, enabled=progress)
    coordinator = RunCoordinator(on_request_finished=run_progress.on_request_finished)
    requests = build_corpus(pairs, loaded_tokenizer, coordinator, limit=settings.limit)
    if not requests:
        typer.echo("Dataset does not contain usable prompt/answer pairs.")
        raise typer.Exit(1)
    run_progress.total_requests = len(requests)

    scheduler = ArrivalScheduler(rate, seed=settings.seed)
    transport = GrpcTransport(settings.target, max_workers=len(requests))
    runner = BenchmarkRunner(transport=transport, coordinator=coordinator, scheduler=scheduler)

    wall_started_at = time.time()
    run_progress.start(target=settings.target, request_rate=settings.request_rate)
    logger.info(
        "Starting benchmark run %s: target=%s requests=%d request_rate=%s",
        actual_run_id, settings.target, len(requests), settings.request_rate,
    )
    try:
        result = runner.run(requests)
    finally:
        run_progress.finalize()
        transport.close()

    summary = asdict(result.stats)
    if show_responses:
        typer.echo(_render_responses(requests, result.responses))
    for line in _render_result_lines(summary):
        typer.echo(line, err=True)

    if settings.db:
        _persist_run(
            db=Path(settings.db),
            run_id=actual_run_id,
            settings=settings,
            result=result,
            wall_started_at=wall_started_at,
        )
        logger.info("Benchmark run %s stored in %s", actual_run_id, settings.db)

    if json_output:
        typer.echo(
            json.dumps(
                {"run_id": actual_run_id, "target": settings.target, "summary": summary},
                ensure_ascii=False,
            )
        )


def _parse_json_object(raw: object) -> dict[str, object]:
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(payload, dict):
        return payload
    return {}


def _format_timestamp(value: object) -> str:
    if value is None:
        return "-"
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "-"
    return datetime.fromtimestamp(numeric).astimezone().isoformat(timespec="seconds")


def _format_duration(value: object) -> str:
    if value is None:
        return "-"
    try:
        return f"{float(value):.3f}s"
    except (TypeError, ValueError):
        return "-"


def _render_report_list(runs: list[dict[str, object]], db: Path) -> str:
    lines = [
        "Benchmark runs",
        f"Total : {len(runs)}",
        f"DB    : {db}",
        "",
        "Runs:",
    ]
    for run in runs:
        lines.append(
            (
                f"- {run.get('run_id', '-')} started={_format_timestamp(run.get('started_at'))} "
                f"duration={_format_duration(run.get('duration_s'))} "
                f"target={run.get('target') or '-'} request_rate={run.get('request_rate') or '-'} "
                f"requests={int(run.get('request_count') or 0)} "
                f"ok={int(run.get('success_count') or 0)} fail={int(run.get('failed_count') or 0)}"
            )
        )
    return "\n".join(lines)


@report_app.command("list")
def report_list(
    limit: int | None = typer.Option(
        None, "--limit", "-n", min=1, help="Maximum number of runs to show"
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(..., "--db", "-d", help="DuckDB file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        runs = storage.list_runs_with_stats()
        if not runs:
            typer.echo("No runs found.")
            raise typer.Exit(1)

        if limit is not None:
            runs = runs[:limit]

        output_runs: list[dict[str, object]] = []
        for run in runs:
            config = _parse_json_object(run.get("config_json"))
            output_runs.append(
                {
                    "run_id": run.get("run_id"),
                    "started_at": run.get("started_at"),
                    "duration_s": run.get("duration_s"),
                    "started_at_iso": _format_timestamp(run.get("started_at")),
                    "request_count": run.get("request_count"),
                    "success_count": run.get("success_count"),
                    "failed_count": run.get("failed_count"),
                    "target": config.get("target"),
                    "request_rate": config.get("request_rate"),
                }
            )

        if json_output:
            typer.echo(
                json.dumps(
                    {"db": str(db), "total": len(output_runs), "runs": output_runs},
                    ensure_ascii=False,
                )
            )
            return

        typer.echo(_render_report_list(output_runs, db=db))
    finally:
        storage.close()


@report_app.command("summary")
def report_summary(
    run_id: str | None = typer.Option(
        None, "--run-id", help="Run identifier. Defaults to latest run."
    ),
    json_output: bool = typer.Option(
        False, "--json", help="Output machine-readable JSON"
    ),
    db: Path = typer.Option(..., "--db", "-d", help="DuckDB file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        actual_run_id = run_id
        if not actual_run_id:
            runs = storage.list_runs_with_stats()
            if not runs:
                typer.echo("No runs found.")
                raise typer.Exit(1)
            actual_run_id = str(runs[0]["run_id"])

        try:
            run = storage.get_run(actual_run_id)
        except KeyError:
            typer.echo(f"Run not found: {actual_run_id}")
            raise typer.Exit(1)

        summary = _parse_json_object(run.get("summary_json"))
        if not summary:
            typer.echo(f"Run has no summary: {actual_run_id}")
            raise typer.Exit(1)

        stored, stored_failed = storage.count_requests(actual_run_id)
        if json_output:
            typer.echo(
                json.dumps(
                    {
                        "run_id": actual_run_id,
                        "stored_requests": stored,
                        "stored_failed": stored_failed,
                        "summary": summary,
                    },
                    ensure_ascii=False,
                )
            )
            return

        lines = [
            f"Run ID: {actual_run_id}",
            f"DB    : {db}",
            f"Stored: {stored} request(s), {stored_failed} failed",
            *_render_result_lines(summary),
        ]
        typer.echo("\n".join(lines))
    finally:
        storage.close()


@report_app.command("remove")
def report_remove(
    run_id: str = typer.Option(..., "--run-id", help="Run identifier to remove"),
    db: Path = typer.Option(..., "--db", "-d", help="DuckDB file"),
) -> None:
    storage = BenchmarkStorage(db)
    try:
        deleted = storage.delete_run(run_id=run_id)
        if not deleted:
            typer.echo(f"Run not found: {run_id}")
            raise typer.Exit(1)
        typer.echo(f"Run removed: {run_id}")
    finally:
        storage.close()


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
