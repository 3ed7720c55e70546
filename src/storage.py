from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import duckdb

from metrics import compute_request_latency
from records import TimingRecord

logger = logging.getLogger(__name__)


class BenchmarkStorage:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id VARCHAR PRIMARY KEY,
                started_at DOUBLE NOT NULL,
                finished_at DOUBLE,
                duration_s DOUBLE,
                config_json VARCHAR NOT NULL,
                summary_json VARCHAR
            );

            CREATE TABLE IF NOT EXISTS requests (
                run_id VARCHAR NOT NULL,
                request_id BIGINT NOT NULL,
                prompt_tokens BIGINT NOT NULL,
                output_tokens BIGINT NOT NULL,
                submitted_offset_s DOUBLE,
                prefill_offset_s DOUBLE,
                finished_offset_s DOUBLE,
                success BOOLEAN NOT NULL,
                error_message VARCHAR,
                prefill_ms DOUBLE,
                decode_per_token_ms DOUBLE,
                e2e_ms DOUBLE,
                PRIMARY KEY (run_id, request_id)
            );
            """
        )

    def create_run(self, run_id: str, started_at: float, config_json: str) -> None:
        logger.debug("Creating run: %s", run_id)
        self.connection.execute(
            """
            INSERT INTO runs (run_id, started_at, config_json)
            VALUES (?, ?, ?)
            """,
            [run_id, started_at, config_json],
        )

    def finish_run(
        self, run_id: str, finished_at: float, summary: dict[str, Any] | None = None
    ) -> None:
        logger.debug("Finishing run: %s", run_id)
        self.connection.execute(
            """
            UPDATE runs
            SET finished_at = ?, duration_s = ? - started_at, summary_json = ?
            WHERE run_id = ?
            """,
            [
                finished_at,
                finished_at,
                json.dumps(summary, ensure_ascii=True) if summary is not None else None,
                run_id,
            ],
        )

    def get_run(self, run_id: str) -> dict[str, Any]:
        row = self.connection.execute(
            """
            SELECT run_id, started_at, finished_at, duration_s, config_json, summary_json
            FROM runs
            WHERE run_id = ?
            """,
            [run_id],
        ).fetchone()
        if row is None:
            raise KeyError(run_id)
        return {
            "run_id": row[0],
            "started_at": row[1],
            "finished_at": row[2],
            "duration_s": row[3],
            "config_json": row[4],
            "summary_json": row[5],
        }

    def delete_run(self, run_id: str) -> bool:
        existing = self.connection.execute(
            """
            SELECT 1
            FROM runs
            WHERE run_id = ?
            LIMIT 1
            """,
            [run_id],
        ).fetchone()
        if existing is None:
            return False

        logger.debug("Deleting run: %s", run_id)
        self.connection.execute("BEGIN TRANSACTION")
        try:
            self.connection.execute("DELETE FROM requests WHERE run_id = ?", [run_id])
            self.connection.execute("DELETE FROM runs WHERE run_id = ?", [run_id])
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error during deletion of run %s, rolling back transaction", run_id, exc_info=True)
            self.connection.execute("ROLLBACK")
            raise
        return True

    def list_runs_with_stats(self) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            """
            WITH request_counts AS (
                SELECT
                    run_id,
                    COUNT(*) AS request_count,
                    SUM(CASE WHEN success THEN 1 ELSE 0 END) AS success_count,
                    SUM(CASE WHEN success THEN 0 ELSE 1 END) AS failed_count
                FROM requests
                GROUP BY run_id
            )
            SELECT
                runs.run_id,
                runs.started_at,
                runs.finished_at,
                runs.duration_s,
                runs.config_json,
                COALESCE(request_counts.request_count, 0) AS request_count,
                COALESCE(request_counts.success_count, 0) AS success_count,
                COALESCE(request_counts.failed_count, 0) AS failed_count
            FROM runs
            LEFT JOIN request_counts USING (run_id)
            ORDER BY runs.started_at DESC
            """
        ).fetchall()
        return [
            {
                "run_id": row[0],
                "started_at": row[1],
                "finished_at": row[2],
                "duration_s": row[3],
                "config_json": row[4],
                "request_count": int(row[5] or 0),
                "success_count": int(row[6] or 0),
                "failed_count": int(row[7] or 0),
            }
            for row in rows
        ]

    def insert_request_records(
        self, run_id: str, records: list[TimingRecord], run_started_at: float
    ) -> None:
        if not records:
            return
        logger.debug("Inserting %d request records", len(records))

        def offset(value: float | None) -> float | None:
            return value - run_started_at if value is not None else None

        rows = []
        for record in records:
            prefill_ms = decode_per_token_ms = e2e_ms = None
            if record.success and record.prefill_at is not None and record.finished_at is not None:
                latency = compute_request_latency(record, run_started_at)
                prefill_ms = latency.prefill_ms
                decode_per_token_ms = latency.decode_per_token_ms
                e2e_ms = latency.e2e_ms
            rows.append(
                (
                    run_id,
                    record.request_id,
                    record.prompt_tokens,
                    record.output_tokens,
                    offset(record.submitted_at),
                    offset(record.prefill_at),
                    offset(record.finished_at),
                    record.success,
                    record.error_message,
                    prefill_ms,
                    decode_per_token_ms,
                    e2e_ms,
                )
            )

        self.connection.executemany(
            """
            INSERT INTO requests (
                run_id,
                request_id,
                prompt_tokens,
                output_tokens,
                submitted_offset_s,
                prefill_offset_s,
                finished_offset_s,
                success,
                error_message,
                prefill_ms,
                decode_per_token_ms,
                e2e_ms
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )

    def count_requests(self, run_id: str) -> tuple[int, int]:
        row = self.connection.execute(
            """
            SELECT COUNT(*), COALESCE(SUM(CASE WHEN success THEN 0 ELSE 1 END), 0)
            FROM requests
            WHERE run_id = ?
            """,
            [run_id],
        ).fetchone()
        if row is None:
            return 0, 0
        return int(row[0] or 0), int(row[1] or 0)

    def close(self) -> None:
        self.connection.close()
