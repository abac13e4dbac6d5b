from __future__ import annotations

import json
import sqlite3
from collections.abc import Sequence
from datetime import datetime
from typing import Any, cast
from uuid import uuid4

from backend.archiver.models.job_contracts import (
    JOB_STATE_DISCARDED,
    JOB_STATE_PENDING,
    JOB_STATE_RETRYABLE,
    JOB_STATE_RUNNING,
    JOB_STATE_SUCCEEDED,
    JOB_STATES,
    JobInstance,
    JobState,
)
from backend.archiver.repositories.common import (
    parse_iso_datetime,
    parse_optional_iso,
    to_iso,
    utc_now,
    utc_now_iso,
)
from backend.archiver.repositories.database import Database

_JOB_COLUMNS = (
    "id, kind, queue, args_json, state, attempt, max_attempts, available_at, last_error, heartbeat_at"
)
_MAX_ERROR_LENGTH = 2000


class JobsRepository:
    """Persistent job queue. Claims are serialized through sqlite's write lock."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def enqueue(
        self,
        *,
        kind: str,
        queue: str,
        args: dict[str, Any],
        max_attempts: int,
        available_at: datetime | None = None,
    ) -> str:
        job_id = f"job_{uuid4().hex}"
        now = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO jobs
                (id, kind, queue, args_json, state, attempt, max_attempts, available_at,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    kind,
                    queue,
                    json.dumps(args, sort_keys=True),
                    JOB_STATE_PENDING,
                    max_attempts,
                    to_iso(available_at or utc_now()),
                    now,
                    now,
                ),
            )
        return job_id

    def claim_next(self, queue: str, now: datetime | None = None) -> JobInstance | None:
        claimed_at = to_iso(now or utc_now())
        with self._db.immediate_transaction() as conn:
            row = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                WHERE queue = ? AND state IN (?, ?) AND available_at <= ?
                ORDER BY available_at ASC, created_at ASC
                LIMIT 1
                """,
                (queue, JOB_STATE_PENDING, JOB_STATE_RETRYABLE, claimed_at),
            ).fetchone()
            if row is None:
                return None

            conn.execute(
                """
                UPDATE jobs
                SET state = ?, attempt = attempt + 1, heartbeat_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (JOB_STATE_RUNNING, claimed_at, claimed_at, str(row["id"])),
            )
            claimed = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
                (str(row["id"]),),
            ).fetchone()
        return _row_to_job(claimed)

    def get(self, job_id: str) -> JobInstance | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        return _row_to_job(row) if row is not None else None

    def mark_succeeded(self, job_id: str) -> None:
        now = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET state = ?, last_error = NULL, finished_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (JOB_STATE_SUCCEEDED, now, now, job_id),
            )

    def schedule_retry(self, job_id: str, *, error: str, available_at: datetime) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET state = ?, last_error = ?, available_at = ?, heartbeat_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    JOB_STATE_RETRYABLE,
                    _truncate_error(error),
                    to_iso(available_at),
                    utc_now_iso(),
                    job_id,
                ),
            )

    def mark_discarded(self, job_id: str, *, error: str) -> None:
        now = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE jobs
                SET state = ?, last_error = ?, heartbeat_at = NULL, finished_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (JOB_STATE_DISCARDED, _truncate_error(error), now, now, job_id),
            )

    def touch_heartbeats(self, job_ids: Sequence[str], now: datetime | None = None) -> int:
        if not job_ids:
            return 0
        beat = to_iso(now or utc_now())
        placeholders = ", ".join("?" for _ in job_ids)
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"""
                UPDATE jobs
                SET heartbeat_at = ?
                WHERE state = ? AND id IN ({placeholders})
                """,
                (beat, JOB_STATE_RUNNING, *job_ids),
            )
            return int(cursor.rowcount)

    def list_stale_running(self, heartbeat_before: datetime) -> list[JobInstance]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                WHERE state = ? AND (heartbeat_at IS NULL OR heartbeat_at < ?)
                ORDER BY updated_at ASC
                """,
                (JOB_STATE_RUNNING, to_iso(heartbeat_before)),
            ).fetchall()
        return [_row_to_job(row) for row in rows]

    def list_jobs(self, *, state: JobState | None = None, limit: int = 50) -> list[JobInstance]:
        with self._db.connection() as conn:
            if state is None:
                rows = conn.execute(
                    f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY updated_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {_JOB_COLUMNS}
                    FROM jobs
                    WHERE state = ?
                    ORDER BY updated_at DESC
                    LIMIT ?
                    """,
                    (state, limit),
                ).fetchall()
        return [_row_to_job(row) for row in rows]

    def counts_by_state(self) -> dict[str, int]:
        with self._db.connection() as conn:
            rows = conn.execute("SELECT state, COUNT(*) AS total FROM jobs GROUP BY state").fetchall()
        counts = {state: 0 for state in JOB_STATES}
        for row in rows:
            counts[str(row["state"])] = int(row["total"])
        return counts


def _row_to_job(row: sqlite3.Row) -> JobInstance:
    return JobInstance(
        job_id=str(row["id"]),
        kind=str(row["kind"]),
        queue=str(row["queue"]),
        args=_load_args(row["args_json"]),
        state=cast(JobState, str(row["state"])),
        attempt=int(row["attempt"]),
        max_attempts=int(row["max_attempts"]),
        available_at=parse_iso_datetime(str(row["available_at"])),
        last_error=row["last_error"] if isinstance(row["last_error"], str) else None,
        heartbeat_at=parse_optional_iso(row["heartbeat_at"]),
    )


def _load_args(raw: object) -> dict[str, Any]:
    if not isinstance(raw, str):
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    if isinstance(parsed, dict):
        raw_dict = cast(dict[object, object], parsed)
        return {str(key): value for key, value in raw_dict.items()}
    return {}


def _truncate_error(error: str) -> str:
    if len(error) <= _MAX_ERROR_LENGTH:
        return error
    return error[: _MAX_ERROR_LENGTH - 3] + "..."
