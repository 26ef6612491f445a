from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Iterable

from .db import connect_db
from .errors import IntegrityViolation, JobConflictError, JobValidationError, StorageError
from .models import Job, JobLog, JobStatus, JobType
from .utils import json_dumps, json_loads, log_event, utc_now_iso, utc_now_iso_offset

JOB_COLUMNS = """
    id, job_type, status, payload_json, result_json, total_items, processed_items,
    failed_items, last_error, created_by, locked_by, retry_of, created_at, started_at,
    completed_at, heartbeat_at
"""

JOB_ORDER_COLUMNS = {"created_at", "started_at", "completed_at"}
MAX_LIST_LIMIT = 100

logger = logging.getLogger("pagesmith.storage")


def init_db(path: str | None = None):
    if path is None:
        data_dir = os.environ.get("PS_DATA_DIR", "/data")
        path = os.path.join(data_dir, "state.sqlite3")
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    return json_loads(row[0], default)


def set_setting(conn: Any, key: str, value: object) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), now),
    )
    conn.commit()


def create_job(
    conn: Any,
    job_type: JobType,
    payload: dict[str, Any],
    total_items: int = 0,
    created_by: str | None = None,
    retry_of: str | None = None,
) -> Job:
    existing = find_active_job(conn, job_type)
    if existing is not None:
        raise JobConflictError(f"job_already_active: {job_type.value} {existing.id}")
    job_id = _new_job_id()
    now = utc_now_iso()
    try:
        conn.execute(
            """
            INSERT INTO jobs
                (id, job_type, status, payload_json, total_items, created_by, retry_of,
                 created_at)
            VALUES (?, ?, 'pending', ?, ?, ?, ?, ?)
            """,
            (job_id, job_type.value, json_dumps(payload), total_items, created_by, retry_of, now),
        )
        conn.commit()
    except IntegrityViolation as exc:
        # lost the race against a concurrent enqueue of the same type
        raise JobConflictError(f"job_already_active: {job_type.value}") from exc
    job = get_job(conn, job_id)
    if job is None:
        raise StorageError(f"job_not_readable_after_insert: {job_id}")
    return job


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def find_active_job(conn: Any, job_type: JobType) -> Job | None:
    row = conn.execute(
        f"""
        SELECT {JOB_COLUMNS} FROM jobs
        WHERE job_type = ? AND status IN ('pending', 'processing')
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (job_type.value,),
    ).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "created_at",
    direction: str = "desc",
) -> tuple[list[Job], int]:
    if order_by not in JOB_ORDER_COLUMNS:
        raise JobValidationError(f"invalid_order_by: {order_by}")
    direction = normalize_direction(direction)
    limit, offset = validate_page(limit, offset)
    clauses: list[str] = []
    params: list[object] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)
    if job_type is not None:
        clauses.append("job_type = ?")
        params.append(job_type.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    total_row = conn.execute(f"SELECT COUNT(*) FROM jobs {where}", tuple(params)).fetchone()
    rows = conn.execute(
        f"""
        SELECT {JOB_COLUMNS} FROM jobs
        {where}
        ORDER BY {order_by} {direction}, id {direction}
        LIMIT ? OFFSET ?
        """,
        tuple(params + [limit, offset]),
    ).fetchall()
    return [_row_to_job(row) for row in rows], int(total_row[0] if total_row else 0)


def claim_next_job(
    conn: Any,
    worker_id: str,
    job_types: Iterable[JobType] | None = None,
) -> Job | None:
    params: list[object] = []
    type_clause = ""
    types = [job_type.value for job_type in job_types or []]
    if types:
        type_clause = f" AND job_type IN ({','.join(['?'] * len(types))})"
    now = utc_now_iso()
    params.extend([now, now, worker_id])
    params.extend(types)
    with conn.transaction():
        rows = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'processing', started_at = ?, heartbeat_at = ?, locked_by = ?
            WHERE id = (
                SELECT id FROM jobs
                WHERE status = 'pending'{type_clause}
                ORDER BY created_at ASC, id ASC
                LIMIT 1
            )
            AND status = 'pending'
            RETURNING {JOB_COLUMNS}
            """,
            tuple(params),
        ).fetchall()
    return _row_to_job(rows[0]) if rows else None


def claim_job(conn: Any, job_id: str, worker_id: str) -> Job | None:
    now = utc_now_iso()
    with conn.transaction():
        rows = conn.execute(
            f"""
            UPDATE jobs
            SET status = 'processing', started_at = ?, heartbeat_at = ?, locked_by = ?
            WHERE id = ? AND status = 'pending'
            RETURNING {JOB_COLUMNS}
            """,
            (now, now, worker_id, job_id),
        ).fetchall()
    return _row_to_job(rows[0]) if rows else None


def update_job_progress(
    conn: Any,
    job_id: str,
    processed_items: int,
    failed_items: int,
    total_items: int | None = None,
) -> bool:
    if processed_items < 0 or failed_items < 0:
        raise ValueError("item_counts_negative")
    done = processed_items + failed_items
    if total_items is not None and done > total_items:
        raise ValueError("item_counts_exceed_total")
    cursor = conn.execute(
        """
        UPDATE jobs
        SET processed_items = ?, failed_items = ?, total_items = COALESCE(?, total_items),
            heartbeat_at = ?
        WHERE id = ? AND status = 'processing' AND ? <= COALESCE(?, total_items)
        """,
        (
            processed_items,
            failed_items,
            total_items,
            utc_now_iso(),
            job_id,
            done,
            total_items,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def complete_job(conn: Any, job_id: str, result: dict[str, object] | None = None) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'completed', completed_at = ?, heartbeat_at = ?, result_json = ?,
            last_error = NULL
        WHERE id = ? AND status = 'processing'
        """,
        (now, now, json_dumps(result) if result is not None else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(
    conn: Any, job_id: str, error: str, result: dict[str, object] | None = None
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', completed_at = ?, last_error = ?,
            result_json = COALESCE(?, result_json)
        WHERE id = ? AND status = 'processing'
        """,
        (now, error, json_dumps(result) if result is not None else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_job(conn: Any, job_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'cancelled', completed_at = ?
        WHERE id = ? AND status IN ('pending', 'processing')
        """,
        (utc_now_iso(), job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def is_job_cancelled(conn: Any, job_id: str) -> bool:
    row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return bool(row and row[0] == JobStatus.CANCELLED.value)


def fail_stale_jobs(conn: Any, timeout_seconds: int) -> int:
    cutoff = utc_now_iso_offset(seconds=-timeout_seconds)
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', completed_at = ?, last_error = ?
        WHERE status = 'processing' AND COALESCE(heartbeat_at, started_at) < ?
        """,
        (utc_now_iso(), f"stalled: no progress for {timeout_seconds}s", cutoff),
    )
    conn.commit()
    count = int(cursor.rowcount or 0)
    if count:
        log_event(logger, logging.WARNING, "jobs_stalled", count=count, cutoff=cutoff)
    return count


def append_job_log(
    conn: Any,
    job_id: str,
    level: str,
    event: str,
    message: str | None = None,
    data: dict[str, object] | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO job_logs (job_id, level, event, message, data_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (job_id, level, event, message, json_dumps(data) if data else None, utc_now_iso()),
    )
    conn.commit()


def list_job_logs(conn: Any, job_id: str, limit: int = 200) -> list[JobLog]:
    rows = conn.execute(
        """
        SELECT id, job_id, level, event, message, data_json, created_at
        FROM job_logs
        WHERE job_id = ?
        ORDER BY id ASC
        LIMIT ?
        """,
        (job_id, max(1, min(limit, 1000))),
    ).fetchall()
    return [
        JobLog(
            id=int(row[0]),
            job_id=row[1],
            level=row[2],
            event=row[3],
            message=row[4],
            data=json_loads(row[5]),
            created_at=row[6],
        )
        for row in rows
    ]


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        total_items,
        processed_items,
        failed_items,
        last_error,
        created_by,
        locked_by,
        retry_of,
        created_at,
        started_at,
        completed_at,
        heartbeat_at,
    ) = row
    return Job(
        id=job_id,
        job_type=JobType(job_type),
        status=JobStatus(status),
        payload=json_loads(payload_json, {}),
        result=json_loads(result_json),
        total_items=int(total_items or 0),
        processed_items=int(processed_items or 0),
        failed_items=int(failed_items or 0),
        last_error=last_error,
        created_by=created_by,
        locked_by=locked_by,
        retry_of=retry_of,
        created_at=created_at,
        started_at=started_at,
        completed_at=completed_at,
        heartbeat_at=heartbeat_at,
    )


def normalize_direction(value: str) -> str:
    lowered = (value or "").lower()
    if lowered not in {"asc", "desc"}:
        raise JobValidationError(f"invalid_direction: {value}")
    return lowered.upper()


def validate_page(limit: int, offset: int) -> tuple[int, int]:
    if limit < 1 or limit > MAX_LIST_LIMIT:
        raise JobValidationError(f"invalid_limit: must be between 1 and {MAX_LIST_LIMIT}")
    if offset < 0:
        raise JobValidationError("invalid_offset: must be >= 0")
    return limit, offset


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
