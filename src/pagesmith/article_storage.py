from __future__ import annotations

import logging
import uuid
from typing import Any

from .errors import JobValidationError, StorageError
from .models import AgentStage, ArticleJob, ArticleJobStep, JobStatus
from .storage import normalize_direction, validate_page
from .utils import json_dumps, json_loads, log_event, utc_now_iso, utc_now_iso_offset

ARTICLE_COLUMNS = """
    id, keyword, status, current_agent, progress_percent, current_iteration,
    max_iterations, total_tokens_used, estimated_cost_usd, priority, settings_json,
    final_output_json, page_id, last_error, created_by, created_at, updated_at,
    started_at, completed_at
"""

STEP_COLUMNS = """
    id, job_id, stage, iteration, status, attempts, prompt_tokens, completion_tokens,
    tokens_used, cost_usd, duration_ms, output_json, error, started_at, completed_at
"""

ARTICLE_ORDER_COLUMNS = {"created_at", "updated_at", "priority"}

logger = logging.getLogger("pagesmith.article_storage")


def create_article_job(
    conn: Any,
    keyword: str,
    settings: dict[str, Any],
    max_iterations: int,
    priority: int = 0,
    created_by: str | None = None,
) -> ArticleJob:
    job_id = f"article_{uuid.uuid4().hex}"
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO article_jobs
            (id, keyword, status, max_iterations, priority, settings_json, created_by,
             created_at, updated_at)
        VALUES (?, ?, 'pending', ?, ?, ?, ?, ?, ?)
        """,
        (job_id, keyword, max_iterations, priority, json_dumps(settings), created_by, now, now),
    )
    conn.commit()
    job = get_article_job(conn, job_id)
    if job is None:
        raise StorageError(f"article_job_not_readable_after_insert: {job_id}")
    return job


def get_article_job(conn: Any, job_id: str) -> ArticleJob | None:
    row = conn.execute(
        f"SELECT {ARTICLE_COLUMNS} FROM article_jobs WHERE id = ?", (job_id,)
    ).fetchone()
    return _row_to_article_job(row) if row else None


def list_article_jobs(
    conn: Any,
    status: JobStatus | None = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "created_at",
    direction: str = "desc",
) -> tuple[list[ArticleJob], int]:
    if order_by not in ARTICLE_ORDER_COLUMNS:
        raise JobValidationError(f"invalid_order_by: {order_by}")
    direction = normalize_direction(direction)
    limit, offset = validate_page(limit, offset)
    where = ""
    params: list[object] = []
    if status is not None:
        where = "WHERE status = ?"
        params.append(status.value)
    total_row = conn.execute(
        f"SELECT COUNT(*) FROM article_jobs {where}", tuple(params)
    ).fetchone()
    rows = conn.execute(
        f"""
        SELECT {ARTICLE_COLUMNS} FROM article_jobs
        {where}
        ORDER BY {order_by} {direction}, id {direction}
        LIMIT ? OFFSET ?
        """,
        tuple(params + [limit, offset]),
    ).fetchall()
    return [_row_to_article_job(row) for row in rows], int(total_row[0] if total_row else 0)


def article_job_stats(conn: Any) -> dict[str, Any]:
    stats: dict[str, Any] = {status.value: 0 for status in JobStatus}
    stats.update(total=0, total_tokens_used=0, estimated_cost_usd=0.0)
    rows = conn.execute(
        """
        SELECT status, COUNT(*), COALESCE(SUM(total_tokens_used), 0),
               COALESCE(SUM(estimated_cost_usd), 0)
        FROM article_jobs
        GROUP BY status
        """
    ).fetchall()
    for status, count, tokens, cost in rows:
        stats[status] = int(count)
        stats["total"] += int(count)
        stats["total_tokens_used"] += int(tokens)
        stats["estimated_cost_usd"] += float(cost)
    stats["estimated_cost_usd"] = round(stats["estimated_cost_usd"], 6)
    return stats


def claim_next_article_job(conn: Any, worker_id: str) -> ArticleJob | None:
    now = utc_now_iso()
    with conn.transaction():
        rows = conn.execute(
            f"""
            UPDATE article_jobs
            SET status = 'processing', started_at = ?, updated_at = ?, heartbeat_at = ?,
                locked_by = ?
            WHERE id = (
                SELECT id FROM article_jobs
                WHERE status = 'pending'
                ORDER BY priority DESC, created_at ASC, id ASC
                LIMIT 1
            )
            AND status = 'pending'
            RETURNING {ARTICLE_COLUMNS}
            """,
            (now, now, now, worker_id),
        ).fetchall()
    return _row_to_article_job(rows[0]) if rows else None


def claim_article_job(conn: Any, job_id: str, worker_id: str) -> ArticleJob | None:
    now = utc_now_iso()
    with conn.transaction():
        rows = conn.execute(
            f"""
            UPDATE article_jobs
            SET status = 'processing', started_at = ?, updated_at = ?, heartbeat_at = ?,
                locked_by = ?
            WHERE id = ? AND status = 'pending'
            RETURNING {ARTICLE_COLUMNS}
            """,
            (now, now, now, worker_id, job_id),
        ).fetchall()
    return _row_to_article_job(rows[0]) if rows else None


def update_article_progress(
    conn: Any,
    job_id: str,
    current_agent: AgentStage | None,
    progress_percent: int,
    current_iteration: int | None = None,
) -> bool:
    """Record the active stage; progress only ever moves forward."""
    if progress_percent < 0 or progress_percent > 100:
        raise ValueError("progress_out_of_range")
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET current_agent = ?,
            progress_percent = CASE WHEN ? > progress_percent THEN ? ELSE progress_percent END,
            current_iteration = COALESCE(?, current_iteration),
            updated_at = ?,
            heartbeat_at = ?
        WHERE id = ? AND status = 'processing'
          AND COALESCE(?, current_iteration) <= max_iterations
        """,
        (
            current_agent.value if current_agent else None,
            progress_percent,
            progress_percent,
            current_iteration,
            now,
            now,
            job_id,
            current_iteration,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def add_article_usage(conn: Any, job_id: str, tokens: int, cost_usd: float) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        UPDATE article_jobs
        SET total_tokens_used = total_tokens_used + ?,
            estimated_cost_usd = estimated_cost_usd + ?,
            updated_at = ?,
            heartbeat_at = ?
        WHERE id = ?
        """,
        (int(tokens), float(cost_usd), now, now, job_id),
    )
    conn.commit()


def complete_article_job(conn: Any, job_id: str, final_output: dict[str, Any]) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET status = 'completed', final_output_json = ?, progress_percent = 100,
            current_agent = NULL, last_error = NULL, completed_at = ?, updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (json_dumps(final_output), now, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_article_job(conn: Any, job_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET status = 'failed', last_error = ?, completed_at = ?, updated_at = ?
        WHERE id = ? AND status = 'processing'
        """,
        (error, now, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_article_job(conn: Any, job_id: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET status = 'cancelled', completed_at = ?, updated_at = ?
        WHERE id = ? AND status IN ('pending', 'processing')
        """,
        (now, now, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def is_article_cancelled(conn: Any, job_id: str) -> bool:
    row = conn.execute("SELECT status FROM article_jobs WHERE id = ?", (job_id,)).fetchone()
    return bool(row and row[0] == JobStatus.CANCELLED.value)


def reserve_publish(conn: Any, job_id: str) -> str | None:
    token = uuid.uuid4().hex
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET publish_token = ?, updated_at = ?
        WHERE id = ? AND status = 'completed' AND page_id IS NULL AND publish_token IS NULL
        """,
        (token, utc_now_iso(), job_id),
    )
    conn.commit()
    return token if cursor.rowcount == 1 else None


def release_publish(conn: Any, job_id: str, token: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET publish_token = NULL, updated_at = ?
        WHERE id = ? AND publish_token = ? AND page_id IS NULL
        """,
        (utc_now_iso(), job_id, token),
    )
    conn.commit()
    return cursor.rowcount == 1


def stamp_article_page_id(conn: Any, job_id: str, token: str, page_id: str) -> bool:
    """Record the page inside the caller's open transaction; does not commit."""
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET page_id = ?, updated_at = ?
        WHERE id = ? AND publish_token = ? AND page_id IS NULL AND status = 'completed'
        """,
        (page_id, utc_now_iso(), job_id, token),
    )
    return cursor.rowcount == 1


def set_article_page_id(conn: Any, job_id: str, token: str, page_id: str) -> bool:
    stamped = stamp_article_page_id(conn, job_id, token, page_id)
    conn.commit()
    return stamped


def fail_stale_article_jobs(conn: Any, timeout_seconds: int) -> int:
    cutoff = utc_now_iso_offset(seconds=-timeout_seconds)
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE article_jobs
        SET status = 'failed', last_error = ?, completed_at = ?, updated_at = ?
        WHERE status = 'processing' AND COALESCE(heartbeat_at, started_at) < ?
        """,
        (f"stalled: no progress for {timeout_seconds}s", now, now, cutoff),
    )
    conn.commit()
    count = int(cursor.rowcount or 0)
    if count:
        log_event(logger, logging.WARNING, "article_jobs_stalled", count=count, cutoff=cutoff)
    return count


def start_step(conn: Any, job_id: str, stage: AgentStage, iteration: int) -> int:
    row = conn.execute(
        """
        INSERT INTO article_job_steps (job_id, stage, iteration, status, started_at)
        VALUES (?, ?, ?, 'running', ?)
        RETURNING id
        """,
        (job_id, stage.value, iteration, utc_now_iso()),
    ).fetchall()[0]
    conn.commit()
    return int(row[0])


def finish_step(
    conn: Any,
    step_id: int,
    status: str,
    attempts: int,
    prompt_tokens: int,
    completion_tokens: int,
    cost_usd: float,
    duration_ms: int,
    output: dict[str, Any] | None = None,
    error: str | None = None,
) -> None:
    conn.execute(
        """
        UPDATE article_job_steps
        SET status = ?, attempts = ?, prompt_tokens = ?, completion_tokens = ?,
            tokens_used = ?, cost_usd = ?, duration_ms = ?, output_json = ?, error = ?,
            completed_at = ?
        WHERE id = ?
        """,
        (
            status,
            attempts,
            prompt_tokens,
            completion_tokens,
            prompt_tokens + completion_tokens,
            cost_usd,
            duration_ms,
            json_dumps(output) if output is not None else None,
            error,
            utc_now_iso(),
            step_id,
        ),
    )
    conn.commit()


def list_steps(conn: Any, job_id: str) -> list[ArticleJobStep]:
    rows = conn.execute(
        f"SELECT {STEP_COLUMNS} FROM article_job_steps WHERE job_id = ? ORDER BY id ASC",
        (job_id,),
    ).fetchall()
    return [
        ArticleJobStep(
            id=int(row[0]),
            job_id=row[1],
            stage=AgentStage(row[2]),
            iteration=int(row[3]),
            status=row[4],
            attempts=int(row[5]),
            prompt_tokens=int(row[6]),
            completion_tokens=int(row[7]),
            tokens_used=int(row[8]),
            cost_usd=float(row[9]),
            duration_ms=row[10],
            output=json_loads(row[11]),
            error=row[12],
            started_at=row[13],
            completed_at=row[14],
        )
        for row in rows
    ]


def _row_to_article_job(row: tuple) -> ArticleJob:
    (
        job_id,
        keyword,
        status,
        current_agent,
        progress_percent,
        current_iteration,
        max_iterations,
        total_tokens_used,
        estimated_cost_usd,
        priority,
        settings_json,
        final_output_json,
        page_id,
        last_error,
        created_by,
        created_at,
        updated_at,
        started_at,
        completed_at,
    ) = row
    return ArticleJob(
        id=job_id,
        keyword=keyword,
        status=JobStatus(status),
        current_agent=AgentStage(current_agent) if current_agent else None,
        progress_percent=int(progress_percent or 0),
        current_iteration=int(current_iteration or 0),
        max_iterations=int(max_iterations),
        total_tokens_used=int(total_tokens_used or 0),
        estimated_cost_usd=float(estimated_cost_usd or 0.0),
        priority=int(priority or 0),
        settings=json_loads(settings_json, {}),
        final_output=json_loads(final_output_json),
        page_id=page_id,
        last_error=last_error,
        created_by=created_by,
        created_at=created_at,
        updated_at=updated_at,
        started_at=started_at,
        completed_at=completed_at,
    )
