from __future__ import annotations

import logging
from typing import Any

from ..config import Config
from ..errors import (
    INTERNAL_ERROR,
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    StorageError,
)
from ..events import JOB_KIND, ProgressBus, ProgressEvent, get_bus
from ..executors import ExecutorRegistry
from ..models import Job, JobLog, JobStatus, Outcome
from ..payloads import decode_payload, parse_job_type
from ..storage import (
    append_job_log,
    cancel_job as store_cancel_job,
    claim_job,
    create_job,
    fail_job,
    get_job as store_get_job,
    list_job_logs,
    list_jobs as store_list_jobs,
)
from ..utils import log_event

RETRYABLE_STATUSES = (JobStatus.FAILED, JobStatus.CANCELLED)

logger = logging.getLogger("pagesmith.services.jobs")


def enqueue_job(
    conn: Any,
    config: Config,
    job_type: str,
    payload: dict[str, Any] | None,
    created_by: str | None = None,
    bus: ProgressBus | None = None,
    retry_of: str | None = None,
) -> Job:
    parsed_type = parse_job_type(job_type)
    model = decode_payload(parsed_type, payload)
    if model.batch_size is None:
        model = model.model_copy(update={"batch_size": config.enrichment.default_batch_size})
    job = create_job(
        conn,
        parsed_type,
        model.model_dump(mode="json"),
        total_items=len(model.target_ids),
        created_by=created_by,
        retry_of=retry_of,
    )
    append_job_log(
        conn,
        job.id,
        "info",
        "job_created",
        data={"created_by": created_by, "retry_of": retry_of, "total_items": job.total_items},
    )
    log_event(
        logger,
        logging.INFO,
        "job_enqueued",
        job_id=job.id,
        job_type=parsed_type.value,
        total=job.total_items,
    )
    _emit(bus, job, JobStatus.PENDING)
    return job


def get_job(conn: Any, job_id: str) -> Job:
    job = store_get_job(conn, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def list_jobs(
    conn: Any,
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "created_at",
    direction: str = "desc",
) -> tuple[list[Job], int]:
    return store_list_jobs(
        conn,
        status=_parse_status(status),
        job_type=parse_job_type(job_type) if job_type else None,
        limit=limit,
        offset=offset,
        order_by=order_by,
        direction=direction,
    )


def cancel_job(
    conn: Any, job_id: str, cancelled_by: str | None = None, bus: ProgressBus | None = None
) -> Job:
    job = get_job(conn, job_id)
    if not store_cancel_job(conn, job_id):
        current = get_job(conn, job_id)
        raise JobConflictError(f"job_not_cancellable: {current.status.value}")
    append_job_log(conn, job_id, "info", "job_cancel_requested", data={"by": cancelled_by})
    log_event(logger, logging.INFO, "job_cancel_requested", job_id=job_id, by=cancelled_by)
    cancelled = get_job(conn, job_id)
    # a running executor publishes its own terminal event once it notices
    if job.status == JobStatus.PENDING:
        _emit(bus, cancelled, JobStatus.CANCELLED, terminal=True)
    return cancelled


def retry_job(
    conn: Any,
    config: Config,
    job_id: str,
    created_by: str | None = None,
    bus: ProgressBus | None = None,
) -> Job:
    """Enqueue a fresh copy of a failed or cancelled job; the original stays terminal."""
    job = get_job(conn, job_id)
    if job.status not in RETRYABLE_STATUSES:
        raise JobConflictError(f"job_not_retryable: {job.status.value}")
    return enqueue_job(
        conn,
        config,
        job.job_type.value,
        job.payload,
        created_by=created_by,
        bus=bus,
        retry_of=job.id,
    )


def get_job_logs(conn: Any, job_id: str, limit: int = 200) -> list[JobLog]:
    get_job(conn, job_id)
    return list_job_logs(conn, job_id, limit=limit)


def run_job_now(
    conn: Any, registry: ExecutorRegistry, job_id: str, worker_id: str
) -> Outcome:
    """Claim a specific pending job and run it inline."""
    get_job(conn, job_id)
    job = claim_job(conn, job_id, worker_id)
    if job is None:
        current = get_job(conn, job_id)
        raise JobConflictError(f"job_not_pending: {current.status.value}")
    return run_claimed_job(conn, registry, job)


def run_claimed_job(conn: Any, registry: ExecutorRegistry, job: Job) -> Outcome:
    log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type.value)
    try:
        return registry.run(conn, job)
    except StorageError as exc:
        log_event(logger, logging.ERROR, "job_storage_error", job_id=job.id, error=str(exc))
        fail_job(conn, job.id, INTERNAL_ERROR)
        return Outcome(status=JobStatus.FAILED, error=INTERNAL_ERROR)
    except Exception as exc:  # noqa: BLE001
        error = str(exc) or exc.__class__.__name__
        fail_job(conn, job.id, error)
        log_event(logger, logging.ERROR, "job_failed", job_id=job.id, error=error)
        return Outcome(status=JobStatus.FAILED, error=error)


def job_to_dict(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type.value,
        "status": job.status.value,
        "payload": job.payload,
        "result": job.result,
        "total_items": job.total_items,
        "processed_items": job.processed_items,
        "failed_items": job.failed_items,
        "percent_complete": job.percent_complete,
        "last_error": job.last_error,
        "created_by": job.created_by,
        "retry_of": job.retry_of,
        "created_at": job.created_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "heartbeat_at": job.heartbeat_at,
    }


def _parse_status(value: str | None) -> JobStatus | None:
    if not value:
        return None
    try:
        return JobStatus(value)
    except ValueError as exc:
        raise JobValidationError(f"invalid_status: {value}") from exc


def _emit(
    bus: ProgressBus | None, job: Job, status: JobStatus, terminal: bool = False
) -> None:
    (bus or get_bus()).publish(
        ProgressEvent(
            kind=JOB_KIND,
            job_id=job.id,
            status=status.value,
            data={
                "job_type": job.job_type.value,
                "processed_items": job.processed_items,
                "failed_items": job.failed_items,
                "total_items": job.total_items,
            },
            terminal=terminal,
        )
    )
