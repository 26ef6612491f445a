from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Any

from .config import EnrichmentConfig
from .enrichment import EnrichmentSource
from .errors import JobValidationError
from .events import JOB_KIND, ProgressBus, ProgressEvent, get_bus
from .models import ItemResult, Job, JobStatus, JobType, Outcome
from .payloads import decode_payload
from .storage import (
    append_job_log,
    complete_job,
    fail_job,
    get_job,
    is_job_cancelled,
    update_job_progress,
)
from .utils import log_event

MAX_RECORDED_ERRORS = 50

logger = logging.getLogger("pagesmith.executors")


class Executor(ABC):
    """Runs one claimed job to a terminal state and reports the outcome."""

    name: str = "executor"

    @abstractmethod
    def run(self, conn: Any, job: Job) -> Outcome:
        ...


class BatchJobExecutor(Executor):
    """Pushes every target id of a job through an enrichment source.

    Items fail independently; only run-level faults (undecodable payload, no
    source configured, lost ownership) fail the job itself.
    """

    name = "batch"

    def __init__(
        self,
        config: EnrichmentConfig,
        sources: dict[JobType, EnrichmentSource],
        bus: ProgressBus | None = None,
    ) -> None:
        self.config = config
        self.sources = sources
        self.bus = bus or get_bus()

    def run(self, conn: Any, job: Job) -> Outcome:
        try:
            payload = decode_payload(job.job_type, job.payload)
        except JobValidationError as exc:
            return self._fail(conn, job, str(exc))
        source = self.sources.get(job.job_type)
        if source is None:
            return self._fail(conn, job, f"no_enrichment_source: {job.job_type.value}")

        batch_size = payload.batch_size or self.config.default_batch_size
        options = dict(payload.options)
        options.setdefault("max_depth", payload.max_depth)
        work: deque[tuple[str, int]] = deque((target, 0) for target in payload.target_ids)
        seen = set(payload.target_ids)
        total = len(work)
        processed = 0
        failed = 0
        batches = 0
        discovered = 0
        errors: list[dict[str, str]] = []

        append_job_log(
            conn,
            job.id,
            "info",
            "batch_started",
            data={"total_items": total, "batch_size": batch_size},
        )
        log_event(
            logger,
            logging.INFO,
            "batch_started",
            job_id=job.id,
            job_type=job.job_type.value,
            total=total,
            batch_size=batch_size,
        )

        while work:
            batch = [work.popleft() for _ in range(min(batch_size, len(work)))]
            batches += 1
            for target_id, depth in batch:
                if is_job_cancelled(conn, job.id):
                    return self._cancelled(conn, job, processed, failed, total)
                item = self._enrich_one(source, target_id, options)
                if item.ok:
                    processed += 1
                else:
                    failed += 1
                    if len(errors) < MAX_RECORDED_ERRORS:
                        errors.append({"target_id": target_id, "error": item.message or "failed"})
                    append_job_log(
                        conn,
                        job.id,
                        "warning",
                        "item_failed",
                        message=item.message,
                        data={"target_id": target_id, "depth": depth},
                    )
                if payload.continuous and item.ok and depth < payload.max_depth:
                    for follow_id in item.follow_ids:
                        if follow_id in seen:
                            continue
                        seen.add(follow_id)
                        work.append((follow_id, depth + 1))
                        total += 1
                        discovered += 1
                if not update_job_progress(conn, job.id, processed, failed, total):
                    return self._lost(conn, job, processed, failed, total)
                self._emit(job, JobStatus.PROCESSING, processed, failed, total)

        result = {
            "processed_items": processed,
            "failed_items": failed,
            "total_items": total,
            "batches": batches,
            "discovered_items": discovered,
            "errors": errors,
        }
        if not complete_job(conn, job.id, result=result):
            return self._lost(conn, job, processed, failed, total)
        append_job_log(conn, job.id, "info", "batch_completed", data=result)
        log_event(
            logger,
            logging.INFO,
            "batch_completed",
            job_id=job.id,
            processed=processed,
            failed=failed,
            total=total,
        )
        self._emit(job, JobStatus.COMPLETED, processed, failed, total, terminal=True)
        return Outcome(status=JobStatus.COMPLETED, result=result)

    def _enrich_one(
        self, source: EnrichmentSource, target_id: str, options: dict[str, Any]
    ) -> ItemResult:
        try:
            return source.enrich(target_id, options)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "item_error",
                target_id=target_id,
                error=str(exc) or exc.__class__.__name__,
            )
            return ItemResult(ok=False, message=str(exc) or exc.__class__.__name__)

    def _fail(self, conn: Any, job: Job, error: str) -> Outcome:
        fail_job(conn, job.id, error)
        append_job_log(conn, job.id, "error", "job_failed", message=error)
        log_event(logger, logging.ERROR, "job_failed", job_id=job.id, error=error)
        self._emit(job, JobStatus.FAILED, 0, 0, job.total_items, terminal=True, error=error)
        return Outcome(status=JobStatus.FAILED, error=error)

    def _cancelled(self, conn: Any, job: Job, processed: int, failed: int, total: int) -> Outcome:
        append_job_log(
            conn,
            job.id,
            "info",
            "job_cancelled",
            data={"processed_items": processed, "failed_items": failed},
        )
        log_event(logger, logging.INFO, "job_cancelled", job_id=job.id, processed=processed)
        self._emit(job, JobStatus.CANCELLED, processed, failed, total, terminal=True)
        return Outcome(
            status=JobStatus.CANCELLED,
            result={"processed_items": processed, "failed_items": failed, "total_items": total},
        )

    def _lost(self, conn: Any, job: Job, processed: int, failed: int, total: int) -> Outcome:
        current = get_job(conn, job.id)
        if current is not None and current.status == JobStatus.CANCELLED:
            return self._cancelled(conn, job, processed, failed, total)
        status = current.status if current is not None else JobStatus.FAILED
        error = current.last_error if current is not None else None
        log_event(logger, logging.ERROR, "job_ownership_lost", job_id=job.id, status=status.value)
        self._emit(job, status, processed, failed, total, terminal=True, error=error)
        return Outcome(status=status, error=error or "job_ownership_lost")

    def _emit(
        self,
        job: Job,
        status: JobStatus,
        processed: int,
        failed: int,
        total: int,
        terminal: bool = False,
        error: str | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "job_type": job.job_type.value,
            "processed_items": processed,
            "failed_items": failed,
            "total_items": total,
        }
        if error:
            data["error"] = error
        self.bus.publish(
            ProgressEvent(
                kind=JOB_KIND,
                job_id=job.id,
                status=status.value,
                data=data,
                terminal=terminal,
            )
        )


class ExecutorRegistry:
    def __init__(self) -> None:
        self._executors: dict[JobType, Executor] = {}

    def register(self, job_type: JobType, executor: Executor) -> None:
        self._executors[job_type] = executor

    def get(self, job_type: JobType) -> Executor | None:
        return self._executors.get(job_type)

    def run(self, conn: Any, job: Job) -> Outcome:
        executor = self.get(job.job_type)
        if executor is None:
            error = f"no_executor: {job.job_type.value}"
            fail_job(conn, job.id, error)
            return Outcome(status=JobStatus.FAILED, error=error)
        return executor.run(conn, job)


def build_registry(
    config: EnrichmentConfig,
    sources: dict[JobType, EnrichmentSource],
    bus: ProgressBus | None = None,
) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    batch = BatchJobExecutor(config, sources, bus=bus)
    for job_type in JobType:
        registry.register(job_type, batch)
    return registry
