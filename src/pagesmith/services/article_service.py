from __future__ import annotations

import logging
from typing import Any

from ..article_storage import (
    article_job_stats,
    cancel_article_job as store_cancel_article_job,
    claim_article_job,
    create_article_job as store_create_article_job,
    fail_article_job,
    get_article_job as store_get_article_job,
    list_article_jobs as store_list_article_jobs,
    list_steps,
)
from ..auth import Principal
from ..cms import PageService, StoragePageService
from ..config import Config, get_llm_api_key
from ..errors import (
    INTERNAL_ERROR,
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    StorageError,
)
from ..events import ARTICLE_KIND, ProgressBus, ProgressEvent, get_bus
from ..llm import HttpLLMProvider, LLMProvider
from ..models import ArticleJob, ArticleJobStep, JobStatus
from ..orchestrator import ArticleOrchestrator, ExecutionReport
from ..payloads import decode_settings
from ..publish import publish_article
from ..utils import log_event

MAX_KEYWORD_LENGTH = 200

logger = logging.getLogger("pagesmith.services.articles")


def create_article_job(
    conn: Any,
    config: Config,
    keyword: str,
    settings: dict[str, Any] | None = None,
    priority: int = 0,
    created_by: str | None = None,
    bus: ProgressBus | None = None,
) -> ArticleJob:
    keyword = (keyword or "").strip()
    if not keyword or len(keyword) > MAX_KEYWORD_LENGTH:
        raise JobValidationError(f"keyword must be 1-{MAX_KEYWORD_LENGTH} characters")
    if priority < 0 or priority > 100:
        raise JobValidationError("priority must be between 0 and 100")
    model = decode_settings(settings)
    defaults: dict[str, Any] = {}
    if model.max_iterations is None:
        defaults["max_iterations"] = config.pipeline.default_max_iterations
    if model.min_passing_score is None:
        defaults["min_passing_score"] = config.pipeline.min_passing_score
    if model.template is None:
        defaults["template"] = config.publishing.default_template
    if defaults:
        model = model.model_copy(update=defaults)
    job = store_create_article_job(
        conn,
        keyword,
        model.model_dump(mode="json"),
        max_iterations=int(model.max_iterations or config.pipeline.default_max_iterations),
        priority=priority,
        created_by=created_by,
    )
    log_event(
        logger,
        logging.INFO,
        "article_job_created",
        job_id=job.id,
        keyword=keyword,
        priority=priority,
        max_iterations=job.max_iterations,
    )
    _emit(bus, job, JobStatus.PENDING)
    return job


def get_article_job(conn: Any, job_id: str) -> ArticleJob:
    job = store_get_article_job(conn, job_id)
    if job is None:
        raise JobNotFoundError(job_id, "article_job")
    return job


def list_article_jobs(
    conn: Any,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "created_at",
    direction: str = "desc",
) -> tuple[list[ArticleJob], int]:
    parsed = None
    if status:
        try:
            parsed = JobStatus(status)
        except ValueError as exc:
            raise JobValidationError(f"invalid_status: {status}") from exc
    return store_list_article_jobs(
        conn, status=parsed, limit=limit, offset=offset, order_by=order_by, direction=direction
    )


def get_article_stats(conn: Any) -> dict[str, Any]:
    """Job counts per status plus the tokens and cost spent across all jobs."""
    return article_job_stats(conn)


def get_article_steps(conn: Any, job_id: str) -> list[ArticleJobStep]:
    get_article_job(conn, job_id)
    return list_steps(conn, job_id)


def cancel_article_job(
    conn: Any, job_id: str, cancelled_by: str | None = None, bus: ProgressBus | None = None
) -> ArticleJob:
    job = get_article_job(conn, job_id)
    if not store_cancel_article_job(conn, job_id):
        current = get_article_job(conn, job_id)
        raise JobConflictError(f"job_not_cancellable: {current.status.value}")
    log_event(logger, logging.INFO, "article_cancel_requested", job_id=job_id, by=cancelled_by)
    cancelled = get_article_job(conn, job_id)
    if job.status == JobStatus.PENDING:
        _emit(bus, cancelled, JobStatus.CANCELLED, terminal=True)
    return cancelled


def execute_article_job(
    conn: Any,
    job_id: str,
    principal: Principal,
    orchestrator: ArticleOrchestrator,
    worker_id: str = "api",
) -> ExecutionReport:
    """Run a pending article job inline; the same contract for scheduler and admin."""
    job = get_article_job(conn, job_id)
    if job.status != JobStatus.PENDING:
        raise JobConflictError(f"job_not_pending: {job.status.value}")
    claimed = claim_article_job(conn, job_id, worker_id)
    if claimed is None:
        current = get_article_job(conn, job_id)
        raise JobConflictError(f"job_not_pending: {current.status.value}")
    log_event(
        logger,
        logging.INFO,
        "article_execute",
        job_id=job_id,
        principal=principal.kind,
        subject=principal.subject,
    )
    return run_claimed_article_job(conn, orchestrator, claimed)


def run_claimed_article_job(
    conn: Any, orchestrator: ArticleOrchestrator, job: ArticleJob
) -> ExecutionReport:
    try:
        return orchestrator.run(conn, job)
    except StorageError as exc:
        log_event(logger, logging.ERROR, "article_storage_error", job_id=job.id, error=str(exc))
        error = INTERNAL_ERROR
    except Exception as exc:  # noqa: BLE001
        error = str(exc) or exc.__class__.__name__
        log_event(logger, logging.ERROR, "article_run_crashed", job_id=job.id, error=error)
    fail_article_job(conn, job.id, error)
    current = store_get_article_job(conn, job.id)
    return ExecutionReport(
        job_id=job.id,
        status=current.status if current else JobStatus.FAILED,
        total_tokens_used=current.total_tokens_used if current else 0,
        estimated_cost_usd=current.estimated_cost_usd if current else 0.0,
        iterations=current.current_iteration if current else 0,
        error=error,
    )


def publish_article_job(
    conn: Any,
    config: Config,
    job_id: str,
    page_service: PageService | None = None,
    parent_page_id: str | None = None,
    status: str | None = None,
) -> dict[str, str]:
    return publish_article(
        conn,
        job_id,
        page_service or StoragePageService(conn),
        config.publishing,
        parent_page_id=parent_page_id,
        status=status,
    )


def build_orchestrator(
    config: Config,
    provider: LLMProvider | None = None,
    page_service: PageService | None = None,
    bus: ProgressBus | None = None,
) -> ArticleOrchestrator:
    def _publisher(conn: Any, job_id: str) -> dict[str, str]:
        return publish_article(
            conn, job_id, page_service or StoragePageService(conn), config.publishing
        )

    return ArticleOrchestrator(
        provider or HttpLLMProvider(config.llm, get_llm_api_key()),
        config.pipeline,
        config.llm,
        bus=bus,
        publisher=_publisher,
    )


def article_to_dict(
    job: ArticleJob, steps: list[ArticleJobStep] | None = None
) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": job.id,
        "keyword": job.keyword,
        "status": job.status.value,
        "current_agent": job.current_agent.value if job.current_agent else None,
        "progress_percent": job.progress_percent,
        "current_iteration": job.current_iteration,
        "max_iterations": job.max_iterations,
        "total_tokens_used": job.total_tokens_used,
        "estimated_cost_usd": round(job.estimated_cost_usd, 6),
        "priority": job.priority,
        "settings": job.settings,
        "final_output": job.final_output,
        "page_id": job.page_id,
        "last_error": job.last_error,
        "created_by": job.created_by,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
    }
    if steps is not None:
        data["steps"] = [
            {
                "id": step.id,
                "stage": step.stage.value,
                "iteration": step.iteration,
                "status": step.status,
                "attempts": step.attempts,
                "prompt_tokens": step.prompt_tokens,
                "completion_tokens": step.completion_tokens,
                "tokens_used": step.tokens_used,
                "cost_usd": step.cost_usd,
                "duration_ms": step.duration_ms,
                "error": step.error,
                "started_at": step.started_at,
                "completed_at": step.completed_at,
            }
            for step in steps
        ]
    return data


def _emit(
    bus: ProgressBus | None, job: ArticleJob, status: JobStatus, terminal: bool = False
) -> None:
    (bus or get_bus()).publish(
        ProgressEvent(
            kind=ARTICLE_KIND,
            job_id=job.id,
            status=status.value,
            data={
                "keyword": job.keyword,
                "current_agent": None,
                "progress_percent": job.progress_percent,
                "current_iteration": job.current_iteration,
                "max_iterations": job.max_iterations,
                "total_tokens_used": job.total_tokens_used,
                "estimated_cost_usd": round(job.estimated_cost_usd, 6),
            },
            terminal=terminal,
        )
    )
