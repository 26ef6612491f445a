from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .article_storage import get_article_job as store_get_article_job
from .auth import Principal, resolve_principal
from .cms import PageService
from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .db import DBConn
from .enrichment import EnrichmentSource, build_enrichment_sources
from .errors import (
    INTERNAL_ERROR,
    AlreadyPublishedError,
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    StorageError,
    UnauthorizedError,
)
from .events import ARTICLE_KIND, JOB_KIND, ProgressBus, ProgressEvent, get_bus
from .executors import build_registry
from .llm import LLMProvider
from .models import JobStatus, JobType
from .services import article_service, job_service
from .storage import get_job as store_get_job, init_db
from .utils import configure_logging, json_dumps, log_event, utc_now_iso

STREAM_IDLE_SECONDS = 2.0
STREAM_MAX_SECONDS = 3600.0
SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

logger = logging.getLogger("pagesmith.admin")

app = FastAPI(title="pagesmith Admin API")
app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


class JobRequest(BaseModel):
    job_type: str
    payload: dict[str, Any] | None = None


class ArticleRequest(BaseModel):
    keyword: str
    settings: dict[str, Any] | None = None
    priority: int = Field(default=0)


class PublishRequest(BaseModel):
    parent_page_id: str | None = None
    status: str | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


def require_user(request: Request) -> Principal:
    return resolve_principal(request)


def require_user_or_service(request: Request) -> Principal:
    return resolve_principal(request, allow_service=True)


def get_provider() -> LLMProvider | None:
    """LLM provider for inline execution; None builds one from runtime config."""
    return None


def get_page_service() -> PageService | None:
    return None


def get_enrichment_sources() -> dict[JobType, EnrichmentSource] | None:
    """Sources for inline batch execution; None builds them from runtime config."""
    return None


def get_progress_bus() -> ProgressBus:
    return get_bus()


@app.exception_handler(UnauthorizedError)
def _unauthorized(request: Request, exc: UnauthorizedError) -> JSONResponse:
    return JSONResponse({"detail": "unauthorized"}, status_code=401)


@app.exception_handler(JobValidationError)
def _invalid(request: Request, exc: JobValidationError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(ConfigError)
def _invalid_config(request: Request, exc: ConfigError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=400)


@app.exception_handler(JobNotFoundError)
def _not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.exception_handler(JobConflictError)
def _conflict(request: Request, exc: JobConflictError) -> JSONResponse:
    body: dict[str, Any] = {"detail": str(exc)}
    if isinstance(exc, AlreadyPublishedError) and exc.page_id:
        body["page_id"] = exc.page_id
    return JSONResponse(body, status_code=409)


@app.exception_handler(StorageError)
def _storage_failure(request: Request, exc: StorageError) -> JSONResponse:
    log_event(logger, logging.ERROR, "storage_error", path=request.url.path, error=str(exc))
    return JSONResponse({"detail": INTERNAL_ERROR}, status_code=500)


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "pagesmith Admin API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(require_user)])
def runtime_config_get() -> dict[str, object]:
    with _db() as conn:
        return {"config": get_runtime_config(conn)}


@app.put("/admin/config/runtime")
def runtime_config_set(
    payload: RuntimeConfigRequest, principal: Principal = Depends(require_user)
) -> dict[str, object]:
    with _db() as conn:
        set_runtime_config(conn, payload.config)
    log_event(logger, logging.INFO, "runtime_config_updated", by=principal.subject)
    return {"status": "ok"}


jobs_router = APIRouter(prefix="/jobs")


@jobs_router.post("")
def jobs_enqueue(
    job: JobRequest,
    principal: Principal = Depends(require_user),
    bus: ProgressBus = Depends(get_progress_bus),
) -> dict[str, object]:
    with _db() as conn:
        config = load_runtime_config(conn)
        created = job_service.enqueue_job(
            conn, config, job.job_type, job.payload, created_by=principal.subject, bus=bus
        )
    return {"job_id": created.id, "job": job_service.job_to_dict(created)}


@jobs_router.get("", dependencies=[Depends(require_user)])
def jobs_list(
    status: str | None = None,
    job_type: str | None = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "created_at",
    direction: str = "desc",
) -> dict[str, object]:
    with _db() as conn:
        jobs, total = job_service.list_jobs(
            conn,
            status=status,
            job_type=job_type,
            limit=limit,
            offset=offset,
            order_by=order_by,
            direction=direction,
        )
    return {"jobs": [job_service.job_to_dict(job) for job in jobs], "total": total}


@jobs_router.get("/{job_id}", dependencies=[Depends(require_user)])
def jobs_get(job_id: str) -> dict[str, object]:
    with _db() as conn:
        return job_service.job_to_dict(job_service.get_job(conn, job_id))


@jobs_router.post("/{job_id}/cancel")
def jobs_cancel(
    job_id: str,
    principal: Principal = Depends(require_user),
    bus: ProgressBus = Depends(get_progress_bus),
) -> dict[str, object]:
    with _db() as conn:
        job = job_service.cancel_job(conn, job_id, cancelled_by=principal.subject, bus=bus)
    return job_service.job_to_dict(job)


@jobs_router.post("/{job_id}/retry")
def jobs_retry(
    job_id: str,
    principal: Principal = Depends(require_user),
    bus: ProgressBus = Depends(get_progress_bus),
) -> dict[str, object]:
    with _db() as conn:
        config = load_runtime_config(conn)
        job = job_service.retry_job(conn, config, job_id, created_by=principal.subject, bus=bus)
    return {"job_id": job.id, "job": job_service.job_to_dict(job)}


@jobs_router.post("/{job_id}/execute")
def jobs_execute(
    job_id: str,
    principal: Principal = Depends(require_user_or_service),
    sources: dict[JobType, EnrichmentSource] | None = Depends(get_enrichment_sources),
    bus: ProgressBus = Depends(get_progress_bus),
) -> dict[str, object]:
    with _db() as conn:
        config = load_runtime_config(conn)
        registry = build_registry(
            config.enrichment,
            sources if sources is not None else build_enrichment_sources(config.enrichment),
            bus=bus,
        )
        outcome = job_service.run_job_now(conn, registry, job_id, worker_id=principal.subject)
        job = job_service.get_job(conn, job_id)
    return {
        "success": outcome.status == JobStatus.COMPLETED,
        "status": outcome.status.value,
        "error": outcome.error,
        "result": outcome.result,
        "job": job_service.job_to_dict(job),
    }


@jobs_router.get("/{job_id}/logs", dependencies=[Depends(require_user)])
def jobs_logs(job_id: str, limit: int = 200) -> list[dict[str, object]]:
    with _db() as conn:
        logs = job_service.get_job_logs(conn, job_id, limit=limit)
    return [
        {
            "id": entry.id,
            "level": entry.level,
            "event": entry.event,
            "message": entry.message,
            "data": entry.data,
            "created_at": entry.created_at,
        }
        for entry in logs
    ]


@jobs_router.get("/{job_id}/stream", dependencies=[Depends(require_user)])
def jobs_stream(
    job_id: str, bus: ProgressBus = Depends(get_progress_bus)
) -> StreamingResponse:
    with _db() as conn:
        job_service.get_job(conn, job_id)

    def _read_row() -> dict[str, Any] | None:
        with _db() as conn:
            job = store_get_job(conn, job_id)
        if job is None:
            return None
        return job_service.job_to_dict(job)

    return _event_stream(bus, JOB_KIND, job_id, _read_row)


articles_router = APIRouter(prefix="/ai/articles")


@articles_router.post("")
def articles_create(
    payload: ArticleRequest,
    principal: Principal = Depends(require_user),
    bus: ProgressBus = Depends(get_progress_bus),
) -> dict[str, object]:
    with _db() as conn:
        config = load_runtime_config(conn)
        job = article_service.create_article_job(
            conn,
            config,
            payload.keyword,
            payload.settings,
            priority=payload.priority,
            created_by=principal.subject,
            bus=bus,
        )
    return article_service.article_to_dict(job)


@articles_router.get("", dependencies=[Depends(require_user)])
def articles_list(
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "created_at",
    direction: str = "desc",
) -> dict[str, object]:
    with _db() as conn:
        jobs, total = article_service.list_article_jobs(
            conn,
            status=status,
            limit=limit,
            offset=offset,
            order_by=order_by,
            direction=direction,
        )
    return {"jobs": [article_service.article_to_dict(job) for job in jobs], "total": total}


@articles_router.get("/stats", dependencies=[Depends(require_user)])
def articles_stats() -> dict[str, object]:
    with _db() as conn:
        return article_service.get_article_stats(conn)


@articles_router.get("/{job_id}", dependencies=[Depends(require_user)])
def articles_get(job_id: str) -> dict[str, object]:
    with _db() as conn:
        job = article_service.get_article_job(conn, job_id)
        steps = article_service.get_article_steps(conn, job_id)
    return article_service.article_to_dict(job, steps)


@articles_router.get("/{job_id}/steps", dependencies=[Depends(require_user)])
def articles_steps(job_id: str) -> list[dict[str, object]]:
    with _db() as conn:
        job = article_service.get_article_job(conn, job_id)
        steps = article_service.get_article_steps(conn, job_id)
    return article_service.article_to_dict(job, steps)["steps"]


@articles_router.post("/{job_id}/execute")
def articles_execute(
    job_id: str,
    principal: Principal = Depends(require_user_or_service),
    provider: LLMProvider | None = Depends(get_provider),
    page_service: PageService | None = Depends(get_page_service),
    bus: ProgressBus = Depends(get_progress_bus),
) -> dict[str, object]:
    with _db() as conn:
        config = load_runtime_config(conn)
        orchestrator = article_service.build_orchestrator(
            config, provider=provider, page_service=page_service, bus=bus
        )
        report = article_service.execute_article_job(conn, job_id, principal, orchestrator)
    return report.as_dict()


@articles_router.post("/{job_id}/cancel")
def articles_cancel(
    job_id: str,
    principal: Principal = Depends(require_user),
    bus: ProgressBus = Depends(get_progress_bus),
) -> dict[str, object]:
    with _db() as conn:
        job = article_service.cancel_article_job(
            conn, job_id, cancelled_by=principal.subject, bus=bus
        )
    return article_service.article_to_dict(job)


@articles_router.post("/{job_id}/publish")
def articles_publish(
    job_id: str,
    payload: PublishRequest | None = None,
    principal: Principal = Depends(require_user),
    page_service: PageService | None = Depends(get_page_service),
) -> dict[str, str]:
    payload = payload or PublishRequest()
    with _db() as conn:
        config = load_runtime_config(conn)
        result = article_service.publish_article_job(
            conn,
            config,
            job_id,
            page_service=page_service,
            parent_page_id=payload.parent_page_id,
            status=payload.status,
        )
    log_event(
        logger,
        logging.INFO,
        "article_publish_requested",
        job_id=job_id,
        page_id=result["page_id"],
        by=principal.subject,
    )
    return result


@articles_router.get("/{job_id}/stream", dependencies=[Depends(require_user)])
def articles_stream(
    job_id: str, bus: ProgressBus = Depends(get_progress_bus)
) -> StreamingResponse:
    with _db() as conn:
        article_service.get_article_job(conn, job_id)

    def _read_row() -> dict[str, Any] | None:
        with _db() as conn:
            job = store_get_article_job(conn, job_id)
        if job is None:
            return None
        return article_service.article_to_dict(job)

    return _event_stream(bus, ARTICLE_KIND, job_id, _read_row)


app.include_router(jobs_router)
app.include_router(articles_router)


def _event_stream(
    bus: ProgressBus,
    kind: str,
    job_id: str,
    read_row: Callable[[], dict[str, Any] | None],
) -> StreamingResponse:
    def _frames() -> Iterator[str]:
        has_snapshot = bus.snapshot(kind, job_id) is not None
        subscription = bus.subscribe(kind, job_id)
        deadline = time.monotonic() + STREAM_MAX_SECONDS
        last_row: dict[str, Any] | None = None
        try:
            if not has_snapshot:
                last_row = read_row()
                if last_row is None:
                    return
                terminal = _is_terminal(last_row)
                yield _sse(_row_event(kind, job_id, last_row, terminal))
                if terminal:
                    return
            while time.monotonic() < deadline:
                event = subscription.get(timeout=STREAM_IDLE_SECONDS)
                if event is not None:
                    yield _sse(event.as_dict())
                    if event.terminal:
                        return
                    continue
                if subscription.drained:
                    return
                # another process may own the job; the row is authoritative
                row = read_row()
                if row is None:
                    return
                if row != last_row:
                    last_row = row
                    terminal = _is_terminal(row)
                    yield _sse(_row_event(kind, job_id, row, terminal))
                    if terminal:
                        return
                else:
                    yield ": keepalive\n\n"
        finally:
            bus.unsubscribe(subscription)

    return StreamingResponse(_frames(), media_type="text/event-stream", headers=SSE_HEADERS)


def _is_terminal(row: dict[str, Any]) -> bool:
    return JobStatus(row["status"]).is_terminal


def _row_event(kind: str, job_id: str, row: dict[str, Any], terminal: bool) -> dict[str, Any]:
    return ProgressEvent(
        kind=kind,
        job_id=job_id,
        status=row["status"],
        data=row,
        terminal=terminal,
        emitted_at=utc_now_iso(),
    ).as_dict()


def _sse(data: dict[str, Any]) -> str:
    return f"data: {json_dumps(data)}\n\n"


def _setup_logging() -> None:
    configure_logging("pagesmith.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("pagesmith")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn() -> DBConn:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


@contextmanager
def _db() -> Iterator[DBConn]:
    conn = _get_conn()
    try:
        yield conn
    finally:
        conn.close()
