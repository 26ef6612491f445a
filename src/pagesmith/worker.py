from __future__ import annotations

import argparse
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Any

from .article_storage import claim_next_article_job, fail_stale_article_jobs
from .config import Config, ConfigError, load_runtime_config
from .enrichment import EnrichmentSource, build_enrichment_sources
from .errors import JobValidationError, StorageError
from .executors import build_registry
from .llm import LLMProvider
from .models import ArticleJob, Job, JobStatus, JobType
from .payloads import parse_job_type
from .services.article_service import build_orchestrator, run_claimed_article_job
from .services.job_service import run_claimed_job
from .storage import claim_next_job, fail_stale_jobs, init_db
from .utils import configure_logging, log_event

ARTICLE_QUEUE = "article"


def _setup_logging() -> logging.Logger:
    return configure_logging("pagesmith.worker")


def run_once(
    worker_id: str,
    job_types: list[JobType] | None = None,
    include_articles: bool = True,
    provider: LLMProvider | None = None,
    sources: dict[JobType, EnrichmentSource] | None = None,
) -> int:
    """Claim and run at most one batch job and one article job."""
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        _sweep_stale(conn, config, logger)
        status = 0
        job = _claim_batch_job(conn, worker_id, job_types)
        if job:
            status |= _process_job(conn, config, job, sources, logger)
        if include_articles:
            article = claim_next_article_job(conn, worker_id)
            if article:
                status |= _process_article(conn, config, article, provider, logger)
        return status
    finally:
        conn.close()


def _claim_batch_job(conn: Any, worker_id: str, job_types: list[JobType] | None) -> Job | None:
    # an empty list means batch jobs are excluded entirely
    if job_types is not None and not job_types:
        return None
    return claim_next_job(conn, worker_id, job_types=job_types)


def _sweep_stale(conn: Any, config: Config, logger: logging.Logger) -> None:
    timeout = config.jobs.stale_after_seconds
    failed = fail_stale_jobs(conn, timeout) + fail_stale_article_jobs(conn, timeout)
    if failed:
        log_event(logger, logging.WARNING, "stale_jobs_failed", count=failed, timeout=timeout)


def _process_job(
    conn: Any,
    config: Config,
    job: Job,
    sources: dict[JobType, EnrichmentSource] | None,
    logger: logging.Logger,
) -> int:
    registry = build_registry(
        config.enrichment,
        sources if sources is not None else build_enrichment_sources(config.enrichment),
    )
    outcome = run_claimed_job(conn, registry, job)
    log_event(
        logger,
        logging.INFO,
        "job_finished",
        job_id=job.id,
        job_type=job.job_type.value,
        status=outcome.status.value,
    )
    return 1 if outcome.status == JobStatus.FAILED else 0


def _process_article(
    conn: Any,
    config: Config,
    job: ArticleJob,
    provider: LLMProvider | None,
    logger: logging.Logger,
) -> int:
    log_event(logger, logging.INFO, "article_claimed", job_id=job.id, keyword=job.keyword)
    report = run_claimed_article_job(conn, build_orchestrator(config, provider=provider), job)
    log_event(
        logger,
        logging.INFO,
        "article_finished",
        job_id=job.id,
        status=report.status.value,
        tokens=report.total_tokens_used,
    )
    return 0 if report.success or report.cancelled else 1


def _process_claimed_thread(kind: str, job: Job | ArticleJob) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        if kind == ARTICLE_QUEUE:
            return _process_article(conn, config, job, None, logger)
        return _process_job(conn, config, job, None, logger)
    finally:
        conn.close()


def _claim(
    worker_id: str,
    job_types: list[JobType] | None,
    include_articles: bool,
    logger: logging.Logger,
) -> tuple[str, Job | ArticleJob] | None:
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None
    try:
        _sweep_stale(conn, config, logger)
        job = _claim_batch_job(conn, worker_id, job_types)
        if job:
            return "job", job
        if include_articles:
            article = claim_next_article_job(conn, worker_id)
            if article:
                return ARTICLE_QUEUE, article
        return None
    except StorageError as exc:
        log_event(logger, logging.ERROR, "claim_failed", error=str(exc))
        return None
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    job_types: list[JobType] | None = None,
    include_articles: bool = True,
    concurrency: int = 1,
) -> int:
    if concurrency <= 1:
        while True:
            run_once(worker_id, job_types, include_articles)
            time.sleep(sleep_seconds)
        return 0

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                claimed = _claim(worker_id, job_types, include_articles, logger)
                if not claimed:
                    break
                futures.add(executor.submit(_process_claimed_thread, *claimed))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def _parse_only_types(value: str | None) -> tuple[list[JobType] | None, bool]:
    """Split --only-job-types into batch job types and whether articles are included."""
    if not value:
        return None, True
    items = [item.strip() for item in value.split(",") if item.strip()]
    if not items:
        return None, True
    include_articles = ARTICLE_QUEUE in items
    job_types = [parse_job_type(item) for item in items if item != ARTICLE_QUEUE]
    return job_types, include_articles


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pagesmith-worker")
    parser.add_argument("--once", action="store_true", help="Run a single poll and exit")
    parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument(
        "--only-job-types",
        default=os.environ.get("PS_WORKER_ONLY_TYPES", ""),
        help="Comma separated job types; use 'article' for article jobs",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("PS_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    try:
        job_types, include_articles = _parse_only_types(args.only_job_types)
    except JobValidationError as exc:
        parser.error(str(exc))
    if args.once:
        return run_once(args.worker_id, job_types, include_articles)
    return run_loop(args.worker_id, args.sleep, job_types, include_articles, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
