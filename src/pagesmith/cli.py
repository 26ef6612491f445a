from __future__ import annotations

import argparse
import logging
from typing import Any

from .auth import Principal, USER
from .config import ConfigError, get_runtime_config, get_state_db_path, load_runtime_config
from .errors import JobConflictError, JobNotFoundError, JobValidationError
from .models import JobStatus, JobType
from .services import article_service, job_service
from .storage import init_db
from .utils import configure_logging, json_dumps, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("pagesmith.cli")


def _open(logger: logging.Logger):
    try:
        conn = init_db(get_state_db_path())
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None, None
    return conn, config


def _read_targets(args: argparse.Namespace) -> list[str]:
    targets = list(args.target_id or [])
    if args.targets_file:
        with open(args.targets_file, "r", encoding="utf-8") as handle:
            targets.extend(line.strip() for line in handle if line.strip())
    return targets


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = get_state_db_path()
    conn = init_db(path)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(get_state_db_path())
    try:
        print(json_dumps(get_runtime_config(conn)))
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    return 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    payload: dict[str, Any] = {
        "schema_version": 1,
        "target_ids": _read_targets(args),
        "continuous": args.continuous,
        "max_depth": args.max_depth,
    }
    if args.batch_size:
        payload["batch_size"] = args.batch_size
    try:
        job = job_service.enqueue_job(conn, config, args.job_type, payload, created_by="cli")
    except (JobValidationError, JobConflictError) as exc:
        log_event(logger, logging.ERROR, "job_enqueue_failed", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job.id, job_type=args.job_type)
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        jobs, total = job_service.list_jobs(
            conn, status=args.status, job_type=args.job_type, limit=args.limit
        )
    except JobValidationError as exc:
        log_event(logger, logging.ERROR, "jobs_list_failed", error=str(exc))
        return 1
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type.value,
            status=job.status.value,
            processed=job.processed_items,
            failed=job.failed_items,
            total=job.total_items,
            created_at=job.created_at,
            error=job.last_error,
        )
    log_event(logger, logging.INFO, "jobs_total", total=total)
    return 0


def _cmd_jobs_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        job = job_service.cancel_job(conn, args.job_id, cancelled_by="cli")
    except (JobNotFoundError, JobConflictError) as exc:
        log_event(logger, logging.ERROR, "job_cancel_failed", job_id=args.job_id, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_cancelled", job_id=job.id)
    return 0


def _cmd_jobs_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        job = job_service.retry_job(conn, config, args.job_id, created_by="cli")
    except (JobNotFoundError, JobConflictError, JobValidationError) as exc:
        log_event(logger, logging.ERROR, "job_retry_failed", job_id=args.job_id, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_retried", job_id=job.id, retry_of=args.job_id)
    return 0


def _cmd_articles_create(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    settings: dict[str, Any] = {"schema_version": 1, "auto_publish": args.auto_publish}
    if args.max_iterations:
        settings["max_iterations"] = args.max_iterations
    if args.word_count:
        settings["target_word_count"] = args.word_count
    if args.parent_page_id:
        settings["parent_page_id"] = args.parent_page_id
    if args.related:
        settings["related_keywords"] = args.related
    try:
        job = article_service.create_article_job(
            conn, config, args.keyword, settings, priority=args.priority, created_by="cli"
        )
    except JobValidationError as exc:
        log_event(logger, logging.ERROR, "article_create_failed", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "article_job_created", job_id=job.id, keyword=job.keyword)
    return 0


def _cmd_articles_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        jobs, total = article_service.list_article_jobs(conn, status=args.status, limit=args.limit)
    except JobValidationError as exc:
        log_event(logger, logging.ERROR, "articles_list_failed", error=str(exc))
        return 1
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "article_job",
            job_id=job.id,
            keyword=job.keyword,
            status=job.status.value,
            progress=job.progress_percent,
            iteration=job.current_iteration,
            tokens=job.total_tokens_used,
            page_id=job.page_id,
        )
    log_event(logger, logging.INFO, "articles_total", total=total)
    return 0


def _cmd_articles_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        stats = article_service.get_article_stats(conn)
    finally:
        conn.close()
    print(json_dumps(stats))
    return 0


def _cmd_articles_execute(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        report = article_service.execute_article_job(
            conn,
            args.job_id,
            Principal(kind=USER, subject="cli"),
            article_service.build_orchestrator(config),
            worker_id="cli",
        )
    except (JobNotFoundError, JobConflictError) as exc:
        log_event(logger, logging.ERROR, "article_execute_failed", job_id=args.job_id, error=str(exc))
        return 1
    finally:
        conn.close()
    print(json_dumps(report.as_dict()))
    return 0 if report.status != JobStatus.FAILED else 1


def _cmd_articles_publish(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        result = article_service.publish_article_job(
            conn,
            config,
            args.job_id,
            parent_page_id=args.parent_page_id,
            status=args.status,
        )
    except (JobNotFoundError, JobConflictError, JobValidationError) as exc:
        log_event(logger, logging.ERROR, "article_publish_failed", job_id=args.job_id, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "article_published", job_id=args.job_id, **result)
    return 0


def _cmd_articles_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        article_service.cancel_article_job(conn, args.job_id, cancelled_by="cli")
    except (JobNotFoundError, JobConflictError) as exc:
        log_event(logger, logging.ERROR, "article_cancel_failed", job_id=args.job_id, error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "article_cancelled", job_id=args.job_id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pagesmith")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    config_parser = subparsers.add_parser("config", help="Runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print runtime config as JSON")
    config_show.set_defaults(func=_cmd_config_show)

    jobs_parser = subparsers.add_parser("jobs", help="Batch job commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue an enrichment job")
    jobs_enqueue.add_argument(
        "job_type", choices=[job_type.value for job_type in JobType], help="Job type to enqueue"
    )
    jobs_enqueue.add_argument("--target-id", action="append", help="Target id (repeatable)")
    jobs_enqueue.add_argument("--targets-file", help="File with one target id per line")
    jobs_enqueue.add_argument("--batch-size", type=int, default=0)
    jobs_enqueue.add_argument("--continuous", action="store_true")
    jobs_enqueue.add_argument("--max-depth", type=int, default=1)
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--status")
    jobs_list.add_argument("--job-type")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_cancel = jobs_subparsers.add_parser("cancel", help="Cancel a pending or running job")
    jobs_cancel.add_argument("job_id")
    jobs_cancel.set_defaults(func=_cmd_jobs_cancel)

    jobs_retry = jobs_subparsers.add_parser("retry", help="Re-enqueue a failed or cancelled job")
    jobs_retry.add_argument("job_id")
    jobs_retry.set_defaults(func=_cmd_jobs_retry)

    articles_parser = subparsers.add_parser("articles", help="AI article job commands")
    articles_subparsers = articles_parser.add_subparsers(dest="articles_command", required=True)

    articles_create = articles_subparsers.add_parser("create", help="Create an article job")
    articles_create.add_argument("keyword")
    articles_create.add_argument("--max-iterations", type=int, default=0)
    articles_create.add_argument("--word-count", type=int, default=0)
    articles_create.add_argument("--priority", type=int, default=0)
    articles_create.add_argument("--parent-page-id")
    articles_create.add_argument("--related", action="append", help="Related keyword (repeatable)")
    articles_create.add_argument("--auto-publish", action="store_true")
    articles_create.set_defaults(func=_cmd_articles_create)

    articles_list = articles_subparsers.add_parser("list", help="List article jobs")
    articles_list.add_argument("--status")
    articles_list.add_argument("--limit", type=int, default=20)
    articles_list.set_defaults(func=_cmd_articles_list)

    articles_stats = articles_subparsers.add_parser("stats", help="Article job counts and spend")
    articles_stats.set_defaults(func=_cmd_articles_stats)

    articles_execute = articles_subparsers.add_parser("execute", help="Run a pending article job now")
    articles_execute.add_argument("job_id")
    articles_execute.set_defaults(func=_cmd_articles_execute)

    articles_publish = articles_subparsers.add_parser("publish", help="Publish a completed article")
    articles_publish.add_argument("job_id")
    articles_publish.add_argument("--parent-page-id")
    articles_publish.add_argument("--status", choices=["draft", "published"])
    articles_publish.set_defaults(func=_cmd_articles_publish)

    articles_cancel = articles_subparsers.add_parser("cancel", help="Cancel an article job")
    articles_cancel.add_argument("job_id")
    articles_cancel.set_defaults(func=_cmd_articles_cancel)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
