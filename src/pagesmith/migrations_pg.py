from __future__ import annotations

import logging

from .utils import utc_now_iso

JOB_STATUSES_SQL = "'pending', 'processing', 'completed', 'failed', 'cancelled'"


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("pagesmith.migrations")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    conn.commit()
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    for version, migration in _get_migrations_pg():
        if version in applied:
            continue
        with conn.transaction():
            migration(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)"
                " ON CONFLICT DO NOTHING",
                (version, utc_now_iso()),
            )
        logger.info("migration_applied version=%s", version)


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ({JOB_STATUSES_SQL})),
            payload_json TEXT NOT NULL,
            result_json TEXT NULL,
            total_items INTEGER NOT NULL DEFAULT 0,
            processed_items INTEGER NOT NULL DEFAULT 0,
            failed_items INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NULL,
            created_by TEXT NULL,
            locked_by TEXT NULL,
            retry_of TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            completed_at TEXT NULL,
            heartbeat_at TEXT NULL,
            CHECK (processed_items >= 0 AND failed_items >= 0),
            CHECK (processed_items + failed_items <= total_items)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_type_status ON jobs(job_type, status)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_logs (
            id BIGSERIAL PRIMARY KEY,
            job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
            level TEXT NOT NULL,
            event TEXT NOT NULL,
            message TEXT NULL,
            data_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id, id)")
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS article_jobs (
            id TEXT PRIMARY KEY,
            keyword TEXT NOT NULL,
            status TEXT NOT NULL CHECK (status IN ({JOB_STATUSES_SQL})),
            current_agent TEXT NULL,
            progress_percent INTEGER NOT NULL DEFAULT 0,
            current_iteration INTEGER NOT NULL DEFAULT 0,
            max_iterations INTEGER NOT NULL,
            total_tokens_used BIGINT NOT NULL DEFAULT 0,
            estimated_cost_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
            priority INTEGER NOT NULL DEFAULT 0,
            settings_json TEXT NOT NULL,
            final_output_json TEXT NULL,
            page_id TEXT NULL,
            publish_token TEXT NULL,
            last_error TEXT NULL,
            created_by TEXT NULL,
            locked_by TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT NULL,
            completed_at TEXT NULL,
            heartbeat_at TEXT NULL,
            CHECK (progress_percent BETWEEN 0 AND 100),
            CHECK (current_iteration <= max_iterations)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_article_jobs_claim
        ON article_jobs(status, priority, created_at)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_job_steps (
            id BIGSERIAL PRIMARY KEY,
            job_id TEXT NOT NULL REFERENCES article_jobs(id) ON DELETE CASCADE,
            stage TEXT NOT NULL,
            iteration INTEGER NOT NULL,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            prompt_tokens INTEGER NOT NULL DEFAULT 0,
            completion_tokens INTEGER NOT NULL DEFAULT 0,
            tokens_used INTEGER NOT NULL DEFAULT 0,
            cost_usd DOUBLE PRECISION NOT NULL DEFAULT 0,
            duration_ms INTEGER NULL,
            output_json TEXT NULL,
            error TEXT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_article_job_steps_job ON article_job_steps(job_id, id)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pages (
            id TEXT PRIMARY KEY,
            parent_id TEXT NULL REFERENCES pages(id),
            title TEXT NOT NULL,
            slug TEXT NOT NULL,
            full_path TEXT NOT NULL UNIQUE,
            body_html TEXT NOT NULL,
            description TEXT NULL,
            meta_title TEXT NULL,
            meta_description TEXT NULL,
            meta_keywords_json TEXT NULL,
            template TEXT NOT NULL,
            status TEXT NOT NULL,
            metadata_json TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migrate_one_live_per_type(conn) -> None:
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_jobs_one_live_per_type
        ON jobs(job_type) WHERE status IN ('pending', 'processing')
        """
    )


def _get_migrations_pg():
    return [
        ("pg_bootstrap_001", _bootstrap_schema),
        ("pg_one_live_per_type_002", _migrate_one_live_per_type),
    ]
