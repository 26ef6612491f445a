from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

import markdown

from .article_storage import (
    get_article_job,
    release_publish,
    reserve_publish,
    set_article_page_id,
)
from .cms import PUBLISH_TOKEN_KEY, PageRequest, PageService
from .config import PublishingConfig
from .errors import (
    AlreadyPublishedError,
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
)
from .models import ArticleJob, JobStatus
from .payloads import decode_settings
from .utils import log_event, slugify

PAGE_STATUSES = ("draft", "published")

logger = logging.getLogger("pagesmith.publish")


def markdown_to_html(text: str) -> str:
    return markdown.markdown(text or "", extensions=["extra", "sane_lists"])


def build_page_request(
    job: ArticleJob,
    config: PublishingConfig,
    parent_page_id: str | None = None,
    status: str | None = None,
) -> PageRequest:
    final = job.final_output or {}
    settings = decode_settings(job.settings)
    page_status = status or settings.publish_status or config.default_status
    if page_status not in PAGE_STATUSES:
        raise JobValidationError(f"invalid_page_status: {page_status}")
    title = str(final.get("title") or job.keyword)
    focus = str(final.get("focus_keyword") or job.keyword)
    keywords = [focus]
    for keyword in final.get("related_keywords") or []:
        if len(keywords) > config.max_related_keywords:
            break
        if keyword and keyword not in keywords:
            keywords.append(str(keyword))
    metadata: dict[str, Any] = {
        "ai_generated": True,
        "ai_job_id": job.id,
        "focus_keyword": focus,
        "word_count": final.get("word_count"),
        "review_score": final.get("review_score"),
    }
    if final.get("schema_markup"):
        metadata["schema_markup"] = final["schema_markup"]
    return PageRequest(
        title=title,
        slug=slugify(str(final.get("slug") or title)),
        body_html=markdown_to_html(str(final.get("content") or "")),
        template=str(final.get("template") or settings.template or config.default_template),
        status=page_status,
        description=str(final.get("excerpt") or ""),
        meta_title=str(final.get("meta_title") or title),
        meta_description=str(final.get("meta_description") or ""),
        meta_keywords=keywords,
        parent_id=parent_page_id or settings.parent_page_id,
        metadata=metadata,
    )


def publish_article(
    conn: Any,
    job_id: str,
    page_service: PageService,
    config: PublishingConfig,
    parent_page_id: str | None = None,
    status: str | None = None,
) -> dict[str, str]:
    """Turn a completed article job into exactly one CMS page."""
    job = get_article_job(conn, job_id)
    if job is None:
        raise JobNotFoundError(job_id, "article_job")
    if job.page_id:
        raise AlreadyPublishedError(job_id, job.page_id)
    if job.status != JobStatus.COMPLETED or not job.final_output:
        raise JobConflictError(f"article_not_completed: {job.status.value}")
    request = build_page_request(job, config, parent_page_id=parent_page_id, status=status)

    token = reserve_publish(conn, job_id)
    if token is None:
        current = get_article_job(conn, job_id)
        raise AlreadyPublishedError(job_id, current.page_id if current else None)
    request = replace(request, metadata={**request.metadata, PUBLISH_TOKEN_KEY: token})
    try:
        page = page_service.create_page(request)
    except Exception:
        release_publish(conn, job_id, token)
        log_event(logger, logging.ERROR, "publish_failed", job_id=job_id)
        raise
    if not set_article_page_id(conn, job_id, token, page.id):
        # page services sharing this database stamp the job with the page insert
        current = get_article_job(conn, job_id)
        if current is None or current.page_id != page.id:
            raise JobConflictError("publish_reservation_lost")
    log_event(
        logger,
        logging.INFO,
        "article_published",
        job_id=job_id,
        page_id=page.id,
        page_path=page.full_path,
        status=request.status,
    )
    return {"page_id": page.id, "page_path": page.full_path}
