from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from .article_storage import stamp_article_page_id
from .errors import IntegrityViolation, JobConflictError, JobValidationError
from .utils import json_dumps, json_loads, utc_now_iso

MAX_SLUG_SUFFIX = 50
PUBLISH_TOKEN_KEY = "publish_token"


@dataclass(frozen=True)
class PageRequest:
    title: str
    slug: str
    body_html: str
    template: str
    status: str
    description: str = ""
    meta_title: str = ""
    meta_description: str = ""
    meta_keywords: list[str] = field(default_factory=list)
    parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Page:
    id: str
    full_path: str
    title: str
    slug: str
    status: str
    parent_id: str | None
    meta_keywords: list[str]
    metadata: dict[str, Any]


class PageService(Protocol):
    def create_page(self, request: PageRequest) -> Page:
        ...


class StoragePageService:
    """Page tree kept in the local database.

    Slugs are unique per parent; a clashing slug gets a numeric suffix.
    """

    def __init__(self, conn: Any) -> None:
        self.conn = conn

    def create_page(self, request: PageRequest) -> Page:
        parent_path = ""
        if request.parent_id:
            parent = self.get_page(request.parent_id)
            if parent is None:
                raise JobValidationError("parent_page_not_found")
            parent_path = parent.full_path.rstrip("/")
        page_id = f"page_{uuid.uuid4().hex}"
        now = utc_now_iso()
        for attempt in range(1, MAX_SLUG_SUFFIX + 1):
            slug = request.slug if attempt == 1 else f"{request.slug}-{attempt}"
            full_path = f"{parent_path}/{slug}"
            try:
                self.conn.execute(
                    """
                    INSERT INTO pages
                        (id, parent_id, title, slug, full_path, body_html, description,
                         meta_title, meta_description, meta_keywords_json, template, status,
                         metadata_json, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        page_id,
                        request.parent_id,
                        request.title,
                        slug,
                        full_path,
                        request.body_html,
                        request.description,
                        request.meta_title,
                        request.meta_description,
                        json_dumps(request.meta_keywords),
                        request.template,
                        request.status,
                        json_dumps(request.metadata),
                        now,
                        now,
                    ),
                )
            except IntegrityViolation:
                continue
            self._stamp_source_job(request, page_id)
            self.conn.commit()
            return Page(
                id=page_id,
                full_path=full_path,
                title=request.title,
                slug=slug,
                status=request.status,
                parent_id=request.parent_id,
                meta_keywords=list(request.meta_keywords),
                metadata=dict(request.metadata),
            )
        raise JobConflictError("page_slug_exhausted")

    def _stamp_source_job(self, request: PageRequest, page_id: str) -> None:
        job_id = request.metadata.get("ai_job_id")
        token = request.metadata.get(PUBLISH_TOKEN_KEY)
        if not job_id or not token:
            return
        if not stamp_article_page_id(self.conn, job_id, token, page_id):
            self.conn.rollback()
            raise JobConflictError("publish_reservation_lost")

    def get_page(self, page_id: str) -> Page | None:
        row = self.conn.execute(
            """
            SELECT id, full_path, title, slug, status, parent_id, meta_keywords_json,
                   metadata_json
            FROM pages WHERE id = ?
            """,
            (page_id,),
        ).fetchone()
        if not row:
            return None
        return Page(
            id=row[0],
            full_path=row[1],
            title=row[2],
            slug=row[3],
            status=row[4],
            parent_id=row[5],
            meta_keywords=json_loads(row[6], []),
            metadata=json_loads(row[7], {}),
        )

    def count_pages(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM pages").fetchone()
        return int(row[0] if row else 0)
