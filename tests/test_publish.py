import dataclasses

import pytest
from fakes import FakeProvider

from pagesmith.article_storage import claim_article_job, get_article_job
from pagesmith.cms import PageRequest, StoragePageService
from pagesmith.config import load_runtime_config
from pagesmith.errors import (
    AlreadyPublishedError,
    JobConflictError,
    JobNotFoundError,
    JobValidationError,
    StorageError,
)
from pagesmith.events import ProgressBus
from pagesmith.publish import build_page_request, markdown_to_html, publish_article
from pagesmith.services.article_service import (
    build_orchestrator,
    create_article_job,
    publish_article_job,
)
from pagesmith.storage import init_db


def _completed_job(tmp_path, keyword="stamped concrete cost", settings=None, provider=None):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    job = create_article_job(
        conn, config, keyword, settings or {"max_iterations": 1}, bus=ProgressBus()
    )
    claimed = claim_article_job(conn, job.id, "worker-1")
    build_orchestrator(config, provider=provider or FakeProvider(), bus=ProgressBus()).run(
        conn, claimed
    )
    return conn, config, get_article_job(conn, job.id)


class _FailingPages:
    def create_page(self, request):
        raise RuntimeError("cms unavailable")


def test_publish_is_exactly_once(tmp_path):
    conn, config, job = _completed_job(tmp_path)
    pages = StoragePageService(conn)

    result = publish_article_job(conn, config, job.id)

    assert result["page_path"] == "/stamped-concrete-cost"
    assert get_article_job(conn, job.id).page_id == result["page_id"]
    with pytest.raises(AlreadyPublishedError) as excinfo:
        publish_article_job(conn, config, job.id)
    assert excinfo.value.page_id == result["page_id"]
    assert pages.count_pages() == 1


def test_publish_requires_completed_job(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    job = create_article_job(conn, config, "roof repair", bus=ProgressBus())

    with pytest.raises(JobConflictError, match="article_not_completed"):
        publish_article_job(conn, config, job.id)
    with pytest.raises(JobNotFoundError):
        publish_article_job(conn, config, "article_missing")


def test_failed_page_creation_releases_reservation(tmp_path):
    conn, config, job = _completed_job(tmp_path)

    with pytest.raises(RuntimeError):
        publish_article(conn, job.id, _FailingPages(), config.publishing)

    assert get_article_job(conn, job.id).page_id is None
    result = publish_article_job(conn, config, job.id)
    assert result["page_id"]


def test_page_insert_and_job_stamp_commit_together(tmp_path, monkeypatch):
    conn, config, job = _completed_job(tmp_path)
    pages = StoragePageService(conn)

    def _crash(*args, **kwargs):
        raise StorageError("connection reset")

    monkeypatch.setattr("pagesmith.publish.set_article_page_id", _crash)
    with pytest.raises(StorageError):
        publish_article_job(conn, config, job.id)

    stored = get_article_job(conn, job.id)
    assert pages.count_pages() == 1
    assert stored.page_id is not None
    assert pages.get_page(stored.page_id).metadata["ai_job_id"] == job.id
    with pytest.raises(AlreadyPublishedError) as excinfo:
        publish_article_job(conn, config, job.id)
    assert excinfo.value.page_id == stored.page_id
    assert pages.count_pages() == 1


def test_stale_publish_token_rolls_back_page(tmp_path):
    conn, config, job = _completed_job(tmp_path)
    pages = StoragePageService(conn)
    request = build_page_request(job, config.publishing)
    request = dataclasses.replace(
        request, metadata={**request.metadata, "publish_token": "not-the-reservation"}
    )

    with pytest.raises(JobConflictError, match="publish_reservation_lost"):
        pages.create_page(request)

    assert pages.count_pages() == 0
    assert get_article_job(conn, job.id).page_id is None


def test_publish_under_parent_page(tmp_path):
    conn, config, job = _completed_job(tmp_path)
    pages = StoragePageService(conn)
    parent = pages.create_page(
        PageRequest(
            title="Concrete",
            slug="concrete",
            body_html="<p>Concrete guides</p>",
            template="section",
            status="published",
        )
    )

    result = publish_article_job(conn, config, job.id, parent_page_id=parent.id, status="published")

    page = pages.get_page(result["page_id"])
    assert page.full_path == "/concrete/stamped-concrete-cost"
    assert page.parent_id == parent.id
    assert page.status == "published"


def test_missing_parent_rejects_and_releases(tmp_path):
    conn, config, job = _completed_job(tmp_path)

    with pytest.raises(JobValidationError, match="parent_page_not_found"):
        publish_article_job(conn, config, job.id, parent_page_id="page_missing")

    assert publish_article_job(conn, config, job.id)["page_id"]


def test_invalid_status_is_rejected_before_reserving(tmp_path):
    conn, config, job = _completed_job(tmp_path)

    with pytest.raises(JobValidationError, match="invalid_page_status"):
        publish_article_job(conn, config, job.id, status="archived")

    assert publish_article_job(conn, config, job.id)["page_id"]


def test_slug_collision_gets_numeric_suffix(tmp_path):
    conn, config, job = _completed_job(tmp_path)
    StoragePageService(conn).create_page(
        PageRequest(
            title="Existing",
            slug="stamped-concrete-cost",
            body_html="<p>old</p>",
            template="article",
            status="draft",
        )
    )

    result = publish_article_job(conn, config, job.id)

    assert result["page_path"] == "/stamped-concrete-cost-2"


def test_page_request_maps_article_output(tmp_path):
    conn, config, job = _completed_job(
        tmp_path, settings={"max_iterations": 1, "publish_status": "published"}
    )
    related = [f"kw-{i}" for i in range(10)]
    final = dict(job.final_output, related_keywords=related)
    job = dataclasses.replace(job, final_output=final)

    request = build_page_request(job, config.publishing)

    assert request.status == "published"
    assert request.template == "article"
    assert request.meta_keywords[0] == "stamped concrete cost"
    assert len(request.meta_keywords) == config.publishing.max_related_keywords + 1
    assert "<h1>Stamped Concrete Cost</h1>" in request.body_html
    assert request.metadata["ai_generated"] is True
    assert request.metadata["ai_job_id"] == job.id
    assert request.meta_title == "Stamped Concrete Cost (2026 Guide)"


def test_markdown_to_html_renders_lists():
    html = markdown_to_html("## Steps\n\n- dig\n- pour\n")

    assert "<h2>Steps</h2>" in html
    assert "<li>dig</li>" in html
