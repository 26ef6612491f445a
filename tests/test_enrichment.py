import json
import urllib.request

import pytest

from pagesmith.config import EnrichmentConfig
from pagesmith.enrichment import WebhookEnrichmentSource, build_enrichment_sources
from pagesmith.http_client import HttpError
from pagesmith.models import JobType


class _Response:
    def __init__(self, body):
        self._body = body

    def read(self):
        return self._body.encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


def _serve(monkeypatch, body):
    captured = {}

    def _urlopen(request, timeout=None):
        captured["url"] = request.full_url
        captured["headers"] = {key.lower(): value for key, value in request.header_items()}
        captured["body"] = json.loads(request.data.decode("utf-8"))
        return _Response(body)

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    return captured


def test_webhook_source_posts_target(monkeypatch):
    captured = _serve(
        monkeypatch,
        json.dumps({"ok": True, "follow_ids": ["r-2", ""], "data": {"rating": 4.8}}),
    )
    source = WebhookEnrichmentSource(
        JobType.REVIEW_ENRICHMENT, "https://enrich.example.test/reviews", 5, token="tok"
    )

    result = source.enrich("r-1", {"max_depth": 1})

    assert result.ok is True
    assert result.follow_ids == ["r-2"]
    assert result.data == {"rating": 4.8}
    assert captured["url"] == "https://enrich.example.test/reviews"
    assert captured["headers"]["authorization"] == "Bearer tok"
    assert captured["body"] == {
        "job_type": "review_enrichment",
        "target_id": "r-1",
        "options": {"max_depth": 1},
    }


def test_webhook_source_reports_item_failure(monkeypatch):
    _serve(monkeypatch, json.dumps({"ok": False, "message": "listing removed"}))
    source = WebhookEnrichmentSource(JobType.CONTRACTOR_ENRICHMENT, "https://e.test", 5)

    result = source.enrich("c-1", {})

    assert result.ok is False
    assert result.message == "listing removed"


def test_webhook_source_non_json_is_failure(monkeypatch):
    _serve(monkeypatch, "upstream busy")
    source = WebhookEnrichmentSource(JobType.IMAGE_ENRICHMENT, "https://e.test", 5)

    result = source.enrich("i-1", {})

    assert result.ok is False
    assert result.message == "enrichment_response_not_json"


def test_webhook_source_propagates_http_errors(monkeypatch):
    def _urlopen(request, timeout=None):
        raise HttpError(502, "bad gateway")

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    source = WebhookEnrichmentSource(JobType.IMAGE_ENRICHMENT, "https://e.test", 5)

    with pytest.raises(HttpError):
        source.enrich("i-1", {})


def test_sources_built_only_for_configured_endpoints(monkeypatch):
    monkeypatch.setenv("PS_ENRICHMENT_TOKEN", "secret")
    config = EnrichmentConfig(
        default_batch_size=10,
        timeout_seconds=30,
        endpoints={
            "contractor_enrichment": "https://e.test/contractors",
            "review_enrichment": "",
        },
    )

    sources = build_enrichment_sources(config)

    assert list(sources) == [JobType.CONTRACTOR_ENRICHMENT]
    assert sources[JobType.CONTRACTOR_ENRICHMENT].token == "secret"
    assert sources[JobType.CONTRACTOR_ENRICHMENT].timeout_seconds == 30
