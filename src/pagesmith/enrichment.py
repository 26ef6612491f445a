from __future__ import annotations

import os
from typing import Any, Protocol

from .config import EnrichmentConfig
from .http_client import request_json
from .models import ItemResult, JobType


class EnrichmentSource(Protocol):
    def enrich(self, target_id: str, options: dict[str, Any]) -> ItemResult:
        ...


class WebhookEnrichmentSource:
    """Delegates one record to an external enrichment endpoint.

    The endpoint answers with ``{"ok": bool, "message": str, "follow_ids": [...],
    "data": {...}}``; transport errors propagate so the executor can count the
    item as failed.
    """

    def __init__(
        self,
        job_type: JobType,
        endpoint: str,
        timeout_seconds: float,
        token: str | None = None,
    ) -> None:
        self.job_type = job_type
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.token = token

    def enrich(self, target_id: str, options: dict[str, Any]) -> ItemResult:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        body = {"job_type": self.job_type.value, "target_id": target_id, "options": options}
        response = request_json("POST", self.endpoint, headers, body, self.timeout_seconds)
        if not isinstance(response, dict) or "raw" in response:
            return ItemResult(ok=False, message="enrichment_response_not_json")
        follow_ids = [str(item) for item in response.get("follow_ids") or [] if item]
        data = response.get("data") if isinstance(response.get("data"), dict) else {}
        return ItemResult(
            ok=bool(response.get("ok", True)),
            message=response.get("message"),
            follow_ids=follow_ids,
            data=data,
        )


def build_enrichment_sources(config: EnrichmentConfig) -> dict[JobType, EnrichmentSource]:
    token = os.environ.get("PS_ENRICHMENT_TOKEN") or None
    sources: dict[JobType, EnrichmentSource] = {}
    for job_type in JobType:
        endpoint = config.endpoints.get(job_type.value)
        if not endpoint:
            continue
        sources[job_type] = WebhookEnrichmentSource(
            job_type, endpoint, config.timeout_seconds, token=token
        )
    return sources
