"""Typed job payloads and article settings.

Payloads are validated when a job is enqueued and decoded again when a
worker claims it, so an executor only ever sees a well-formed model.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import JobValidationError
from .models import AgentStage, JobType

PAYLOAD_SCHEMA_VERSION = 1
MAX_TARGET_IDS = 5000
MAX_CONTEXT_CHARS = 2000
SKIPPABLE_STAGES = (AgentStage.RESEARCH, AgentStage.CRITIQUE)


class EnrichmentPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    target_ids: list[str] = Field(default_factory=list, max_length=MAX_TARGET_IDS)
    batch_size: int | None = Field(default=None, ge=1, le=100)
    max_depth: int = Field(default=0, ge=0, le=10)
    continuous: bool = False
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("target_ids")
    @classmethod
    def _dedupe_targets(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        cleaned: list[str] = []
        for item in value:
            item = item.strip()
            if not item:
                raise ValueError("target ids must be non-empty strings")
            if item in seen:
                continue
            seen.add(item)
            cleaned.append(item)
        return cleaned


class ArticleSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = PAYLOAD_SCHEMA_VERSION
    max_iterations: int | None = Field(default=None, ge=1, le=10)
    min_passing_score: int | None = Field(default=None, ge=0, le=100)
    target_word_count: int = Field(default=0, ge=0, le=10000)
    parent_page_id: str | None = None
    related_keywords: list[str] = Field(default_factory=list, max_length=20)
    template: str | None = None
    skip_stages: list[AgentStage] = Field(default_factory=list)
    context: str | None = Field(default=None, max_length=MAX_CONTEXT_CHARS)
    auto_publish: bool = False
    publish_status: Literal["draft", "published"] | None = None

    @field_validator("skip_stages")
    @classmethod
    def _only_optional_stages(cls, value: list[AgentStage]) -> list[AgentStage]:
        for stage in value:
            if stage not in SKIPPABLE_STAGES:
                raise ValueError(f"stage {stage.value} cannot be skipped")
        return list(dict.fromkeys(value))


PAYLOAD_MODELS: dict[JobType, type[EnrichmentPayload]] = {
    JobType.CONTRACTOR_ENRICHMENT: EnrichmentPayload,
    JobType.REVIEW_ENRICHMENT: EnrichmentPayload,
    JobType.IMAGE_ENRICHMENT: EnrichmentPayload,
}


def parse_job_type(value: str | JobType) -> JobType:
    try:
        return JobType(value)
    except ValueError as exc:
        raise JobValidationError(f"unknown_job_type: {value}") from exc


def decode_payload(job_type: JobType, raw: dict[str, Any] | None) -> EnrichmentPayload:
    model = PAYLOAD_MODELS[job_type]
    try:
        return model.model_validate(raw or {})
    except ValidationError as exc:
        raise JobValidationError(f"invalid_payload: {_summarize(exc)}") from exc


def decode_settings(raw: dict[str, Any] | None) -> ArticleSettings:
    try:
        return ArticleSettings.model_validate(raw or {})
    except ValidationError as exc:
        raise JobValidationError(f"invalid_settings: {_summarize(exc)}") from exc


def _summarize(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "payload"
        parts.append(f"{location} {error.get('msg')}")
    return "; ".join(parts)
