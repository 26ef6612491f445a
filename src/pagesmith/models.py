from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobType(str, Enum):
    CONTRACTOR_ENRICHMENT = "contractor_enrichment"
    REVIEW_ENRICHMENT = "review_enrichment"
    IMAGE_ENRICHMENT = "image_enrichment"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
LIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})


class AgentStage(str, Enum):
    RESEARCH = "research"
    DRAFT = "draft"
    CRITIQUE = "critique"
    FINALIZE = "finalize"


@dataclass(frozen=True)
class Job:
    id: str
    job_type: JobType
    status: JobStatus
    payload: dict[str, Any]
    result: dict[str, Any] | None
    total_items: int
    processed_items: int
    failed_items: int
    last_error: str | None
    created_by: str | None
    locked_by: str | None
    retry_of: str | None
    created_at: str
    started_at: str | None
    completed_at: str | None
    heartbeat_at: str | None

    @property
    def percent_complete(self) -> int:
        if self.total_items <= 0:
            return 100 if self.status == JobStatus.COMPLETED else 0
        done = self.processed_items + self.failed_items
        return int(done * 100 / self.total_items)


@dataclass(frozen=True)
class ArticleJob:
    id: str
    keyword: str
    status: JobStatus
    current_agent: AgentStage | None
    progress_percent: int
    current_iteration: int
    max_iterations: int
    total_tokens_used: int
    estimated_cost_usd: float
    priority: int
    settings: dict[str, Any]
    final_output: dict[str, Any] | None
    page_id: str | None
    last_error: str | None
    created_by: str | None
    created_at: str
    updated_at: str
    started_at: str | None
    completed_at: str | None


@dataclass(frozen=True)
class ArticleJobStep:
    id: int
    job_id: str
    stage: AgentStage
    iteration: int
    status: str
    attempts: int
    prompt_tokens: int
    completion_tokens: int
    tokens_used: int
    cost_usd: float
    duration_ms: int | None
    output: dict[str, Any] | None
    error: str | None
    started_at: str
    completed_at: str | None


@dataclass(frozen=True)
class JobLog:
    id: int
    job_id: str
    level: str
    event: str
    message: str | None
    data: dict[str, Any] | None
    created_at: str


@dataclass
class Outcome:
    status: JobStatus
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass(frozen=True)
class ItemResult:
    ok: bool
    message: str | None = None
    follow_ids: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
