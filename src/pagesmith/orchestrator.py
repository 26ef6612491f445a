"""Multi-stage article pipeline.

research -> draft -> critique -> (draft -> critique)* -> finalize

The orchestrator owns one claimed article job for the whole run. Every stage
persists progress and usage before the next one starts, and cancellation is
observed at each stage and iteration boundary.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from .agents import (
    ArticleBrief,
    CritiqueAgent,
    DraftAgent,
    FinalizeAgent,
    ResearchAgent,
    StageAgent,
    StageOutputError,
    StageResult,
)
from .article_storage import (
    add_article_usage,
    complete_article_job,
    fail_article_job,
    finish_step,
    get_article_job,
    is_article_cancelled,
    start_step,
    update_article_progress,
)
from .config import LLMConfig, PipelineConfig, StageConfig
from .errors import JobValidationError
from .events import ARTICLE_KIND, ProgressBus, ProgressEvent, get_bus
from .llm.provider import LLMError, LLMProvider, LLMTimeout, RateLimited, estimate_cost
from .models import AgentStage, ArticleJob, JobStatus
from .payloads import ArticleSettings, decode_settings
from .utils import log_event

RESEARCH_DONE = 20
ITERATIONS_DONE = 85
FINALIZE_DONE = 95

logger = logging.getLogger("pagesmith.orchestrator")

Publisher = Callable[[Any, str], dict[str, Any]]


class _Cancelled(Exception):
    pass


class _OwnershipLost(Exception):
    pass


@dataclass
class ExecutionReport:
    job_id: str
    status: JobStatus
    total_tokens_used: int
    estimated_cost_usd: float
    iterations: int
    cancelled: bool = False
    error: str | None = None
    final_output: dict[str, Any] | None = None

    @property
    def success(self) -> bool:
        return self.status == JobStatus.COMPLETED

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "job_id": self.job_id,
            "status": self.status.value,
            "total_tokens_used": self.total_tokens_used,
            "estimated_cost_usd": round(self.estimated_cost_usd, 6),
            "iterations": self.iterations,
            "cancelled": self.cancelled,
            "error": self.error,
        }


@dataclass
class _RunState:
    job: ArticleJob
    settings: ArticleSettings
    progress: int = 0
    iteration: int = 0
    tokens: int = 0
    cost: float = 0.0
    current_agent: AgentStage | None = None
    reviews: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class _StageUsage:
    attempts: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost: float = 0.0


class ArticleOrchestrator:
    def __init__(
        self,
        provider: LLMProvider,
        pipeline: PipelineConfig,
        llm: LLMConfig,
        bus: ProgressBus | None = None,
        publisher: Publisher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.provider = provider
        self.pipeline = pipeline
        self.llm = llm
        self.bus = bus or get_bus()
        self.publisher = publisher
        self._sleep = sleep

    def run(self, conn: Any, job: ArticleJob) -> ExecutionReport:
        """Drive a job already claimed as processing to a terminal state."""
        try:
            settings = decode_settings(job.settings)
        except JobValidationError as exc:
            state = _RunState(job=job, settings=ArticleSettings())
            return self._fail(conn, state, str(exc))

        state = _RunState(
            job=job,
            settings=settings,
            progress=job.progress_percent,
            tokens=job.total_tokens_used,
            cost=job.estimated_cost_usd,
        )
        log_event(
            logger,
            logging.INFO,
            "article_run_started",
            job_id=job.id,
            keyword=job.keyword,
            max_iterations=job.max_iterations,
        )
        try:
            final_output = self._run_pipeline(conn, state)
        except _Cancelled:
            return self._cancelled(conn, state)
        except _OwnershipLost:
            return self._lost(conn, state)
        except (LLMError, JobValidationError) as exc:
            return self._fail(conn, state, _describe(exc))

        if not complete_article_job(conn, job.id, final_output):
            return self._lost(conn, state)
        state.progress = 100
        self._emit(state, JobStatus.COMPLETED, terminal=True)
        log_event(
            logger,
            logging.INFO,
            "article_run_completed",
            job_id=job.id,
            iterations=state.iteration,
            tokens=state.tokens,
            cost=round(state.cost, 6),
        )
        report = ExecutionReport(
            job_id=job.id,
            status=JobStatus.COMPLETED,
            total_tokens_used=state.tokens,
            estimated_cost_usd=state.cost,
            iterations=state.iteration,
            final_output=final_output,
        )
        self._maybe_publish(conn, state, final_output)
        return report

    def _run_pipeline(self, conn: Any, state: _RunState) -> dict[str, Any]:
        job = state.job
        settings = state.settings
        min_score = (
            settings.min_passing_score
            if settings.min_passing_score is not None
            else self.pipeline.min_passing_score
        )
        brief = ArticleBrief(
            keyword=job.keyword,
            settings=settings,
            target_word_count=settings.target_word_count or self.pipeline.default_word_count,
        )
        skip = set(settings.skip_stages)

        if AgentStage.RESEARCH not in skip:
            research_agent = ResearchAgent(self._profile(AgentStage.RESEARCH))
            brief.research = self._stage(conn, state, research_agent, brief, RESEARCH_DONE)
            recommended = brief.research.get("recommended_word_count")
            if not settings.target_word_count and isinstance(recommended, int) and recommended > 0:
                brief.target_word_count = recommended

        draft_agent = DraftAgent(self._profile(AgentStage.DRAFT))
        critique_agent = CritiqueAgent(
            min_passing_score=min_score, profile=self._profile(AgentStage.CRITIQUE)
        )
        span = (ITERATIONS_DONE - RESEARCH_DONE) / job.max_iterations
        while state.iteration < job.max_iterations:
            state.iteration += 1
            brief.iteration = state.iteration
            start = RESEARCH_DONE + span * (state.iteration - 1)
            brief.draft = self._stage(conn, state, draft_agent, brief, int(start + span / 2))
            if AgentStage.CRITIQUE in skip:
                brief.critique = None
                break
            brief.critique = self._stage(conn, state, critique_agent, brief, int(start + span))
            state.reviews.append(
                {
                    "iteration": state.iteration,
                    "score": brief.critique.get("score"),
                    "passed": brief.critique.get("passed"),
                }
            )
            if brief.critique.get("passed"):
                break
            log_event(
                logger,
                logging.INFO,
                "article_revision_needed",
                job_id=job.id,
                iteration=state.iteration,
                score=brief.critique.get("score"),
            )

        finalize_agent = FinalizeAgent(self._profile(AgentStage.FINALIZE))
        return self._stage(conn, state, finalize_agent, brief, FINALIZE_DONE)

    def _stage(
        self,
        conn: Any,
        state: _RunState,
        agent: StageAgent,
        brief: ArticleBrief,
        progress_after: int,
    ) -> dict[str, Any]:
        self._check_cancelled(conn, state)
        state.current_agent = agent.stage
        self._set_progress(conn, state, state.progress)
        step_id = start_step(conn, state.job.id, agent.stage, state.iteration)
        started = time.monotonic()
        usage = _StageUsage()
        try:
            result = self._invoke(conn, state, agent, brief, usage)
        except LLMError as exc:
            error = str(exc) if isinstance(exc, StageOutputError) else _describe(exc)
            self._finish_step(step_id, conn, "failed", usage, started, error=error)
            raise
        except _Cancelled:
            self._finish_step(step_id, conn, "cancelled", usage, started)
            raise
        self._finish_step(step_id, conn, "completed", usage, started, output=result.output)
        self._set_progress(conn, state, progress_after)
        return result.output

    def _invoke(
        self,
        conn: Any,
        state: _RunState,
        agent: StageAgent,
        brief: ArticleBrief,
        usage: _StageUsage,
    ) -> StageResult:
        """Call the agent until it succeeds, billing every attempt as it ends."""
        rate_limited = 0
        timeouts = 0
        while True:
            usage.attempts += 1
            try:
                result = agent.run(self.provider, brief, model=self.llm.model)
            except LLMError as exc:
                self._charge(
                    conn, state, usage, exc.model, exc.prompt_tokens, exc.completion_tokens
                )
                if isinstance(exc, RateLimited) and rate_limited < self.pipeline.rate_limit_retries:
                    rate_limited += 1
                    delay = exc.retry_after
                    if delay is None:
                        delay = min(
                            self.pipeline.backoff_seconds * (2 ** (rate_limited - 1)),
                            self.pipeline.max_backoff_seconds,
                        )
                        delay += random.uniform(0, delay * 0.25)
                    log_event(
                        logger,
                        logging.WARNING,
                        "llm_rate_limited",
                        job_id=state.job.id,
                        stage=agent.stage.value,
                        attempt=usage.attempts,
                        delay=round(delay, 2),
                    )
                    self._sleep(delay)
                elif isinstance(exc, LLMTimeout) and timeouts < self.pipeline.timeout_retries:
                    timeouts += 1
                    log_event(
                        logger,
                        logging.WARNING,
                        "llm_timeout_retry",
                        job_id=state.job.id,
                        stage=agent.stage.value,
                        attempt=usage.attempts,
                    )
                else:
                    raise
            else:
                self._charge(
                    conn, state, usage, result.model, result.prompt_tokens, result.completion_tokens
                )
                return result
            self._check_cancelled(conn, state)

    def _charge(
        self,
        conn: Any,
        state: _RunState,
        usage: _StageUsage,
        model: str | None,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> None:
        usage.cost += self._record_usage(
            conn, state, model or self.llm.model, prompt_tokens, completion_tokens
        )
        usage.prompt_tokens += prompt_tokens
        usage.completion_tokens += completion_tokens

    def _record_usage(
        self, conn: Any, state: _RunState, model: str, prompt_tokens: int, completion_tokens: int
    ) -> float:
        tokens = prompt_tokens + completion_tokens
        if not tokens:
            return 0.0
        cost = estimate_cost(model, prompt_tokens, completion_tokens, self.llm.prices)
        add_article_usage(conn, state.job.id, tokens, cost)
        state.tokens += tokens
        state.cost += cost
        return cost

    def _finish_step(
        self,
        step_id: int,
        conn: Any,
        status: str,
        usage: _StageUsage,
        started: float,
        output: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        finish_step(
            conn,
            step_id,
            status=status,
            attempts=usage.attempts,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost_usd=usage.cost,
            duration_ms=int((time.monotonic() - started) * 1000),
            output=output,
            error=error,
        )

    def _set_progress(self, conn: Any, state: _RunState, progress: int) -> None:
        progress = max(state.progress, progress)
        updated = update_article_progress(
            conn,
            state.job.id,
            state.current_agent,
            progress,
            current_iteration=state.iteration,
        )
        if not updated:
            if is_article_cancelled(conn, state.job.id):
                raise _Cancelled()
            raise _OwnershipLost()
        state.progress = progress
        self._emit(state, JobStatus.PROCESSING)

    def _profile(self, stage: AgentStage) -> StageConfig | None:
        return self.pipeline.stages.get(stage.value)

    def _check_cancelled(self, conn: Any, state: _RunState) -> None:
        if is_article_cancelled(conn, state.job.id):
            raise _Cancelled()

    def _fail(self, conn: Any, state: _RunState, error: str) -> ExecutionReport:
        if not fail_article_job(conn, state.job.id, error):
            return self._lost(conn, state)
        log_event(
            logger,
            logging.ERROR,
            "article_run_failed",
            job_id=state.job.id,
            stage=state.current_agent.value if state.current_agent else None,
            error=error,
        )
        self._emit(state, JobStatus.FAILED, terminal=True, error=error)
        return ExecutionReport(
            job_id=state.job.id,
            status=JobStatus.FAILED,
            total_tokens_used=state.tokens,
            estimated_cost_usd=state.cost,
            iterations=state.iteration,
            error=error,
        )

    def _cancelled(self, conn: Any, state: _RunState) -> ExecutionReport:
        log_event(
            logger,
            logging.INFO,
            "article_run_cancelled",
            job_id=state.job.id,
            stage=state.current_agent.value if state.current_agent else None,
        )
        self._emit(state, JobStatus.CANCELLED, terminal=True)
        return ExecutionReport(
            job_id=state.job.id,
            status=JobStatus.CANCELLED,
            total_tokens_used=state.tokens,
            estimated_cost_usd=state.cost,
            iterations=state.iteration,
            cancelled=True,
        )

    def _lost(self, conn: Any, state: _RunState) -> ExecutionReport:
        current = get_article_job(conn, state.job.id)
        if current is not None and current.status == JobStatus.CANCELLED:
            return self._cancelled(conn, state)
        status = current.status if current is not None else JobStatus.FAILED
        error = (current.last_error if current is not None else None) or "job_ownership_lost"
        log_event(
            logger,
            logging.ERROR,
            "article_ownership_lost",
            job_id=state.job.id,
            status=status.value,
        )
        self._emit(state, status, terminal=True, error=error)
        return ExecutionReport(
            job_id=state.job.id,
            status=status,
            total_tokens_used=state.tokens,
            estimated_cost_usd=state.cost,
            iterations=state.iteration,
            error=error,
        )

    def _maybe_publish(self, conn: Any, state: _RunState, final_output: dict[str, Any]) -> None:
        if not state.settings.auto_publish or self.publisher is None:
            return
        if not final_output.get("passed_review"):
            log_event(
                logger,
                logging.INFO,
                "auto_publish_skipped",
                job_id=state.job.id,
                reason="review_not_passed",
            )
            return
        try:
            published = self.publisher(conn, state.job.id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger, logging.WARNING, "auto_publish_failed", job_id=state.job.id, error=str(exc)
            )
            return
        log_event(
            logger,
            logging.INFO,
            "auto_published",
            job_id=state.job.id,
            page_id=published.get("page_id"),
        )

    def _emit(
        self,
        state: _RunState,
        status: JobStatus,
        terminal: bool = False,
        error: str | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "keyword": state.job.keyword,
            "current_agent": state.current_agent.value if state.current_agent else None,
            "progress_percent": state.progress,
            "current_iteration": state.iteration,
            "max_iterations": state.job.max_iterations,
            "total_tokens_used": state.tokens,
            "estimated_cost_usd": round(state.cost, 6),
        }
        if error:
            data["error"] = error
        self.bus.publish(
            ProgressEvent(
                kind=ARTICLE_KIND,
                job_id=state.job.id,
                status=status.value,
                data=data,
                terminal=terminal,
            )
        )


def _describe(exc: Exception) -> str:
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, RateLimited):
        return f"rate limited by LLM provider, retries exhausted: {message}"
    if isinstance(exc, LLMTimeout):
        return f"LLM provider timed out: {message}"
    if isinstance(exc, LLMError):
        return f"invalid LLM response: {message}"
    return message
