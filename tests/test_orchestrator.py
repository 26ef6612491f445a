import dataclasses
import json

import pytest
from fakes import FAILING_CRITIQUE, PASSING_CRITIQUE, RESEARCH_OUTPUT, FakeProvider

from pagesmith.agents import ArticleBrief, ResearchAgent
from pagesmith.article_storage import cancel_article_job, claim_article_job, list_steps
from pagesmith.cms import StoragePageService
from pagesmith.config import StageConfig, load_runtime_config
from pagesmith.events import ARTICLE_KIND, ProgressBus
from pagesmith.llm import InvalidResponse, LLMResult, LLMTimeout, RateLimited
from pagesmith.models import AgentStage, JobStatus
from pagesmith.orchestrator import ArticleOrchestrator
from pagesmith.payloads import ArticleSettings
from pagesmith.publish import publish_article
from pagesmith.services.article_service import create_article_job, get_article_job
from pagesmith.storage import init_db

DRAFT = AgentStage.DRAFT
CRITIQUE = AgentStage.CRITIQUE


def _setup(tmp_path, keyword="stamped concrete cost", settings=None):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    config = load_runtime_config(conn)
    job = create_article_job(conn, config, keyword, settings, bus=ProgressBus())
    claimed = claim_article_job(conn, job.id, "worker-1")
    return conn, config, claimed


def _orchestrator(config, provider, bus=None, publisher=None, sleeps=None):
    return ArticleOrchestrator(
        provider,
        config.pipeline,
        config.llm,
        bus=bus or ProgressBus(),
        publisher=publisher,
        sleep=(sleeps.append if sleeps is not None else lambda _: None),
    )


def test_revision_loop_completes_after_passing_review(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 2})
    provider = FakeProvider(outputs={CRITIQUE: [FAILING_CRITIQUE, PASSING_CRITIQUE]})

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    assert report.iterations == 2
    assert report.total_tokens_used == 900
    assert report.estimated_cost_usd == pytest.approx(0.0063)
    assert provider.calls == [
        AgentStage.RESEARCH,
        DRAFT,
        CRITIQUE,
        DRAFT,
        CRITIQUE,
        AgentStage.FINALIZE,
    ]
    assert "Too thin on regional pricing." in provider.prompts[3]

    stored = get_article_job(conn, job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.progress_percent == 100
    assert stored.current_iteration == 2
    assert stored.total_tokens_used == 900
    assert stored.estimated_cost_usd == pytest.approx(0.0063)
    assert stored.final_output["slug"] == "stamped-concrete-cost"
    assert stored.final_output["passed_review"] is True
    assert stored.final_output["review_score"] == 86
    assert stored.final_output["content"].startswith("# Stamped Concrete Cost")

    steps = list_steps(conn, job.id)
    assert len(steps) == 6
    assert all(step.status == "completed" for step in steps)
    assert sum(step.tokens_used for step in steps) == 900
    assert [step.iteration for step in steps] == [0, 1, 1, 2, 2, 2]


def test_iteration_cap_finalizes_without_passing_review(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 2})
    provider = FakeProvider(outputs={CRITIQUE: [FAILING_CRITIQUE]})

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    assert provider.count(DRAFT) == 2
    assert provider.count(CRITIQUE) == 2
    stored = get_article_job(conn, job.id)
    assert stored.current_iteration == 2
    assert stored.final_output["passed_review"] is False


def test_min_passing_score_overrides_model_verdict(tmp_path):
    conn, config, job = _setup(
        tmp_path, settings={"max_iterations": 1, "min_passing_score": 90}
    )
    provider = FakeProvider()

    _orchestrator(config, provider).run(conn, job)

    assert get_article_job(conn, job.id).final_output["passed_review"] is False


def test_cancel_during_draft_stops_before_critique(tmp_path):
    conn, config, job = _setup(tmp_path)

    def _cancel(stage):
        if stage == DRAFT:
            cancel_article_job(conn, job.id)

    provider = FakeProvider(before_call=_cancel)
    bus = ProgressBus()

    report = _orchestrator(config, provider, bus=bus).run(conn, job)

    assert report.status == JobStatus.CANCELLED
    assert report.cancelled is True
    assert provider.count(CRITIQUE) == 0
    assert provider.count(AgentStage.FINALIZE) == 0
    stored = get_article_job(conn, job.id)
    assert stored.status == JobStatus.CANCELLED
    assert stored.total_tokens_used == 300
    assert bus.snapshot(ARTICLE_KIND, job.id).status == "cancelled"


def test_cancelled_before_run_makes_no_llm_calls(tmp_path):
    conn, config, job = _setup(tmp_path)
    cancel_article_job(conn, job.id)
    provider = FakeProvider()

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.CANCELLED
    assert provider.calls == []


def test_rate_limit_waits_for_retry_after(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 1})
    provider = FakeProvider(errors={AgentStage.RESEARCH: [RateLimited(retry_after=0.5)]})
    sleeps = []

    report = _orchestrator(config, provider, sleeps=sleeps).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    assert sleeps == [0.5]
    research = list_steps(conn, job.id)[0]
    assert research.stage == AgentStage.RESEARCH
    assert research.attempts == 2


def test_rate_limit_without_hint_uses_jittered_backoff(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 1})
    provider = FakeProvider(errors={DRAFT: [RateLimited()]})
    sleeps = []

    _orchestrator(config, provider, sleeps=sleeps).run(conn, job)

    assert len(sleeps) == 1
    assert 2.0 <= sleeps[0] <= 2.5


def test_rate_limit_retries_exhausted_fails_job(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 1})
    errors = [RateLimited(retry_after=0) for _ in range(4)]
    provider = FakeProvider(errors={AgentStage.RESEARCH: errors})

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.FAILED
    assert "rate limited" in report.error
    assert provider.count(AgentStage.RESEARCH) == 4


def test_timeout_twice_fails_job(tmp_path):
    conn, config, job = _setup(tmp_path)
    provider = FakeProvider(errors={DRAFT: [LLMTimeout("slow"), LLMTimeout("slow")]})

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.FAILED
    stored = get_article_job(conn, job.id)
    assert stored.status == JobStatus.FAILED
    assert "timed out" in stored.last_error
    assert list_steps(conn, job.id)[-1].status == "failed"


def test_single_timeout_is_retried(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 1})
    provider = FakeProvider(errors={DRAFT: [LLMTimeout("slow")]})

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    assert provider.count(DRAFT) == 2


def test_unparseable_output_is_repaired_once_then_fails(tmp_path):
    conn, config, job = _setup(tmp_path)
    provider = FakeProvider(outputs={DRAFT: ["not json at all"]})

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.FAILED
    assert provider.count(DRAFT) == 2
    assert "Return valid JSON only" in provider.prompts[-1]
    stored = get_article_job(conn, job.id)
    assert "invalid LLM response" in stored.last_error
    # research plus both draft attempts were billed
    assert stored.total_tokens_used == 450


def test_repaired_output_continues(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 1})
    provider = FakeProvider(
        outputs={
            DRAFT: [
                "```json\n{\"title\": \"\"}\n```",
                {"title": "Fixed", "content": "Body text here."},
            ]
        }
    )

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    draft = [step for step in list_steps(conn, job.id) if step.stage == DRAFT][0]
    assert draft.output["title"] == "Fixed"


def test_progress_events_are_monotonic(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 2})
    bus = ProgressBus()
    subscription = bus.subscribe(ARTICLE_KIND, job.id, maxsize=100)
    provider = FakeProvider(outputs={CRITIQUE: [FAILING_CRITIQUE, PASSING_CRITIQUE]})

    _orchestrator(config, provider, bus=bus).run(conn, job)

    events = []
    while True:
        event = subscription.get(timeout=0.01)
        if event is None:
            break
        events.append(event)
    progress = [event.data["progress_percent"] for event in events]
    assert progress == sorted(progress)
    assert progress[-1] == 100
    assert events[-1].terminal is True
    assert events[-1].status == "completed"
    assert subscription.dropped == 0
    sequences = [event.sequence for event in events]
    assert sequences == sorted(set(sequences))


def test_skip_stages_runs_draft_and_finalize_only(tmp_path):
    conn, config, job = _setup(
        tmp_path, settings={"skip_stages": ["research", "critique"]}
    )
    provider = FakeProvider()

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    assert provider.calls == [DRAFT, AgentStage.FINALIZE]
    assert get_article_job(conn, job.id).final_output["passed_review"] is True


def test_invalid_stored_settings_fail_the_job(tmp_path):
    conn, config, job = _setup(tmp_path)
    conn.execute(
        "UPDATE article_jobs SET settings_json = ? WHERE id = ?",
        ('{"schema_version": 7}', job.id),
    )
    conn.commit()
    job = get_article_job(conn, job.id)
    provider = FakeProvider()

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.FAILED
    assert report.error.startswith("invalid_settings")
    assert provider.calls == []


def test_auto_publish_after_passing_review(tmp_path):
    conn, config, job = _setup(
        tmp_path, settings={"max_iterations": 1, "auto_publish": True}
    )

    def _publisher(conn, job_id):
        return publish_article(conn, job_id, StoragePageService(conn), config.publishing)

    _orchestrator(config, FakeProvider(), publisher=_publisher).run(conn, job)

    stored = get_article_job(conn, job.id)
    assert stored.page_id is not None
    assert StoragePageService(conn).get_page(stored.page_id).full_path == "/stamped-concrete-cost"


def test_auto_publish_skipped_when_review_fails(tmp_path):
    conn, config, job = _setup(
        tmp_path, settings={"max_iterations": 1, "auto_publish": True}
    )
    published = []

    report = _orchestrator(
        config,
        FakeProvider(outputs={CRITIQUE: [FAILING_CRITIQUE]}),
        publisher=lambda conn, job_id: published.append(job_id),
    ).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    assert published == []
    assert get_article_job(conn, job.id).page_id is None


def test_rate_limited_repair_call_still_bills_the_first_call(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 1})
    research_calls = []

    def _limit_repair(stage):
        if stage == AgentStage.RESEARCH:
            research_calls.append(stage)
            if len(research_calls) == 2:
                raise RateLimited(retry_after=0)

    provider = FakeProvider(
        outputs={AgentStage.RESEARCH: ["not json", RESEARCH_OUTPUT]},
        before_call=_limit_repair,
    )
    sleeps = []

    report = _orchestrator(config, provider, sleeps=sleeps).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    assert provider.count(AgentStage.RESEARCH) == 3
    assert sleeps == [0]
    # two billed research calls plus draft, critique and finalize
    assert report.total_tokens_used == 750
    assert get_article_job(conn, job.id).total_tokens_used == 750
    research = list_steps(conn, job.id)[0]
    assert research.attempts == 2
    assert research.tokens_used == 300


def test_failed_repair_call_bills_the_first_call(tmp_path):
    conn, config, job = _setup(tmp_path)
    research_calls = []

    def _break_repair(stage):
        research_calls.append(stage)
        if len(research_calls) == 2:
            raise InvalidResponse("empty completion")

    provider = FakeProvider(
        outputs={AgentStage.RESEARCH: ["not json"]}, before_call=_break_repair
    )

    report = _orchestrator(config, provider).run(conn, job)

    assert report.status == JobStatus.FAILED
    assert report.error == "invalid LLM response: empty completion"
    stored = get_article_job(conn, job.id)
    assert stored.total_tokens_used == 150
    assert stored.estimated_cost_usd == pytest.approx(0.00105)
    research = list_steps(conn, job.id)[0]
    assert research.status == "failed"
    assert research.tokens_used == 150
    assert research.cost_usd == pytest.approx(0.00105)


def test_stage_profiles_pick_model_and_sampling(tmp_path):
    conn, config, job = _setup(tmp_path, settings={"max_iterations": 1})
    stages = dict(config.pipeline.stages)
    stages["draft"] = StageConfig(
        system_prompt="", model="gpt-4o", temperature=0.5, max_tokens=2000
    )
    pipeline = dataclasses.replace(config.pipeline, stages=stages)
    provider = FakeProvider()

    report = ArticleOrchestrator(
        provider, pipeline, config.llm, bus=ProgressBus(), sleep=lambda _: None
    ).run(conn, job)

    assert report.status == JobStatus.COMPLETED
    research_context, draft_context = provider.contexts[0], provider.contexts[1]
    assert research_context.model == config.llm.model
    assert research_context.temperature == 0.3
    assert research_context.max_tokens is None
    assert draft_context.model == "gpt-4o"
    assert draft_context.temperature == 0.5
    assert draft_context.max_tokens == 2000
    # three stages at sonnet prices, the draft at gpt-4o prices
    assert report.estimated_cost_usd == pytest.approx(3 * 0.00105 + 0.00075)
    draft_step = [step for step in list_steps(conn, job.id) if step.stage == DRAFT][0]
    assert draft_step.cost_usd == pytest.approx(0.00075)


class _RecordingProvider:
    def __init__(self):
        self.contexts = []

    def complete(self, prompt, context):
        self.contexts.append(context)
        return LLMResult(
            text=json.dumps(RESEARCH_OUTPUT),
            prompt_tokens=10,
            completion_tokens=5,
            model=context.model or "unset",
        )


def test_custom_system_prompt_replaces_the_built_in_one():
    provider = _RecordingProvider()
    agent = ResearchAgent(
        StageConfig(
            system_prompt="You research for a roofing contractor.",
            model="",
            temperature=0.9,
            max_tokens=0,
        )
    )
    brief = ArticleBrief(
        keyword="metal roof cost", settings=ArticleSettings(), target_word_count=1200
    )

    result = agent.run(provider, brief, model="claude-sonnet-4-20250514")

    context = provider.contexts[0]
    assert context.system == "You research for a roofing contractor."
    assert context.model == "claude-sonnet-4-20250514"
    assert context.temperature == 0.9
    assert context.max_tokens is None
    assert result.model == "claude-sonnet-4-20250514"
    assert ResearchAgent().context().system == ResearchAgent.system_prompt
