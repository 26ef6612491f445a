"""Deterministic collaborators for tests: no network, no real LLM."""

from __future__ import annotations

import json
from typing import Any, Callable

from pagesmith.agents import CritiqueAgent, DraftAgent, FinalizeAgent, ResearchAgent
from pagesmith.llm import LLMContext, LLMResult
from pagesmith.models import AgentStage, ItemResult

MODEL = "claude-sonnet-4-20250514"

_SYSTEM_PROMPTS = {
    ResearchAgent.system_prompt: AgentStage.RESEARCH,
    DraftAgent.system_prompt: AgentStage.DRAFT,
    CritiqueAgent.system_prompt: AgentStage.CRITIQUE,
    FinalizeAgent.system_prompt: AgentStage.FINALIZE,
}

RESEARCH_OUTPUT = {
    "summary": "Homeowners want price ranges per square foot and what drives them.",
    "outline": ["Average cost", "Cost factors", "Stamped vs plain concrete"],
    "related_keywords": ["stamped concrete patio cost", "decorative concrete"],
    "questions": ["Is stamped concrete cheaper than pavers?"],
}
DRAFT_OUTPUT = {
    "title": "Stamped Concrete Cost Guide",
    "content": "# Stamped Concrete Cost\n\nMost patios run $8 to $28 per square foot.\n\n"
    "## Cost factors\n\n- Pattern complexity\n- Color layers\n",
}
PASSING_CRITIQUE = {"score": 86, "passed": True, "feedback": "Clear and complete."}
FAILING_CRITIQUE = {
    "score": 52,
    "passed": False,
    "feedback": "Too thin on regional pricing.",
    "issues": ["Add regional price ranges"],
}
FINALIZE_OUTPUT = {
    "title": "Stamped Concrete Cost Guide",
    "slug": "Stamped Concrete Cost",
    "excerpt": "What stamped concrete costs and why.",
    "meta_title": "Stamped Concrete Cost (2026 Guide)",
    "meta_description": "Typical stamped concrete prices per square foot.",
    "related_keywords": ["stamped concrete patio cost"],
}


class FakeProvider:
    """Answers each stage from a queue of canned outputs.

    The last queued output repeats once the queue is down to one item. Errors
    queued for a stage are raised before any output is served.
    """

    def __init__(
        self,
        outputs: dict[AgentStage, list[Any]] | None = None,
        errors: dict[AgentStage, list[Exception]] | None = None,
        prompt_tokens: int = 100,
        completion_tokens: int = 50,
        model: str = MODEL,
        before_call: Callable[[AgentStage], None] | None = None,
    ) -> None:
        self.outputs: dict[AgentStage, list[Any]] = {
            AgentStage.RESEARCH: [RESEARCH_OUTPUT],
            AgentStage.DRAFT: [DRAFT_OUTPUT],
            AgentStage.CRITIQUE: [PASSING_CRITIQUE],
            AgentStage.FINALIZE: [FINALIZE_OUTPUT],
        }
        self.outputs.update({stage: list(items) for stage, items in (outputs or {}).items()})
        self.errors = {stage: list(items) for stage, items in (errors or {}).items()}
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.model = model
        self.before_call = before_call
        self.calls: list[AgentStage] = []
        self.prompts: list[str] = []
        self.contexts: list[LLMContext] = []

    def complete(self, prompt: str, context: LLMContext) -> LLMResult:
        stage = _SYSTEM_PROMPTS[context.system]
        self.calls.append(stage)
        self.prompts.append(prompt)
        self.contexts.append(context)
        if self.before_call is not None:
            self.before_call(stage)
        pending = self.errors.get(stage)
        if pending:
            raise pending.pop(0)
        queue = self.outputs[stage]
        output = queue.pop(0) if len(queue) > 1 else queue[0]
        text = output if isinstance(output, str) else json.dumps(output)
        return LLMResult(
            text=text,
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
            model=context.model or self.model,
        )

    def count(self, stage: AgentStage) -> int:
        return self.calls.count(stage)


class FakeSource:
    def __init__(
        self,
        failing: set[str] | None = None,
        follow: dict[str, list[str]] | None = None,
        on_enrich: Callable[[str], None] | None = None,
    ) -> None:
        self.failing = failing or set()
        self.follow = follow or {}
        self.on_enrich = on_enrich
        self.seen: list[str] = []

    def enrich(self, target_id: str, options: dict[str, Any]) -> ItemResult:
        self.seen.append(target_id)
        if self.on_enrich is not None:
            self.on_enrich(target_id)
        if target_id in self.failing:
            raise RuntimeError(f"upstream rejected {target_id}")
        return ItemResult(ok=True, follow_ids=self.follow.get(target_id, []))
