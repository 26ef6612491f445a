from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import jsonschema

from ..config import StageConfig
from ..llm.provider import InvalidResponse, LLMContext, LLMError, LLMProvider
from ..models import AgentStage
from ..payloads import ArticleSettings
from ..utils import log_event

REPAIR_SUFFIX = "\n\nReturn valid JSON only. Fix schema violations: {error}"

logger = logging.getLogger("pagesmith.agents")


@dataclass
class ArticleBrief:
    """Everything a stage may read: the job input plus earlier stage outputs."""

    keyword: str
    settings: ArticleSettings
    target_word_count: int
    iteration: int = 0
    research: dict[str, Any] | None = None
    draft: dict[str, Any] | None = None
    critique: dict[str, Any] | None = None
    history: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class StageResult:
    output: dict[str, Any]
    prompt_tokens: int
    completion_tokens: int
    model: str
    calls: int


class StageOutputError(InvalidResponse):
    def __init__(self, message: str, prompt_tokens: int, completion_tokens: int, model: str) -> None:
        super().__init__(message)
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.model = model


class StageAgent(ABC):
    stage: AgentStage
    system_prompt: str = ""
    schema: dict[str, Any] = {}
    temperature: float | None = None

    def __init__(self, profile: StageConfig | None = None) -> None:
        self.profile = profile

    @abstractmethod
    def build_prompt(self, brief: ArticleBrief) -> str:
        ...

    def postprocess(self, output: dict[str, Any], brief: ArticleBrief) -> dict[str, Any]:
        return output

    def context(self, model: str | None = None) -> LLMContext:
        profile = self.profile
        if profile is None:
            return LLMContext(system=self.system_prompt, model=model, temperature=self.temperature)
        return LLMContext(
            system=profile.system_prompt or self.system_prompt,
            model=profile.model or model,
            max_tokens=profile.max_tokens or None,
            temperature=profile.temperature,
        )

    def run(self, provider: LLMProvider, brief: ArticleBrief, model: str | None = None) -> StageResult:
        context = self.context(model)
        prompt = self.build_prompt(brief)
        result = provider.complete(prompt, context)
        prompt_tokens = result.prompt_tokens
        completion_tokens = result.completion_tokens
        output, error = self._parse(result.text)
        calls = 1
        if output is None:
            error = error or "unparseable output"
            log_event(
                logger,
                logging.WARNING,
                "stage_output_invalid",
                stage=self.stage.value,
                error=error[:200],
            )
            try:
                repair = provider.complete(
                    prompt + REPAIR_SUFFIX.format(error=error[:500]), context
                )
            except LLMError as exc:
                exc.add_usage(prompt_tokens, completion_tokens, result.model)
                raise
            prompt_tokens += repair.prompt_tokens
            completion_tokens += repair.completion_tokens
            calls += 1
            output, error = self._parse(repair.text)
            if output is None:
                raise StageOutputError(
                    f"{self.stage.value}_invalid_output: {(error or '')[:300]}",
                    prompt_tokens,
                    completion_tokens,
                    result.model,
                )
        return StageResult(
            output=self.postprocess(output, brief),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            model=result.model,
            calls=calls,
        )

    def _parse(self, text: str) -> tuple[dict[str, Any] | None, str | None]:
        try:
            payload = extract_json(text)
        except ValueError as exc:
            return None, str(exc)
        try:
            jsonschema.validate(payload, self.schema)
        except jsonschema.ValidationError as exc:
            return None, exc.message
        return payload, None


_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)


def extract_json(text: str) -> dict[str, Any]:
    candidate = (text or "").strip()
    fenced = _FENCE.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    if not candidate.startswith("{"):
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("no JSON object in response")
        candidate = candidate[start : end + 1]
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ValueError("response JSON must be an object")
    return payload


def bullet_list(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) if items else "- (none)"
