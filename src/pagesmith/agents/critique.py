from __future__ import annotations

from typing import Any

from ..config import StageConfig
from ..models import AgentStage
from .base import ArticleBrief, StageAgent

CRITIQUE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["score", "passed", "feedback"],
    "properties": {
        "score": {"type": "integer", "minimum": 0, "maximum": 100},
        "passed": {"type": "boolean"},
        "feedback": {"type": "string"},
        "issues": {"type": "array", "items": {"type": "string"}},
    },
}


class CritiqueAgent(StageAgent):
    stage = AgentStage.CRITIQUE
    schema = CRITIQUE_SCHEMA
    temperature = 0.2
    system_prompt = (
        "You are an exacting editor. You score drafts for accuracy, structure, keyword "
        "coverage and readability. Respond with a single JSON object."
    )

    def __init__(self, min_passing_score: int = 70, profile: StageConfig | None = None) -> None:
        super().__init__(profile)
        self.min_passing_score = min_passing_score

    def build_prompt(self, brief: ArticleBrief) -> str:
        draft = brief.draft or {}
        return "\n\n".join(
            [
                f"Keyword: {brief.keyword}",
                f"Target length: about {brief.target_word_count} words "
                f"(draft has {draft.get('word_count', 0)}).",
                f"A draft passes at a score of {self.min_passing_score} or more.",
                f"Draft title: {draft.get('title', '')}",
                f"Draft:\n{draft.get('content', '')}",
                "Return JSON with keys: score (0-100), passed, feedback, issues.",
            ]
        )

    def postprocess(self, output: dict[str, Any], brief: ArticleBrief) -> dict[str, Any]:
        output["passed"] = bool(output["passed"]) and output["score"] >= self.min_passing_score
        output.setdefault("issues", [])
        return output
