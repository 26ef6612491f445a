from __future__ import annotations

from typing import Any

from ..models import AgentStage
from ..utils import count_words
from .base import ArticleBrief, StageAgent, bullet_list

DRAFT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "content"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "content": {"type": "string", "minLength": 1},
        "focus_keyword": {"type": "string"},
    },
}


class DraftAgent(StageAgent):
    stage = AgentStage.DRAFT
    schema = DRAFT_SCHEMA
    temperature = 0.7
    system_prompt = (
        "You are a senior content writer. You write complete, accurate long-form "
        "articles in Markdown for a contractor marketplace. Respond with a single JSON object."
    )

    def build_prompt(self, brief: ArticleBrief) -> str:
        lines = [
            f"Write an article targeting the keyword: {brief.keyword}",
            f"Target length: about {brief.target_word_count} words.",
        ]
        if brief.research:
            lines.append(f"Research summary:\n{brief.research.get('summary', '')}")
            lines.append(f"Outline:\n{bullet_list(list(brief.research.get('outline') or []))}")
            questions = list(brief.research.get("questions") or [])
            if questions:
                lines.append(f"Answer these reader questions:\n{bullet_list(questions)}")
        if brief.settings.context:
            lines.append(f"Editor context:\n{brief.settings.context}")
        if brief.draft and brief.critique:
            lines.append(
                "Revise the previous draft below. Address every point of the review."
            )
            lines.append(f"Review feedback:\n{brief.critique.get('feedback', '')}")
            lines.append(f"Issues:\n{bullet_list(list(brief.critique.get('issues') or []))}")
            lines.append(f"Previous draft:\n{brief.draft.get('content', '')}")
        lines.append("Return JSON with keys: title, content (Markdown), focus_keyword.")
        return "\n\n".join(lines)

    def postprocess(self, output: dict[str, Any], brief: ArticleBrief) -> dict[str, Any]:
        output.setdefault("focus_keyword", brief.keyword)
        output["word_count"] = count_words(output["content"])
        return output
