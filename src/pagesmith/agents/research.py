from __future__ import annotations

from typing import Any

from ..models import AgentStage
from .base import ArticleBrief, StageAgent, bullet_list

RESEARCH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["summary", "outline", "related_keywords"],
    "properties": {
        "summary": {"type": "string", "minLength": 1},
        "audience": {"type": "string"},
        "search_intent": {"type": "string"},
        "outline": {"type": "array", "items": {"type": "string"}, "minItems": 1},
        "related_keywords": {"type": "array", "items": {"type": "string"}},
        "questions": {"type": "array", "items": {"type": "string"}},
        "recommended_word_count": {"type": "integer", "minimum": 0},
    },
}


class ResearchAgent(StageAgent):
    stage = AgentStage.RESEARCH
    schema = RESEARCH_SCHEMA
    temperature = 0.3
    system_prompt = (
        "You are an SEO research analyst. You study a search keyword and produce a "
        "research brief for a writer. Respond with a single JSON object."
    )

    def build_prompt(self, brief: ArticleBrief) -> str:
        lines = [
            f"Keyword: {brief.keyword}",
            f"Known related keywords:\n{bullet_list(brief.settings.related_keywords)}",
        ]
        if brief.settings.context:
            lines.append(f"Additional context from the editor:\n{brief.settings.context}")
        lines.append(
            "Return JSON with keys: summary, audience, search_intent, outline (section "
            "headings in order), related_keywords, questions (what readers ask), "
            "recommended_word_count."
        )
        return "\n\n".join(lines)
