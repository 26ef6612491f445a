from __future__ import annotations

from typing import Any

from ..models import AgentStage
from ..utils import count_words, slugify
from .base import ArticleBrief, StageAgent

FINALIZE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["title", "slug", "excerpt", "meta_title", "meta_description"],
    "properties": {
        "title": {"type": "string", "minLength": 1},
        "slug": {"type": "string"},
        "excerpt": {"type": "string"},
        "meta_title": {"type": "string", "maxLength": 120},
        "meta_description": {"type": "string", "maxLength": 320},
        "focus_keyword": {"type": "string"},
        "related_keywords": {"type": "array", "items": {"type": "string"}},
        "schema_markup": {"type": "object"},
    },
}


class FinalizeAgent(StageAgent):
    """Produces publish metadata; the article body is carried over from the draft."""

    stage = AgentStage.FINALIZE
    schema = FINALIZE_SCHEMA
    temperature = 0.2
    system_prompt = (
        "You prepare finished articles for publication: title, URL slug, excerpt, "
        "search metadata and schema.org markup. Respond with a single JSON object."
    )

    def build_prompt(self, brief: ArticleBrief) -> str:
        draft = brief.draft or {}
        content = str(draft.get("content", ""))
        return "\n\n".join(
            [
                f"Keyword: {brief.keyword}",
                f"Title: {draft.get('title', '')}",
                f"Article:\n{content[:6000]}",
                "Return JSON with keys: title, slug (lowercase, hyphenated), excerpt "
                "(1-2 sentences), meta_title (max 60 chars), meta_description (max 160 "
                "chars), focus_keyword, related_keywords, schema_markup (schema.org "
                "Article JSON-LD object).",
            ]
        )

    def postprocess(self, output: dict[str, Any], brief: ArticleBrief) -> dict[str, Any]:
        draft = brief.draft or {}
        critique = brief.critique or {}
        research = brief.research or {}
        content = str(draft.get("content", ""))
        title = output.get("title") or draft.get("title") or brief.keyword
        related = output.get("related_keywords") or research.get("related_keywords") or []
        return {
            "title": title,
            "slug": slugify(output.get("slug") or title),
            "content": content,
            "excerpt": output.get("excerpt", ""),
            "meta_title": output.get("meta_title") or title,
            "meta_description": output.get("meta_description", ""),
            "focus_keyword": output.get("focus_keyword") or brief.keyword,
            "related_keywords": [str(item) for item in related],
            "schema_markup": output.get("schema_markup") or {},
            "template": brief.settings.template or "article",
            "word_count": count_words(content),
            "passed_review": bool(critique.get("passed", not critique)),
            "review_score": critique.get("score"),
        }
