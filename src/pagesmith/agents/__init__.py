from .base import ArticleBrief, StageAgent, StageOutputError, StageResult
from .critique import CritiqueAgent
from .draft import DraftAgent
from .finalize import FinalizeAgent
from .research import ResearchAgent

__all__ = [
    "ArticleBrief",
    "CritiqueAgent",
    "DraftAgent",
    "FinalizeAgent",
    "ResearchAgent",
    "StageAgent",
    "StageOutputError",
    "StageResult",
]
