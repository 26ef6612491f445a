from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from ..config import ModelPrice
from ..utils import log_event

logger = logging.getLogger("pagesmith.llm")


class LLMError(Exception):
    """Base class for provider failures the orchestrator knows how to classify.

    Carries the usage of any calls that succeeded earlier in the same stage
    attempt so the caller can still bill them.
    """

    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: str | None = None

    def add_usage(self, prompt_tokens: int, completion_tokens: int, model: str | None) -> None:
        self.prompt_tokens += prompt_tokens
        self.completion_tokens += completion_tokens
        if self.model is None:
            self.model = model


class RateLimited(LLMError):
    def __init__(self, message: str = "rate_limited", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class LLMTimeout(LLMError):
    pass


class InvalidResponse(LLMError):
    pass


@dataclass(frozen=True)
class LLMContext:
    system: str = ""
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class LLMResult:
    text: str
    prompt_tokens: int
    completion_tokens: int
    model: str

    @property
    def tokens_used(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LLMProvider(Protocol):
    def complete(self, prompt: str, context: LLMContext) -> LLMResult:
        ...


def estimate_cost(
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    prices: dict[str, ModelPrice],
) -> float:
    price = prices.get(model)
    if price is None:
        log_event(logger, logging.WARNING, "llm_price_unknown", model=model)
        return 0.0
    cost = (
        prompt_tokens * price.input_per_million + completion_tokens * price.output_per_million
    ) / 1_000_000
    return round(cost, 6)
