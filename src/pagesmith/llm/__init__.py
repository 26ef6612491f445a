from .http import HttpLLMProvider
from .provider import (
    InvalidResponse,
    LLMContext,
    LLMError,
    LLMProvider,
    LLMResult,
    LLMTimeout,
    RateLimited,
    estimate_cost,
)

__all__ = [
    "HttpLLMProvider",
    "InvalidResponse",
    "LLMContext",
    "LLMError",
    "LLMProvider",
    "LLMResult",
    "LLMTimeout",
    "RateLimited",
    "estimate_cost",
]
