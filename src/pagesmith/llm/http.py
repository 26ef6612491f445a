from __future__ import annotations

import logging
from typing import Any

from ..config import LLMConfig
from ..http_client import HttpError, HttpTimeout, NetworkError, request_json
from ..utils import log_event
from .provider import InvalidResponse, LLMContext, LLMResult, LLMTimeout, RateLimited

SUPPORTED_PROVIDERS = ("anthropic", "openai_compatible")

logger = logging.getLogger("pagesmith.llm")


class HttpLLMProvider:
    """Vendor adapter over plain HTTP. Knows nothing about pipeline stages."""

    def __init__(self, config: LLMConfig, api_key: str | None) -> None:
        if config.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"unsupported_provider_type: {config.provider}")
        self.config = config
        self.api_key = api_key
        self.base_url = config.base_url or _default_base_url(config.provider)

    def complete(self, prompt: str, context: LLMContext) -> LLMResult:
        model = context.model or self.config.model
        max_tokens = context.max_tokens or self.config.max_tokens
        temperature = (
            context.temperature if context.temperature is not None else self.config.temperature
        )
        if self.config.provider == "anthropic":
            url = _join_url(self.base_url, "/messages")
            payload: dict[str, Any] = {
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "messages": [{"role": "user", "content": prompt}],
            }
            if context.system:
                payload["system"] = context.system
            response = self._post(url, payload)
            return _read_anthropic(response, model)
        url = _join_url(self.base_url, "/chat/completions")
        messages = []
        if context.system:
            messages.append({"role": "system", "content": context.system})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        response = self._post(url, payload)
        return _read_openai(response, model)

    def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        headers = _auth_headers(self.config.provider, self.api_key)
        try:
            response = request_json("POST", url, headers, payload, self.config.timeout_seconds)
        except HttpError as exc:
            log_event(logger, logging.WARNING, "llm_http_error", status=exc.status)
            if exc.status == 429:
                raise RateLimited(str(exc), retry_after=_retry_after(exc.headers)) from exc
            if exc.status in (408, 504) or exc.status >= 500:
                raise LLMTimeout(str(exc)) from exc
            raise InvalidResponse(str(exc)) from exc
        except (HttpTimeout, NetworkError) as exc:
            log_event(logger, logging.WARNING, "llm_transport_error", error=str(exc))
            raise LLMTimeout(str(exc)) from exc
        if not isinstance(response, dict) or "raw" in response:
            raise InvalidResponse("llm_response_not_json")
        return response


def _read_anthropic(response: dict[str, Any], model: str) -> LLMResult:
    content = response.get("content") or []
    texts = [
        block.get("text") or ""
        for block in content
        if isinstance(block, dict) and block.get("type", "text") == "text"
    ]
    if not texts:
        raise InvalidResponse("anthropic_missing_content")
    usage = response.get("usage") or {}
    return LLMResult(
        text="".join(texts),
        prompt_tokens=int(usage.get("input_tokens") or 0),
        completion_tokens=int(usage.get("output_tokens") or 0),
        model=str(response.get("model") or model),
    )


def _read_openai(response: dict[str, Any], model: str) -> LLMResult:
    choices = response.get("choices") or []
    if not choices:
        raise InvalidResponse("openai_missing_choices")
    message = choices[0].get("message") or {}
    text = message.get("content")
    if not isinstance(text, str):
        raise InvalidResponse("openai_missing_content")
    usage = response.get("usage") or {}
    return LLMResult(
        text=text,
        prompt_tokens=int(usage.get("prompt_tokens") or 0),
        completion_tokens=int(usage.get("completion_tokens") or 0),
        model=str(response.get("model") or model),
    )


def _retry_after(headers: dict[str, str]) -> float | None:
    for key, value in headers.items():
        if key.lower() == "retry-after":
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


def _auth_headers(provider_type: str, api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    if provider_type == "openai_compatible":
        return {"Authorization": f"Bearer {api_key}"}
    if provider_type == "anthropic":
        return {"x-api-key": api_key, "anthropic-version": "2023-06-01"}
    return {}


def _default_base_url(provider_type: str) -> str:
    if provider_type == "openai_compatible":
        return "https://api.openai.com/v1"
    if provider_type == "anthropic":
        return "https://api.anthropic.com/v1"
    return ""


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
