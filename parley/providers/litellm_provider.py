"""LiteLLM-backed provider for OpenAI-compatible and hosted models."""

from __future__ import annotations

from typing import Any

import litellm
from litellm import acompletion
from loguru import logger

from parley.providers.base import LLMProvider, LLMResponse


class LiteLLMProvider(LLMProvider):
    """Chat completions through LiteLLM's unified interface."""

    def __init__(
        self,
        api_key: str | None = None,
        api_base: str | None = None,
        default_model: str = "gpt-4o-mini",
        extra_headers: dict[str, str] | None = None,
    ):
        super().__init__(api_key, api_base)
        self.default_model = default_model
        self.extra_headers = dict(extra_headers or {})

        litellm.suppress_debug_info = True
        litellm.drop_params = True

    def _resolve_model(self, model: str) -> str:
        """An explicit api_base means an OpenAI-compatible endpoint."""
        if self.api_base and "/" not in model:
            return f"openai/{model}"
        return model

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        resolved = self._resolve_model(model or self.default_model)
        kwargs: dict[str, Any] = {
            "model": resolved,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.extra_headers:
            kwargs["extra_headers"] = self.extra_headers

        try:
            response = await acompletion(**kwargs)
        except Exception as e:
            logger.debug(f"LiteLLM call failed for {resolved}: {e}")
            return LLMResponse(content=f"Error calling LLM: {e}", finish_reason="error")
        return self._parse_response(response)

    def _parse_response(self, response: Any) -> LLMResponse:
        choice = response.choices[0]
        usage: dict[str, int] = {}
        raw_usage = getattr(response, "usage", None)
        if raw_usage is not None:
            usage = {
                "prompt_tokens": int(getattr(raw_usage, "prompt_tokens", 0) or 0),
                "completion_tokens": int(getattr(raw_usage, "completion_tokens", 0) or 0),
                "total_tokens": int(getattr(raw_usage, "total_tokens", 0) or 0),
            }
        return LLMResponse(
            content=choice.message.content,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    def get_default_model(self) -> str:
        return self.default_model
