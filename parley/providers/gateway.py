"""Model gateway: named model identities with a fallback chain."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from loguru import logger

from parley.config.schema import Config, ModelRouteConfig
from parley.providers.base import LLMProvider
from parley.providers.litellm_provider import LiteLLMProvider

ProviderFactory = Callable[[ModelRouteConfig], LLMProvider]

MAIN = "main"
EVAL = "eval"


def build_provider(route: ModelRouteConfig) -> LLMProvider:
    """Build the runtime provider for a configured route."""
    return LiteLLMProvider(
        api_key=route.api_key or None,
        api_base=route.api_base,
        default_model=route.model,
    )


def should_failover_model(error_text: str) -> bool:
    """Classify whether an LLM error should move on to the next model."""
    text = (error_text or "").lower()
    if not text:
        return False
    retry_markers = (
        "authenticationerror",
        "api key",
        "notfounderror",
        "model not found",
        "badgatewayerror",
        "timeout",
        "timed out",
        "rate limit",
        "429",
        "503",
        "service unavailable",
        "connection",
        "internal_server_error",
    )
    return any(marker in text for marker in retry_markers)


class ModelGateway:
    """Routes completions for the "main" and "eval" identities."""

    def __init__(self, routes: dict[str, ModelRouteConfig], providers: dict[str, LLMProvider]):
        self.routes = routes
        self.providers = providers

    @classmethod
    def from_config(
        cls, config: Config, provider_factory: ProviderFactory = build_provider
    ) -> ModelGateway:
        routes = {MAIN: config.models.main, EVAL: config.models.eval}
        providers = {name: provider_factory(route) for name, route in routes.items() if route.model}
        return cls(routes, providers)

    def route(self, client: str) -> ModelRouteConfig | None:
        return self.routes.get(client)

    def is_configured(self, client: str) -> bool:
        """A route needs a model name and either credentials or an api base."""
        route = self.routes.get(client)
        if route is None or not route.model or client not in self.providers:
            return False
        return bool(route.api_key or route.api_base)

    def model_chain(self, client: str, model: str | None = None) -> list[str]:
        route = self.routes.get(client)
        primary = model or (route.model if route else "")
        chain = [primary] if primary else []
        for fallback in route.fallback_models if route else []:
            if fallback and fallback not in chain:
                chain.append(fallback)
        return chain

    async def complete(
        self,
        client: str,
        model: str | None,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
    ) -> str | None:
        """
        Run one completion against ``client``'s route.

        Returns the text, or None when the final model in the chain reports
        an error. Provider exceptions that do not qualify for failover are
        propagated so callers can retry.
        """
        provider = self.providers.get(client)
        if provider is None:
            logger.error(f"No provider configured for model identity '{client}'")
            return None

        chain = self.model_chain(client, model)
        if not chain:
            logger.error(f"No model configured for identity '{client}'")
            return None

        for index, model_name in enumerate(chain):
            has_next = index < len(chain) - 1
            try:
                response = await provider.chat(
                    messages=messages,
                    model=model_name,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            except Exception as exc:
                if has_next and should_failover_model(str(exc)):
                    logger.warning(
                        f"LLM call failed on {model_name}; retrying with fallback {chain[index + 1]}"
                    )
                    continue
                raise

            if response.is_error:
                error_text = response.content or ""
                if has_next and should_failover_model(error_text):
                    logger.warning(
                        f"LLM response error on {model_name}; retrying with fallback {chain[index + 1]}"
                    )
                    continue
                logger.warning(f"LLM response error on {model_name} ({client}): {error_text[:200]}")
                return None

            if model_name != chain[0]:
                logger.info(f"LLM fallback active for {client}: {model_name}")
            return response.content

        return None
