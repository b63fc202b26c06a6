import asyncio
from typing import Any

import pytest

from parley.config.schema import Config, ModelRouteConfig
from parley.providers.base import LLMProvider, LLMResponse
from parley.providers.gateway import EVAL, MAIN, ModelGateway, should_failover_model


class RouteTestProvider(LLMProvider):
    def __init__(self, responses: dict[str, Any]):
        super().__init__(api_key="", api_base=None)
        self.responses = responses
        self.calls: list[str] = []

    async def chat(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
    ) -> LLMResponse:
        model_name = model or self.get_default_model()
        self.calls.append(model_name)
        outcome = self.responses[model_name]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def get_default_model(self) -> str:
        return "primary-model"


def _gateway(provider: LLMProvider, fallbacks: list[str]) -> ModelGateway:
    route = ModelRouteConfig(model="primary-model", api_key="sk-test", fallback_models=fallbacks)
    return ModelGateway({MAIN: route}, {MAIN: provider})


def _complete(gateway: ModelGateway) -> str | None:
    return asyncio.run(gateway.complete(MAIN, None, [{"role": "user", "content": "hi"}], 0.7, 256))


def test_should_failover_model_markers():
    assert should_failover_model("RateLimitError: 429")
    assert should_failover_model("Request timed out")
    assert should_failover_model("AuthenticationError: invalid api key")
    assert not should_failover_model("BadRequestError: context length exceeded")
    assert not should_failover_model("")


def test_error_response_fails_over_to_next_model():
    provider = RouteTestProvider(
        {
            "primary-model": LLMResponse(content="Error calling LLM: 503 service unavailable", finish_reason="error"),
            "backup-model": LLMResponse(content="from backup"),
        }
    )

    assert _complete(_gateway(provider, ["primary-model", "backup-model", "backup-model"])) == "from backup"
    assert provider.calls == ["primary-model", "backup-model"]


def test_non_failover_error_returns_none():
    provider = RouteTestProvider(
        {
            "primary-model": LLMResponse(content="Error calling LLM: context length exceeded", finish_reason="error"),
            "backup-model": LLMResponse(content="unused"),
        }
    )

    assert _complete(_gateway(provider, ["backup-model"])) is None
    assert provider.calls == ["primary-model"]


def test_exceptions_fail_over_or_propagate():
    flaky = RouteTestProvider(
        {"primary-model": ConnectionError("connection reset"), "backup-model": LLMResponse(content="ok")}
    )
    assert _complete(_gateway(flaky, ["backup-model"])) == "ok"

    broken = RouteTestProvider({"primary-model": ValueError("malformed request")})
    with pytest.raises(ValueError):
        _complete(_gateway(broken, ["backup-model"]))


def test_from_config_requires_credentials_or_base():
    built: list[ModelRouteConfig] = []

    def factory(route: ModelRouteConfig) -> LLMProvider:
        built.append(route)
        return RouteTestProvider({})

    config = Config.model_validate(
        {
            "models": {
                "main": {"model": "gpt-4o", "api_key": "sk-live"},
                "eval": {"model": "local-eval"},
            }
        }
    )
    gateway = ModelGateway.from_config(config, provider_factory=factory)

    assert [route.model for route in built] == ["gpt-4o", "local-eval"]
    assert gateway.is_configured(MAIN)
    assert not gateway.is_configured(EVAL)
    assert gateway.model_chain(MAIN) == ["gpt-4o"]
