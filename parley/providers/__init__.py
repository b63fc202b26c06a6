"""LLM provider abstraction module."""

from parley.providers.base import LLMProvider, LLMResponse
from parley.providers.gateway import EVAL, MAIN, ModelGateway, build_provider
from parley.providers.litellm_provider import LiteLLMProvider

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "LiteLLMProvider",
    "ModelGateway",
    "build_provider",
    "MAIN",
    "EVAL",
]
