"""
LLM providers for agento.

Usage:
    from agento.providers.llm import OpenAILLMProvider, create_llm_provider

    llm = create_llm_provider(get_settings())
    response = await llm.complete([Message.user("Hello")])
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .anthropic import AnthropicLLMProvider
from .base import (
    BaseLLMProvider,
    LLMProvider,
    LLMResponse,
    Message,
    MessageRole,
    ToolCall,
)
from .openai import OpenAILLMProvider

if TYPE_CHECKING:
    from agento.config.schemas import AgentSettings


def create_llm_provider(settings: "AgentSettings", provider: str | None = None) -> LLMProvider:
    """
    Build an SDK-backed provider from settings.

    Args:
        settings: Runtime settings holding API keys and the default model
        provider: "openai" or "anthropic"; defaults to settings.default_model.provider

    Raises:
        ValueError: Unknown provider or missing API key
    """
    name = provider or settings.default_model.provider or "openai"

    # The configured model name only applies to its own provider
    kwargs = {}
    if settings.default_model.provider == name and settings.default_model.model:
        kwargs["model"] = settings.default_model.model

    if name == "openai":
        if settings.openai_api_key is None:
            raise ValueError("OpenAI API key not configured (AGENTO_OPENAI_API_KEY)")
        return OpenAILLMProvider(
            api_key=settings.openai_api_key.get_secret_value(),
            **kwargs,
        )

    if name == "anthropic":
        if settings.anthropic_api_key is None:
            raise ValueError("Anthropic API key not configured (AGENTO_ANTHROPIC_API_KEY)")
        return AnthropicLLMProvider(
            api_key=settings.anthropic_api_key.get_secret_value(),
            **kwargs,
        )

    raise ValueError(f"Unknown LLM provider: {name}")


__all__ = [
    "AnthropicLLMProvider",
    "BaseLLMProvider",
    "LLMProvider",
    "LLMResponse",
    "Message",
    "MessageRole",
    "OpenAILLMProvider",
    "ToolCall",
    "create_llm_provider",
]
