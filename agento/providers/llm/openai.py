"""
OpenAI LLM Provider for agento.

Uses the Chat Completions API with function calling.
"""

from __future__ import annotations

import logging
from typing import Any

from agento.config.schemas import ModelConfig

from .base import BaseLLMProvider, LLMResponse, Message, ToolCall

logger = logging.getLogger(__name__)


class OpenAILLMProvider(BaseLLMProvider):
    """
    OpenAI-based LLM provider.

    Requirements:
    - openai package
    - an API key (AGENTO_OPENAI_API_KEY when built from settings)
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        organization: str | None = None,
        base_url: str | None = None,
    ):
        super().__init__(default_model=model)
        self._api_key = api_key
        self._organization = organization
        self._base_url = base_url
        self._client = None  # Lazy initialization

    @property
    def name(self) -> str:
        return "openai"

    def _get_client(self):
        """Lazy initialization of OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError(
                    "openai package is required for OpenAI LLM. Install with: pip install openai"
                )
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                organization=self._organization,
                base_url=self._base_url,
            )
        return self._client

    def _build_params(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None,
        config: ModelConfig | None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": self._model_for(config),
            "messages": [msg.to_dict() for msg in messages],
        }
        if config is not None:
            params.update(config.request_params())
        if tools:
            params["tools"] = tools
            params["tool_choice"] = "auto"
        return params

    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        config: ModelConfig | None = None,
    ) -> LLMResponse:
        """
        Generate a completion using OpenAI.

        Returns:
            LLMResponse with content and parsed tool calls
        """
        try:
            client = self._get_client()
            response = await client.chat.completions.create(
                **self._build_params(messages, tools, config)
            )

            choice = response.choices[0]
            tool_calls = [
                ToolCall(
                    id=call.id,
                    name=call.function.name,
                    arguments=call.function.arguments or "{}",
                )
                for call in (choice.message.tool_calls or [])
            ]

            usage = {}
            if response.usage:
                usage = {
                    "input_tokens": response.usage.prompt_tokens,
                    "output_tokens": response.usage.completion_tokens,
                    "total_tokens": response.usage.total_tokens,
                }

            return LLMResponse(
                content=choice.message.content or "",
                tool_calls=tool_calls,
                finish_reason=choice.finish_reason or "stop",
                model=response.model,
                usage=usage,
                provider=self.name,
            )

        except Exception as e:
            logger.error(f"[llm:openai] Completion error: {e}", exc_info=True)
            raise
