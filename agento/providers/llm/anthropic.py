"""
Anthropic LLM Provider for agento.

Translates the OpenAI-style message list used throughout agento into
the Messages API shape: the system prompt moves to its own parameter,
assistant tool calls become ``tool_use`` blocks, and tool messages
become ``tool_result`` blocks inside a user turn.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agento.config.schemas import ModelConfig
from agento.utils.json_parser import parse_json_safely

from .base import BaseLLMProvider, LLMResponse, Message, MessageRole, ToolCall

logger = logging.getLogger(__name__)

_DEFAULT_MAX_TOKENS = 1024


def convert_tools(tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """OpenAI function schemas to Anthropic tool definitions."""
    converted = []
    for tool in tools:
        function = tool.get("function", tool)
        converted.append(
            {
                "name": function["name"],
                "description": function.get("description", ""),
                "input_schema": function.get("parameters", {"type": "object", "properties": {}}),
            }
        )
    return converted


def convert_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """
    Split out the system prompt and convert the remaining turns.

    Consecutive tool messages are folded into a single user turn, which
    is what the Messages API expects after a multi-call assistant turn.
    """
    system_parts: list[str] = []
    conversation: list[dict[str, Any]] = []

    for msg in messages:
        if msg.role == MessageRole.SYSTEM:
            system_parts.append(msg.content)
            continue

        if msg.role == MessageRole.TOOL:
            block = {
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
            }
            previous = conversation[-1] if conversation else None
            if (
                previous is not None
                and previous["role"] == "user"
                and isinstance(previous["content"], list)
                and all(b.get("type") == "tool_result" for b in previous["content"])
            ):
                previous["content"].append(block)
            else:
                conversation.append({"role": "user", "content": [block]})
            continue

        if msg.role == MessageRole.ASSISTANT and msg.tool_calls:
            blocks: list[dict[str, Any]] = []
            if msg.content:
                blocks.append({"type": "text", "text": msg.content})
            for call in msg.tool_calls:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": call.id,
                        "name": call.name,
                        "input": parse_json_safely(call.arguments),
                    }
                )
            conversation.append({"role": "assistant", "content": blocks})
            continue

        conversation.append({"role": msg.role.value, "content": msg.content})

    return "\n\n".join(system_parts), conversation


class AnthropicLLMProvider(BaseLLMProvider):
    """
    Anthropic-based LLM provider.

    Requirements:
    - anthropic package
    - an API key (AGENTO_ANTHROPIC_API_KEY when built from settings)
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-haiku-latest",
    ):
        super().__init__(default_model=model)
        self._api_key = api_key
        self._client = None

    @property
    def name(self) -> str:
        return "anthropic"

    def _get_client(self):
        """Lazy initialization of Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError:
                raise ImportError(
                    "anthropic package is required for Anthropic LLM. "
                    "Install with: pip install anthropic"
                )
            self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        config: ModelConfig | None = None,
    ) -> LLMResponse:
        """Generate a completion using Anthropic."""
        try:
            client = self._get_client()
            system_prompt, conversation = convert_messages(messages)

            params: dict[str, Any] = {
                "model": self._model_for(config),
                "max_tokens": (config.max_tokens if config and config.max_tokens else _DEFAULT_MAX_TOKENS),
                "messages": conversation,
            }
            if system_prompt:
                params["system"] = system_prompt
            if config is not None:
                if config.temperature is not None:
                    params["temperature"] = config.temperature
                if config.top_p is not None:
                    params["top_p"] = config.top_p
            if tools:
                params["tools"] = convert_tools(tools)

            response = await client.messages.create(**params)

            text_parts: list[str] = []
            tool_calls: list[ToolCall] = []
            for block in response.content or []:
                if block.type == "text":
                    text_parts.append(block.text)
                elif block.type == "tool_use":
                    tool_calls.append(
                        ToolCall(id=block.id, name=block.name, arguments=json.dumps(block.input))
                    )

            usage = {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
                "total_tokens": response.usage.input_tokens + response.usage.output_tokens,
            }

            return LLMResponse(
                content="".join(text_parts),
                tool_calls=tool_calls,
                finish_reason=response.stop_reason or "end_turn",
                model=response.model,
                usage=usage,
                provider=self.name,
            )

        except Exception as e:
            logger.error(f"[llm:anthropic] Completion error: {e}", exc_info=True)
            raise
