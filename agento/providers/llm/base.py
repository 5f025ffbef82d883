"""
LLM Provider Protocol for agento.

Defines the message, tool-call and response shapes exchanged with the
language-model backend, plus the provider interface every adapter
implements.

Message dictionaries follow the OpenAI chat format (``tool_calls`` on
assistant messages, ``tool_call_id`` on tool messages). Adapters for
other vendors translate from it.
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from agento.config.schemas import ModelConfig


class MessageRole(str, Enum):
    """Role of a message in the conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ToolCall:
    """
    A tool invocation requested by the model.

    ``arguments`` is the raw JSON string the model produced; it is
    parsed by the ToolExecutor, not here.
    """

    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        function = data.get("function") or {}
        arguments = function.get("arguments", data.get("arguments", "{}"))
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=data["id"],
            name=function.get("name", data.get("name", "")),
            arguments=arguments,
        )


@dataclass
class Message:
    """
    A message in the LLM conversation.

    Attributes:
        role: Role of the message sender
        content: Text content of the message
        name: Optional name for the sender
        tool_calls: Tool calls requested by an assistant message
        tool_call_id: Originating call id for a tool message
        timestamp: When the message was produced (history only, not sent)
    """

    role: MessageRole
    content: str
    name: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.name:
            result["name"] = self.name
        if self.tool_calls:
            result["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            result["tool_call_id"] = self.tool_call_id
        return result

    @classmethod
    def system(cls, content: str) -> Message:
        """Create a system message."""
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        """Create a user message."""
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: tuple[ToolCall, ...] = ()) -> Message:
        """Create an assistant message, optionally carrying tool calls."""
        return cls(role=MessageRole.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, content: str, tool_call_id: str, name: str | None = None) -> Message:
        """Create a tool-result message answering ``tool_call_id``."""
        return cls(role=MessageRole.TOOL, content=content, tool_call_id=tool_call_id, name=name)


@dataclass
class LLMResponse:
    """
    Response from LLM completion.

    Attributes:
        content: The generated text content
        tool_calls: Tool invocations requested by the model
        finish_reason: Why generation stopped
        model: Model used for generation
        usage: Token usage statistics
        provider: Name of the provider
    """

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    provider: str = ""

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def input_tokens(self) -> int:
        return self.usage.get("input_tokens", 0)

    @property
    def output_tokens(self) -> int:
        return self.usage.get("output_tokens", 0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@runtime_checkable
class LLMProvider(Protocol):
    """
    Protocol for LLM providers.

    Implementations must provide:
    - complete(): Generate a reply (text and/or tool calls) from messages
    - name: Provider identifier
    """

    @property
    def name(self) -> str:
        """Provider name for logging and configuration."""
        ...

    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        config: ModelConfig | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from messages.

        Args:
            messages: Conversation so far (system/user/assistant/tool)
            tools: Function schemas the model may call
            config: Model settings for this call

        Returns:
            LLMResponse with content and any requested tool calls
        """
        ...


class BaseLLMProvider(ABC):
    """
    Base class for LLM provider implementations.

    Provides common functionality and enforces interface.
    """

    def __init__(self, default_model: str = ""):
        self.default_model = default_model

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        *,
        tools: list[dict[str, Any]] | None = None,
        config: ModelConfig | None = None,
    ) -> LLMResponse:
        """Generate a completion from messages."""

    def _model_for(self, config: ModelConfig | None) -> str:
        if config is not None and config.model:
            return config.model
        return self.default_model

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}', model='{self.default_model}')"
