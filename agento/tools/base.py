"""
Tool value types.

- ToolSpec: what the model is told about a tool (name, description,
  JSON-schema parameters)
- ToolResult: outcome of one invocation
- ToolFunction: the callable behind a tool name, sync or async

Error Handling:
    Tool execution errors are reported IN the result, not as
    exceptions. The model sees them as ``Error: ...`` tool messages and
    can recover or explain.

Usage:
    spec = ToolSpec(
        name="get_balance",
        description="Get the balance of an account",
        parameters={
            "type": "object",
            "properties": {"account_id": {"type": "string"}},
            "required": ["account_id"],
        },
    )

    ToolResult.succeeded("get_balance", {"balance": 120.5})
    ToolResult.failed("get_balance", "Account not found")
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Union

# (args) -> result | Awaitable[result]; raising marks the call as failed
ToolFunction = Callable[[dict[str, Any]], Union[Any, Awaitable[Any]]]


def _empty_parameters() -> dict[str, Any]:
    return {"type": "object", "properties": {}}


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """
    Model-facing description of a tool.

    ``parameters`` is a JSON Schema object. It is exported as an
    OpenAI-style function schema; provider adapters convert from there.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=_empty_parameters)

    def to_llm_schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True, slots=True)
class ToolResult:
    """
    Result of one tool invocation. Never mutated after creation.

    Attributes:
        tool_name: Name the model asked for
        success: Whether the function returned normally
        result: Whatever the function returned (opaque to the pipeline)
        error: Failure description when success is False
        tool_call_id: Id of the originating model tool call, if any
        duration_ms: Wall time spent in the function
    """

    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
    tool_call_id: str | None = None
    duration_ms: float = 0.0

    @classmethod
    def succeeded(
        cls,
        tool_name: str,
        result: Any,
        *,
        tool_call_id: str | None = None,
        duration_ms: float = 0.0,
    ) -> ToolResult:
        return cls(
            tool_name=tool_name,
            success=True,
            result=result,
            tool_call_id=tool_call_id,
            duration_ms=duration_ms,
        )

    @classmethod
    def failed(
        cls,
        tool_name: str,
        error: str,
        *,
        tool_call_id: str | None = None,
        duration_ms: float = 0.0,
    ) -> ToolResult:
        return cls(
            tool_name=tool_name,
            success=False,
            error=error,
            tool_call_id=tool_call_id,
            duration_ms=duration_ms,
        )

    def to_message_content(self) -> str:
        """
        Render the result as tool-message content for the model.

        Failures become ``Error: <message>``; dicts and lists are JSON;
        anything else goes through ``str``.
        """
        if not self.success:
            return f"Error: {self.error}"
        if isinstance(self.result, str):
            return self.result
        if isinstance(self.result, (dict, list, tuple)):
            return json.dumps(self.result, indent=2, default=str)
        if self.result is None:
            return ""
        return str(self.result)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for persistence."""
        data: dict[str, Any] = {
            "tool_name": self.tool_name,
            "success": self.success,
            "result": self.result,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.tool_call_id is not None:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    """A (name, arguments) pair to execute, with the model's call id."""

    name: str
    arguments: dict[str, Any] | str = "{}"
    tool_call_id: str | None = None
