"""
Tools for agento.

- ToolSpec / ToolRegistry: what the model is told about tools
- ToolExecutor: named callables and failure-isolated execution
- ToolResult: per-invocation outcome
"""

from .base import ToolCallRequest, ToolFunction, ToolResult, ToolSpec
from .executor import ToolExecutor
from .registry import ToolRegistry, ToolRegistryError

__all__ = [
    "ToolCallRequest",
    "ToolExecutor",
    "ToolFunction",
    "ToolRegistry",
    "ToolRegistryError",
    "ToolResult",
    "ToolSpec",
]
