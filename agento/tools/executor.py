"""
Tool Executor.

Maps tool names to callables and runs invocations with isolated
failure handling. ``execute`` never raises for tool-level problems:

- unregistered name      -> failed result, "not registered"
- unparseable JSON args  -> failed result, "Failed to parse arguments ..."
- function raised        -> failed result carrying the exception message
- per-call deadline hit  -> failed result, "timed out"

Only cancellation propagates.

Concurrency:
    ``execute_many`` runs independent calls concurrently with
    ``asyncio.gather`` and returns results in request order, which is
    the order tool messages are appended to the transcript.

Usage:
    executor = ToolExecutor(timeout_seconds=10)
    executor.register("echo", lambda args: args)

    result = await executor.execute("echo", '{"x": 1}')
    # ToolResult(tool_name="echo", success=True, result={"x": 1})
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

from .base import ToolCallRequest, ToolFunction, ToolResult

logger = logging.getLogger(__name__)


class _DeadlineExceeded(Exception):
    """The executor's per-call deadline expired."""


class ToolExecutor:
    """
    Registry of named tool functions plus the code that runs them.

    Re-registering a name replaces the previous function (last write wins).
    """

    def __init__(self, *, timeout_seconds: float | None = None) -> None:
        self._functions: dict[str, ToolFunction] = {}
        self._timeout = timeout_seconds

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, name: str, fn: ToolFunction) -> None:
        if not name:
            raise ValueError("Tool name must be a non-empty string")
        if not callable(fn):
            raise TypeError(f"Tool '{name}' must be callable")
        if name in self._functions:
            logger.info(f"[tool_executor] Replacing tool: {name}")
        else:
            logger.debug(f"[tool_executor] Registered tool: {name}")
        self._functions[name] = fn

    def register_many(self, functions: Mapping[str, ToolFunction]) -> None:
        for name, fn in functions.items():
            self.register(name, fn)

    def unregister(self, name: str) -> bool:
        return self._functions.pop(name, None) is not None

    def is_registered(self, name: str) -> bool:
        return name in self._functions

    def registered_names(self) -> list[str]:
        return list(self._functions.keys())

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        name: str,
        args: Mapping[str, Any] | str | None = None,
        *,
        tool_call_id: str | None = None,
    ) -> ToolResult:
        """
        Run one tool.

        Args:
            name: Registered tool name
            args: Mapping, or a JSON string as produced by the model
            tool_call_id: Originating model call id, copied onto the result

        Returns:
            ToolResult; failed results carry the reason in ``error``
        """
        fn = self._functions.get(name)
        if fn is None:
            logger.warning(f"[tool_executor] Tool not registered: {name}")
            return ToolResult.failed(
                name, f"Tool '{name}' is not registered", tool_call_id=tool_call_id
            )

        try:
            parsed = self._parse_arguments(args)
        except ValueError as e:
            logger.warning(f"[tool_executor] {name}: {e}")
            return ToolResult.failed(name, str(e), tool_call_id=tool_call_id)

        start = time.perf_counter()
        try:
            result = await self._invoke(fn, parsed)
        except asyncio.CancelledError:
            raise
        except _DeadlineExceeded:
            duration = (time.perf_counter() - start) * 1000
            logger.warning(f"[tool_executor] {name} timed out after {self._timeout}s")
            return ToolResult.failed(
                name,
                f"Tool '{name}' timed out after {self._timeout}s",
                tool_call_id=tool_call_id,
                duration_ms=duration,
            )
        except Exception as e:
            duration = (time.perf_counter() - start) * 1000
            logger.error(f"[tool_executor] Tool execution error in {name}: {e}")
            return ToolResult.failed(
                name, str(e) or type(e).__name__, tool_call_id=tool_call_id, duration_ms=duration
            )

        duration = (time.perf_counter() - start) * 1000
        logger.debug(f"[tool_executor] {name} succeeded in {duration:.1f}ms")
        return ToolResult.succeeded(name, result, tool_call_id=tool_call_id, duration_ms=duration)

    async def execute_many(
        self,
        calls: Sequence[ToolCallRequest],
        *,
        parallel: bool = True,
    ) -> list[ToolResult]:
        """
        Run several calls; results line up with ``calls`` by index.

        Args:
            calls: Requests in the order the model issued them
            parallel: Run concurrently (True) or one after another
        """
        if not calls:
            return []

        if parallel and len(calls) > 1:
            return list(
                await asyncio.gather(
                    *(
                        self.execute(call.name, call.arguments, tool_call_id=call.tool_call_id)
                        for call in calls
                    )
                )
            )

        results = []
        for call in calls:
            results.append(
                await self.execute(call.name, call.arguments, tool_call_id=call.tool_call_id)
            )
        return results

    @staticmethod
    def format_result(result: ToolResult) -> str:
        """Tool-message content: ``Error: ...`` on failure, JSON for dicts and lists."""
        return result.to_message_content()

    async def _invoke(self, fn: ToolFunction, args: dict[str, Any]) -> Any:
        if self._timeout is None:
            return await self._call(fn, args)
        deadline = asyncio.timeout(self._timeout)
        try:
            async with deadline:
                return await self._call(fn, args)
        except TimeoutError:
            # A TimeoutError raised by the tool itself is an ordinary failure
            if deadline.expired():
                raise _DeadlineExceeded() from None
            raise

    @staticmethod
    async def _call(fn: ToolFunction, args: dict[str, Any]) -> Any:
        result = fn(args)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _parse_arguments(args: Mapping[str, Any] | str | None) -> dict[str, Any]:
        """
        Normalize arguments to a dict.

        Raises:
            ValueError: JSON string that does not parse or parses to a non-object,
                or a value that is neither a string nor a mapping
        """
        if args is None:
            return {}
        if isinstance(args, str):
            if not args.strip():
                return {}
            try:
                value = json.loads(args)
            except json.JSONDecodeError as e:
                raise ValueError(f"Failed to parse arguments as JSON: {e}") from e
            if not isinstance(value, dict):
                raise ValueError(
                    f"Failed to parse arguments: expected a JSON object, got {type(value).__name__}"
                )
            return value
        if not isinstance(args, Mapping):
            raise ValueError(
                f"Failed to parse arguments: expected an object, got {type(args).__name__}"
            )
        return dict(args)

    def __len__(self) -> int:
        return len(self._functions)

    def __contains__(self, name: str) -> bool:
        return name in self._functions
