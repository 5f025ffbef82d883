"""
Agent Executor (Tool-Call Loop).

Runs the bounded loop for one turn:
1. Send the transcript plus tool schemas to the model
2. No tool calls in the reply -> done, the reply is the answer
3. Otherwise append the assistant message with its tool calls, run the
   calls, append one tool message per call, loop back

Invariants:
    - At most ``max_iterations`` model calls per turn
    - Still requesting tools after the last allowed call raises
      MaxIterationsExceeded; there is no partial answer
    - Tool messages follow request order and carry the call's id
    - A failing tool never aborts the loop; the model sees ``Error: ...``

Tool calls within one reply run concurrently (``asyncio.gather``) unless
``parallel_tool_calls`` is off; ordering is the same either way.

Usage:
    executor = AgentExecutor(llm, tools=tool_executor, max_iterations=5)
    result = await executor.run(
        messages,
        tool_schemas=registry.to_llm_schemas(state.tools),
        allowed_tools=state.tools,
        config=state.llm_config,
    )
    print(result.response, result.iterations)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import Any

from agento.config.schemas import ModelConfig
from agento.errors import MaxIterationsExceeded
from agento.observability import TurnLogger, get_metrics
from agento.providers.llm.base import LLMProvider, Message, ToolCall
from agento.tools.base import ToolCallRequest, ToolResult
from agento.tools.executor import ToolExecutor
from agento.utils.structured import complete_with_deadline

from .result import LoopResult

logger = logging.getLogger(__name__)


class AgentExecutor:
    """
    Executes the tool-call loop with bounded iteration.

    Args:
        llm: Provider for the conversation model
        tools: Executor holding the tool implementations
        max_iterations: Maximum model calls per turn
        parallel_tool_calls: Run the calls of one reply concurrently
        llm_timeout: Deadline for each model call in seconds
    """

    def __init__(
        self,
        llm: LLMProvider,
        *,
        tools: ToolExecutor,
        max_iterations: int = 5,
        parallel_tool_calls: bool = True,
        llm_timeout: float | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self._llm = llm
        self._tools = tools
        self._max_iterations = max_iterations
        self._parallel = parallel_tool_calls
        self._llm_timeout = llm_timeout

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    async def run(
        self,
        messages: Sequence[Message],
        *,
        tool_schemas: list[dict[str, Any]] | None = None,
        allowed_tools: Iterable[str] | None = None,
        config: ModelConfig | None = None,
        turn_log: TurnLogger | None = None,
    ) -> LoopResult:
        """
        Run the loop until the model answers without tool calls.

        Args:
            messages: Initial transcript (system, history, user)
            tool_schemas: Function schemas offered to the model
            allowed_tools: Names the model may call (None = any registered)
            config: Model settings for every call
            turn_log: Per-turn structured logger

        Returns:
            LoopResult with the answer, tool results and transcript

        Raises:
            MaxIterationsExceeded: Tools still requested after the last call
            CollaboratorTimeout: A model call exceeded ``llm_timeout``
        """
        transcript = list(messages)
        allowed = set(allowed_tools) if allowed_tools is not None else None
        results: list[ToolResult] = []
        tools_called: list[str] = []

        for iteration in range(1, self._max_iterations + 1):
            logger.debug(f"[agent_executor] Iteration {iteration}/{self._max_iterations}")

            response = await complete_with_deadline(
                self._llm,
                transcript,
                tools=tool_schemas or None,
                config=config,
                timeout=self._llm_timeout,
                operation="llm_call",
            )

            if not response.has_tool_calls:
                logger.info(
                    f"[agent_executor] Answered after {iteration} iteration(s), "
                    f"{len(results)} tool call(s)"
                )
                return LoopResult(
                    response=response.content,
                    tool_results=tuple(results),
                    iterations=iteration,
                    tools_called=tuple(tools_called),
                    transcript=tuple(transcript),
                )

            calls = list(response.tool_calls)
            transcript.append(Message.assistant(response.content, tuple(calls)))
            round_results = await self._execute_calls(calls, allowed)

            for call, result in zip(calls, round_results):
                transcript.append(
                    Message.tool(self._tools.format_result(result), tool_call_id=call.id, name=call.name)
                )
                tools_called.append(call.name)
                get_metrics().record_tool_call(result.success)
                if turn_log is not None:
                    turn_log.tool_executed(result.tool_name, result.success, result.duration_ms, result.error)
                if not result.success:
                    logger.warning(f"[agent_executor] Tool {call.name} failed: {result.error}")
            results.extend(round_results)

        logger.warning(f"[agent_executor] Max iterations ({self._max_iterations}) reached")
        raise MaxIterationsExceeded(self._max_iterations, tuple(tools_called))

    async def _execute_calls(
        self,
        calls: Sequence[ToolCall],
        allowed: set[str] | None,
    ) -> list[ToolResult]:
        """Run one reply's calls; results line up with ``calls``."""
        results: list[ToolResult | None] = [None] * len(calls)
        runnable: list[tuple[int, ToolCallRequest]] = []

        for index, call in enumerate(calls):
            if allowed is not None and call.name not in allowed:
                logger.warning(f"[agent_executor] Model requested tool outside this state: {call.name}")
                results[index] = ToolResult.failed(
                    call.name,
                    f"Tool '{call.name}' is not available in this state",
                    tool_call_id=call.id,
                )
            else:
                runnable.append(
                    (index, ToolCallRequest(name=call.name, arguments=call.arguments, tool_call_id=call.id))
                )

        executed = await self._tools.execute_many(
            [request for _, request in runnable], parallel=self._parallel
        )
        for (index, _), result in zip(runnable, executed):
            results[index] = result

        return [r for r in results if r is not None]
