"""
Agent results.

- LoopResult: what the tool-call loop produced for one turn
- QueryResult: what ``AgentPipeline.process_query`` returns

Usage:
    result = await pipeline.process_query("u-1", "What's my balance?", session_id="s-1")

    print(result.response)
    print(result.selected_state, result.confidence)
    for tool in result.tool_results:
        print(f"{tool.tool_name}: {'ok' if tool.success else tool.error}")
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from agento.providers.llm.base import Message
from agento.tools.base import ToolResult


@dataclass(frozen=True, slots=True)
class LoopResult:
    """
    Outcome of the tool-call loop.

    Attributes:
        response: Content of the final model answer
        tool_results: Every tool result, in execution order
        iterations: LLM calls made
        tools_called: Tool names in the order the model requested them
        transcript: Full message list including tool rounds
    """

    response: str
    tool_results: tuple[ToolResult, ...] = ()
    iterations: int = 0
    tools_called: tuple[str, ...] = ()
    transcript: tuple[Message, ...] = ()


@dataclass(frozen=True, slots=True)
class QueryResult:
    """
    Result of one ``process_query`` turn.

    Attributes:
        response: Final answer text
        selected_state: Key of the state that produced the answer
            (the fallback state when an entry guard rerouted)
        tool_results: Tool results of the turn, in execution order
        confidence: Router confidence (0-100)
        reasoning: Router reasoning
        session_id: Session the turn belongs to (None when not persisted)
        strategy: Context orchestration strategy, if an orchestrator ran
        history_strategy: Ladder rung that produced the history, if optimized
        iterations: LLM calls made in the tool loop
        persisted: Whether the turn was written to conversation storage
        guard_action: How an entry-guard denial was handled, if one happened
        routed_state: State the router picked (differs from selected_state
            after a fallback reroute)
    """

    response: str
    selected_state: str
    tool_results: tuple[ToolResult, ...] = ()
    confidence: float = 0.0
    reasoning: str = ""
    session_id: str | None = None
    strategy: str | None = None
    history_strategy: str | None = None
    iterations: int = 0
    persisted: bool = False
    guard_action: str | None = None
    routed_state: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tools_called(self) -> tuple[str, ...]:
        return tuple(r.tool_name for r in self.tool_results)

    @property
    def guard_denied(self) -> bool:
        return self.guard_action is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "response": self.response,
            "selected_state": self.selected_state,
            "routed_state": self.routed_state or self.selected_state,
            "tool_results": [r.to_dict() for r in self.tool_results],
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "session_id": self.session_id,
            "strategy": self.strategy,
            "history_strategy": self.history_strategy,
            "iterations": self.iterations,
            "persisted": self.persisted,
            "guard_action": self.guard_action,
        }
