"""
Agent runtime.

- AgentPipeline: routing, guards, context assembly, tool loop, persistence
- AgentExecutor: the bounded tool-call loop
- QueryResult / LoopResult: turn outcomes
"""

from .executor import AgentExecutor
from .pipeline import AgentPipeline, coerce_history, create_pipeline
from .prompts import build_denial_messages, build_messages, build_system_message
from .result import LoopResult, QueryResult

__all__ = [
    "AgentExecutor",
    "AgentPipeline",
    "LoopResult",
    "QueryResult",
    "build_denial_messages",
    "build_messages",
    "build_system_message",
    "coerce_history",
    "create_pipeline",
]
