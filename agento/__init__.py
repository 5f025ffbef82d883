"""
Agento - a hierarchical-state agent runtime for LLM applications.

Agento answers a user query by routing it to one leaf of an intent state
tree, checking the state's guards, assembling the state's prompt,
contexts and tools, and running a bounded tool-call loop against an
LLM provider:

- **State Tree**: Prompts, contexts and tools inherited down a hierarchy
- **Intent Routing**: LLM classification over leaf states
- **Guards**: Entry/exit checks with fallback, custom or explained denials
- **Tool Loop**: Parallel, failure-isolated tool calls with an iteration cap
- **Conversation Memory**: Token-bounded history with a fallback ladder
- **Context Orchestration**: Multi-source ranking with a reasoning log

Quick Start:
    >>> from agento import AgentPipeline, StateNode
    >>> from agento.providers.llm import OpenAILLMProvider
    >>>
    >>> pipeline = AgentPipeline(
    ...     states=[StateNode(key="support", description="Customer support", prompt="Be helpful.")],
    ...     llm=OpenAILLMProvider(api_key="sk-..."),
    ... )
    >>> result = await pipeline.process_query("u-1", "Where is my order?")
"""

__version__ = "0.1.0"
__license__ = "MIT"

from agento.agent import AgentPipeline, QueryResult, create_pipeline
from agento.config import AgentSettings, ModelConfig, get_settings
from agento.errors import (
    AgentoError,
    CollaboratorTimeout,
    ConfigurationError,
    GuardDenied,
    MaxIterationsExceeded,
    RoutingError,
    StorageFailure,
    UnknownSelectedState,
)
from agento.state import GuardAction, GuardContext, GuardResult, StateNode
from agento.tools import ToolResult, ToolSpec

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Runtime
    "AgentPipeline",
    "QueryResult",
    "create_pipeline",
    # Configuration
    "AgentSettings",
    "ModelConfig",
    "get_settings",
    # State tree
    "StateNode",
    "GuardAction",
    "GuardContext",
    "GuardResult",
    # Tools
    "ToolSpec",
    "ToolResult",
    # Errors
    "AgentoError",
    "CollaboratorTimeout",
    "ConfigurationError",
    "GuardDenied",
    "MaxIterationsExceeded",
    "RoutingError",
    "StorageFailure",
    "UnknownSelectedState",
]
