"""
Pytest configuration and fixtures for agento tests.
"""

import json
import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
# This allows `from agento.agent import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from agento.observability import reset_metrics  # noqa: E402
from agento.providers.llm.base import LLMResponse, ToolCall  # noqa: E402
from agento.state.models import StateNode  # noqa: E402

# =============================================================================
# Fake LLM
# =============================================================================


def tool_call(name, arguments=None, call_id=None):
    """Build a ToolCall with JSON-encoded arguments."""
    return ToolCall(
        id=call_id or f"call_{name}",
        name=name,
        arguments=json.dumps(arguments or {}),
    )


def tool_reply(*calls, content=""):
    """An LLM reply that requests ``calls``."""
    return LLMResponse(content=content, tool_calls=list(calls), finish_reason="tool_calls")


class ScriptedLLM:
    """
    LLM provider that replays scripted replies.

    Each reply may be a string, an LLMResponse, an exception instance
    (raised), or a callable taking the messages and returning one of
    those. Once the script runs out, the last reply repeats.
    """

    def __init__(self, *replies, name="scripted"):
        self._replies = list(replies)
        self._name = name
        self.calls = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def push(self, *replies):
        self._replies.extend(replies)

    async def complete(self, messages, *, tools=None, config=None):
        self.calls.append({"messages": list(messages), "tools": tools, "config": config})
        if not self._replies:
            raise AssertionError("ScriptedLLM has no replies left")
        index = min(len(self.calls) - 1, len(self._replies) - 1)
        reply = self._replies[index]
        if callable(reply) and not isinstance(reply, LLMResponse):
            reply = reply(messages)
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, str):
            return LLMResponse(content=reply, provider=self._name)
        return reply


def router_reply(key, confidence=90, reasoning="matched"):
    return json.dumps(
        {"selected_state_key": key, "confidence": confidence, "reasoning": reasoning}
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _fresh_metrics():
    """Each test starts with empty global metrics."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def banking_tree():
    """A two-level tree: banking > (check_balance, transfer_funds), plus help."""
    return [
        StateNode(
            key="banking",
            description="Banking operations",
            prompt="You are a banking assistant.",
            contexts=["bank_policies"],
            tools=["get_account"],
            children=[
                StateNode(
                    key="check_balance",
                    description="Check account balance",
                    prompt="Help the user check their balance.",
                    tools=["get_balance"],
                ),
                StateNode(
                    key="transfer_funds",
                    description="Move money between accounts",
                    prompt="Help the user transfer money.",
                    tools=["transfer"],
                ),
            ],
        ),
        StateNode(
            key="help",
            description="General help",
            prompt="You answer general questions.",
        ),
    ]
