"""
Tests for the intent router.
"""

import json

import pytest

from agento.errors import RoutingError, UnknownSelectedState
from agento.providers.llm.base import Message
from agento.routing import IntentRouter, RouterReply
from agento.state import resolve_states
from conftest import ScriptedLLM, router_reply


@pytest.fixture
def tree(banking_tree):
    return resolve_states(banking_tree)


class TestRouterReply:
    """Tests for RouterReply validation."""

    def test_accepts_camel_case_and_clamps(self):
        reply = RouterReply.model_validate({"selectedStateKey": "help", "confidence": 150})
        assert reply.selected_state_key == "help"
        assert reply.confidence == 100.0

    def test_bad_confidence_defaults(self):
        assert RouterReply.model_validate({"selected_state_key": "x", "confidence": "high"}).confidence == 50.0

    def test_rejects_empty_key(self):
        with pytest.raises(ValueError):
            RouterReply.model_validate({"selected_state_key": ""})


class TestIntentRouter:
    """Tests for IntentRouter.route."""

    @pytest.mark.asyncio
    async def test_selects_leaf(self, tree):
        llm = ScriptedLLM(router_reply("check_balance", 92, "asks about balance"))
        selection = await IntentRouter(llm).route("What's my balance?", [], tree.leaves)

        assert selection.selected_key == "check_balance"
        assert selection.confidence == 92
        assert selection.reasoning == "asks about balance"
        assert selection.fallback is False

    @pytest.mark.asyncio
    async def test_prompt_lists_only_leaves_with_paths(self, tree):
        llm = ScriptedLLM(router_reply("help"))
        await IntentRouter(llm).route("hi", [], tree.leaves)

        system = llm.calls[0]["messages"][0].content
        assert "- check_balance (banking > check_balance): Check account balance" in system
        assert "- banking (" not in system
        assert "You are a banking assistant" not in system

    @pytest.mark.asyncio
    async def test_includes_last_three_turns_and_metadata(self, tree):
        history = [Message.user(f"turn {i}") for i in range(5)]
        llm = ScriptedLLM(router_reply("help"))

        await IntentRouter(llm).route("and now?", history, tree.leaves, {"channel": "web"})

        user = llm.calls[0]["messages"][1].content
        assert "turn 1" not in user
        assert "user: turn 2" in user and "user: turn 4" in user
        assert "Metadata: {'channel': 'web'}" in user
        assert user.endswith('Please analyze this query: "and now?"')

    @pytest.mark.asyncio
    async def test_uses_low_temperature_by_default(self, tree):
        llm = ScriptedLLM(router_reply("help"))
        await IntentRouter(llm).route("hi", [], tree.leaves)

        assert llm.calls[0]["config"].temperature == 0.1

    @pytest.mark.asyncio
    async def test_malformed_output_falls_back_to_first_leaf(self, tree):
        llm = ScriptedLLM("I'd pick the balance one")
        selection = await IntentRouter(llm).route("balance?", [], tree.leaves)

        assert selection.selected_key == "check_balance"
        assert selection.confidence == 10
        assert selection.fallback is True

    @pytest.mark.asyncio
    async def test_unknown_key_raises(self, tree):
        llm = ScriptedLLM(router_reply("close_account"))

        with pytest.raises(UnknownSelectedState) as exc_info:
            await IntentRouter(llm).route("close my account", [], tree.leaves)
        assert exc_info.value.key == "close_account"
        assert "help" in exc_info.value.available

    @pytest.mark.asyncio
    async def test_parent_key_is_not_selectable(self, tree):
        llm = ScriptedLLM(router_reply("banking"))
        with pytest.raises(UnknownSelectedState):
            await IntentRouter(llm).route("bank stuff", [], tree.leaves)

    @pytest.mark.asyncio
    async def test_key_whitespace_is_stripped(self, tree):
        llm = ScriptedLLM(json.dumps({"selected_state_key": " help ", "confidence": 70}))
        assert (await IntentRouter(llm).route("hi", [], tree.leaves)).selected_key == "help"

    @pytest.mark.asyncio
    async def test_no_leaves(self):
        with pytest.raises(RoutingError):
            await IntentRouter(ScriptedLLM("{}")).route("hi", [], [])

    def test_selection_to_dict(self):
        from agento.routing import IntentSelection

        data = IntentSelection("help", 80.0, "general").to_dict()
        assert data == {"selected_key": "help", "confidence": 80.0, "reasoning": "general", "fallback": False}
