"""
Tests for AgentPipeline.

Covers:
- Routing, context assembly and the tool loop on the happy path
- Entry guard outcomes (fallback reroute, custom response, explained denial)
- Leave guard denial
- Persistence, summaries and best-effort writes
- Per-session serialization and turn deadlines
- Orchestrator integration and the factory
"""

import asyncio
import json

import pytest

from agento.agent import AgentPipeline, create_pipeline
from agento.agent.pipeline import DEFAULT_DENIAL_MESSAGE, coerce_history
from agento.config.schemas import AgentSettings, ConversationSettings
from agento.context import ContextOrchestrator, InMemoryKnowledgeBase, KnowledgeDocument
from agento.conversation import InMemoryConversationStorage, StoredMessage
from agento.errors import (
    CollaboratorTimeout,
    ConfigurationError,
    GuardDenied,
    MaxIterationsExceeded,
    UnknownSelectedState,
)
from agento.observability import get_metrics
from agento.providers.llm.base import Message, MessageRole
from agento.state.contexts import ContextDefinition
from agento.state.guards import EnhancedGuard, GuardAction, GuardResult, SimpleGuard
from agento.tools.base import ToolSpec
from conftest import ScriptedLLM, router_reply, tool_call, tool_reply

POLICIES = ContextDefinition.static("bank_policies", "Bank policies", "No overdrafts.")


def spec(name):
    return ToolSpec(
        name=name,
        description=f"{name} tool",
        parameters={"type": "object", "properties": {"account_id": {"type": "string"}}},
    )


def make_pipeline(tree, llm, route_to="check_balance", **kwargs):
    router_llm = kwargs.pop("router_llm", None) or ScriptedLLM(router_reply(route_to, 88, "keyword match"))
    pipeline = AgentPipeline(tree, llm=llm, router_llm=router_llm, contexts=[POLICIES], **kwargs)
    pipeline.register_tool(spec("get_account"), lambda args: {"id": "a-1"})
    pipeline.register_tool(spec("get_balance"), lambda args: {"balance": 120.5})
    pipeline.register_tool(spec("transfer"), lambda args: {"ok": True})
    return pipeline


def offered_tools(call):
    return [schema["function"]["name"] for schema in call["tools"] or []]


class TestHappyPath:
    """Tests for a routed turn with tools."""

    @pytest.mark.asyncio
    async def test_tool_turn(self, banking_tree):
        llm = ScriptedLLM(
            tool_reply(tool_call("get_balance", {"account_id": "a-1"})),
            "Your balance is $120.50",
        )
        pipeline = make_pipeline(banking_tree, llm)

        result = await pipeline.process_query("u-1", "What's my balance?")

        assert result.response == "Your balance is $120.50"
        assert result.selected_state == "check_balance"
        assert result.routed_state == "check_balance"
        assert result.tools_called == ("get_balance",)
        assert result.confidence == 88
        assert result.reasoning == "keyword match"
        assert result.iterations == 2
        assert result.session_id is None
        assert result.persisted is False
        assert result.guard_action is None

    @pytest.mark.asyncio
    async def test_system_message_and_tool_scope(self, banking_tree):
        llm = ScriptedLLM("Sure")
        pipeline = make_pipeline(banking_tree, llm)

        await pipeline.process_query("u-1", "What's my balance?", metadata={"tier": "gold"})

        system = llm.calls[0]["messages"][0].content
        assert system.startswith("You are a banking assistant.\n\nHelp the user check their balance.")
        assert "--- Context ---\nBank policies:\nNo overdrafts." in system
        assert "Selected State: check_balance (88% confidence)" in system
        assert '"tier": "gold"' in system
        assert offered_tools(llm.calls[0]) == ["get_account", "get_balance"]

    @pytest.mark.asyncio
    async def test_caller_history_reaches_router_and_model(self, banking_tree):
        router = ScriptedLLM(router_reply("help"))
        llm = ScriptedLLM("Anything else?")
        pipeline = make_pipeline(banking_tree, llm, router_llm=router)

        await pipeline.process_query(
            "u-1",
            "thanks",
            history=[{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        )

        assert "user: hi" in router.calls[0]["messages"][1].content
        roles = [m.role for m in llm.calls[0]["messages"]]
        assert roles == [MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT, MessageRole.USER]

    @pytest.mark.asyncio
    async def test_unknown_state_fails_the_turn(self, banking_tree):
        pipeline = make_pipeline(banking_tree, ScriptedLLM("x"), route_to="close_account")

        with pytest.raises(UnknownSelectedState):
            await pipeline.process_query("u-1", "close my account")
        assert get_metrics().queries_failed == 1

    @pytest.mark.asyncio
    async def test_iteration_cap_propagates(self, banking_tree):
        llm = ScriptedLLM(tool_reply(tool_call("get_balance")))
        pipeline = make_pipeline(banking_tree, llm, settings=AgentSettings(max_tool_iterations=2))

        with pytest.raises(MaxIterationsExceeded):
            await pipeline.process_query("u-1", "balance?")
        assert llm.call_count == 2

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, banking_tree):
        pipeline = make_pipeline(banking_tree, ScriptedLLM("ok"))
        await pipeline.process_query("u-1", "balance?")

        metrics = get_metrics()
        assert metrics.queries_total == 1
        assert metrics.queries_success == 1


class TestEntryGuards:
    """Tests for entry-guard denial handling."""

    @pytest.mark.asyncio
    async def test_fallback_reroutes(self, banking_tree):
        banking_tree[0].children[1].on_enter = EnhancedGuard(
            lambda ctx: GuardResult.deny(
                "Account not verified",
                alternative_action=GuardAction.FALLBACK_STATE,
                fallback_state_key="help",
                custom_message="Verification required",
            )
        )
        llm = ScriptedLLM("Let me help you verify first.")
        pipeline = make_pipeline(banking_tree, llm, route_to="transfer_funds")

        result = await pipeline.process_query("u-1", "send $50 to Bob")

        assert result.selected_state == "help"
        assert result.routed_state == "transfer_funds"
        assert result.guard_action == "fallback_state"
        assert result.response == "Let me help you verify first."
        system = llm.calls[0]["messages"][0].content
        assert system.startswith("You answer general questions.")
        assert '"guard_notice": "Verification required"' in system
        assert llm.calls[0]["tools"] is None
        assert get_metrics().guard_denials == 1

    @pytest.mark.asyncio
    async def test_fallback_state_guard_is_not_evaluated(self, banking_tree):
        banking_tree[0].children[1].on_enter = EnhancedGuard(
            lambda ctx: {"allowed": False, "alternativeAction": "fallback_state", "fallbackStateKey": "help"}
        )
        banking_tree[1].on_enter = SimpleGuard(lambda ctx: False)
        pipeline = make_pipeline(banking_tree, ScriptedLLM("ok"), route_to="transfer_funds")

        result = await pipeline.process_query("u-1", "transfer")
        assert result.selected_state == "help"

    @pytest.mark.asyncio
    async def test_custom_response_skips_model(self, banking_tree):
        banking_tree[0].children[1].on_enter = EnhancedGuard(
            lambda ctx: GuardResult.deny(
                "Closed", alternative_action="custom_response", custom_message="Not available"
            )
        )
        llm = ScriptedLLM("should not be used")
        pipeline = make_pipeline(banking_tree, llm, route_to="transfer_funds")

        result = await pipeline.process_query("u-1", "transfer")

        assert result.response == "Not available"
        assert result.guard_action == "custom_response"
        assert result.selected_state == "transfer_funds"
        assert llm.call_count == 0

    @pytest.mark.asyncio
    async def test_custom_response_default_message(self, banking_tree):
        banking_tree[0].children[1].on_enter = EnhancedGuard(
            lambda ctx: GuardResult.deny(alternative_action=GuardAction.CUSTOM_RESPONSE)
        )
        pipeline = make_pipeline(banking_tree, ScriptedLLM("x"), route_to="transfer_funds")

        result = await pipeline.process_query("u-1", "transfer")
        assert result.response == DEFAULT_DENIAL_MESSAGE

    @pytest.mark.asyncio
    async def test_fallback_without_target_returns_reason(self, banking_tree):
        banking_tree[0].children[1].on_enter = EnhancedGuard(
            lambda ctx: GuardResult.deny("Not verified", alternative_action=GuardAction.FALLBACK_STATE)
        )
        llm = ScriptedLLM("should not be used")
        pipeline = make_pipeline(banking_tree, llm, route_to="transfer_funds")

        result = await pipeline.process_query("u-1", "transfer")

        assert result.response == "Not verified"
        assert result.guard_action == "fallback_unavailable"
        assert result.selected_state == "transfer_funds"
        assert llm.call_count == 0

    @pytest.mark.asyncio
    async def test_plain_denial_is_explained_without_tools(self, banking_tree):
        banking_tree[0].children[1].on_enter = SimpleGuard(lambda ctx: False, name="verified")
        llm = ScriptedLLM("I can't move money right now.")
        pipeline = make_pipeline(banking_tree, llm, route_to="transfer_funds")

        result = await pipeline.process_query("u-1", "transfer")

        assert result.response == "I can't move money right now."
        assert result.guard_action == "denied"
        assert result.guard_denied is True
        assert llm.call_count == 1
        assert llm.calls[0]["tools"] is None
        assert 'reason: "Condition not met"' in llm.calls[0]["messages"][0].content

    @pytest.mark.asyncio
    async def test_guard_sees_previous_state(self, banking_tree):
        seen = []

        def record(ctx):
            seen.append(ctx)
            return True

        banking_tree[0].children[1].on_enter = SimpleGuard(record)
        router = ScriptedLLM(router_reply("check_balance"), router_reply("transfer_funds"))
        pipeline = make_pipeline(banking_tree, ScriptedLLM("ok"), router_llm=router)

        await pipeline.process_query("u-1", "balance?", session_id="s-1")
        await pipeline.process_query("u-1", "now move $5", session_id="s-1", metadata={"verified": True})

        assert seen[0].previous_state == "check_balance"
        assert seen[0].user_query == "now move $5"
        assert seen[0].metadata == {"verified": True}

    @pytest.mark.asyncio
    async def test_guard_errors_propagate(self, banking_tree):
        def broken(ctx):
            raise RuntimeError("guard backend down")

        banking_tree[0].children[0].on_enter = SimpleGuard(broken)
        pipeline = make_pipeline(banking_tree, ScriptedLLM("x"))

        with pytest.raises(RuntimeError, match="guard backend down"):
            await pipeline.process_query("u-1", "balance?")


class TestLeaveGuard:
    """Tests for leave-guard denial."""

    @pytest.mark.asyncio
    async def test_leave_denial_raises_and_persists_nothing(self, banking_tree):
        banking_tree[0].children[0].on_leave = EnhancedGuard(
            lambda ctx: GuardResult.deny("Must confirm first")
        )
        storage = InMemoryConversationStorage()
        pipeline = make_pipeline(banking_tree, ScriptedLLM("Your balance is $5"), storage=storage)

        with pytest.raises(GuardDenied) as exc_info:
            await pipeline.process_query("u-1", "balance?", session_id="s-1")

        assert exc_info.value.phase == "leave"
        assert exc_info.value.state_key == "check_balance"
        assert await pipeline.get_conversation_history("s-1") == []


class TestPersistence:
    """Tests for conversation persistence."""

    @pytest.mark.asyncio
    async def test_turns_are_stored_and_reloaded(self, banking_tree):
        storage = InMemoryConversationStorage()
        llm = ScriptedLLM("First answer", "Second answer")
        pipeline = make_pipeline(banking_tree, llm, route_to="help", storage=storage)

        first = await pipeline.process_query("u-1", "hello", session_id="s-1")
        await pipeline.process_query("u-1", "and again", session_id="s-1")

        assert first.persisted is True
        assert first.history_strategy == "recent"
        stored = await pipeline.get_conversation_history("s-1")
        assert [(m.role, m.content) for m in stored] == [
            (MessageRole.USER, "hello"),
            (MessageRole.ASSISTANT, "First answer"),
            (MessageRole.USER, "and again"),
            (MessageRole.ASSISTANT, "Second answer"),
        ]
        assert stored[1].state_key == "help"
        assert stored[1].metadata["confidence"] == 88

        second_call = [m.content for m in llm.calls[1]["messages"]]
        assert second_call[1:] == ["hello", "First answer", "and again"]

    @pytest.mark.asyncio
    async def test_session_id_is_generated(self, banking_tree):
        pipeline = make_pipeline(banking_tree, ScriptedLLM("hi"), storage=InMemoryConversationStorage())

        result = await pipeline.process_query("u-1", "hello")

        assert result.session_id
        assert len(await pipeline.get_conversation_history(result.session_id)) == 2

    @pytest.mark.asyncio
    async def test_storage_failure_still_answers(self, banking_tree):
        class FailingWrites(InMemoryConversationStorage):
            async def store_message(self, message):
                raise ConnectionError("redis down")

        pipeline = make_pipeline(banking_tree, ScriptedLLM("Your balance is $5"), storage=FailingWrites())

        result = await pipeline.process_query("u-1", "balance?", session_id="s-1")

        assert result.response == "Your balance is $5"
        assert result.persisted is False
        assert get_metrics().storage_failures == 1
        assert get_metrics().queries_success == 1

    @pytest.mark.asyncio
    async def test_summary_is_added_as_context(self, banking_tree):
        storage = InMemoryConversationStorage()
        for i in range(25):
            await storage.store_message(
                StoredMessage(session_id="s-1", role="user" if i % 2 == 0 else "assistant", content="x" * 40)
            )
        await storage.update_session_summary("s-1", "S" * 40)
        settings = AgentSettings(conversation=ConversationSettings(max_history_tokens=60))
        llm = ScriptedLLM("ok")
        pipeline = make_pipeline(banking_tree, llm, route_to="help", storage=storage, settings=settings)

        result = await pipeline.process_query("u-1", "what did we decide?", session_id="s-1")

        assert result.history_strategy == "summary"
        assert "Summary of earlier conversation:\n" + "S" * 40 in llm.calls[0]["messages"][0].content

    @pytest.mark.asyncio
    async def test_management_requires_persistence(self, banking_tree):
        pipeline = make_pipeline(banking_tree, ScriptedLLM("x"))

        assert pipeline.is_persistence_enabled() is False
        with pytest.raises(ConfigurationError):
            await pipeline.get_conversation_history("s-1")
        with pytest.raises(ConfigurationError):
            await pipeline.summarize_session("s-1")
        with pytest.raises(ConfigurationError):
            await pipeline.search_conversations("balance")
        with pytest.raises(ConfigurationError):
            await pipeline.cleanup_conversations()

    @pytest.mark.asyncio
    async def test_search_conversations(self, banking_tree):
        pipeline = make_pipeline(banking_tree, ScriptedLLM("done"), storage=InMemoryConversationStorage())
        await pipeline.process_query("u-1", "balance question", session_id="s-1")

        hits = await pipeline.search_conversations("balance", user_id="u-1")
        assert [m.content for m in hits] == ["balance question"]


class TestConcurrency:
    """Tests for per-session serialization and deadlines."""

    class TrackingLLM(ScriptedLLM):
        def __init__(self, delay=0.02):
            super().__init__("ok")
            self.delay = delay
            self.active = 0
            self.peak = 0

        async def complete(self, messages, *, tools=None, config=None):
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                await asyncio.sleep(self.delay)
            finally:
                self.active -= 1
            return await super().complete(messages, tools=tools, config=config)

    @pytest.mark.asyncio
    async def test_same_session_is_serialized(self, banking_tree):
        llm = self.TrackingLLM()
        pipeline = make_pipeline(banking_tree, llm)

        await asyncio.gather(
            pipeline.process_query("u-1", "a", session_id="s-1"),
            pipeline.process_query("u-1", "b", session_id="s-1"),
        )
        assert llm.peak == 1

    @pytest.mark.asyncio
    async def test_different_sessions_run_concurrently(self, banking_tree):
        llm = self.TrackingLLM()
        pipeline = make_pipeline(banking_tree, llm)

        await asyncio.gather(
            pipeline.process_query("u-1", "a", session_id="s-1"),
            pipeline.process_query("u-2", "b", session_id="s-2"),
        )
        assert llm.peak == 2

    @pytest.mark.asyncio
    async def test_turn_deadline(self, banking_tree):
        pipeline = make_pipeline(
            banking_tree,
            self.TrackingLLM(delay=1),
            settings=AgentSettings(turn_timeout_seconds=0.05),
        )

        with pytest.raises(CollaboratorTimeout) as exc_info:
            await pipeline.process_query("u-1", "slow")
        assert exc_info.value.operation == "turn"
        assert get_metrics().queries_failed == 1


class TestOrchestration:
    """Tests for the orchestrator-backed context path."""

    @staticmethod
    def analysis_llm():
        def reply(messages):
            system = messages[0].content
            if "tool relevance" in system:
                return "[]"
            if "agent responses" in system:
                return json.dumps({"concepts": ["balance"], "tool_effectiveness": 0.8})
            if "reasoning patterns" in system:
                return json.dumps({"related_concepts": [], "connection_strength": 0.5})
            return json.dumps({"concepts": ["balance"], "intent": "check", "complexity": "simple"})

        return ScriptedLLM(reply)

    @pytest.mark.asyncio
    async def test_dynamic_contexts_precede_declared(self, banking_tree):
        kb = InMemoryKnowledgeBase([KnowledgeDocument("Your balance updates nightly.", source="faq")])
        orchestrator = ContextOrchestrator(self.analysis_llm(), knowledge_base=kb)
        llm = ScriptedLLM("ok")
        pipeline = make_pipeline(banking_tree, llm, orchestrator=orchestrator)

        result = await pipeline.process_query("u-1", "What's my balance?")

        system = llm.calls[0]["messages"][0].content
        assert "Your balance updates nightly." in system
        assert system.index("Your balance updates nightly.") < system.index("No overdrafts.")
        assert system.count("No overdrafts.") == 1
        assert result.strategy is not None
        assert f"Context Strategy: {result.strategy}" in system
        assert '"context_orchestration"' in system

        insights = pipeline.get_orchestration_insights()
        assert insights["total_reasoning_steps"] >= 1

    def test_insights_without_orchestrator(self, banking_tree):
        assert make_pipeline(banking_tree, ScriptedLLM("x")).get_orchestration_insights() is None


class TestIntrospection:
    """Tests for accessors and construction."""

    def test_available_states_are_leaves(self, banking_tree):
        pipeline = make_pipeline(banking_tree, ScriptedLLM("x"))

        states = pipeline.get_available_states()
        assert [s["key"] for s in states] == ["check_balance", "transfer_funds", "help"]
        assert states[0]["path"] == ["banking", "check_balance"]
        assert pipeline.get_state("banking").is_leaf is False
        assert pipeline.get_state("missing") is None
        assert pipeline.get_registered_tools() == ["get_account", "get_balance", "transfer"]

    def test_empty_tree_rejected(self):
        with pytest.raises(ConfigurationError):
            AgentPipeline([], llm=ScriptedLLM("x"))

    def test_coerce_history(self):
        stored = StoredMessage(session_id="s", role="assistant", content="hello")
        messages = coerce_history([Message.user("hi"), stored, {"role": "user", "content": "bye"}])

        assert [m.content for m in messages] == ["hi", "hello", "bye"]
        with pytest.raises(TypeError):
            coerce_history([42])

    def test_create_pipeline_without_persistence(self, banking_tree):
        pipeline = create_pipeline(
            banking_tree, settings=AgentSettings(storage_backend="none"), llm=ScriptedLLM("x")
        )
        assert pipeline.is_persistence_enabled() is False

    def test_create_pipeline_with_memory_and_orchestrator(self, banking_tree):
        pipeline = create_pipeline(
            banking_tree,
            settings=AgentSettings(storage_backend="memory"),
            llm=ScriptedLLM("x"),
            with_orchestrator=True,
        )
        assert pipeline.is_persistence_enabled() is True
        assert pipeline.get_orchestration_insights() is not None
