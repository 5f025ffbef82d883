"""
Tests for the context orchestrator.

Covers:
- Budget-bounded greedy selection
- Strategy classification and connection patterns
- Candidate synthesis from each source
- Reasoning log window and insights
- Degradation on malformed analysis and knowledge failures
"""

import json
from datetime import UTC, datetime, timedelta

import pytest

from agento.config.schemas import OrchestratorSettings
from agento.context import (
    CandidateSource,
    ContextCandidate,
    ContextOrchestrator,
    ContextStrategy,
    InMemoryKnowledgeBase,
    KnowledgeDocument,
    ReasoningTrigger,
    classify_strategy,
    concept_overlap,
    connection_pattern,
    select_within_budget,
)
from agento.context.orchestrator import extract_concepts, time_decay
from agento.providers.llm.base import Message
from agento.state.contexts import AssembledContext
from agento.tools.base import ToolResult, ToolSpec
from conftest import ScriptedLLM


def analysis_llm(
    concepts=("balance",),
    complexity="simple",
    tools=None,
    scan=None,
    response=None,
):
    """ScriptedLLM answering each analysis stage by its system prompt."""
    replies = {
        "analyzing user queries": {"concepts": list(concepts), "intent": "check", "complexity": complexity},
        "reasoning patterns": scan or {"related_concepts": [], "connection_strength": 0.5},
        "tool relevance": tools or [],
        "agent responses": response or {"concepts": ["balance"], "tool_effectiveness": 0.9},
    }

    def reply(messages):
        system = messages[0].content
        for marker, payload in replies.items():
            if marker in system:
                return payload if isinstance(payload, str) else json.dumps(payload)
        raise AssertionError(f"Unexpected prompt: {system[:60]}")

    return ScriptedLLM(reply)


def candidate(source=CandidateSource.STATIC, relevance=0.5, content="x" * 40, **kwargs):
    return ContextCandidate(source=source, content=content, relevance=relevance, **kwargs)


# =============================================================================
# Helpers
# =============================================================================


class TestSelectWithinBudget:
    """Tests for select_within_budget."""

    def test_orders_by_score(self):
        low = candidate(relevance=0.2)
        high = candidate(relevance=0.9)

        assert select_within_budget([low, high], 100) == [high, low]

    def test_stops_at_first_overflow(self):
        big = candidate(relevance=0.9, content="x" * 400)  # 100 tokens
        small = candidate(relevance=0.1, content="x" * 4)

        assert select_within_budget([big, small], 50) == []

    def test_total_never_exceeds_budget(self):
        candidates = [candidate(relevance=i / 10) for i in range(10)]  # 10 tokens each
        selected = select_within_budget(candidates, 35)
        assert len(selected) == 3

    def test_ties_keep_input_order(self):
        first = candidate(relevance=0.5, origin="first")
        second = candidate(relevance=0.5, origin="second")
        assert [c.origin for c in select_within_budget([first, second], 100)] == ["first", "second"]


class TestClassifyStrategy:
    """Tests for classify_strategy."""

    def test_focused(self):
        assert classify_strategy([candidate(relevance=0.9)] * 3, "simple") == ContextStrategy.FOCUSED

    def test_comprehensive(self):
        selected = [
            candidate(CandidateSource.CONVERSATION),
            candidate(CandidateSource.TOOL),
            candidate(CandidateSource.KNOWLEDGE_BASE),
            candidate(CandidateSource.STATIC),
            candidate(CandidateSource.STATIC),
        ]
        assert classify_strategy(selected, "simple") == ContextStrategy.COMPREHENSIVE

    def test_exploratory_for_complex(self):
        assert classify_strategy([candidate(relevance=0.2)], "complex") == ContextStrategy.EXPLORATORY

    def test_minimal(self):
        assert classify_strategy([], "simple") == ContextStrategy.MINIMAL


class TestConnectionPattern:
    """Tests for connection_pattern labels."""

    def test_labels(self):
        assert connection_pattern(["conversation", "knowledge_base"]) == "conversation-knowledge-bridge"
        assert connection_pattern(["tool", "conversation"]) == "action-temporal-link"
        assert connection_pattern(["conversation", "conversation", "static"]) == "conversation-heavy"
        assert connection_pattern(["static", "tool"]) == "distributed"
        assert connection_pattern([]) == "distributed"


class TestScoringHelpers:
    """Tests for overlap, concept extraction and time decay."""

    def test_concept_overlap(self):
        assert concept_overlap("Your Balance is 10", ["balance", "fees"]) == 0.5
        assert concept_overlap("anything", []) == 0.0

    def test_extract_concepts(self):
        assert extract_concepts("What is the balance of this account balance") == ("balance", "account")

    def test_time_decay(self):
        now = datetime.now(UTC)
        assert time_decay(None, now, 0.1) == 1.0
        assert time_decay(now, now, 0.1) == pytest.approx(1.0)
        assert time_decay(now - timedelta(hours=10), now, 0.1) == pytest.approx(0.3679, rel=1e-3)
        naive = (now - timedelta(hours=1)).replace(tzinfo=None)
        assert time_decay(naive, now, 0.0) == 1.0


# =============================================================================
# Orchestrator
# =============================================================================


@pytest.fixture
def tools():
    return [
        ToolSpec(name="get_balance", description="Get account balance"),
        ToolSpec(name="transfer", description="Transfer money"),
    ]


class TestOrchestrate:
    """Tests for ContextOrchestrator.orchestrate."""

    @pytest.mark.asyncio
    async def test_first_turn_skips_reasoning_scan(self):
        llm = analysis_llm()
        orchestrator = ContextOrchestrator(llm)

        await orchestrator.orchestrate("What's my balance?", [])

        systems = [call["messages"][0].content for call in llm.calls]
        assert len(systems) == 1
        assert "analyzing user queries" in systems[0]

    @pytest.mark.asyncio
    async def test_tool_candidates_filtered_by_threshold_and_name(self, tools):
        llm = analysis_llm(
            tools=[
                {"toolName": "get_balance", "relevance": 0.9, "reasoning": "reads balance"},
                {"tool_name": "transfer", "relevance": 0.3},
                {"tool_name": "hallucinated", "relevance": 1.0},
            ]
        )
        result = await ContextOrchestrator(llm).orchestrate("What's my balance?", [], available_tools=tools)

        tool_candidates = [c for c in result.selected if c.source == CandidateSource.TOOL]
        assert [c.origin for c in tool_candidates] == ["get_balance"]
        assert tool_candidates[0].content == "Tool available: get_balance - reads balance"
        assert tool_candidates[0].connection_strength == 0.7

    @pytest.mark.asyncio
    async def test_declared_and_knowledge_candidates(self):
        kb = InMemoryKnowledgeBase([KnowledgeDocument("Your balance updates nightly.", source="faq")])
        declared = [AssembledContext("policies", "Bank policies", "Balance inquiries are free.")]

        result = await ContextOrchestrator(analysis_llm(), knowledge_base=kb).orchestrate(
            "balance", [], declared_contexts=declared
        )

        by_source = {c.source: c for c in result.selected}
        assert by_source[CandidateSource.KNOWLEDGE_BASE].origin == "faq"
        assert by_source[CandidateSource.KNOWLEDGE_BASE].connection_strength == 0.8
        assert by_source[CandidateSource.STATIC].origin == "policies"
        assert by_source[CandidateSource.STATIC].relevance == 1.0
        assert result.concept_map["balance"] > 0
        assert result.total_score == pytest.approx(sum(c.relevance for c in result.selected))

    @pytest.mark.asyncio
    async def test_conversation_candidates_newest_strongest(self):
        history = [Message.user(f"balance question {i}") for i in range(7)]
        llm = analysis_llm(scan={"connection_strength": 1.0})
        orchestrator = ContextOrchestrator(llm)
        await orchestrator.orchestrate("warm up", [], session_id="s-1")

        result = await orchestrator.orchestrate("balance", history, session_id="s-1")

        conversation = [c for c in result.selected if c.source == CandidateSource.CONVERSATION]
        assert len(conversation) == 5
        assert conversation[0].content == "user: balance question 6"
        assert conversation[0].connection_strength == pytest.approx(1.0)
        assert conversation[-1].connection_strength == pytest.approx(0.6)

    @pytest.mark.asyncio
    async def test_budget_is_respected(self):
        declared = [AssembledContext(f"c{i}", "ctx", "balance " + "x" * 392) for i in range(5)]
        orchestrator = ContextOrchestrator(
            analysis_llm(), settings=OrchestratorSettings(max_context_tokens=250)
        )

        result = await orchestrator.orchestrate("balance", [], declared_contexts=declared)
        assert len(result.selected) == 2

    @pytest.mark.asyncio
    async def test_malformed_analysis_falls_back_to_query(self):
        llm = ScriptedLLM("not json at all")
        result = await ContextOrchestrator(llm).orchestrate(
            "balance", [], declared_contexts=[AssembledContext("p", "P", "balance rules")]
        )

        assert result.analysis.concepts == ["balance"]
        assert result.strategy == ContextStrategy.FOCUSED

    @pytest.mark.asyncio
    async def test_knowledge_failure_is_absorbed(self):
        class BrokenKB:
            async def search(self, query, concepts):
                raise ConnectionError("kb down")

        result = await ContextOrchestrator(analysis_llm(), knowledge_base=BrokenKB()).orchestrate("balance", [])
        assert result.is_empty

    @pytest.mark.asyncio
    async def test_knowledge_search_can_be_disabled(self):
        kb = InMemoryKnowledgeBase([KnowledgeDocument("balance info")])
        orchestrator = ContextOrchestrator(
            analysis_llm(), knowledge_base=kb, settings=OrchestratorSettings(enable_knowledge_search=False)
        )

        result = await orchestrator.orchestrate("balance", [])
        assert all(c.source != CandidateSource.KNOWLEDGE_BASE for c in result.selected)


class TestReasoningLog:
    """Tests for the per-session reasoning log."""

    @pytest.mark.asyncio
    async def test_log_is_fifo_bounded(self):
        orchestrator = ContextOrchestrator(
            analysis_llm(), settings=OrchestratorSettings(max_reasoning_history=3)
        )
        for i in range(5):
            await orchestrator.orchestrate(f"query {i}", [], session_id="s-1")

        log = orchestrator.get_reasoning_log("s-1")
        assert len(log) == 3
        assert '"query 4"' in log[-1].reasoning
        assert '"query 2"' in log[0].reasoning

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self):
        orchestrator = ContextOrchestrator(analysis_llm())
        await orchestrator.orchestrate("balance", [], session_id="a")

        assert len(orchestrator.get_reasoning_log("a")) == 1
        assert orchestrator.get_reasoning_log("b") == []
        assert orchestrator.clear_session("a") is True
        assert orchestrator.get_reasoning_log("a") == []

    @pytest.mark.asyncio
    async def test_observe_logs_response_and_tools(self):
        orchestrator = ContextOrchestrator(analysis_llm())
        results = [
            ToolResult.succeeded("get_balance", {"balance": 10}),
            ToolResult.failed("transfer", "limit reached"),
        ]

        await orchestrator.observe("Your balance is 10", results, "balance", session_id="s-1")

        triggers = [e.trigger for e in orchestrator.get_reasoning_log("s-1")]
        assert triggers == [ReasoningTrigger.RESPONSE, ReasoningTrigger.TOOL_EXEC]
        insights = orchestrator.get_insights("s-1")
        assert insights["tool_usage"]["get_balance"]["success_rate"] == 1.0
        assert insights["tool_usage"]["transfer"]["failures"] == 1
        assert insights["top_concepts"][0]["concept"] == "balance"

    @pytest.mark.asyncio
    async def test_insights_track_strategies(self):
        orchestrator = ContextOrchestrator(analysis_llm(complexity="complex"))
        await orchestrator.orchestrate("balance", [], session_id="s-1")

        insights = orchestrator.get_insights("s-1")
        assert insights["total_reasoning_steps"] == 1
        assert insights["strategy_distribution"] == {"exploratory": 1}
        assert insights["recent_reasoning"][0]["trigger"] == "query"

    def test_insights_for_unknown_session(self):
        insights = ContextOrchestrator(analysis_llm()).get_insights("nobody")
        assert insights["total_reasoning_steps"] == 0

    def test_learn_from_tool_usage_without_concepts(self):
        orchestrator = ContextOrchestrator(analysis_llm())
        orchestrator.learn_from_tool_usage("check account balance", [ToolResult.succeeded("get_balance", 1)])

        usage = orchestrator.get_insights()["tool_usage"]["get_balance"]
        assert usage["top_concepts"] == ["check", "account", "balance"]
