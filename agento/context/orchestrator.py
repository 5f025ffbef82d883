"""
Context Orchestrator.

Ranks context from several sources into a token-bounded selection for
one turn, and keeps a rolling reasoning log per session so later turns
can connect to earlier ones.

Pipeline (orchestrate):
    1. Concept analysis of the query and the last 3 turns (LLM)
    2. Scan of the last 5 reasoning-log entries for related concepts
       and a connection strength (LLM, skipped on an empty log)
    3. Knowledge-base search with concepts and related concepts (optional)
    4. Tool relevance scoring (LLM); tools above the threshold qualify
    5. Candidate synthesis from conversation, knowledge hits, tools and
       declared contexts
    6. Stable sort by score, then greedy selection under the token budget;
       selection stops at the first candidate that does not fit
    7. Reasoning-log entry and concept-frequency update
    8. Strategy classification

Every LLM stage goes through ``complete_structured`` and degrades to a
safe default on malformed output.

Usage:
    orchestrator = ContextOrchestrator(llm, knowledge_base=kb)
    result = await orchestrator.orchestrate(
        "How long does my transfer take?",
        history,
        available_tools=registry.select(state.tools),
        declared_contexts=assembled,
        session_id="s-1",
    )
    for candidate in result.selected:
        print(candidate.source, candidate.score)
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter, deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from agento.config.schemas import ModelConfig, OrchestratorSettings
from agento.providers.llm.base import LLMProvider, Message
from agento.sessions import SessionStore
from agento.state.contexts import AssembledContext, ContextDefinition
from agento.tools.base import ToolResult, ToolSpec
from agento.utils.structured import complete_structured
from agento.utils.tokens import estimate_tokens

from .knowledge import KnowledgeBaseConnector, KnowledgeResult
from .models import (
    CandidateSource,
    ConceptAnalysis,
    ContextCandidate,
    ContextStrategy,
    OrchestrationResult,
    ReasoningLogEntry,
    ReasoningScan,
    ReasoningTrigger,
    ResponseAnalysis,
    ToolRelevanceList,
)

logger = logging.getLogger(__name__)

GLOBAL_SESSION = "global"

_STOPWORDS = frozenset({"the", "and", "or", "but", "for", "with", "that", "this", "from", "have", "what"})
_WORD = re.compile(r"[a-z0-9']+")


# =============================================================================
# Prompts
# =============================================================================

JSON_ONLY = "You MUST respond with ONLY valid JSON, no explanations or additional text."

CONCEPT_PROMPT = """Analyze this user query in the context of the recent conversation.

Recent Conversation:
{history}

Current Query: "{query}"

Extract the key concepts (entities, topics, themes), the user's intent,
the complexity (simple/moderate/complex) and what extra information would help.

Respond with JSON:
{{"concepts": ["..."], "intent": "...", "complexity": "simple|moderate|complex", "context_needs": ["..."]}}"""

REASONING_SCAN_PROMPT = """Relate the current concepts to the previous reasoning.

Current Concepts: {concepts}

Previous Reasoning:
{entries}

Identify related concepts from history, recurring patterns, a connection
strength between 0 and 1, and insights for choosing context.

Respond with JSON:
{{"related_concepts": ["..."], "patterns": ["..."], "connection_strength": 0.0, "strategic_insights": ["..."]}}"""

TOOL_RELEVANCE_PROMPT = """Assess how relevant each available tool is for this query.

Query: "{query}"
Concepts: {concepts}

Available Tools:
{tools}

Respond with a JSON array, one object per tool:
[{{"tool_name": "...", "relevance": 0.0, "reasoning": "...", "concepts": ["..."]}}]"""

RESPONSE_PROMPT = """Extract the concepts from this agent response and its tool results.

Agent Response: "{response}"

Tool Results:
{tools}

Respond with JSON:
{{"concepts": ["..."], "reasoning_patterns": ["..."], "knowledge_domains": ["..."], "tool_effectiveness": 0.0}}"""


# =============================================================================
# Per-session state
# =============================================================================


class _Turn(Protocol):
    role: Any
    content: str


@dataclass
class ToolUsage:
    calls: int = 0
    successes: int = 0
    failures: int = 0
    concepts: Counter[str] = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "calls": self.calls,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": self.successes / self.calls if self.calls else 0.0,
            "top_concepts": [c for c, _ in self.concepts.most_common(5)],
        }


@dataclass
class SessionReasoning:
    """Reasoning log, concept frequencies and tool usage of one session."""

    log: deque[ReasoningLogEntry]
    concept_counts: Counter[str] = field(default_factory=Counter)
    concept_strength: dict[str, float] = field(default_factory=dict)
    tool_usage: dict[str, ToolUsage] = field(default_factory=dict)
    strategies: Counter[str] = field(default_factory=Counter)

    def append(self, entry: ReasoningLogEntry) -> None:
        self.log.append(entry)

    def recent(self, n: int) -> list[ReasoningLogEntry]:
        return list(self.log)[-n:] if n > 0 else []


# =============================================================================
# Scoring helpers
# =============================================================================


def concept_overlap(content: str, concepts: Sequence[str]) -> float:
    """Fraction of ``concepts`` mentioned in ``content`` (case-insensitive)."""
    if not concepts:
        return 0.0
    lowered = content.lower()
    matches = sum(1 for c in concepts if c and c.lower() in lowered)
    return min(matches / len(concepts), 1.0)


def extract_concepts(text: str, limit: int = 10) -> tuple[str, ...]:
    seen: list[str] = []
    for word in _WORD.findall(text.lower()):
        if len(word) > 3 and word not in _STOPWORDS and word not in seen:
            seen.append(word)
            if len(seen) >= limit:
                break
    return tuple(seen)


def time_decay(timestamp: datetime | None, now: datetime, factor: float) -> float:
    if timestamp is None:
        return 1.0
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=UTC)
    hours = max((now - timestamp).total_seconds() / 3600.0, 0.0)
    return math.exp(-hours * factor)


def select_within_budget(
    candidates: Sequence[ContextCandidate],
    max_tokens: int,
) -> list[ContextCandidate]:
    """
    Greedy selection in score order.

    Sorting is stable, so equal scores keep synthesis order. Selection
    stops at the first candidate whose tokens would exceed the budget.
    """
    ranked = sorted(candidates, key=lambda c: c.score, reverse=True)
    selected = []
    used = 0
    for candidate in ranked:
        tokens = estimate_tokens(candidate.content)
        if used + tokens > max_tokens:
            break
        selected.append(candidate)
        used += tokens
    return selected


def connection_pattern(sources: Sequence[str]) -> str:
    unique = set(sources)
    conversation = CandidateSource.CONVERSATION.value
    if conversation in unique and CandidateSource.KNOWLEDGE_BASE.value in unique:
        return "conversation-knowledge-bridge"
    if CandidateSource.TOOL.value in unique and conversation in unique:
        return "action-temporal-link"
    if sources and sources.count(conversation) / len(sources) > 0.5:
        return "conversation-heavy"
    return "distributed"


def classify_strategy(selected: Sequence[ContextCandidate], complexity: str) -> ContextStrategy:
    if selected:
        average = sum(c.relevance for c in selected) / len(selected)
        if average > 0.8 and len(selected) <= 3:
            return ContextStrategy.FOCUSED
        if len({c.source for c in selected}) >= 3 and len(selected) >= 5:
            return ContextStrategy.COMPREHENSIVE
    if complexity == "complex":
        return ContextStrategy.EXPLORATORY
    return ContextStrategy.MINIMAL


def _ordered_union(*groups: Sequence[str]) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for item in group:
            if item and item not in merged:
                merged.append(item)
    return merged


# =============================================================================
# Orchestrator
# =============================================================================


class ContextOrchestrator:
    """
    Multi-source context ranking with a per-session reasoning log.

    Args:
        llm: Provider used for the analysis stages
        settings: Budget, log window, relevance threshold, decay factor
        knowledge_base: Optional knowledge-base connector
        analysis_config: Model settings for analysis calls
        llm_timeout: Deadline for each analysis call in seconds
        sessions: Store for per-session reasoning state
    """

    def __init__(
        self,
        llm: LLMProvider,
        *,
        settings: OrchestratorSettings | None = None,
        knowledge_base: KnowledgeBaseConnector | None = None,
        analysis_config: ModelConfig | None = None,
        llm_timeout: float | None = None,
        sessions: SessionStore[SessionReasoning] | None = None,
    ) -> None:
        self._llm = llm
        self._settings = settings or OrchestratorSettings()
        self._knowledge_base = knowledge_base
        self._config = analysis_config or ModelConfig(temperature=0.2, max_tokens=500)
        self._timeout = llm_timeout
        window = self._settings.max_reasoning_history
        self._sessions = sessions or SessionStore(
            lambda: SessionReasoning(log=deque(maxlen=window)),
            name="reasoning",
        )

    @property
    def settings(self) -> OrchestratorSettings:
        return self._settings

    async def orchestrate(
        self,
        query: str,
        history: Sequence[_Turn],
        available_tools: Sequence[ToolSpec] = (),
        declared_contexts: Sequence[ContextDefinition | AssembledContext] = (),
        metadata: dict[str, Any] | None = None,
        *,
        session_id: str = GLOBAL_SESSION,
    ) -> OrchestrationResult:
        """
        Rank and select context for ``query``.

        Args:
            query: Current user query
            history: Conversation turns, oldest first
            available_tools: Tools the current state may call
            declared_contexts: Contexts the current state declares
            metadata: Caller metadata, included in the concept analysis prompt
            session_id: Reasoning-log scope

        Returns:
            OrchestrationResult with the selection and reasoning chain
        """
        state = self._sessions.get(session_id)

        analysis = await self._analyze_query(query, history, metadata)
        concepts = analysis.concepts or [query]
        scan = await self._scan_reasoning(state, concepts)
        knowledge = await self._search_knowledge(query, concepts, scan.related_concepts)
        tool_scores = await self._score_tools(query, concepts, available_tools)

        candidates: list[ContextCandidate] = []
        candidates.extend(self._conversation_candidates(history, concepts, scan.connection_strength))
        candidates.extend(self._knowledge_candidates(knowledge, concepts, scan.related_concepts))
        candidates.extend(self._tool_candidates(tool_scores, available_tools))
        candidates.extend(await self._declared_candidates(declared_contexts, concepts))

        selected = select_within_budget(candidates, self._settings.max_context_tokens)
        strategy = classify_strategy(selected, analysis.complexity)

        sources = tuple(c.source.value for c in selected)
        average = sum(c.relevance for c in selected) / len(selected) if selected else 0.0
        state.append(
            ReasoningLogEntry(
                trigger=ReasoningTrigger.QUERY,
                reasoning=(
                    f'Analyzed "{query}" - intent: {analysis.intent}, '
                    f"concepts: {', '.join(concepts)}, selected {len(selected)} contexts"
                ),
                concepts=tuple(concepts),
                relevance=average,
                sources=sources,
                connection_pattern=connection_pattern(sources),
            )
        )
        if knowledge:
            state.append(
                ReasoningLogEntry(
                    trigger=ReasoningTrigger.KNOWLEDGE_FETCH,
                    reasoning=f"Knowledge search returned {len(knowledge)} results",
                    concepts=tuple(concepts),
                    relevance=max(k.relevance for k in knowledge),
                    sources=tuple(CandidateSource.KNOWLEDGE_BASE.value for _ in knowledge),
                    connection_pattern="distributed",
                )
            )
        self._track_concepts(state, concepts, selected)
        state.strategies[strategy.value] += 1

        concept_map: dict[str, float] = {}
        for candidate in selected:
            for concept in candidate.concepts:
                concept_map[concept] = concept_map.get(concept, 0.0) + candidate.relevance

        logger.info(
            f"[context_orchestrator] {session_id}: {len(selected)}/{len(candidates)} candidates, "
            f"strategy={strategy.value}"
        )
        return OrchestrationResult(
            selected=tuple(selected),
            reasoning_chain=tuple(state.recent(5)),
            concept_map=concept_map,
            total_score=sum(c.relevance for c in selected),
            strategy=strategy,
            analysis=analysis,
        )

    # -------------------------------------------------------------------------
    # Analysis stages
    # -------------------------------------------------------------------------

    async def _analyze_query(
        self,
        query: str,
        history: Sequence[_Turn],
        metadata: dict[str, Any] | None,
    ) -> ConceptAnalysis:
        recent = "\n".join(f"{_role(turn)}: {turn.content}" for turn in list(history)[-3:])
        prompt = CONCEPT_PROMPT.format(history=recent or "(none)", query=query)
        if metadata:
            prompt += f"\n\nMetadata: {metadata}"
        return await complete_structured(
            self._llm,
            [Message.system(f"You are an expert at analyzing user queries. {JSON_ONLY}"), Message.user(prompt)],
            ConceptAnalysis,
            default=lambda: ConceptAnalysis.fallback(query),
            config=self._config,
            timeout=self._timeout,
            label="concept_analysis",
        )

    async def _scan_reasoning(self, state: SessionReasoning, concepts: Sequence[str]) -> ReasoningScan:
        entries = state.recent(5)
        if not entries:
            return ReasoningScan()
        lines = "\n".join(f"- {e.reasoning} (concepts: {', '.join(e.concepts)})" for e in entries)
        prompt = REASONING_SCAN_PROMPT.format(concepts=", ".join(concepts), entries=lines)
        return await complete_structured(
            self._llm,
            [Message.system(f"You analyze reasoning patterns and concept relationships. {JSON_ONLY}"), Message.user(prompt)],
            ReasoningScan,
            default=ReasoningScan,
            config=self._config,
            timeout=self._timeout,
            label="reasoning_scan",
        )

    async def _search_knowledge(
        self,
        query: str,
        concepts: Sequence[str],
        related: Sequence[str],
    ) -> list[KnowledgeResult]:
        kb = self._knowledge_base
        if kb is None or not self._settings.enable_knowledge_search:
            return []

        all_concepts = _ordered_union(concepts, related)
        try:
            get_related = getattr(kb, "get_related_concepts", None)
            if get_related is not None:
                all_concepts = _ordered_union(all_concepts, await get_related(all_concepts))
            return list(await kb.search(query, all_concepts))
        except Exception as e:
            logger.warning(f"[context_orchestrator] Knowledge search failed, continuing without: {e}")
            return []

    async def _score_tools(
        self,
        query: str,
        concepts: Sequence[str],
        tools: Sequence[ToolSpec],
    ) -> ToolRelevanceList:
        if not tools:
            return ToolRelevanceList.empty()
        listing = "\n".join(f"{t.name}: {t.description}" for t in tools)
        prompt = TOOL_RELEVANCE_PROMPT.format(query=query, concepts=", ".join(concepts), tools=listing)
        return await complete_structured(
            self._llm,
            [Message.system(f"You assess tool relevance for user queries. {JSON_ONLY}"), Message.user(prompt)],
            ToolRelevanceList,
            default=ToolRelevanceList.empty,
            config=self._config,
            timeout=self._timeout,
            label="tool_relevance",
        )

    # -------------------------------------------------------------------------
    # Candidate synthesis
    # -------------------------------------------------------------------------

    def _conversation_candidates(
        self,
        history: Sequence[_Turn],
        concepts: Sequence[str],
        strength: float,
    ) -> list[ContextCandidate]:
        now = datetime.now(UTC)
        candidates = []
        # index 0 is the newest turn
        for index, turn in enumerate(reversed(list(history)[-5:])):
            role = _role(turn)
            candidates.append(
                ContextCandidate(
                    source=CandidateSource.CONVERSATION,
                    content=f"{role}: {turn.content}",
                    relevance=concept_overlap(turn.content, concepts),
                    reasoning=f"Recent conversation context ({role})",
                    concepts=extract_concepts(turn.content),
                    time_decay=time_decay(
                        getattr(turn, "timestamp", None), now, self._settings.time_decay_factor
                    ),
                    connection_strength=max(strength * (1 - index * 0.1), 0.0),
                )
            )
        return candidates

    @staticmethod
    def _knowledge_candidates(
        results: Sequence[KnowledgeResult],
        concepts: Sequence[str],
        related: Sequence[str],
    ) -> list[ContextCandidate]:
        all_concepts = _ordered_union(concepts, related)
        return [
            ContextCandidate(
                source=CandidateSource.KNOWLEDGE_BASE,
                content=result.content,
                relevance=max(0.0, min(1.0, result.relevance)),
                reasoning=f"Knowledge base match from {result.source}",
                concepts=tuple(c for c in all_concepts if c.lower() in result.content.lower()),
                time_decay=1.0,
                connection_strength=0.8,
                origin=result.source,
            )
            for result in results
        ]

    def _tool_candidates(
        self,
        scores: ToolRelevanceList,
        tools: Sequence[ToolSpec],
    ) -> list[ContextCandidate]:
        known = {t.name for t in tools}
        candidates = []
        for item in scores.root:
            if item.tool_name not in known:
                logger.debug(f"[context_orchestrator] Ignoring relevance for unknown tool: {item.tool_name}")
                continue
            if item.relevance <= self._settings.relevance_threshold:
                continue
            candidates.append(
                ContextCandidate(
                    source=CandidateSource.TOOL,
                    content=f"Tool available: {item.tool_name} - {item.reasoning}",
                    relevance=item.relevance,
                    reasoning=item.reasoning,
                    concepts=tuple(item.concepts),
                    time_decay=1.0,
                    connection_strength=0.7,
                    origin=item.tool_name,
                )
            )
        return candidates

    @staticmethod
    async def _declared_candidates(
        contexts: Sequence[ContextDefinition | AssembledContext],
        concepts: Sequence[str],
    ) -> list[ContextCandidate]:
        candidates = []
        for context in contexts:
            if isinstance(context, AssembledContext):
                content = context.content
            else:
                content = await context.source.resolve()
            candidates.append(
                ContextCandidate(
                    source=CandidateSource.STATIC,
                    content=content,
                    relevance=concept_overlap(content, concepts),
                    reasoning=f"Declared context: {context.description}",
                    concepts=extract_concepts(content),
                    time_decay=1.0,
                    connection_strength=0.6,
                    origin=context.key,
                )
            )
        return candidates

    @staticmethod
    def _track_concepts(
        state: SessionReasoning,
        concepts: Sequence[str],
        selected: Sequence[ContextCandidate],
    ) -> None:
        for concept in concepts:
            state.concept_counts[concept] += 1
            strength = sum(c.relevance for c in selected if concept in c.concepts)
            state.concept_strength[concept] = state.concept_strength.get(concept, 0.0) + strength

    # -------------------------------------------------------------------------
    # Feedback
    # -------------------------------------------------------------------------

    async def observe(
        self,
        response: str,
        tool_results: Sequence[ToolResult],
        query: str,
        *,
        session_id: str = GLOBAL_SESSION,
    ) -> None:
        """Feed the agent's answer back for concept tracking; selects nothing."""
        state = self._sessions.get(session_id)
        tool_lines = "\n".join(f"{r.tool_name}: {r.to_message_content()}" for r in tool_results)
        prompt = RESPONSE_PROMPT.format(response=response, tools=tool_lines or "(none)")
        analysis = await complete_structured(
            self._llm,
            [Message.system(f"You analyze AI agent responses and tool usage. {JSON_ONLY}"), Message.user(prompt)],
            ResponseAnalysis,
            default=ResponseAnalysis,
            config=self._config,
            timeout=self._timeout,
            label="response_analysis",
        )

        state.append(
            ReasoningLogEntry(
                trigger=ReasoningTrigger.RESPONSE,
                reasoning=f'Responded to "{query}" - concepts: {", ".join(analysis.concepts)}',
                concepts=tuple(analysis.concepts),
                relevance=analysis.tool_effectiveness if tool_results else 0.0,
            )
        )
        self._track_concepts(state, analysis.concepts, ())

        if tool_results:
            succeeded = sum(1 for r in tool_results if r.success)
            state.append(
                ReasoningLogEntry(
                    trigger=ReasoningTrigger.TOOL_EXEC,
                    reasoning=(
                        f"Executed {len(tool_results)} tools "
                        f"({succeeded} succeeded): {', '.join(r.tool_name for r in tool_results)}"
                    ),
                    concepts=tuple(analysis.concepts),
                    relevance=succeeded / len(tool_results),
                    sources=tuple(CandidateSource.TOOL.value for _ in tool_results),
                )
            )
            self.learn_from_tool_usage(query, tool_results, session_id=session_id, concepts=analysis.concepts)

    def learn_from_tool_usage(
        self,
        query: str,
        tool_results: Sequence[ToolResult],
        *,
        session_id: str = GLOBAL_SESSION,
        concepts: Sequence[str] | None = None,
    ) -> None:
        """Record per-tool outcomes and the concepts they were used for."""
        state = self._sessions.get(session_id)
        used_for = list(concepts) if concepts else list(extract_concepts(query))
        for result in tool_results:
            usage = state.tool_usage.setdefault(result.tool_name, ToolUsage())
            usage.calls += 1
            if result.success:
                usage.successes += 1
            else:
                usage.failures += 1
            usage.concepts.update(used_for)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    def get_reasoning_log(self, session_id: str = GLOBAL_SESSION) -> list[ReasoningLogEntry]:
        state = self._sessions.peek(session_id)
        return list(state.log) if state else []

    def get_insights(self, session_id: str = GLOBAL_SESSION) -> dict[str, Any]:
        """Snapshot of a session's reasoning for debugging and monitoring."""
        state = self._sessions.peek(session_id)
        if state is None:
            return {
                "session_id": session_id,
                "total_reasoning_steps": 0,
                "recent_reasoning": [],
                "top_concepts": [],
                "tool_usage": {},
                "strategy_distribution": {},
            }
        top = sorted(
            state.concept_counts.items(),
            key=lambda item: (item[1], state.concept_strength.get(item[0], 0.0)),
            reverse=True,
        )[:10]
        return {
            "session_id": session_id,
            "total_reasoning_steps": len(state.log),
            "recent_reasoning": [e.to_dict() for e in state.recent(5)],
            "top_concepts": [
                {"concept": c, "count": n, "strength": state.concept_strength.get(c, 0.0)} for c, n in top
            ],
            "tool_usage": {name: usage.to_dict() for name, usage in state.tool_usage.items()},
            "strategy_distribution": dict(state.strategies),
        }

    def clear_session(self, session_id: str = GLOBAL_SESSION) -> bool:
        return self._sessions.delete(session_id)


def _role(turn: _Turn) -> str:
    role = turn.role
    return getattr(role, "value", str(role))
