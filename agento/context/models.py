"""
Context orchestration models.

- ContextCandidate: one piece of context competing for the window
- ReasoningLogEntry: what the orchestrator concluded on a turn
- OrchestrationResult: the ranked, token-bounded selection

The pydantic models at the bottom are the shapes the orchestrator asks
the model to produce. They accept both snake_case and camelCase keys and
clamp scores into range, so near-miss replies still validate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, RootModel, field_validator

from agento.utils.json_parser import ensure_str_list


class CandidateSource(str, Enum):
    CONVERSATION = "conversation"
    KNOWLEDGE_BASE = "knowledge_base"
    TOOL = "tool"
    STATIC = "static"


class ReasoningTrigger(str, Enum):
    QUERY = "query"
    RESPONSE = "response"
    TOOL_EXEC = "tool_exec"
    KNOWLEDGE_FETCH = "knowledge_fetch"


class ContextStrategy(str, Enum):
    """Overall shape of a turn's context selection."""

    FOCUSED = "focused"
    COMPREHENSIVE = "comprehensive"
    EXPLORATORY = "exploratory"
    MINIMAL = "minimal"


@dataclass(frozen=True, slots=True)
class ContextCandidate:
    """
    A piece of context competing for the window.

    ``score`` (relevance x time decay x connection strength) orders the
    greedy selection. ``origin`` names where it came from: a context
    key, a tool name or a knowledge-base source.
    """

    source: CandidateSource
    content: str
    relevance: float
    reasoning: str = ""
    concepts: tuple[str, ...] = ()
    time_decay: float = 1.0
    connection_strength: float = 1.0
    origin: str | None = None

    @property
    def score(self) -> float:
        return self.relevance * self.time_decay * self.connection_strength

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source.value,
            "content": self.content,
            "relevance": self.relevance,
            "reasoning": self.reasoning,
            "concepts": list(self.concepts),
            "time_decay": self.time_decay,
            "connection_strength": self.connection_strength,
            "score": self.score,
            "origin": self.origin,
        }


def _entry_id() -> str:
    return f"reasoning_{uuid4().hex[:12]}"


@dataclass(frozen=True, slots=True)
class ReasoningLogEntry:
    trigger: ReasoningTrigger
    reasoning: str
    concepts: tuple[str, ...] = ()
    relevance: float = 0.0
    sources: tuple[str, ...] = ()
    connection_pattern: str = "distributed"
    id: str = field(default_factory=_entry_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "trigger": self.trigger.value,
            "reasoning": self.reasoning,
            "concepts": list(self.concepts),
            "relevance": self.relevance,
            "sources": list(self.sources),
            "connection_pattern": self.connection_pattern,
        }


# =============================================================================
# LLM analysis shapes
# =============================================================================


def _clamp_unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, number))


class _Analysis(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ConceptAnalysis(_Analysis):
    """Concepts, intent and complexity of a query."""

    concepts: list[str] = Field(default_factory=list)
    intent: str = "general inquiry"
    complexity: str = "simple"
    context_needs: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("context_needs", "contextNeeds"),
    )

    @field_validator("concepts", "context_needs", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return ensure_str_list(value)

    @field_validator("complexity", mode="before")
    @classmethod
    def _complexity(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        return text if text in ("simple", "moderate", "complex") else "simple"

    @classmethod
    def fallback(cls, query: str) -> ConceptAnalysis:
        return cls(concepts=[query], intent="general inquiry", complexity="simple")


class ReasoningScan(_Analysis):
    """How the current concepts connect to earlier turns."""

    related_concepts: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("related_concepts", "relatedConcepts"),
    )
    patterns: list[str] = Field(default_factory=list)
    connection_strength: float = Field(
        0.0,
        validation_alias=AliasChoices("connection_strength", "connectionStrength"),
    )
    strategic_insights: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("strategic_insights", "strategicInsights"),
    )

    @field_validator("related_concepts", "patterns", "strategic_insights", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return ensure_str_list(value)

    @field_validator("connection_strength", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)


class ToolRelevance(_Analysis):
    tool_name: str = Field(validation_alias=AliasChoices("tool_name", "toolName", "name"))
    relevance: float = 0.0
    reasoning: str = ""
    concepts: list[str] = Field(default_factory=list)

    @field_validator("relevance", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)

    @field_validator("concepts", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return ensure_str_list(value)


class ToolRelevanceList(RootModel[list[ToolRelevance]]):
    @classmethod
    def empty(cls) -> ToolRelevanceList:
        return cls([])


class ResponseAnalysis(_Analysis):
    """Concepts found in the agent's own answer."""

    concepts: list[str] = Field(default_factory=list)
    reasoning_patterns: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("reasoning_patterns", "reasoningPatterns"),
    )
    knowledge_domains: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("knowledge_domains", "knowledgeDomains"),
    )
    tool_effectiveness: float = Field(
        0.5,
        validation_alias=AliasChoices("tool_effectiveness", "toolEffectiveness"),
    )

    @field_validator("concepts", "reasoning_patterns", "knowledge_domains", mode="before")
    @classmethod
    def _str_list(cls, value: Any) -> list[str]:
        return ensure_str_list(value)

    @field_validator("tool_effectiveness", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)


# =============================================================================
# Result
# =============================================================================


@dataclass(frozen=True, slots=True)
class OrchestrationResult:
    """
    Output of ``ContextOrchestrator.orchestrate``.

    Attributes:
        selected: Accepted candidates, highest score first
        reasoning_chain: Most recent reasoning-log entries (up to 5)
        concept_map: Concept -> summed relevance over selected candidates
        total_score: Summed relevance of the selected candidates
        strategy: Classification of the selection
        analysis: Concept analysis of the query
    """

    selected: tuple[ContextCandidate, ...]
    reasoning_chain: tuple[ReasoningLogEntry, ...]
    concept_map: dict[str, float]
    total_score: float
    strategy: ContextStrategy
    analysis: ConceptAnalysis

    @property
    def is_empty(self) -> bool:
        return not self.selected
