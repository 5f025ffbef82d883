"""
Multi-source context ranking.

- ContextCandidate / OrchestrationResult: ranked selection types
- KnowledgeBaseConnector: optional knowledge search (in-memory and HTTP)
- ContextOrchestrator: token-bounded selection with a reasoning log
"""

from .knowledge import (
    HTTPKnowledgeBase,
    InMemoryKnowledgeBase,
    KnowledgeBaseConnector,
    KnowledgeDocument,
    KnowledgeResult,
)
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
    ToolRelevance,
    ToolRelevanceList,
)
from .orchestrator import (
    ContextOrchestrator,
    SessionReasoning,
    classify_strategy,
    concept_overlap,
    connection_pattern,
    select_within_budget,
)

__all__ = [
    "CandidateSource",
    "ConceptAnalysis",
    "ContextCandidate",
    "ContextOrchestrator",
    "ContextStrategy",
    "HTTPKnowledgeBase",
    "InMemoryKnowledgeBase",
    "KnowledgeBaseConnector",
    "KnowledgeDocument",
    "KnowledgeResult",
    "OrchestrationResult",
    "ReasoningLogEntry",
    "ReasoningScan",
    "ReasoningTrigger",
    "ResponseAnalysis",
    "SessionReasoning",
    "ToolRelevance",
    "ToolRelevanceList",
    "classify_strategy",
    "concept_overlap",
    "connection_pattern",
    "select_within_budget",
]
