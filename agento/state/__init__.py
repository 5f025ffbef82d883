"""
Intent state tree.

- StateNode / StateResolver / StateTree: hierarchical behaviors with
  additive inheritance
- Guards: entry/exit access control (SimpleGuard | EnhancedGuard)
- Contexts: ContextSource-backed knowledge a state may draw on
"""

from .contexts import (
    AssembledContext,
    CallableContext,
    ContextCatalog,
    ContextDefinition,
    ContextSource,
    StaticContext,
)
from .guards import (
    EnhancedGuard,
    Guard,
    GuardAction,
    GuardContext,
    GuardEvaluator,
    GuardResult,
    SimpleGuard,
)
from .loaders import load_context_catalog, load_state_tree, parse_state_tree
from .models import ResolvedState, StateNode, StateTree
from .resolver import StateResolver, resolve_states

__all__ = [
    "AssembledContext",
    "CallableContext",
    "ContextCatalog",
    "ContextDefinition",
    "ContextSource",
    "EnhancedGuard",
    "Guard",
    "GuardAction",
    "GuardContext",
    "GuardEvaluator",
    "GuardResult",
    "ResolvedState",
    "SimpleGuard",
    "StateNode",
    "StateResolver",
    "StateTree",
    "StaticContext",
    "load_context_catalog",
    "load_state_tree",
    "parse_state_tree",
    "resolve_states",
]
