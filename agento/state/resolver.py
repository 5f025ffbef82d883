"""
State Resolver.

Flattens a StateNode tree into ResolvedStates with additive inheritance.

Algorithm:
    Depth-first pre-order traversal carrying an accumulator of
    (prompts, contexts, tools, model config, metadata, guards, path).
    Each descent builds a NEW accumulator from its parent's, so sibling
    subtrees never observe each other's additions.

Merge rules:
    - prompt fragments: appended root -> leaf, joined with a blank line
    - contexts / tools: ordered union, deduplicated, ancestors first
    - model config: per-field override, closest wins, unset inherits
    - metadata: shallow merge, self overrides ancestors key by key
    - guards: closest guard along the path

Usage:
    resolver = StateResolver(default_config=settings.default_model)
    tree = resolver.resolve([banking_root, support_root])

    tree.leaves          # only these may be selected by the router
    tree.require("banking.transfer").full_prompt
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from agento.config.schemas import ModelConfig
from agento.errors import DuplicateStateKey

from .guards import Guard
from .models import ResolvedState, StateNode, StateTree

logger = logging.getLogger(__name__)

PROMPT_SEPARATOR = "\n\n"


def _ordered_union(existing: tuple[str, ...], additions: Iterable[str]) -> tuple[str, ...]:
    merged = list(existing)
    seen = set(existing)
    for item in additions:
        if item not in seen:
            seen.add(item)
            merged.append(item)
    return tuple(merged)


@dataclass(frozen=True)
class _Accumulator:
    llm_config: ModelConfig
    prompts: tuple[str, ...] = ()
    contexts: tuple[str, ...] = ()
    tools: tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    path: tuple[str, ...] = ()
    on_enter: Guard | None = None
    on_leave: Guard | None = None

    def extend(self, node: StateNode) -> _Accumulator:
        return _Accumulator(
            llm_config=self.llm_config.merged_with(node.llm_config),
            prompts=self.prompts + ((node.prompt,) if node.prompt else ()),
            contexts=_ordered_union(self.contexts, node.contexts),
            tools=_ordered_union(self.tools, node.tools),
            metadata={**self.metadata, **node.metadata},
            path=self.path + (node.key,),
            on_enter=node.on_enter or self.on_enter,
            on_leave=node.on_leave or self.on_leave,
        )

    def flatten(self, node: StateNode) -> ResolvedState:
        return ResolvedState(
            key=node.key,
            description=node.description,
            full_prompt=PROMPT_SEPARATOR.join(self.prompts),
            contexts=self.contexts,
            tools=self.tools,
            llm_config=self.llm_config,
            metadata=MappingProxyType(dict(self.metadata)),
            is_leaf=node.is_leaf,
            path=self.path,
            on_enter=self.on_enter,
            on_leave=self.on_leave,
        )


class StateResolver:
    """
    Resolves state trees into StateTree indexes.

    Results are immutable; resolve again if the source tree changes.
    """

    def __init__(self, default_config: ModelConfig | None = None) -> None:
        self._default_config = default_config or ModelConfig()

    def resolve(self, tree: StateNode | Sequence[StateNode]) -> StateTree:
        """
        Resolve one root or a forest of roots.

        Raises:
            DuplicateStateKey: Two nodes anywhere share a key
        """
        roots = [tree] if isinstance(tree, StateNode) else list(tree)

        by_key: dict[str, ResolvedState] = {}
        leaves: list[ResolvedState] = []
        base = _Accumulator(llm_config=self._default_config)

        for root in roots:
            self._visit(root, base, by_key, leaves)

        logger.info(
            f"[state_resolver] Resolved {len(by_key)} states ({len(leaves)} leaves) "
            f"from {len(roots)} root(s)"
        )
        return StateTree(
            by_key=MappingProxyType(by_key),
            leaves=tuple(leaves),
            roots=tuple(root.key for root in roots),
        )

    def _visit(
        self,
        node: StateNode,
        parent: _Accumulator,
        by_key: dict[str, ResolvedState],
        leaves: list[ResolvedState],
    ) -> None:
        acc = parent.extend(node)

        existing = by_key.get(node.key)
        if existing is not None:
            raise DuplicateStateKey(node.key, existing.path, acc.path)

        resolved = acc.flatten(node)
        by_key[node.key] = resolved
        if resolved.is_leaf:
            leaves.append(resolved)

        for child in node.children:
            self._visit(child, acc, by_key, leaves)


def resolve_states(
    tree: StateNode | Sequence[StateNode],
    default_config: ModelConfig | None = None,
) -> StateTree:
    """Shorthand for ``StateResolver(default_config).resolve(tree)``."""
    return StateResolver(default_config).resolve(tree)
