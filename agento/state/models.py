"""
State tree models.

StateNode is the author-supplied, hierarchical description of agent
behaviors. ResolvedState is the flattened, inheritance-resolved profile
the resolver derives for each node; StateTree indexes them.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agento.config.schemas import ModelConfig
from agento.errors import UnknownSelectedState

from .guards import Guard, is_guard


class StateNode(BaseModel):
    """
    One node of the state tree.

    Keys must be unique across the whole tree, not just among siblings.
    Children extend their ancestors: prompts, contexts and tools are
    additive, ``llm_config`` fields override, ``metadata`` shallow-merges.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    key: str = Field(..., min_length=1)
    description: str
    prompt: str | None = None
    llm_config: ModelConfig | None = None
    contexts: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    children: list[StateNode] = Field(default_factory=list)
    on_enter: Any = None
    on_leave: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("on_enter", "on_leave")
    @classmethod
    def _check_guard(cls, value: Any) -> Any:
        if value is not None and not is_guard(value):
            raise ValueError("guards must be SimpleGuard or EnhancedGuard instances")
        return value

    @property
    def is_leaf(self) -> bool:
        return not self.children


StateNode.model_rebuild()


@dataclass(frozen=True, slots=True)
class ResolvedState:
    """
    Behavior profile for one node after inheritance.

    Attributes:
        full_prompt: Ancestor prompt fragments joined root first
        contexts: Ordered union of context keys, ancestors first
        tools: Ordered union of tool names, ancestors first
        llm_config: Effective model settings (closest override wins per field)
        metadata: Shallow-merged metadata (self overrides ancestors)
        path: Keys from the root down to this node
        on_enter / on_leave: Closest guard defined along the path
    """

    key: str
    description: str
    full_prompt: str
    contexts: tuple[str, ...]
    tools: tuple[str, ...]
    llm_config: ModelConfig
    metadata: Mapping[str, Any]
    is_leaf: bool
    path: tuple[str, ...]
    on_enter: Guard | None = None
    on_leave: Guard | None = None

    @property
    def parent_key(self) -> str | None:
        return self.path[-2] if len(self.path) > 1 else None

    def to_summary(self) -> dict[str, Any]:
        """Serializable view without guard callables."""
        return {
            "key": self.key,
            "description": self.description,
            "is_leaf": self.is_leaf,
            "path": list(self.path),
            "contexts": list(self.contexts),
            "tools": list(self.tools),
            "llm_config": self.llm_config.model_dump(exclude_none=True),
        }


@dataclass(frozen=True)
class StateTree:
    """Resolved states by key, plus the leaves in pre-order."""

    by_key: Mapping[str, ResolvedState]
    leaves: tuple[ResolvedState, ...]
    roots: tuple[str, ...] = field(default=())

    def get(self, key: str) -> ResolvedState | None:
        return self.by_key.get(key)

    def require(self, key: str) -> ResolvedState:
        """
        Raises:
            UnknownSelectedState: ``key`` is not in the tree
        """
        state = self.by_key.get(key)
        if state is None:
            raise UnknownSelectedState(key, list(self.by_key.keys()))
        return state

    def require_leaf(self, key: str) -> ResolvedState:
        """Like ``require`` but only leaf states qualify."""
        state = self.by_key.get(key)
        if state is None or not state.is_leaf:
            raise UnknownSelectedState(key, [leaf.key for leaf in self.leaves])
        return state

    def keys(self) -> list[str]:
        return list(self.by_key.keys())

    def children_of(self, key: str) -> list[ResolvedState]:
        return [s for s in self.by_key.values() if s.parent_key == key]

    def __iter__(self) -> Iterator[ResolvedState]:
        return iter(self.by_key.values())

    def __len__(self) -> int:
        return len(self.by_key)
