"""
Knowledge contexts a state may draw on.

Every context has a ContextSource that produces its text. Static text
and computed content share that one interface, so call sites never
branch on the kind of content.

Usage:
    catalog = ContextCatalog([
        ContextDefinition.static("policies", "Bank policies", POLICY_TEXT, priority=10),
        ContextDefinition(
            key="rates",
            description="Current interest rates",
            source=CallableContext(fetch_rates),
        ),
    ])

    assembled = await catalog.resolve(state.contexts)
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ContextSource(Protocol):
    """Produces context text on demand."""

    async def resolve(self) -> str: ...


@dataclass(frozen=True, slots=True)
class StaticContext:
    text: str

    async def resolve(self) -> str:
        return self.text


@dataclass(frozen=True, slots=True)
class CallableContext:
    """Context computed at assembly time by a sync or async callable."""

    fn: Callable[[], Union[str, Awaitable[str]]]

    async def resolve(self) -> str:
        value = self.fn()
        if inspect.isawaitable(value):
            value = await value
        return str(value)


@dataclass(frozen=True, slots=True)
class ContextDefinition:
    key: str
    description: str
    source: ContextSource
    priority: int = 0

    @classmethod
    def static(cls, key: str, description: str, text: str, priority: int = 0) -> ContextDefinition:
        return cls(key=key, description=description, source=StaticContext(text), priority=priority)


@dataclass(frozen=True, slots=True)
class AssembledContext:
    """A context with its content resolved, ready for the system message."""

    key: str
    description: str
    content: str
    priority: float = 0


class ContextCatalog:
    """Context definitions by key."""

    def __init__(self, definitions: Iterable[ContextDefinition] = ()) -> None:
        self._definitions: dict[str, ContextDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ContextDefinition) -> None:
        self._definitions[definition.key] = definition

    def get(self, key: str) -> ContextDefinition | None:
        return self._definitions.get(key)

    def select(self, keys: Sequence[str]) -> list[ContextDefinition]:
        """
        Definitions for ``keys``, highest priority first.

        Ties keep the order of ``keys``. Unknown keys are logged and skipped.
        """
        selected = []
        for key in keys:
            definition = self._definitions.get(key)
            if definition is None:
                logger.warning(f"[contexts] State references unknown context: {key}")
                continue
            selected.append(definition)
        return sorted(selected, key=lambda d: d.priority, reverse=True)

    async def resolve(self, keys: Sequence[str]) -> list[AssembledContext]:
        assembled = []
        for definition in self.select(keys):
            content = await definition.source.resolve()
            assembled.append(
                AssembledContext(
                    key=definition.key,
                    description=definition.description,
                    content=content,
                    priority=definition.priority,
                )
            )
        return assembled

    def keys(self) -> list[str]:
        return list(self._definitions.keys())

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, key: str) -> bool:
        return key in self._definitions
