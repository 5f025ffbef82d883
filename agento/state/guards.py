"""
State guards.

A guard is an access-control predicate attached to a state's entry or
exit. There are two explicit shapes, chosen when the guard is built:

- SimpleGuard: predicate returns a bool (or awaitable bool)
- EnhancedGuard: predicate returns a GuardResult, or a mapping with the
  same fields (or an awaitable of either)

``GuardEvaluator.evaluate`` normalizes both into a GuardResult. A state
without a guard is always allowed.

Usage:
    business_hours = SimpleGuard(lambda ctx: 9 <= datetime.now().hour < 17, name="business_hours")

    def premium_only(ctx: GuardContext) -> GuardResult:
        if ctx.metadata.get("tier") == "premium":
            return GuardResult.allow()
        return GuardResult.deny(
            "Premium feature",
            alternative_action=GuardAction.FALLBACK_STATE,
            fallback_state_key="upsell",
        )

    premium = EnhancedGuard(premium_only, name="premium_only")
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

logger = logging.getLogger(__name__)


class GuardAction(str, Enum):
    """What the pipeline should do instead when an entry guard denies."""

    FALLBACK_STATE = "fallback_state"
    CUSTOM_RESPONSE = "custom_response"


@dataclass(frozen=True, slots=True)
class GuardContext:
    user_id: str
    user_query: str
    previous_state: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class GuardResult:
    """
    Normalized guard outcome.

    Attributes:
        allowed: Whether the transition may proceed
        reason: Why it was denied (shown to the model or raised)
        alternative_action: What to do instead on entry denial
        fallback_state_key: Target state for FALLBACK_STATE
        custom_message: Text for CUSTOM_RESPONSE, or a notice for the fallback state
    """

    allowed: bool
    reason: str | None = None
    alternative_action: GuardAction | None = None
    fallback_state_key: str | None = None
    custom_message: str | None = None

    @classmethod
    def allow(cls) -> GuardResult:
        return cls(allowed=True)

    @classmethod
    def deny(
        cls,
        reason: str | None = None,
        *,
        alternative_action: GuardAction | str | None = None,
        fallback_state_key: str | None = None,
        custom_message: str | None = None,
    ) -> GuardResult:
        return cls(
            allowed=False,
            reason=reason,
            alternative_action=_coerce_action(alternative_action),
            fallback_state_key=fallback_state_key,
            custom_message=custom_message,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> GuardResult:
        """Build from a dict; accepts snake_case or camelCase keys."""

        def pick(snake: str, camel: str) -> Any:
            return data.get(snake, data.get(camel))

        return cls(
            allowed=bool(data.get("allowed", False)),
            reason=data.get("reason"),
            alternative_action=_coerce_action(pick("alternative_action", "alternativeAction")),
            fallback_state_key=pick("fallback_state_key", "fallbackStateKey"),
            custom_message=pick("custom_message", "customMessage"),
        )


def _coerce_action(value: GuardAction | str | None) -> GuardAction | None:
    if value is None or isinstance(value, GuardAction):
        return value
    try:
        return GuardAction(value)
    except ValueError:
        logger.warning(f"[guards] Unknown alternative action '{value}', ignoring")
        return None


SimplePredicate = Callable[[GuardContext], Union[bool, Awaitable[bool]]]
EnhancedPredicate = Callable[[GuardContext], Any]


@dataclass(frozen=True, slots=True)
class SimpleGuard:
    """Guard whose predicate answers yes or no."""

    predicate: SimplePredicate
    name: str = ""


@dataclass(frozen=True, slots=True)
class EnhancedGuard:
    """Guard whose predicate returns a full GuardResult (or mapping)."""

    predicate: EnhancedPredicate
    name: str = ""


Guard = Union[SimpleGuard, EnhancedGuard]


def is_guard(value: Any) -> bool:
    return isinstance(value, (SimpleGuard, EnhancedGuard))


class GuardEvaluator:
    """Runs guards and normalizes their output."""

    async def evaluate(self, guard: Guard | None, ctx: GuardContext) -> GuardResult:
        """
        Evaluate ``guard`` against ``ctx``.

        Exceptions raised by the predicate propagate.

        Raises:
            TypeError: An EnhancedGuard returned something other than a
                GuardResult or mapping
        """
        if guard is None:
            return GuardResult.allow()

        outcome = guard.predicate(ctx)
        if inspect.isawaitable(outcome):
            outcome = await outcome

        if isinstance(guard, SimpleGuard):
            return GuardResult(allowed=bool(outcome))

        if isinstance(outcome, GuardResult):
            return outcome
        if isinstance(outcome, Mapping):
            return GuardResult.from_mapping(outcome)

        raise TypeError(
            f"EnhancedGuard '{guard.name or guard.predicate!r}' returned "
            f"{type(outcome).__name__}; expected GuardResult or mapping"
        )


__all__ = [
    "EnhancedGuard",
    "Guard",
    "GuardAction",
    "GuardContext",
    "GuardEvaluator",
    "GuardResult",
    "SimpleGuard",
    "is_guard",
]
