"""
Intent Router.

Classifies a user query against the leaf states of the resolved tree and
returns exactly one selection.

Policy:
    - The prompt lists leaf keys, their paths and descriptions (never prompts)
    - The last 3 history turns are included for follow-up questions
    - Unparseable output falls back to the first leaf with confidence 10
    - A parseable reply naming a key outside the leaf set raises
      UnknownSelectedState; there is no silent default for that case
    - An empty leaf set raises RoutingError

Usage:
    router = IntentRouter(llm)
    selection = await router.route("What's my balance?", history, tree.leaves)
    selection.selected_key    # "check_balance"
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from agento.config.schemas import ModelConfig
from agento.errors import RoutingError, UnknownSelectedState
from agento.providers.llm.base import LLMProvider, Message
from agento.state.models import ResolvedState
from agento.utils.structured import complete_structured

logger = logging.getLogger(__name__)

FALLBACK_CONFIDENCE = 10.0

# Note: Double braces {{ }} are escaped for Python .format()
ROUTER_PROMPT = """You are an intent analyzer for an AI agent. Choose the leaf state that should handle the user's request.

Available leaf states:
{states}

Rules:
- You MUST select one of the keys listed above, exactly as written
- Prefer the most specific state when several could work
- Confidence (0-100) reflects how certain you are about the match

Respond with ONLY a JSON object:
{{"selected_state_key": "exact_key_from_list", "confidence": 85, "reasoning": "brief explanation"}}"""


class RouterReply(BaseModel):
    """Shape of the model's routing answer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    selected_state_key: str = Field(
        min_length=1,
        validation_alias=AliasChoices("selected_state_key", "selectedStateKey"),
    )
    confidence: float = 50.0
    reasoning: str = ""

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 50.0
        return max(0.0, min(100.0, number))

    @field_validator("reasoning", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value)


@dataclass(frozen=True, slots=True)
class IntentSelection:
    selected_key: str
    confidence: float
    reasoning: str
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_key": self.selected_key,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "fallback": self.fallback,
        }


class IntentRouter:
    """
    LLM-backed classifier over leaf states.

    Args:
        llm: Provider used for classification
        config: Model settings (low temperature recommended)
        history_turns: How many recent turns to show the model
        timeout: Deadline for the classification call in seconds
    """

    def __init__(
        self,
        llm: LLMProvider,
        *,
        config: ModelConfig | None = None,
        history_turns: int = 3,
        timeout: float | None = None,
    ) -> None:
        self._llm = llm
        self._config = config or ModelConfig(temperature=0.1, max_tokens=300)
        self._history_turns = history_turns
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "intent_router"

    def build_messages(
        self,
        query: str,
        history: Sequence[Any],
        leaves: Sequence[ResolvedState],
        metadata: dict[str, Any] | None = None,
    ) -> list[Message]:
        states = "\n".join(
            f"- {leaf.key} ({' > '.join(leaf.path)}): {leaf.description}" for leaf in leaves
        )
        parts = []
        recent = list(history)[-self._history_turns :] if self._history_turns > 0 else []
        if recent:
            lines = "\n".join(f"{getattr(t.role, 'value', t.role)}: {t.content}" for t in recent)
            parts.append(f"Recent conversation:\n{lines}")
        if metadata:
            parts.append(f"Metadata: {metadata}")
        parts.append(f'Please analyze this query: "{query}"')
        return [
            Message.system(ROUTER_PROMPT.format(states=states)),
            Message.user("\n\n".join(parts)),
        ]

    async def route(
        self,
        query: str,
        history: Sequence[Any],
        leaves: Sequence[ResolvedState],
        metadata: dict[str, Any] | None = None,
    ) -> IntentSelection:
        """
        Select one leaf for ``query``.

        Raises:
            RoutingError: No leaves to choose from
            UnknownSelectedState: The model named a key outside ``leaves``
        """
        if not leaves:
            raise RoutingError("No leaf states available for routing")

        fell_back = False

        def fallback_reply() -> RouterReply:
            nonlocal fell_back
            fell_back = True
            return RouterReply(
                selected_state_key=leaves[0].key,
                confidence=FALLBACK_CONFIDENCE,
                reasoning="Fallback selection due to unparseable router response",
            )

        reply = await complete_structured(
            self._llm,
            self.build_messages(query, history, leaves, metadata),
            RouterReply,
            default=fallback_reply,
            config=self._config,
            timeout=self._timeout,
            label="intent_routing",
        )

        leaf_keys = [leaf.key for leaf in leaves]
        key = reply.selected_state_key.strip()
        if key not in leaf_keys:
            logger.error(f"[intent_router] Model selected unknown state '{key}'")
            raise UnknownSelectedState(key, leaf_keys)

        logger.info(f"[intent_router] Selected {key} (confidence={reply.confidence:.0f})")
        return IntentSelection(
            selected_key=key,
            confidence=reply.confidence,
            reasoning=reply.reasoning,
            fallback=fell_back,
        )


__all__ = ["IntentRouter", "IntentSelection", "RouterReply"]
