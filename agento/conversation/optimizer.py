"""
Conversation Optimizer.

Retrieves conversation history for a turn under a token budget using a
fallback ladder. Each rung is cheaper or looser than the previous one;
the first rung whose estimated size fits the budget wins:

    1. recent       last N messages (N=20)
    2. semantic     top 15 by embedding similarity >= 0.7
                    (only when the storage supports embeddings)
    3. hybrid       top 10 within the last 60 minutes, ranked by similarity
    4. summary      stored session summary + last 5 messages
                    (only when a summary exists)
    5. last_resort  last 3 messages, trimmed further until they fit

Token estimates use ceil(chars / 4). Rungs 2-4 are skipped when they
come back empty so an empty similarity hit does not hide usable history.
The result always carries the strategy tag so callers can see how far
retrieval degraded.

The optimizer also owns the per-session working memory (a capped cache
of recently stored messages) and on-demand session summaries.

Usage:
    optimizer = ConversationOptimizer(storage, llm=llm)
    history = await optimizer.optimize("session-1", "what did I transfer?", token_budget=2000)
    history.strategy          # HistoryStrategy.RECENT
    history.to_messages()     # list[Message] for the LLM
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from agento.config.schemas import ConversationSettings, ModelConfig
from agento.errors import StorageFailure
from agento.providers.llm.base import LLMProvider, Message, MessageRole
from agento.sessions import SessionStore
from agento.utils.structured import complete_with_deadline
from agento.utils.tokens import estimate_tokens

from .models import (
    ConversationSession,
    HistoryQuery,
    HistoryResult,
    RelevanceStrategy,
    StoredMessage,
)
from .storage import ConversationStorage, supports_embeddings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SUMMARY_PROMPT = """Summarize the conversation below for a support agent who will continue it.
Keep names, amounts, decisions and any open requests. Write 3-6 sentences of plain text."""


class HistoryStrategy(str, Enum):
    """Which ladder rung produced the history."""

    RECENT = "recent"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"
    SUMMARY = "summary"
    LAST_RESORT = "last_resort"


@dataclass(frozen=True, slots=True)
class OptimizedHistory:
    messages: tuple[StoredMessage, ...]
    strategy: HistoryStrategy
    estimated_tokens: int
    summary: str | None = None

    def to_messages(self) -> list[Message]:
        return [m.to_message() for m in self.messages]


def estimate_history_tokens(messages: Sequence[StoredMessage], summary: str | None = None) -> int:
    return sum(estimate_tokens(m.content) for m in messages) + estimate_tokens(summary)


def usable_messages(messages: Sequence[StoredMessage]) -> list[StoredMessage]:
    """
    Keep only tool traffic that is correlated within ``messages``.

    A window cut from a longer history can hold a tool reply whose call was
    cut off, or a call whose replies were not selected. Providers reject
    both, so an assistant message is dropped unless every call it makes is
    answered later in the window, and a tool message is dropped unless an
    earlier kept assistant message issued its ``tool_call_id``.
    """
    answered: set[str] = set()
    for m in messages:
        if m.role == MessageRole.TOOL and m.tool_call_id:
            answered.add(m.tool_call_id)

    issued: set[str] = set()
    kept = []
    for m in messages:
        if m.role == MessageRole.ASSISTANT and m.tool_calls:
            call_ids = {call.get("id") for call in m.tool_calls}
            if not call_ids <= answered:
                continue
            issued.update(call_ids)
        elif m.role == MessageRole.TOOL and m.tool_call_id not in issued:
            continue
        kept.append(m)
    return kept


class ConversationOptimizer:
    """
    Token-bounded history retrieval plus session bookkeeping.

    Args:
        storage: Authoritative conversation storage
        llm: Provider used for session summaries (optional)
        settings: Ladder sizes, working-memory cap, summary threshold
        working_memory: Per-session cache store (built from settings when None)
        summary_config: Model settings for summary calls
        llm_timeout: Deadline for summary calls in seconds
    """

    def __init__(
        self,
        storage: ConversationStorage,
        *,
        llm: LLMProvider | None = None,
        settings: ConversationSettings | None = None,
        working_memory: SessionStore[list[StoredMessage]] | None = None,
        summary_config: ModelConfig | None = None,
        llm_timeout: float | None = None,
    ) -> None:
        self._storage = storage
        self._llm = llm
        self._settings = settings or ConversationSettings()
        self._working_memory = working_memory or SessionStore(list, name="working_memory")
        self._summary_config = summary_config or ModelConfig(temperature=0.3, max_tokens=400)
        self._llm_timeout = llm_timeout

    @property
    def storage(self) -> ConversationStorage:
        return self._storage

    @property
    def settings(self) -> ConversationSettings:
        return self._settings

    async def _storage_call(self, operation: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except StorageFailure:
            raise
        except Exception as e:
            logger.error(f"[conversation_optimizer] Storage {operation} failed: {e}")
            raise StorageFailure(operation, e) from e

    async def _history(self, query: HistoryQuery) -> HistoryResult:
        return await self._storage_call(
            "get_conversation_history", self._storage.get_conversation_history(query)
        )

    # -------------------------------------------------------------------------
    # Fallback ladder
    # -------------------------------------------------------------------------

    async def optimize(
        self,
        session_id: str,
        query: str,
        token_budget: int | None = None,
    ) -> OptimizedHistory:
        """
        Select history for ``session_id`` that fits ``token_budget``.

        Raises:
            StorageFailure: The storage backend failed
        """
        budget = token_budget if token_budget is not None else self._settings.max_history_tokens
        s = self._settings

        recent = await self._history(
            HistoryQuery(session_id=session_id, limit=s.recent_limit, strategy=RelevanceStrategy.RECENT)
        )
        recent_messages = usable_messages(recent.messages)

        result = self._fit(recent_messages, budget, HistoryStrategy.RECENT, allow_empty=True)
        if result is not None:
            return self._done(session_id, result, budget)

        if s.enable_embeddings and supports_embeddings(self._storage):
            semantic = await self._history(
                HistoryQuery(
                    session_id=session_id,
                    current_query=query,
                    limit=s.semantic_limit,
                    min_similarity=s.semantic_min_similarity,
                    strategy=RelevanceStrategy.SEMANTIC,
                )
            )
            result = self._fit(usable_messages(semantic.messages), budget, HistoryStrategy.SEMANTIC)
            if result is not None:
                return self._done(session_id, result, budget)

        hybrid = await self._history(
            HistoryQuery(
                session_id=session_id,
                current_query=query,
                limit=s.hybrid_limit,
                recent_minutes=s.hybrid_recent_minutes,
                strategy=RelevanceStrategy.HYBRID,
            )
        )
        result = self._fit(usable_messages(hybrid.messages), budget, HistoryStrategy.HYBRID)
        if result is not None:
            return self._done(session_id, result, budget)

        summary = recent.session_summary
        if summary is None:
            session = await self.get_session(session_id)
            summary = session.summary if session else None
        if summary:
            tail = usable_messages(recent_messages[-s.summary_tail :])
            result = self._fit(tail, budget, HistoryStrategy.SUMMARY, summary=summary)
            if result is not None:
                return self._done(session_id, result, budget)

        # Always fits: drop oldest until under budget, possibly to nothing
        tail = usable_messages(recent_messages[-s.last_resort_tail :])
        while tail and estimate_history_tokens(tail) > budget:
            tail = usable_messages(tail[1:])
        return self._done(
            session_id,
            OptimizedHistory(
                messages=tuple(tail),
                strategy=HistoryStrategy.LAST_RESORT,
                estimated_tokens=estimate_history_tokens(tail),
            ),
            budget,
        )

    @staticmethod
    def _fit(
        messages: list[StoredMessage],
        budget: int,
        strategy: HistoryStrategy,
        *,
        summary: str | None = None,
        allow_empty: bool = False,
    ) -> OptimizedHistory | None:
        if not messages and not allow_empty:
            return None
        tokens = estimate_history_tokens(messages, summary)
        if tokens > budget:
            return None
        return OptimizedHistory(
            messages=tuple(messages),
            strategy=strategy,
            estimated_tokens=tokens,
            summary=summary,
        )

    @staticmethod
    def _done(session_id: str, result: OptimizedHistory, budget: int) -> OptimizedHistory:
        logger.info(
            f"[conversation_optimizer] {session_id}: {result.strategy.value} strategy, "
            f"{len(result.messages)} messages, ~{result.estimated_tokens}/{budget} tokens"
        )
        return result

    # -------------------------------------------------------------------------
    # Storage and working memory
    # -------------------------------------------------------------------------

    async def store_message(
        self,
        session_id: str,
        role: MessageRole | str,
        content: str,
        *,
        user_id: str | None = None,
        state_key: str | None = None,
        tool_calls: list[dict[str, Any]] | None = None,
        tool_call_id: str | None = None,
        tool_results: list[dict[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> StoredMessage:
        """
        Persist a message, cache it in working memory and touch the session.

        Raises:
            StorageFailure: The storage backend failed
        """
        message = StoredMessage(
            session_id=session_id,
            user_id=user_id,
            role=MessageRole(role),
            content=content,
            state_key=state_key,
            tool_calls=tool_calls or [],
            tool_call_id=tool_call_id,
            tool_results=tool_results or [],
            metadata=metadata or {},
        )
        stored = await self._storage_call("store_message", self._storage.store_message(message))

        memory = self._working_memory.get(session_id)
        memory.append(stored)
        overflow = len(memory) - self._settings.working_memory_size
        if overflow > 0:
            del memory[:overflow]

        await self._storage_call(
            "upsert_session",
            self._storage.upsert_session(ConversationSession(session_id=session_id, user_id=user_id)),
        )
        return stored

    def get_working_memory(self, session_id: str) -> list[StoredMessage]:
        """Recently stored messages for the session (a cache, oldest first)."""
        memory = self._working_memory.peek(session_id)
        return list(memory) if memory else []

    async def get_history(self, session_id: str, limit: int | None = None) -> list[StoredMessage]:
        result = await self._history(
            HistoryQuery(session_id=session_id, limit=limit, strategy=RelevanceStrategy.RECENT)
        )
        return result.messages

    async def get_session(self, session_id: str) -> ConversationSession | None:
        return await self._storage_call("get_session", self._storage.get_session(session_id))

    async def summarize_session(self, session_id: str) -> str | None:
        """
        Summarize the full stored history with the LLM and store the summary.

        Returns:
            The summary, or None when the session has fewer than
            ``min_summary_messages`` messages
        """
        if self._llm is None:
            raise ValueError("ConversationOptimizer has no LLM configured for summaries")

        messages = await self.get_history(session_id)
        if len(messages) < self._settings.min_summary_messages:
            logger.info(
                f"[conversation_optimizer] Not summarizing {session_id}: "
                f"{len(messages)} < {self._settings.min_summary_messages} messages"
            )
            return None

        transcript = "\n".join(f"{m.role.value}: {m.content}" for m in messages if m.content)
        response = await complete_with_deadline(
            self._llm,
            [Message.system(SUMMARY_PROMPT), Message.user(transcript)],
            config=self._summary_config,
            timeout=self._llm_timeout,
            operation="session_summary",
        )
        summary = response.content.strip()
        if not summary:
            logger.warning(f"[conversation_optimizer] Empty summary for {session_id}")
            return None

        await self._storage_call(
            "update_session_summary", self._storage.update_session_summary(session_id, summary)
        )
        logger.info(f"[conversation_optimizer] Summarized {session_id} ({len(messages)} messages)")
        return summary

    async def search_conversations(
        self,
        query: str,
        user_id: str | None = None,
        limit: int = 10,
    ) -> list[StoredMessage]:
        search = getattr(self._storage, "search_across_sessions", None)
        if search is None:
            logger.warning("[conversation_optimizer] Storage does not support cross-session search")
            return []
        return await self._storage_call("search_across_sessions", search(query, user_id, limit))

    async def cleanup(self, retention_days: int) -> int:
        cleanup = getattr(self._storage, "cleanup", None)
        if cleanup is None:
            logger.warning("[conversation_optimizer] Storage does not support cleanup")
            return 0
        deleted = await self._storage_call("cleanup", cleanup(retention_days))
        self._working_memory.evict_expired()
        return deleted
