"""
Conversation Storage.

The storage backend is the source of truth for conversation history.
It is an external collaborator described by the ConversationStorage
protocol; two implementations ship here:

- InMemoryConversationStorage: tests and development
- RedisConversationStorage (redis.py): production, JSON in Redis

Design:
    - Required methods cover messages, history queries and sessions
    - Optional capabilities are detected with ``getattr`` by callers:
      ``generate_embedding`` (enables semantic retrieval),
      ``search_across_sessions`` and ``cleanup``
    - History results are always returned oldest first

Usage:
    storage = create_storage("memory")
    await storage.store_message(StoredMessage(session_id="s-1", role="user", content="Hi"))
    result = await storage.get_conversation_history(HistoryQuery(session_id="s-1", limit=20))
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .models import (
    ConversationSession,
    HistoryQuery,
    HistoryResult,
    RelevanceStrategy,
    StoredMessage,
)

if TYPE_CHECKING:
    from .redis import RedisConversationStorage

logger = logging.getLogger(__name__)

Embedder = Callable[[str], Awaitable[list[float]]]

_WORD = re.compile(r"[a-z0-9]+")


# =============================================================================
# Protocol
# =============================================================================


@runtime_checkable
class ConversationStorage(Protocol):
    """Interface every conversation storage backend implements."""

    async def store_message(self, message: StoredMessage) -> StoredMessage:
        """Persist a message; returns it as stored."""
        ...

    async def get_conversation_history(self, query: HistoryQuery) -> HistoryResult:
        """Select messages for a session according to ``query``."""
        ...

    async def upsert_session(self, session: ConversationSession) -> ConversationSession:
        """Create or update session bookkeeping."""
        ...

    async def get_session(self, session_id: str) -> ConversationSession | None:
        ...

    async def update_session_summary(self, session_id: str, summary: str) -> None:
        ...


def supports_embeddings(storage: Any) -> bool:
    return callable(getattr(storage, "generate_embedding", None)) and bool(
        getattr(storage, "embeddings_enabled", True)
    )


# =============================================================================
# Selection helpers (shared by backends that filter client-side)
# =============================================================================


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def tokenize(text: str) -> set[str]:
    return {w for w in _WORD.findall(text.lower()) if len(w) > 2}


def keyword_overlap(text: str, query: str) -> float:
    """Fraction of the query's words that appear in ``text``."""
    query_words = tokenize(query)
    if not query_words:
        return 0.0
    return len(query_words & tokenize(text)) / len(query_words)


def apply_filters(messages: Sequence[StoredMessage], query: HistoryQuery) -> list[StoredMessage]:
    selected = list(messages)
    if query.roles:
        roles = set(query.roles)
        selected = [m for m in selected if m.role in roles]
    if query.state_keys:
        keys = set(query.state_keys)
        selected = [m for m in selected if m.state_key in keys]
    if query.recent_minutes:
        cutoff = datetime.now(UTC) - timedelta(minutes=query.recent_minutes)
        selected = [m for m in selected if m.timestamp >= cutoff]
    return selected


def rank_messages(
    candidates: list[StoredMessage],
    query: HistoryQuery,
    query_embedding: Sequence[float] | None = None,
) -> tuple[list[StoredMessage], bool]:
    """
    Order and cut candidates according to the query's strategy.

    Returns:
        (selected messages oldest first, truncated flag)
    """
    limit = query.limit if query.limit is not None else len(candidates)
    strategy = query.strategy

    if strategy == RelevanceStrategy.KEYWORD and query.keywords:
        keywords = [k.lower() for k in query.keywords]
        candidates = [m for m in candidates if any(k in m.content.lower() for k in keywords)]

    if strategy in (RelevanceStrategy.SEMANTIC, RelevanceStrategy.HYBRID) and query.current_query:
        floor = query.min_similarity if query.min_similarity is not None else 0.0
        scored = []
        for position, message in enumerate(candidates):
            if query_embedding is not None and message.embedding:
                score = cosine_similarity(query_embedding, message.embedding)
            elif strategy == RelevanceStrategy.HYBRID:
                score = keyword_overlap(message.content, query.current_query)
            else:
                continue
            if score >= floor:
                scored.append((score, position, message))
        scored.sort(key=lambda item: (-item[0], -item[1]))
        top = scored[:limit]
        top.sort(key=lambda item: item[1])
        return [m for _, _, m in top], len(scored) > len(top)

    # Recent / keyword: newest ``limit``, returned oldest first
    truncated = len(candidates) > limit
    return (candidates[-limit:] if limit else []), truncated


# =============================================================================
# In-Memory Implementation
# =============================================================================


class InMemoryConversationStorage:
    """
    In-memory conversation storage for testing and development.

    Not suitable for production (data lost on restart). When built with
    an ``embedder`` it supports semantic retrieval: embeddings are
    computed on store and compared with cosine similarity.

    Example:
        storage = InMemoryConversationStorage()
        await storage.store_message(StoredMessage(session_id="s-1", role="user", content="Hi"))
    """

    def __init__(self, embedder: Embedder | None = None) -> None:
        self._messages: dict[str, list[StoredMessage]] = {}
        self._sessions: dict[str, ConversationSession] = {}
        self._embedder = embedder

    @property
    def embeddings_enabled(self) -> bool:
        return self._embedder is not None

    async def generate_embedding(self, text: str) -> list[float]:
        if self._embedder is None:
            raise RuntimeError("No embedder configured")
        return await self._embedder(text)

    async def store_message(self, message: StoredMessage) -> StoredMessage:
        if self._embedder is not None and message.embedding is None and message.content:
            message = message.model_copy(update={"embedding": await self._embedder(message.content)})
        self._messages.setdefault(message.session_id, []).append(message)
        logger.debug(f"[storage:inmemory] Stored {message.role.value} message in {message.session_id}")
        return message

    async def get_conversation_history(self, query: HistoryQuery) -> HistoryResult:
        messages = self._messages.get(query.session_id, [])
        candidates = apply_filters(messages, query)

        query_embedding = None
        if (
            self._embedder is not None
            and query.current_query
            and query.strategy in (RelevanceStrategy.SEMANTIC, RelevanceStrategy.HYBRID)
        ):
            query_embedding = await self._embedder(query.current_query)

        selected, truncated = rank_messages(candidates, query, query_embedding)
        session = self._sessions.get(query.session_id)
        return HistoryResult(
            messages=selected,
            total_messages=len(messages),
            session_summary=session.summary if session else None,
            truncated=truncated,
        )

    async def upsert_session(self, session: ConversationSession) -> ConversationSession:
        existing = self._sessions.get(session.session_id)
        update: dict[str, Any] = {
            "last_activity": datetime.now(UTC),
            "message_count": len(self._messages.get(session.session_id, [])),
        }
        if existing is not None:
            update["started_at"] = existing.started_at
            if session.summary is None:
                update["summary"] = existing.summary
            if session.user_id is None:
                update["user_id"] = existing.user_id
            update["metadata"] = {**existing.metadata, **session.metadata}
        stored = session.model_copy(update=update)
        self._sessions[session.session_id] = stored
        return stored

    async def get_session(self, session_id: str) -> ConversationSession | None:
        return self._sessions.get(session_id)

    async def update_session_summary(self, session_id: str, summary: str) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            session = ConversationSession(session_id=session_id)
        self._sessions[session_id] = session.model_copy(update={"summary": summary})

    async def search_across_sessions(
        self,
        query: str,
        user_id: str | None = None,
        limit: int = 10,
    ) -> list[StoredMessage]:
        """Keyword search over every session, best matches first."""
        scored = []
        for messages in self._messages.values():
            for message in messages:
                if user_id is not None and message.user_id != user_id:
                    continue
                score = keyword_overlap(message.content, query)
                if score > 0:
                    scored.append((score, message.timestamp, message))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [m for _, _, m in scored[:limit]]

    async def cleanup(self, retention_days: int) -> int:
        """Delete sessions idle for longer than ``retention_days``; returns count."""
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        expired = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
        for session_id in expired:
            del self._sessions[session_id]
            self._messages.pop(session_id, None)
        if expired:
            logger.info(f"[storage:inmemory] Cleaned up {len(expired)} sessions")
        return len(expired)

    def session_count(self) -> int:
        """Get number of sessions with messages (for testing)."""
        return len(self._messages)


# =============================================================================
# Convenience Functions
# =============================================================================


def create_storage(
    backend: str = "memory",
    **kwargs: Any,
) -> InMemoryConversationStorage | RedisConversationStorage:
    """
    Create a conversation storage backend.

    Args:
        backend: "memory" or "redis"
        **kwargs: Backend-specific configuration

    Example:
        storage = create_storage("memory")
        storage = create_storage("redis", redis_url="redis://localhost:6379")
    """
    if backend in ("memory", "inmemory"):
        return InMemoryConversationStorage(**kwargs)
    if backend == "redis":
        from .redis import RedisConversationStorage

        return RedisConversationStorage(**kwargs)
    raise ValueError(f"Unknown backend: {backend}")
