"""
Redis-backed conversation storage.

Storage Format:
    - f"{prefix}:messages:{session_id}" -> list of StoredMessage JSON (RPUSH)
    - f"{prefix}:session:{session_id}"  -> ConversationSession JSON
    - f"{prefix}:sessions"              -> set of known session ids

Keys expire ``ttl_seconds`` after the last write (0 = no expiry).
History selection runs client-side with the same ranking helpers as the
in-memory backend.

Example:
    storage = RedisConversationStorage(redis_url="redis://localhost:6379")
    await storage.store_message(StoredMessage(session_id="s-1", role="user", content="Hello!"))
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import ValidationError

from agento.errors import StorageFailure

from .models import ConversationSession, HistoryQuery, HistoryResult, RelevanceStrategy, StoredMessage
from .storage import Embedder, apply_filters, keyword_overlap, rank_messages

logger = logging.getLogger(__name__)


class RedisConversationStorage:
    """
    Conversation storage in Redis with automatic expiration.

    Args:
        redis_url: Redis connection URL
        key_prefix: Prefix for all keys
        ttl_seconds: Time-to-live for session data (0 = no expiry)
        max_messages_per_session: Oldest messages are trimmed beyond this
        embedder: Optional async text -> vector function for semantic retrieval
        client: Pre-built ``redis.asyncio`` client (skips lazy creation)
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "agento:conversation",
        ttl_seconds: int = 86400 * 7,  # 7 days default
        max_messages_per_session: int = 1000,
        embedder: Embedder | None = None,
        client: Any = None,
    ) -> None:
        self._redis_url = redis_url
        self._key_prefix = key_prefix
        self._ttl = ttl_seconds
        self._max_messages = max_messages_per_session
        self._embedder = embedder
        self._client: Any = client  # redis.asyncio.Redis

    async def _get_client(self) -> Any:
        """Get or create Redis client."""
        if self._client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError:
                raise ImportError(
                    "redis package required for RedisConversationStorage. "
                    "Install with: pip install redis"
                )
            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _messages_key(self, session_id: str) -> str:
        return f"{self._key_prefix}:messages:{session_id}"

    def _session_key(self, session_id: str) -> str:
        return f"{self._key_prefix}:session:{session_id}"

    @property
    def _index_key(self) -> str:
        return f"{self._key_prefix}:sessions"

    @property
    def embeddings_enabled(self) -> bool:
        return self._embedder is not None

    async def generate_embedding(self, text: str) -> list[float]:
        if self._embedder is None:
            raise RuntimeError("No embedder configured")
        return await self._embedder(text)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    async def store_message(self, message: StoredMessage) -> StoredMessage:
        if self._embedder is not None and message.embedding is None and message.content:
            message = message.model_copy(update={"embedding": await self._embedder(message.content)})

        client = await self._get_client()
        key = self._messages_key(message.session_id)
        try:
            await client.rpush(key, message.model_dump_json())
            await client.ltrim(key, -self._max_messages, -1)
            if self._ttl > 0:
                await client.expire(key, self._ttl)
            await client.sadd(self._index_key, message.session_id)
        except Exception as e:
            logger.error(f"[storage:redis] Failed to store message: {e}")
            raise StorageFailure("store_message", e) from e

        logger.debug(f"[storage:redis] Stored {message.role.value} message in {message.session_id}")
        return message

    async def _load_messages(self, session_id: str) -> list[StoredMessage]:
        client = await self._get_client()
        try:
            raw = await client.lrange(self._messages_key(session_id), 0, -1)
        except Exception as e:
            raise StorageFailure("get_conversation_history", e) from e

        messages = []
        for item in raw or []:
            try:
                messages.append(StoredMessage.model_validate_json(item))
            except ValidationError as e:
                logger.warning(f"[storage:redis] Skipping unreadable message in {session_id}: {e}")
        return messages

    async def get_conversation_history(self, query: HistoryQuery) -> HistoryResult:
        messages = await self._load_messages(query.session_id)
        candidates = apply_filters(messages, query)

        query_embedding = None
        if (
            self._embedder is not None
            and query.current_query
            and query.strategy in (RelevanceStrategy.SEMANTIC, RelevanceStrategy.HYBRID)
        ):
            query_embedding = await self._embedder(query.current_query)

        selected, truncated = rank_messages(candidates, query, query_embedding)
        session = await self.get_session(query.session_id)
        return HistoryResult(
            messages=selected,
            total_messages=len(messages),
            session_summary=session.summary if session else None,
            truncated=truncated,
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def _write_session(self, session: ConversationSession) -> None:
        client = await self._get_client()
        data = session.model_dump_json()
        key = self._session_key(session.session_id)
        try:
            if self._ttl > 0:
                await client.setex(key, self._ttl, data)
            else:
                await client.set(key, data)
            await client.sadd(self._index_key, session.session_id)
        except Exception as e:
            raise StorageFailure("upsert_session", e) from e

    async def upsert_session(self, session: ConversationSession) -> ConversationSession:
        existing = await self.get_session(session.session_id)
        client = await self._get_client()
        try:
            count = await client.llen(self._messages_key(session.session_id))
        except Exception as e:
            raise StorageFailure("upsert_session", e) from e

        update: dict[str, Any] = {"last_activity": datetime.now(UTC), "message_count": int(count or 0)}
        if existing is not None:
            update["started_at"] = existing.started_at
            if session.summary is None:
                update["summary"] = existing.summary
            if session.user_id is None:
                update["user_id"] = existing.user_id
            update["metadata"] = {**existing.metadata, **session.metadata}

        stored = session.model_copy(update=update)
        await self._write_session(stored)
        return stored

    async def get_session(self, session_id: str) -> ConversationSession | None:
        client = await self._get_client()
        try:
            data = await client.get(self._session_key(session_id))
        except Exception as e:
            raise StorageFailure("get_session", e) from e
        if data is None:
            return None
        try:
            return ConversationSession.model_validate_json(data)
        except ValidationError as e:
            logger.warning(f"[storage:redis] Failed to parse session {session_id}: {e}")
            return None

    async def update_session_summary(self, session_id: str, summary: str) -> None:
        session = await self.get_session(session_id) or ConversationSession(session_id=session_id)
        await self._write_session(session.model_copy(update={"summary": summary}))

    # -------------------------------------------------------------------------
    # Optional capabilities
    # -------------------------------------------------------------------------

    async def _session_ids(self) -> list[str]:
        client = await self._get_client()
        try:
            return sorted(await client.smembers(self._index_key) or [])
        except Exception as e:
            raise StorageFailure("list_sessions", e) from e

    async def search_across_sessions(
        self,
        query: str,
        user_id: str | None = None,
        limit: int = 10,
    ) -> list[StoredMessage]:
        """Keyword search over every indexed session, best matches first."""
        scored = []
        for session_id in await self._session_ids():
            for message in await self._load_messages(session_id):
                if user_id is not None and message.user_id != user_id:
                    continue
                score = keyword_overlap(message.content, query)
                if score > 0:
                    scored.append((score, message.timestamp, message))
        scored.sort(key=lambda item: (item[0], item[1]), reverse=True)
        return [m for _, _, m in scored[:limit]]

    async def cleanup(self, retention_days: int) -> int:
        """Delete sessions idle longer than ``retention_days``; returns count."""
        client = await self._get_client()
        cutoff = datetime.now(UTC) - timedelta(days=retention_days)
        deleted = 0
        for session_id in await self._session_ids():
            session = await self.get_session(session_id)
            if session is not None and session.last_activity >= cutoff:
                continue
            try:
                await client.delete(self._messages_key(session_id), self._session_key(session_id))
                await client.srem(self._index_key, session_id)
            except Exception as e:
                raise StorageFailure("cleanup", e) from e
            deleted += 1
        if deleted:
            logger.info(f"[storage:redis] Cleaned up {deleted} sessions")
        return deleted

    async def close(self) -> None:
        """Close Redis connection."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
