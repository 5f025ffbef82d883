"""
Tests for conversation storage backends.

Covers:
- InMemoryConversationStorage history strategies and sessions
- RedisConversationStorage against a mocked redis.asyncio client
- Selection helpers shared by both backends
"""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest

from agento.conversation import (
    ConversationSession,
    HistoryQuery,
    InMemoryConversationStorage,
    RedisConversationStorage,
    RelevanceStrategy,
    StoredMessage,
    create_storage,
)
from agento.conversation.storage import cosine_similarity, keyword_overlap, supports_embeddings
from agento.errors import StorageFailure
from agento.providers.llm.base import MessageRole


def message(content, role="user", session_id="s-1", **kwargs):
    return StoredMessage(session_id=session_id, role=role, content=content, **kwargs)


async def fake_embedder(text):
    """Two-dimensional embedding: (mentions money, mentions weather)."""
    lowered = text.lower()
    return [
        1.0 if any(w in lowered for w in ("balance", "money", "transfer")) else 0.0,
        1.0 if "weather" in lowered else 0.0,
    ]


# =============================================================================
# Helpers
# =============================================================================


class TestSelectionHelpers:
    """Tests for similarity and keyword helpers."""

    def test_cosine_similarity(self):
        assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
        assert cosine_similarity([1, 0], [0, 1]) == 0.0
        assert cosine_similarity([], [1]) == 0.0
        assert cosine_similarity([0, 0], [1, 1]) == 0.0

    def test_keyword_overlap(self):
        assert keyword_overlap("my account balance is low", "account balance") == 1.0
        assert keyword_overlap("hello", "account balance") == 0.0
        assert keyword_overlap("anything", "a b") == 0.0

    def test_supports_embeddings(self):
        assert supports_embeddings(InMemoryConversationStorage()) is False
        assert supports_embeddings(InMemoryConversationStorage(embedder=fake_embedder)) is True
        assert supports_embeddings(object()) is False


# =============================================================================
# In-memory backend
# =============================================================================


class TestInMemoryStorage:
    """Tests for InMemoryConversationStorage."""

    @pytest.mark.asyncio
    async def test_recent_returns_newest_oldest_first(self):
        storage = InMemoryConversationStorage()
        for i in range(5):
            await storage.store_message(message(f"m{i}"))

        result = await storage.get_conversation_history(HistoryQuery(session_id="s-1", limit=3))

        assert [m.content for m in result.messages] == ["m2", "m3", "m4"]
        assert result.total_messages == 5
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_limit_zero_returns_nothing(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("m0"))

        result = await storage.get_conversation_history(HistoryQuery(session_id="s-1", limit=0))
        assert result.messages == []

    @pytest.mark.asyncio
    async def test_filters(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("q", state_key="check_balance"))
        await storage.store_message(message("a", role="assistant", state_key="check_balance"))
        await storage.store_message(message("other", state_key="help"))

        by_role = await storage.get_conversation_history(
            HistoryQuery(session_id="s-1", roles=[MessageRole.ASSISTANT])
        )
        by_state = await storage.get_conversation_history(
            HistoryQuery(session_id="s-1", state_keys=["help"])
        )

        assert [m.content for m in by_role.messages] == ["a"]
        assert [m.content for m in by_state.messages] == ["other"]

    @pytest.mark.asyncio
    async def test_recent_minutes_filter(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("old", timestamp=datetime.now(UTC) - timedelta(hours=2)))
        await storage.store_message(message("new"))

        result = await storage.get_conversation_history(HistoryQuery(session_id="s-1", recent_minutes=60))
        assert [m.content for m in result.messages] == ["new"]

    @pytest.mark.asyncio
    async def test_keyword_strategy(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("What's my balance?"))
        await storage.store_message(message("Nice weather"))

        result = await storage.get_conversation_history(
            HistoryQuery(session_id="s-1", strategy=RelevanceStrategy.KEYWORD, keywords=["BALANCE"])
        )
        assert [m.content for m in result.messages] == ["What's my balance?"]

    @pytest.mark.asyncio
    async def test_semantic_strategy_with_embedder(self):
        storage = InMemoryConversationStorage(embedder=fake_embedder)
        await storage.store_message(message("What's my balance?"))
        await storage.store_message(message("Nice weather today"))
        await storage.store_message(message("Transfer money to savings"))

        result = await storage.get_conversation_history(
            HistoryQuery(
                session_id="s-1",
                current_query="how much money do I have",
                strategy=RelevanceStrategy.SEMANTIC,
                min_similarity=0.7,
                limit=10,
            )
        )

        assert [m.content for m in result.messages] == ["What's my balance?", "Transfer money to savings"]

    @pytest.mark.asyncio
    async def test_hybrid_falls_back_to_keywords_without_embeddings(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("account balance please"))
        await storage.store_message(message("unrelated chatter"))

        result = await storage.get_conversation_history(
            HistoryQuery(
                session_id="s-1",
                current_query="balance",
                strategy=RelevanceStrategy.HYBRID,
                min_similarity=0.5,
            )
        )
        assert [m.content for m in result.messages] == ["account balance please"]

    @pytest.mark.asyncio
    async def test_sessions_and_summary(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("hi"))
        first = await storage.upsert_session(ConversationSession(session_id="s-1", user_id="u-1"))
        await storage.update_session_summary("s-1", "User greeted.")
        second = await storage.upsert_session(ConversationSession(session_id="s-1"))

        assert first.message_count == 1
        assert second.user_id == "u-1"
        assert second.summary == "User greeted."
        assert second.started_at == first.started_at

        result = await storage.get_conversation_history(HistoryQuery(session_id="s-1"))
        assert result.session_summary == "User greeted."

    @pytest.mark.asyncio
    async def test_search_across_sessions(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("balance check", session_id="a", user_id="u-1"))
        await storage.store_message(message("balance transfer", session_id="b", user_id="u-2"))
        await storage.store_message(message("weather", session_id="b", user_id="u-2"))

        everyone = await storage.search_across_sessions("balance")
        mine = await storage.search_across_sessions("balance", user_id="u-1")

        assert len(everyone) == 2
        assert [m.session_id for m in mine] == ["a"]

    @pytest.mark.asyncio
    async def test_cleanup(self):
        storage = InMemoryConversationStorage()
        await storage.store_message(message("hi", session_id="old"))
        await storage.upsert_session(ConversationSession(session_id="old"))
        storage._sessions["old"] = storage._sessions["old"].model_copy(
            update={"last_activity": datetime.now(UTC) - timedelta(days=100)}
        )
        await storage.upsert_session(ConversationSession(session_id="fresh"))

        assert await storage.cleanup(90) == 1
        assert await storage.get_session("old") is None
        assert storage.session_count() == 0

    def test_create_storage(self):
        assert isinstance(create_storage("memory"), InMemoryConversationStorage)
        assert isinstance(create_storage("redis", redis_url="redis://x:6379"), RedisConversationStorage)
        with pytest.raises(ValueError):
            create_storage("mongo")


class TestStoredMessage:
    """Tests for StoredMessage conversion."""

    def test_to_message_keeps_tool_linkage(self):
        stored = message(
            "",
            role="assistant",
            tool_calls=[{"id": "c1", "function": {"name": "get_balance", "arguments": {"id": 1}}}],
        )
        converted = stored.to_message()

        assert converted.role == MessageRole.ASSISTANT
        assert converted.tool_calls[0].name == "get_balance"
        assert json.loads(converted.tool_calls[0].arguments) == {"id": 1}


# =============================================================================
# Redis backend (mocked)
# =============================================================================


class FakeRedis:
    """Just enough of redis.asyncio for the storage backend."""

    def __init__(self):
        self.lists = {}
        self.strings = {}
        self.sets = {}
        self.expiries = {}

    async def rpush(self, key, value):
        self.lists.setdefault(key, []).append(value)

    async def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        self.lists[key] = items[start:] if end == -1 else items[start : end + 1]

    async def lrange(self, key, start, end):
        return list(self.lists.get(key, []))

    async def llen(self, key):
        return len(self.lists.get(key, []))

    async def expire(self, key, ttl):
        self.expiries[key] = ttl

    async def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    async def srem(self, key, member):
        self.sets.get(key, set()).discard(member)

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def set(self, key, value):
        self.strings[key] = value

    async def setex(self, key, ttl, value):
        self.strings[key] = value
        self.expiries[key] = ttl

    async def get(self, key):
        return self.strings.get(key)

    async def delete(self, *keys):
        for key in keys:
            self.lists.pop(key, None)
            self.strings.pop(key, None)

    async def aclose(self):
        pass


class TestRedisStorage:
    """Tests for RedisConversationStorage with mocked Redis."""

    @pytest.fixture
    def fake_redis(self):
        return FakeRedis()

    @pytest.mark.asyncio
    async def test_creates_client_lazily(self, fake_redis):
        with patch("redis.asyncio.from_url", return_value=fake_redis) as from_url:
            storage = RedisConversationStorage(redis_url="redis://cache:6379")
            await storage.store_message(message("hi"))

        from_url.assert_called_once_with("redis://cache:6379", encoding="utf-8", decode_responses=True)

    @pytest.mark.asyncio
    async def test_store_and_read_history(self, fake_redis):
        storage = RedisConversationStorage(client=fake_redis, key_prefix="test")
        for i in range(4):
            await storage.store_message(message(f"m{i}"))

        result = await storage.get_conversation_history(HistoryQuery(session_id="s-1", limit=2))

        assert [m.content for m in result.messages] == ["m2", "m3"]
        assert fake_redis.sets["test:sessions"] == {"s-1"}
        assert fake_redis.expiries["test:messages:s-1"] == 86400 * 7

    @pytest.mark.asyncio
    async def test_trims_to_max_messages(self, fake_redis):
        storage = RedisConversationStorage(client=fake_redis, max_messages_per_session=2, ttl_seconds=0)
        for i in range(3):
            await storage.store_message(message(f"m{i}"))

        history = await storage.get_conversation_history(HistoryQuery(session_id="s-1"))
        assert [m.content for m in history.messages] == ["m1", "m2"]
        assert fake_redis.expiries == {}

    @pytest.mark.asyncio
    async def test_skips_unreadable_entries(self, fake_redis):
        storage = RedisConversationStorage(client=fake_redis, key_prefix="test")
        fake_redis.lists["test:messages:s-1"] = ["{broken", message("ok").model_dump_json()]

        history = await storage.get_conversation_history(HistoryQuery(session_id="s-1"))
        assert [m.content for m in history.messages] == ["ok"]

    @pytest.mark.asyncio
    async def test_sessions_and_summary(self, fake_redis):
        storage = RedisConversationStorage(client=fake_redis)
        await storage.store_message(message("hi"))
        await storage.upsert_session(ConversationSession(session_id="s-1", user_id="u-1"))
        await storage.update_session_summary("s-1", "Greeting.")

        session = await storage.get_session("s-1")
        assert session.user_id == "u-1"
        assert session.summary == "Greeting."
        assert session.message_count == 1

    @pytest.mark.asyncio
    async def test_write_failure_raises_storage_failure(self):
        client = AsyncMock()
        client.rpush = AsyncMock(side_effect=ConnectionError("redis down"))
        storage = RedisConversationStorage(client=client)

        with pytest.raises(StorageFailure) as exc_info:
            await storage.store_message(message("hi"))
        assert exc_info.value.operation == "store_message"

    @pytest.mark.asyncio
    async def test_read_failure_raises_storage_failure(self):
        client = AsyncMock()
        client.lrange = AsyncMock(side_effect=ConnectionError("redis down"))
        storage = RedisConversationStorage(client=client)

        with pytest.raises(StorageFailure):
            await storage.get_conversation_history(HistoryQuery(session_id="s-1"))

    @pytest.mark.asyncio
    async def test_search_and_cleanup(self, fake_redis):
        storage = RedisConversationStorage(client=fake_redis)
        await storage.store_message(message("balance question", session_id="a"))
        await storage.store_message(message("weather", session_id="b"))
        await storage.upsert_session(ConversationSession(session_id="b"))

        found = await storage.search_across_sessions("balance")
        assert [m.session_id for m in found] == ["a"]

        # "a" has messages but no session record, so it counts as idle
        assert await storage.cleanup(30) == 1
        assert await storage._session_ids() == ["b"]

    @pytest.mark.asyncio
    async def test_close(self, fake_redis):
        storage = RedisConversationStorage(client=fake_redis)
        await storage.close()
        assert storage._client is None
