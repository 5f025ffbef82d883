"""
Conversation persistence and history retrieval.

- StoredMessage / ConversationSession: persisted records
- ConversationStorage: backend protocol (in-memory and Redis implementations)
- ConversationOptimizer: token-bounded fallback-ladder retrieval
"""

from .models import (
    ConversationSession,
    HistoryQuery,
    HistoryResult,
    RelevanceStrategy,
    StoredMessage,
)
from .optimizer import ConversationOptimizer, HistoryStrategy, OptimizedHistory
from .redis import RedisConversationStorage
from .storage import (
    ConversationStorage,
    InMemoryConversationStorage,
    create_storage,
    supports_embeddings,
)

__all__ = [
    "ConversationOptimizer",
    "ConversationSession",
    "ConversationStorage",
    "HistoryQuery",
    "HistoryResult",
    "HistoryStrategy",
    "InMemoryConversationStorage",
    "OptimizedHistory",
    "RedisConversationStorage",
    "RelevanceStrategy",
    "StoredMessage",
    "create_storage",
    "supports_embeddings",
]
