"""
Conversation persistence models.

StoredMessage and ConversationSession are what storage backends keep.
HistoryQuery / HistoryResult are the request and response of
``ConversationStorage.get_conversation_history``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from agento.providers.llm.base import Message, MessageRole, ToolCall


def _utc_now() -> datetime:
    """Get current UTC time with timezone awareness."""
    return datetime.now(UTC)


def _message_id() -> str:
    return f"msg_{uuid4().hex[:12]}"


class RelevanceStrategy(str, Enum):
    """How a storage backend picks messages for a history query."""

    RECENT = "recent"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"
    KEYWORD = "keyword"


class StoredMessage(BaseModel):
    """A persisted conversation message."""

    id: str = Field(default_factory=_message_id)
    session_id: str
    user_id: str | None = None
    role: MessageRole
    content: str
    state_key: str | None = None
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    tool_call_id: str | None = None
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float] | None = None
    timestamp: datetime = Field(default_factory=_utc_now)

    def to_message(self) -> Message:
        """Convert to an LLM message (embedding and bookkeeping dropped)."""
        return Message(
            role=self.role,
            content=self.content,
            tool_calls=tuple(ToolCall.from_dict(call) for call in self.tool_calls),
            tool_call_id=self.tool_call_id,
            timestamp=self.timestamp,
        )


class ConversationSession(BaseModel):
    """Per-session bookkeeping kept next to the messages."""

    session_id: str
    user_id: str | None = None
    started_at: datetime = Field(default_factory=_utc_now)
    last_activity: datetime = Field(default_factory=_utc_now)
    message_count: int = 0
    summary: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class HistoryQuery(BaseModel):
    """
    Parameters for ``get_conversation_history``.

    Filters (roles, state_keys, recent_minutes) apply before the
    relevance strategy; ``limit`` applies last.
    """

    session_id: str
    current_query: str | None = None
    limit: int | None = None
    recent_minutes: int | None = None
    min_similarity: float | None = None
    state_keys: list[str] | None = None
    roles: list[MessageRole] | None = None
    strategy: RelevanceStrategy = RelevanceStrategy.RECENT
    keywords: list[str] | None = None


class HistoryResult(BaseModel):
    """
    Messages selected by a history query, oldest first.

    Attributes:
        total_messages: Messages stored for the session before filtering
        truncated: Whether ``limit`` cut the selection short
    """

    messages: list[StoredMessage] = Field(default_factory=list)
    total_messages: int = 0
    session_summary: str | None = None
    truncated: bool = False
