"""
Per-session state with explicit lifecycle.

SessionStore replaces ad-hoc module-level dicts keyed by session id. It
owns three policies:

- Creation on first use: ``get(session_id)`` builds state with the
  store's factory when none exists
- Eviction: entries idle longer than ``ttl_seconds`` are dropped, and
  the least recently used entry goes once ``max_sessions`` is exceeded
- Single-flight: ``lock(session_id)`` is an async context manager over
  a per-session ``asyncio.Lock``; turns for the same session serialize,
  different sessions proceed concurrently

Mutating methods never await, so they are atomic with respect to other
coroutines on the same event loop.

Usage:
    memory = SessionStore(list, ttl_seconds=3600, max_sessions=1000)

    async with memory.lock("session-1"):
        history = memory.get("session-1")
        history.append(message)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    last_access: float


class SessionStore(Generic[T]):
    """
    In-process, per-session state keyed by session id.

    Args:
        factory: Builds fresh state for an unseen session
        ttl_seconds: Idle time after which an entry is evicted (None = never)
        max_sessions: Upper bound on live entries, LRU eviction (None = unbounded)
        name: Label used in log lines
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        factory: Callable[[], T],
        *,
        ttl_seconds: float | None = None,
        max_sessions: int | None = None,
        name: str = "sessions",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = factory
        self._ttl = ttl_seconds
        self._max_sessions = max_sessions
        self._name = name
        self._clock = clock
        self._entries: OrderedDict[str, _Entry[T]] = OrderedDict()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    # -------------------------------------------------------------------------
    # State access
    # -------------------------------------------------------------------------

    def get(self, session_id: str) -> T:
        """Return the session's state, creating it on first use."""
        self.evict_expired()
        now = self._clock()
        entry = self._entries.get(session_id)
        if entry is None:
            entry = _Entry(value=self._factory(), last_access=now)
            self._entries[session_id] = entry
            logger.debug(f"[session_store:{self._name}] Created session {session_id}")
            self._enforce_capacity()
        else:
            entry.last_access = now
            self._entries.move_to_end(session_id)
        return entry.value

    def peek(self, session_id: str) -> T | None:
        """Return existing state without creating it or refreshing its TTL."""
        entry = self._entries.get(session_id)
        if entry is None or self._is_expired(entry, self._clock()):
            return None
        return entry.value

    def set(self, session_id: str, value: T) -> None:
        self._entries[session_id] = _Entry(value=value, last_access=self._clock())
        self._entries.move_to_end(session_id)
        self._enforce_capacity()

    def delete(self, session_id: str) -> bool:
        removed = self._entries.pop(session_id, None) is not None
        if removed:
            logger.debug(f"[session_store:{self._name}] Deleted session {session_id}")
        return removed

    def keys(self) -> Iterator[str]:
        return iter(list(self._entries.keys()))

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, session_id: str) -> bool:
        return self.peek(session_id) is not None

    def __len__(self) -> int:
        return len(self._entries)

    # -------------------------------------------------------------------------
    # Eviction
    # -------------------------------------------------------------------------

    def _is_expired(self, entry: _Entry[T], now: float) -> bool:
        return self._ttl is not None and now - entry.last_access > self._ttl

    def evict_expired(self) -> int:
        """Drop idle entries; returns how many were evicted."""
        if self._ttl is None:
            return 0
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if self._is_expired(entry, now) and not self._is_locked(key)
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info(f"[session_store:{self._name}] Evicted {len(expired)} idle sessions")
        return len(expired)

    def _enforce_capacity(self) -> None:
        if self._max_sessions is None:
            return
        while len(self._entries) > self._max_sessions:
            # Oldest entry not currently inside a locked turn
            victim = next((k for k in self._entries if not self._is_locked(k)), None)
            if victim is None:
                break
            del self._entries[victim]
            logger.debug(f"[session_store:{self._name}] Evicted LRU session {victim}")

    # -------------------------------------------------------------------------
    # Single-flight
    # -------------------------------------------------------------------------

    def _is_locked(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def lock(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's lock for the duration of the block."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[session_id] - 1
            if remaining:
                self._lock_users[session_id] = remaining
            else:
                # Nobody holds or waits on it any more
                del self._lock_users[session_id]
                del self._locks[session_id]


__all__ = ["SessionStore"]
