"""
Knowledge-base connectors.

The orchestrator searches an optional knowledge base with the query and
its concepts. Any object with an async ``search(query, concepts)`` fits;
``get_related_concepts(concepts)`` is optional and detected at call time.

Implementations:
    - InMemoryKnowledgeBase: keyword overlap over documents held in memory
    - HTTPKnowledgeBase: JSON search service over HTTP (httpx)

HTTP contract:
    POST {search_path}            {"query", "concepts", "limit"}
        -> {"results": [{"content", "relevance", "source", "metadata"}]}
    POST {related_concepts_path}  {"concepts"}
        -> {"concepts": [...]}
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import httpx

from agento.conversation.storage import tokenize

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class KnowledgeResult:
    content: str
    relevance: float
    source: str = "knowledge_base"
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KnowledgeResult:
        try:
            relevance = float(data.get("relevance", data.get("score", 0.0)))
        except (TypeError, ValueError):
            relevance = 0.0
        return cls(
            content=str(data.get("content", "")),
            relevance=max(0.0, min(1.0, relevance)),
            source=str(data.get("source", "knowledge_base")),
            metadata=dict(data.get("metadata") or {}),
        )


@runtime_checkable
class KnowledgeBaseConnector(Protocol):
    """Search interface of an external knowledge base."""

    async def search(self, query: str, concepts: Sequence[str]) -> list[KnowledgeResult]: ...


# =============================================================================
# In-memory
# =============================================================================


@dataclass(frozen=True, slots=True)
class KnowledgeDocument:
    content: str
    source: str = "knowledge_base"
    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


class InMemoryKnowledgeBase:
    """
    Keyword-overlap search over a fixed set of documents.

    Relevance is the fraction of query and concept words found in the
    document (tags count as document words).

    Example:
        kb = InMemoryKnowledgeBase([
            KnowledgeDocument("Wire transfers settle in 1-2 business days.", tags=("transfer",)),
        ])
        hits = await kb.search("how long does a transfer take", ["transfer"])
    """

    def __init__(
        self,
        documents: Iterable[KnowledgeDocument] = (),
        *,
        min_relevance: float = 0.1,
        limit: int = 5,
    ) -> None:
        self._documents = list(documents)
        self._min_relevance = min_relevance
        self._limit = limit

    def add(self, document: KnowledgeDocument) -> None:
        self._documents.append(document)

    def __len__(self) -> int:
        return len(self._documents)

    async def search(self, query: str, concepts: Sequence[str]) -> list[KnowledgeResult]:
        wanted = tokenize(" ".join([query, *concepts]))
        if not wanted:
            return []

        scored = []
        for document in self._documents:
            words = tokenize(document.content) | tokenize(" ".join(document.tags))
            relevance = len(wanted & words) / len(wanted)
            if relevance >= self._min_relevance:
                scored.append((relevance, document))

        scored.sort(key=lambda item: item[0], reverse=True)
        return [
            KnowledgeResult(
                content=document.content,
                relevance=relevance,
                source=document.source,
                metadata=dict(document.metadata),
            )
            for relevance, document in scored[: self._limit]
        ]

    async def get_related_concepts(self, concepts: Sequence[str]) -> list[str]:
        """Tags of documents that mention any of ``concepts``."""
        lowered = [c.lower() for c in concepts]
        related: list[str] = []
        for document in self._documents:
            text = document.content.lower()
            if any(c in text or c in document.tags for c in lowered):
                for tag in document.tags:
                    if tag not in related and tag not in lowered:
                        related.append(tag)
        return related


# =============================================================================
# HTTP
# =============================================================================


class HTTPKnowledgeBase:
    """
    Knowledge base behind a JSON search endpoint.

    HTTP errors propagate; the orchestrator logs them and continues
    without knowledge hits.

    Args:
        base_url: Service root URL
        api_key: Sent as a Bearer token when set
        search_path: Path of the search endpoint
        related_concepts_path: Path of the related-concepts endpoint (None disables)
        limit: Maximum results requested
        timeout: Request timeout in seconds
        client: Pre-built ``httpx.AsyncClient`` (skips lazy creation)
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        search_path: str = "/search",
        related_concepts_path: str | None = "/related-concepts",
        limit: int = 5,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._search_path = search_path
        self._related_path = related_concepts_path
        self._limit = limit
        self._timeout = timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=self._timeout,
            )
        return self._client

    async def search(self, query: str, concepts: Sequence[str]) -> list[KnowledgeResult]:
        client = await self._get_client()
        response = await client.post(
            self._search_path,
            json={"query": query, "concepts": list(concepts), "limit": self._limit},
        )
        response.raise_for_status()
        payload = response.json()

        items = payload.get("results", []) if isinstance(payload, dict) else payload
        results = [KnowledgeResult.from_dict(item) for item in items or [] if isinstance(item, dict)]
        logger.debug(f"[knowledge:http] {len(results)} results for '{query[:50]}'")
        return results[: self._limit]

    async def get_related_concepts(self, concepts: Sequence[str]) -> list[str]:
        if not self._related_path:
            return []
        client = await self._get_client()
        response = await client.post(self._related_path, json={"concepts": list(concepts)})
        if response.status_code == 404:
            return []
        response.raise_for_status()
        payload = response.json()
        values = payload.get("concepts", []) if isinstance(payload, dict) else payload
        return [str(v) for v in values or []]

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
