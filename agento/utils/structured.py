"""
Structured LLM calls.

Every place that asks the model for JSON (intent routing, concept
analysis, tool relevance, summaries) goes through ``complete_structured``:
one declared pydantic shape, one parse chain, one fallback policy.

Policy:
    - Transport errors and deadline expiry propagate (no answer is possible)
    - Unparseable or schema-invalid output is a MalformedCollaboratorResponse,
      logged, counted in metrics, and replaced by the caller's default

Usage:
    class Analysis(BaseModel):
        concepts: list[str] = []
        intent: str = "general inquiry"

    analysis = await complete_structured(
        llm,
        [Message.system(PROMPT), Message.user(query)],
        Analysis,
        default=lambda: Analysis(concepts=[query]),
        label="concept_analysis",
    )
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from agento.config.schemas import ModelConfig
from agento.errors import CollaboratorTimeout, MalformedCollaboratorResponse
from agento.observability import get_metrics
from agento.providers.llm.base import LLMProvider, LLMResponse, Message

from .json_parser import parse_json_value

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


async def complete_with_deadline(
    llm: LLMProvider,
    messages: list[Message],
    *,
    tools: list[dict[str, Any]] | None = None,
    config: ModelConfig | None = None,
    timeout: float | None = None,
    operation: str = "llm_call",
) -> LLMResponse:
    """
    Call the model, optionally bounded by ``timeout`` seconds.

    Raises:
        CollaboratorTimeout: The deadline expired
    """
    call = llm.complete(messages, tools=tools, config=config)
    if timeout is None:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"[structured] {operation} exceeded {timeout}s")
        raise CollaboratorTimeout(operation, timeout) from e


def parse_structured(text: str, schema: type[T], *, label: str = "structured") -> T:
    """
    Parse model output into ``schema``.

    Raises:
        MalformedCollaboratorResponse: No JSON found or validation failed
    """
    value = parse_json_value(text)
    if value is None:
        raise MalformedCollaboratorResponse(label, raw=text or "", detail="no JSON found")
    try:
        return schema.model_validate(value)
    except ValidationError as e:
        raise MalformedCollaboratorResponse(label, raw=text, detail=e.errors()) from e


async def complete_structured(
    llm: LLMProvider,
    messages: list[Message],
    schema: type[T],
    *,
    default: T | Callable[[], T],
    config: ModelConfig | None = None,
    timeout: float | None = None,
    label: str = "structured",
) -> T:
    """
    Ask the model for JSON matching ``schema``; fall back to ``default``.

    Args:
        llm: Provider to call
        messages: Prompt messages
        schema: Pydantic model the reply must validate against
        default: Value (or factory) used when the reply is malformed
        config: Model settings for the call
        timeout: Deadline in seconds
        label: Name used in logs and metrics

    Returns:
        Validated schema instance, or the default
    """
    response = await complete_with_deadline(
        llm, messages, config=config, timeout=timeout, operation=label
    )
    try:
        return parse_structured(response.content, schema, label=label)
    except MalformedCollaboratorResponse as e:
        logger.warning(f"[structured] {e}; using default")
        get_metrics().record_malformed(label)
        return default() if callable(default) else default


__all__ = ["complete_structured", "complete_with_deadline", "parse_structured"]
