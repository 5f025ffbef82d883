"""
Prompt assembly for the tool-call loop.

The system message is built from fixed sections, each present only when
it has content:

    {full prompt of the state}

    --- Context ---
    {description}:
    {content}

    --- Intent Analysis ---
    Selected State: {key} ({confidence}% confidence)
    Reasoning: {reasoning}
    Context Strategy: {strategy}

    --- Additional Information ---
    {metadata as JSON}
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from agento.providers.llm.base import Message
from agento.state.contexts import AssembledContext

CONTEXT_HEADER = "--- Context ---"
INTENT_HEADER = "--- Intent Analysis ---"
METADATA_HEADER = "--- Additional Information ---"

DENIAL_PROMPT = (
    "You are a helpful assistant. The user's request was denied for the following "
    'reason: "{reason}". Explain this to the user politely and helpfully. '
    "Do not offer to perform the denied action."
)


def format_contexts(contexts: Sequence[AssembledContext]) -> str:
    return "\n\n".join(f"{c.description}:\n{c.content}" for c in contexts if c.content)


def build_system_message(
    prompt: str,
    contexts: Sequence[AssembledContext] = (),
    *,
    selected_state: str | None = None,
    confidence: float | None = None,
    reasoning: str | None = None,
    strategy: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> str:
    """Combine the state prompt, contexts, routing analysis and metadata."""
    sections = [prompt] if prompt else []

    context_text = format_contexts(contexts)
    if context_text:
        sections.append(f"{CONTEXT_HEADER}\n{context_text}")

    if selected_state:
        lines = [f"Selected State: {selected_state}" + (f" ({confidence:.0f}% confidence)" if confidence is not None else "")]
        if reasoning:
            lines.append(f"Reasoning: {reasoning}")
        if strategy:
            lines.append(f"Context Strategy: {strategy}")
        sections.append(INTENT_HEADER + "\n" + "\n".join(lines))

    extra = {k: v for k, v in (metadata or {}).items() if v is not None}
    if extra:
        sections.append(f"{METADATA_HEADER}\n{json.dumps(extra, indent=2, default=str)}")

    return "\n\n".join(sections)


def build_messages(
    system_message: str,
    history: Sequence[Message],
    query: str,
) -> list[Message]:
    """System, then history, then the user's query."""
    return [Message.system(system_message), *history, Message.user(query)]


def build_denial_messages(
    reason: str,
    history: Sequence[Message],
    query: str,
) -> list[Message]:
    """Messages for the single no-tools call that explains a denial."""
    plain_history = [m for m in history if m.role.value in ("user", "assistant") and not m.tool_calls]
    return build_messages(DENIAL_PROMPT.format(reason=reason), plain_history, query)
