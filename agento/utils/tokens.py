"""Cheap token estimation shared by the optimizer and orchestrator."""

from __future__ import annotations

import math
from collections.abc import Iterable

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate tokens as ceil(chars / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_total_tokens(texts: Iterable[str | None]) -> int:
    return sum(estimate_tokens(t) for t in texts)
