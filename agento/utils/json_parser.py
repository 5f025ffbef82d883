"""
Tolerant JSON parsing for LLM analysis output.

Models asked for JSON routinely wrap it in prose or markdown, leave
trailing commas, or truncate the closing brace. These helpers try a
chain of progressively looser strategies before giving up:

1. Direct ``json.loads``
2. Extraction from ```json fences or the outermost {...} / [...] span
3. Comment and trailing-comma cleanup
4. Bracket balancing

None of the helpers raise on malformed input; callers get ``None`` or
their default back and decide what to do.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_PATTERNS = (
    r"```json\s*([\s\S]*?)\s*```",
    r"```\s*([\s\S]*?)\s*```",
)

_SPAN_PATTERNS = (
    r"(\{[\s\S]*\})",
    r"(\[[\s\S]*\])",
)


def extract_json_from_text(text: str) -> str:
    """
    Pull the JSON-looking part out of a model reply.

    Markdown fences win over raw spans. Returns the stripped input
    when nothing recognizable is found.
    """
    text = text.strip()

    for pattern in _FENCE_PATTERNS:
        match = re.search(pattern, text, re.IGNORECASE)
        if match:
            return match.group(1).strip()

    # Whichever bracket opens first decides object vs array
    first_obj = text.find("{")
    first_arr = text.find("[")
    patterns = _SPAN_PATTERNS
    if first_arr != -1 and (first_obj == -1 or first_arr < first_obj):
        patterns = tuple(reversed(_SPAN_PATTERNS))

    for pattern in patterns:
        match = re.search(pattern, text)
        if match and _looks_like_json(match.group(1)):
            return match.group(1)

    return text


def _looks_like_json(text: str) -> bool:
    text = text.strip()
    return (text.startswith("{") and text.endswith("}")) or (
        text.startswith("[") and text.endswith("]")
    )


def clean_json_string(text: str) -> str:
    """
    Remove JavaScript-style comments and trailing commas.

    Single quotes are left alone: rewriting them breaks apostrophes
    inside string values.
    """
    text = re.sub(r"//[^\n]*", "", text)
    text = re.sub(r"/\*[\s\S]*?\*/", "", text)
    text = re.sub(r",\s*([\}\]])", r"\1", text)
    return text.strip()


def _attempt_json_repair(text: str) -> str | None:
    """Balance unclosed brackets. Last-resort strategy."""
    text = text.strip()
    if not text:
        return None

    opener, closer = ("[", "]") if text.startswith("[") else ("{", "}")
    if not text.startswith(opener):
        text = opener + text

    missing = text.count(opener) - text.count(closer)
    if missing > 0:
        text = text + closer * missing
    elif missing < 0:
        return None

    return text


def parse_json_value(text: str | None) -> Any | None:
    """
    Parse any JSON value (object, array, scalar) from model output.

    Returns:
        The decoded value, or None when every strategy fails
    """
    if not text or not text.strip():
        return None

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    extracted = extract_json_from_text(text)
    if extracted != text:
        try:
            return json.loads(extracted)
        except json.JSONDecodeError:
            pass

    cleaned = clean_json_string(extracted)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    repaired = _attempt_json_repair(cleaned)
    if repaired:
        try:
            value = json.loads(repaired)
            logger.info("[json_parser] JSON parsed after repair")
            return value
        except json.JSONDecodeError:
            pass

    logger.warning(f"[json_parser] Failed to parse JSON after all strategies: {text[:100]}...")
    return None


def parse_json_safely(
    text: str | None,
    default: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Parse a JSON object with the full fallback chain.

    Args:
        text: Model output expected to hold a JSON object
        default: Returned when parsing fails or the value is not an object

    Returns:
        Parsed dict or default
    """
    if default is None:
        default = {}

    value = parse_json_value(text)
    if isinstance(value, dict):
        return value
    if value is not None:
        logger.warning(f"[json_parser] JSON parsed but not an object: {type(value).__name__}")
    return default


def ensure_str_list(value: Any) -> list[str]:
    """Coerce a loosely typed field into a list of non-empty strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item not in (None, "")]
    return []


__all__ = [
    "extract_json_from_text",
    "clean_json_string",
    "parse_json_value",
    "parse_json_safely",
    "ensure_str_list",
]
