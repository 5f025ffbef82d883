"""Shared helpers: tolerant JSON parsing, structured LLM calls, token estimates."""

from .json_parser import (
    clean_json_string,
    ensure_str_list,
    extract_json_from_text,
    parse_json_safely,
    parse_json_value,
)
from .tokens import estimate_tokens, estimate_total_tokens

__all__ = [
    "clean_json_string",
    "ensure_str_list",
    "extract_json_from_text",
    "parse_json_safely",
    "parse_json_value",
    "estimate_tokens",
    "estimate_total_tokens",
]
