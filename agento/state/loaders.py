"""
File loaders for state trees and static contexts.

Agent definitions are usually authored as YAML (or JSON) and bound to
code-defined guards by name at load time.

File Format:
    states:
      - key: banking
        description: Banking assistance
        prompt: You are a careful banking assistant.
        tools: [get_balance]
        on_enter: authenticated          # guard name, bound from `guards`
        children:
          - key: banking.balance
            description: Check account balances
            llm_config: {temperature: 0.1}
    contexts:
      - key: policies
        description: Bank policies
        content: Transfers above 10k need approval.
        priority: 10

A bare list at the top level is read as the ``states`` list.

Usage:
    roots = load_state_tree("agents/bank.yaml", guards={"authenticated": auth_guard})
    catalog = load_context_catalog("agents/bank.yaml")
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from agento.errors import ConfigurationError

from .contexts import ContextCatalog, ContextDefinition
from .guards import Guard
from .models import StateNode

logger = logging.getLogger(__name__)

_GUARD_FIELDS = ("on_enter", "on_leave")


def _load_document(path: Path) -> Any:
    try:
        with path.open() as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                return yaml.safe_load(f)
            return json.load(f)
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        logger.error(f"[state_loader] Failed to load {path}: {e}")
        raise ConfigurationError(f"Failed to load {path}: {e}") from e


def _bind_guards(node: Mapping[str, Any], guards: Mapping[str, Guard]) -> dict[str, Any]:
    bound = dict(node)
    for field_name in _GUARD_FIELDS:
        ref = bound.get(field_name)
        if isinstance(ref, str):
            if ref not in guards:
                raise ConfigurationError(
                    f"State '{bound.get('key')}' references unknown guard '{ref}'. "
                    f"Known guards: {sorted(guards)}"
                )
            bound[field_name] = guards[ref]
    children = bound.get("children") or []
    bound["children"] = [_bind_guards(child, guards) for child in children]
    return bound


def parse_state_tree(data: Any, guards: Mapping[str, Guard] | None = None) -> list[StateNode]:
    """
    Validate already-decoded data into StateNode roots.

    Raises:
        ConfigurationError: Wrong shape, unknown guard name, or validation error
    """
    if isinstance(data, Mapping):
        data = data.get("states", [])
    if not isinstance(data, list):
        raise ConfigurationError("State definitions must be a list of root states")

    guards = guards or {}
    roots = []
    for raw in data:
        if not isinstance(raw, Mapping):
            raise ConfigurationError(f"State definition must be a mapping, got {type(raw).__name__}")
        try:
            roots.append(StateNode.model_validate(_bind_guards(raw, guards)))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid state '{raw.get('key')}': {e}") from e
    return roots


def load_state_tree(path: str | Path, guards: Mapping[str, Guard] | None = None) -> list[StateNode]:
    """Load root StateNodes from a YAML or JSON file."""
    path = Path(path)
    roots = parse_state_tree(_load_document(path), guards)
    logger.info(f"[state_loader] Loaded {len(roots)} root state(s) from {path}")
    return roots


def load_context_catalog(path: str | Path) -> ContextCatalog:
    """Load static context definitions (the ``contexts`` list) from a file."""
    path = Path(path)
    data = _load_document(path)
    entries = data.get("contexts", []) if isinstance(data, Mapping) else data

    catalog = ContextCatalog()
    for entry in entries or []:
        try:
            catalog.register(
                ContextDefinition.static(
                    key=entry["key"],
                    description=entry.get("description", entry["key"]),
                    text=entry.get("content", ""),
                    priority=int(entry.get("priority", 0)),
                )
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid context definition {entry!r}: {e}") from e

    logger.info(f"[state_loader] Loaded {len(catalog)} context(s) from {path}")
    return catalog
