"""
Tool Registry.

Holds the model-facing ToolSpecs. The ToolExecutor holds the callables;
the registry decides which schemas a given state exposes to the model.

Usage:
    registry = ToolRegistry()
    registry.register(ToolSpec(name="get_balance", description="...", parameters={...}))

    # Schemas for the tools a resolved state allows
    schemas = registry.to_llm_schemas(state.tools)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from .base import ToolSpec

logger = logging.getLogger(__name__)


class ToolRegistryError(Exception):
    """Error in tool registry operations."""


class ToolRegistry:
    """
    Registry of tool specs, by name.

    Example:
        registry = ToolRegistry()
        registry.register(get_balance_spec)
        registry.get("get_balance")
        registry.to_llm_schemas(["get_balance", "transfer"])
    """

    def __init__(self) -> None:
        self._specs: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec, *, replace: bool = False) -> None:
        """
        Register a tool spec.

        Args:
            spec: Spec to register
            replace: Overwrite an existing spec with the same name

        Raises:
            ToolRegistryError: Invalid spec, or name taken and replace is False
        """
        self._validate_spec(spec)

        if spec.name in self._specs and not replace:
            raise ToolRegistryError(
                f"Tool '{spec.name}' already registered. Use replace=True or unregister first."
            )

        self._specs[spec.name] = spec
        logger.info(f"[tool_registry] Registered tool: {spec.name}")

    def unregister(self, name: str) -> bool:
        if name in self._specs:
            del self._specs[name]
            logger.info(f"[tool_registry] Unregistered tool: {name}")
            return True
        return False

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def get_required(self, name: str) -> ToolSpec:
        """
        Get a spec by name, raising if not found.

        Raises:
            ToolRegistryError: If tool not found
        """
        spec = self._specs.get(name)
        if spec is None:
            available = list(self._specs.keys())
            raise ToolRegistryError(f"Tool '{name}' not found. Available tools: {available}")
        return spec

    def list_specs(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def list_names(self) -> list[str]:
        return list(self._specs.keys())

    def select(self, names: Iterable[str]) -> list[ToolSpec]:
        """
        Specs for ``names`` in the given order.

        Unknown names are logged and skipped; a state may list a tool
        whose spec was never registered.
        """
        selected = []
        for name in names:
            spec = self._specs.get(name)
            if spec is None:
                logger.warning(f"[tool_registry] State references unknown tool: {name}")
                continue
            selected.append(spec)
        return selected

    def to_llm_schemas(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """
        Function schemas for the model.

        Args:
            names: Restrict to these tools (all registered tools when None)
        """
        specs = self.list_specs() if names is None else self.select(names)
        return [spec.to_llm_schema() for spec in specs]

    def _validate_spec(self, spec: ToolSpec) -> None:
        if not spec.name or not isinstance(spec.name, str):
            raise ToolRegistryError(f"Tool must have a valid name: {spec}")

        if not spec.description or not isinstance(spec.description, str):
            raise ToolRegistryError(f"Tool '{spec.name}' must have a description")

        schema = spec.parameters
        if not isinstance(schema, dict):
            raise ToolRegistryError(f"Tool '{spec.name}' parameters must be a dict")

        if schema.get("type") != "object":
            raise ToolRegistryError(f"Tool '{spec.name}' parameters must have type: 'object'")

        if "properties" not in schema:
            raise ToolRegistryError(f"Tool '{spec.name}' parameters must have 'properties'")

    def __len__(self) -> int:
        return len(self._specs)

    def __contains__(self, name: str) -> bool:
        return name in self._specs
