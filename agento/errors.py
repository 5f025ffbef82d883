"""
Exception taxonomy for agento.

Fatal conditions (anything that prevents producing an answer) propagate
to the caller of ``AgentPipeline.process_query``. Degradable conditions
are absorbed close to where they happen:

    AgentoError
    ├── ConfigurationError
    │   └── DuplicateStateKey          (config time, fatal)
    ├── RoutingError
    │   └── UnknownSelectedState       (fatal)
    ├── GuardDenied                    (enter: recoverable, leave: fatal)
    ├── MaxIterationsExceeded          (fatal, no partial answer)
    ├── MalformedCollaboratorResponse  (absorbed, degrades to a default)
    ├── StorageFailure                 (reads propagate, late writes absorbed)
    └── CollaboratorTimeout            (fatal)

Tool failures are not exceptions: they are ``ToolResult(success=False)``
values shown to the model as ``Error: ...`` tool messages.
"""

from __future__ import annotations

from typing import Any


class AgentoError(Exception):
    """Base class for all agento errors."""


class ConfigurationError(AgentoError):
    """Invalid state tree, context catalog, or settings."""


class DuplicateStateKey(ConfigurationError):
    """Two nodes anywhere in a state tree share a key."""

    def __init__(self, key: str, first_path: tuple[str, ...] = (), second_path: tuple[str, ...] = ()):
        self.key = key
        self.first_path = first_path
        self.second_path = second_path
        where = ""
        if first_path and second_path:
            where = f" (at {'/'.join(first_path)} and {'/'.join(second_path)})"
        super().__init__(f"Duplicate state key '{key}'{where}")


class RoutingError(AgentoError):
    """Intent routing could not produce a selection."""


class UnknownSelectedState(RoutingError):
    """A state key that does not exist in the resolved tree was selected."""

    def __init__(self, key: str, available: list[str] | None = None):
        self.key = key
        self.available = list(available or [])
        message = f"Unknown state '{key}'"
        if self.available:
            message += f". Available: {self.available}"
        super().__init__(message)


class GuardDenied(AgentoError):
    """A state guard refused the transition."""

    def __init__(self, reason: str | None, *, state_key: str = "", phase: str = "enter"):
        self.reason = reason or "Access denied"
        self.state_key = state_key
        self.phase = phase
        super().__init__(f"{phase} guard denied state '{state_key}': {self.reason}")


class MaxIterationsExceeded(AgentoError):
    """The tool-call loop hit its iteration cap without a final answer."""

    def __init__(self, max_iterations: int, tools_called: tuple[str, ...] = ()):
        self.max_iterations = max_iterations
        self.tools_called = tools_called
        super().__init__(f"Maximum tool iterations ({max_iterations}) exceeded")


class MalformedCollaboratorResponse(AgentoError):
    """An LLM reply could not be parsed into the expected shape."""

    def __init__(self, label: str, raw: str = "", detail: Any = None):
        self.label = label
        self.raw = raw
        self.detail = detail
        super().__init__(f"Malformed {label} response: {detail or raw[:100]}")


class StorageFailure(AgentoError):
    """The conversation storage collaborator failed."""

    def __init__(self, operation: str, cause: BaseException | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Storage operation '{operation}' failed: {cause}")


class CollaboratorTimeout(AgentoError):
    """An LLM call or a whole turn exceeded its deadline."""

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds}s")


__all__ = [
    "AgentoError",
    "ConfigurationError",
    "DuplicateStateKey",
    "RoutingError",
    "UnknownSelectedState",
    "GuardDenied",
    "MaxIterationsExceeded",
    "MalformedCollaboratorResponse",
    "StorageFailure",
    "CollaboratorTimeout",
]
