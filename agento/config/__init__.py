"""
Configuration for agento.

- schemas: pydantic models (ModelConfig, AgentSettings and friends)
- settings: environment-backed ``get_settings()``
"""

from .schemas import AgentSettings, ConversationSettings, ModelConfig, OrchestratorSettings
from .settings import get_settings

__all__ = [
    "AgentSettings",
    "ConversationSettings",
    "ModelConfig",
    "OrchestratorSettings",
    "get_settings",
]
