"""
Settings access.

``get_settings()`` reads ``AGENTO_*`` environment variables once and
caches the resulting AgentSettings. Tests call ``get_settings.cache_clear()``
after patching the environment.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache

from .schemas import AgentSettings, ConversationSettings, ModelConfig, OrchestratorSettings

logger = logging.getLogger(__name__)

_PREFIX = "AGENTO_"


def _env(name: str, default: str | None = None) -> str | None:
    return os.getenv(f"{_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float | None) -> float | None:
    value = _env(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_int(name: str, default: int) -> int:
    value = _env(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


@lru_cache()
def get_settings() -> AgentSettings:
    """
    Get runtime settings from environment.

    Uses lru_cache for singleton pattern.
    """
    settings = AgentSettings(
        # Service
        service_name=_env("SERVICE_NAME", "agento"),
        environment=_env("ENVIRONMENT", "development"),
        debug=_env_bool("DEBUG", False),
        log_level=_env("LOG_LEVEL", "INFO"),
        # Models
        default_model=ModelConfig(
            provider=_env("LLM_PROVIDER", "openai"),
            model=_env("LLM_MODEL", "gpt-4o-mini"),
            temperature=_env_float("LLM_TEMPERATURE", 0.7),
            max_tokens=_env_int("LLM_MAX_TOKENS", 1024),
        ),
        # Tool loop
        max_tool_iterations=_env_int("MAX_TOOL_ITERATIONS", 5),
        parallel_tool_calls=_env_bool("PARALLEL_TOOL_CALLS", True),
        # Deadlines
        llm_timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", None),
        tool_timeout_seconds=_env_float("TOOL_TIMEOUT_SECONDS", None),
        turn_timeout_seconds=_env_float("TURN_TIMEOUT_SECONDS", None),
        # Sessions
        session_ttl_seconds=_env_float("SESSION_TTL_SECONDS", 3600.0),
        # Storage
        storage_backend=_env("STORAGE_BACKEND", "memory"),
        redis_url=_env("REDIS_URL", "redis://localhost:6379"),
        # Provider API keys
        openai_api_key=_env("OPENAI_API_KEY"),
        anthropic_api_key=_env("ANTHROPIC_API_KEY"),
        orchestrator=OrchestratorSettings(
            max_context_tokens=_env_int("ORCHESTRATOR_MAX_CONTEXT_TOKENS", 4000),
            max_reasoning_history=_env_int("ORCHESTRATOR_MAX_REASONING_HISTORY", 20),
            relevance_threshold=_env_float("ORCHESTRATOR_RELEVANCE_THRESHOLD", 0.3),
            time_decay_factor=_env_float("ORCHESTRATOR_TIME_DECAY_FACTOR", 0.1),
            enable_knowledge_search=_env_bool("ORCHESTRATOR_KNOWLEDGE_SEARCH", True),
        ),
        conversation=ConversationSettings(
            max_history_tokens=_env_int("CONVERSATION_MAX_HISTORY_TOKENS", 8000),
            working_memory_size=_env_int("CONVERSATION_WORKING_MEMORY_SIZE", 50),
            min_summary_messages=_env_int("CONVERSATION_MIN_SUMMARY_MESSAGES", 10),
            enable_embeddings=_env_bool("CONVERSATION_ENABLE_EMBEDDINGS", True),
        ),
    )
    logger.debug(f"[settings] Loaded settings for environment={settings.environment}")
    return settings
