"""
Configuration Schemas for agento.

Pydantic models for model settings and runtime tuning knobs.

Security:
    Provider API keys use SecretStr to prevent accidental logging
    of credentials. Access the value with `.get_secret_value()`.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, SecretStr


class ModelConfig(BaseModel):
    """
    Model settings for one LLM call.

    Every field is optional so a state node can override only what it
    cares about. ``merged_with`` implements the override cascade used
    by the state resolver: fields set on the override win, unset fields
    inherit.

    Example:
        base = ModelConfig(provider="openai", model="gpt-4o-mini", temperature=0.7)
        leaf = base.merged_with(ModelConfig(temperature=0.1))
        # leaf.model == "gpt-4o-mini", leaf.temperature == 0.1
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    provider: str | None = None
    model: str | None = None
    temperature: float | None = Field(None, ge=0, le=2)
    max_tokens: int | None = Field(None, ge=1)
    top_p: float | None = Field(None, ge=0, le=1)
    frequency_penalty: float | None = Field(None, ge=-2, le=2)
    presence_penalty: float | None = Field(None, ge=-2, le=2)

    def merged_with(self, override: ModelConfig | None) -> ModelConfig:
        if override is None:
            return self
        return self.model_copy(update=override.model_dump(exclude_none=True))

    def request_params(self) -> dict[str, float | int]:
        """Sampling parameters that are set, for provider adapters."""
        return self.model_dump(exclude_none=True, exclude={"provider", "model"})


class OrchestratorSettings(BaseModel):
    """Tuning for the context orchestrator."""

    max_context_tokens: int = Field(4000, ge=1, description="Token budget for selected contexts")
    max_reasoning_history: int = Field(20, ge=1, description="Reasoning log window per session")
    relevance_threshold: float = Field(0.3, ge=0, le=1, description="Minimum tool relevance")
    time_decay_factor: float = Field(0.1, ge=0, description="Per-hour decay of conversation turns")
    enable_knowledge_search: bool = True


class ConversationSettings(BaseModel):
    """Tuning for conversation history retrieval."""

    max_history_tokens: int = Field(8000, ge=1)
    recent_limit: int = 20
    semantic_limit: int = 15
    semantic_min_similarity: float = 0.7
    hybrid_limit: int = 10
    hybrid_recent_minutes: int = 60
    summary_tail: int = 5
    last_resort_tail: int = 3
    min_summary_messages: int = 10
    working_memory_size: int = Field(50, ge=1)
    enable_embeddings: bool = True


class AgentSettings(BaseModel):
    """
    Runtime settings.

    Used for type-safe settings access. ``get_settings()`` builds it
    from ``AGENTO_*`` environment variables.
    """

    service_name: str = "agento"
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Default model settings, overridden along the state tree
    default_model: ModelConfig = Field(
        default_factory=lambda: ModelConfig(
            provider="openai", model="gpt-4o-mini", temperature=0.7, max_tokens=1024
        )
    )
    router_model: ModelConfig = Field(
        default_factory=lambda: ModelConfig(temperature=0.1, max_tokens=300)
    )

    # Tool loop
    max_tool_iterations: int = Field(5, ge=1)
    parallel_tool_calls: bool = True

    # Deadlines (None = unbounded)
    llm_timeout_seconds: float | None = None
    tool_timeout_seconds: float | None = None
    turn_timeout_seconds: float | None = None

    # Sessions
    session_ttl_seconds: float | None = 3600.0
    max_sessions: int | None = 10_000

    # Storage
    storage_backend: str = "memory"
    redis_url: SecretStr = Field(default=SecretStr("redis://localhost:6379"))
    redis_key_prefix: str = "agento:conversation"

    # Provider API keys (SecretStr prevents accidental logging)
    openai_api_key: SecretStr | None = None
    anthropic_api_key: SecretStr | None = None

    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    conversation: ConversationSettings = Field(default_factory=ConversationSettings)
