"""
Agent Processing Pipeline.

Composes the runtime for one turn:

    ROUTING -> ENTER_GUARD -> CONTEXT_ASSEMBLY -> TOOL_LOOP -> LEAVE_GUARD -> DONE

    - History comes from the conversation optimizer when persistence is
      enabled, otherwise from the caller
    - The router picks one leaf state
    - An entry-guard denial either reroutes to a fallback state (context
      assembly re-runs for it, its own entry guard is not evaluated),
      returns a custom response without calling the model, or makes one
      no-tools model call that explains the denial
    - Context assembly merges orchestrator selections (first) with the
      state's declared contexts
    - The tool-call loop produces the answer
    - A leave-guard denial raises GuardDenied; nothing is persisted
    - Persistence is best-effort: failures are logged and counted, and
      the answer is still returned with ``persisted=False``

Turns for the same session are serialized; different sessions run
concurrently.

Usage:
    pipeline = AgentPipeline(
        states=[banking_root],
        llm=OpenAILLMProvider(api_key=...),
        storage=InMemoryConversationStorage(),
    )
    pipeline.register_tool(balance_spec, get_balance)

    result = await pipeline.process_query("u-1", "What's my balance?", session_id="s-1")
    print(result.response, result.selected_state)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from agento.config.schemas import AgentSettings
from agento.context.models import CandidateSource, OrchestrationResult
from agento.context.orchestrator import GLOBAL_SESSION, ContextOrchestrator
from agento.conversation.models import StoredMessage
from agento.conversation.optimizer import ConversationOptimizer
from agento.conversation.storage import ConversationStorage
from agento.errors import CollaboratorTimeout, ConfigurationError, GuardDenied, StorageFailure
from agento.observability import TurnLogger, get_metrics
from agento.providers.llm.base import LLMProvider, Message, MessageRole, ToolCall
from agento.routing.intent import IntentRouter, IntentSelection
from agento.sessions import SessionStore
from agento.state.contexts import AssembledContext, ContextCatalog, ContextDefinition
from agento.state.guards import GuardAction, GuardContext, GuardEvaluator, GuardResult
from agento.state.models import ResolvedState, StateNode, StateTree
from agento.state.resolver import StateResolver
from agento.tools.base import ToolFunction, ToolResult, ToolSpec
from agento.tools.executor import ToolExecutor
from agento.tools.registry import ToolRegistry
from agento.utils.structured import complete_with_deadline

from .executor import AgentExecutor
from .prompts import build_denial_messages, build_messages, build_system_message
from .result import QueryResult

logger = logging.getLogger(__name__)

DEFAULT_DENIAL_MESSAGE = "Sorry, that request is not available right now."


@dataclass
class _SessionState:
    last_state: str | None = None
    turns: int = 0


@dataclass(frozen=True, slots=True)
class _Turn:
    """Per-turn inputs shared by the pipeline stages."""

    user_id: str
    query: str
    session_id: str | None
    history: tuple[Message, ...]
    metadata: dict[str, Any]
    selection: IntentSelection
    routed: ResolvedState
    log: TurnLogger
    history_strategy: str | None = None
    summary: str | None = None


def coerce_history(history: Iterable[Message | StoredMessage | Mapping[str, Any]] | None) -> list[Message]:
    """Accept Messages, StoredMessages or ``{"role", "content"}`` dicts."""
    messages = []
    for item in history or ():
        if isinstance(item, Message):
            messages.append(item)
        elif isinstance(item, StoredMessage):
            messages.append(item.to_message())
        elif isinstance(item, Mapping):
            raw_calls = item.get("tool_calls") or item.get("toolCalls") or ()
            messages.append(
                Message(
                    role=MessageRole(item["role"]),
                    content=item.get("content") or "",
                    tool_calls=tuple(ToolCall.from_dict(c) for c in raw_calls),
                    tool_call_id=item.get("tool_call_id") or item.get("toolCallId"),
                )
            )
        else:
            raise TypeError(f"Unsupported history item: {type(item).__name__}")
    return messages


class AgentPipeline:
    """
    Agent runtime over a resolved state tree.

    Args:
        states: Root node(s) of the state tree, or an already resolved StateTree
        llm: Provider for the conversation model (also the default for
            routing, orchestration and summaries)
        settings: Runtime settings (defaults to ``AgentSettings()``)
        tools: Tool executor (a new one is created when None)
        tool_registry: Tool schemas offered to the model
        contexts: Context catalog or definitions states may reference
        router: Intent router (built from ``router_llm`` or ``llm`` when None)
        router_llm: Provider for routing when no router is given
        storage: Conversation storage; enables persistence
        optimizer: Conversation optimizer (built from ``storage`` when None)
        orchestrator: Context orchestrator (optional)
    """

    def __init__(
        self,
        states: StateNode | Sequence[StateNode] | StateTree,
        *,
        llm: LLMProvider,
        settings: AgentSettings | None = None,
        tools: ToolExecutor | None = None,
        tool_registry: ToolRegistry | None = None,
        contexts: ContextCatalog | Iterable[ContextDefinition] | None = None,
        router: IntentRouter | None = None,
        router_llm: LLMProvider | None = None,
        storage: ConversationStorage | None = None,
        optimizer: ConversationOptimizer | None = None,
        orchestrator: ContextOrchestrator | None = None,
    ) -> None:
        self._settings = settings or AgentSettings()
        s = self._settings

        if isinstance(states, StateTree):
            self._tree = states
        else:
            self._tree = StateResolver(default_config=s.default_model).resolve(states)
        if not self._tree.leaves:
            raise ConfigurationError("State tree has no leaf states")

        self._llm = llm
        self._tools = tools or ToolExecutor(timeout_seconds=s.tool_timeout_seconds)
        self._registry = tool_registry or ToolRegistry()
        if isinstance(contexts, ContextCatalog):
            self._contexts = contexts
        else:
            self._contexts = ContextCatalog(contexts or ())

        self._router = router or IntentRouter(
            router_llm or llm,
            config=s.default_model.merged_with(s.router_model),
            timeout=s.llm_timeout_seconds,
        )
        if optimizer is None and storage is not None:
            optimizer = ConversationOptimizer(
                storage,
                llm=llm,
                settings=s.conversation,
                working_memory=SessionStore(
                    list,
                    ttl_seconds=s.session_ttl_seconds,
                    max_sessions=s.max_sessions,
                    name="working_memory",
                ),
                summary_config=s.default_model.merged_with(None),
                llm_timeout=s.llm_timeout_seconds,
            )
        self._optimizer = optimizer
        self._orchestrator = orchestrator

        self._executor = AgentExecutor(
            llm,
            tools=self._tools,
            max_iterations=s.max_tool_iterations,
            parallel_tool_calls=s.parallel_tool_calls,
            llm_timeout=s.llm_timeout_seconds,
        )
        self._guards = GuardEvaluator()
        self._sessions: SessionStore[_SessionState] = SessionStore(
            _SessionState,
            ttl_seconds=s.session_ttl_seconds,
            max_sessions=s.max_sessions,
            name="pipeline",
        )

        logger.info(
            f"[agent_pipeline] Ready: {len(self._tree)} states ({len(self._tree.leaves)} leaves), "
            f"persistence={'on' if self._optimizer else 'off'}, "
            f"orchestrator={'on' if self._orchestrator else 'off'}"
        )

    # =========================================================================
    # Entry point
    # =========================================================================

    async def process_query(
        self,
        user_id: str,
        query: str,
        session_id: str | None = None,
        history: Sequence[Message | StoredMessage | Mapping[str, Any]] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> QueryResult:
        """
        Answer ``query`` for ``user_id``.

        Args:
            user_id: Caller identity, passed to guards and stored with messages
            query: The user's utterance
            session_id: Conversation session (generated when persistence is
                enabled and none is given)
            history: Prior turns, used when persistence is disabled
            metadata: Free-form data for guards and the system message

        Returns:
            QueryResult

        Raises:
            RoutingError: Routing could not select a known leaf
            GuardDenied: The leave guard refused the transition
            MaxIterationsExceeded: The tool loop hit its cap
            CollaboratorTimeout: A model call or the whole turn timed out
            StorageFailure: History could not be read
        """
        sid = session_id or (str(uuid4()) if self.is_persistence_enabled() else None)
        turn_log = TurnLogger(request_id=uuid4().hex[:12], session_id=sid)
        turn_log.turn_started(user_id, query)
        start = time.perf_counter()

        try:
            result = await self._with_deadline(
                self._serialized(user_id, query, sid, history, dict(metadata or {}), turn_log)
            )
        except Exception as e:
            duration = (time.perf_counter() - start) * 1000
            get_metrics().record_query(False, duration)
            turn_log.turn_completed(False, duration, error=str(e))
            raise

        duration = (time.perf_counter() - start) * 1000
        get_metrics().record_query(True, duration, result.iterations)
        turn_log.turn_completed(True, duration, result.iterations)
        return result

    async def _with_deadline(self, turn: Any) -> QueryResult:
        timeout = self._settings.turn_timeout_seconds
        if timeout is None:
            return await turn
        try:
            return await asyncio.wait_for(turn, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning(f"[agent_pipeline] Turn exceeded {timeout}s")
            raise CollaboratorTimeout("turn", timeout) from e

    async def _serialized(
        self,
        user_id: str,
        query: str,
        session_id: str | None,
        history: Sequence[Any] | None,
        metadata: dict[str, Any],
        turn_log: TurnLogger,
    ) -> QueryResult:
        if session_id is None:
            return await self._run_turn(user_id, query, None, history, metadata, turn_log)
        async with self._sessions.lock(session_id):
            return await self._run_turn(user_id, query, session_id, history, metadata, turn_log)

    # =========================================================================
    # Stages
    # =========================================================================

    async def _run_turn(
        self,
        user_id: str,
        query: str,
        session_id: str | None,
        history: Sequence[Any] | None,
        metadata: dict[str, Any],
        turn_log: TurnLogger,
    ) -> QueryResult:
        # History
        history_strategy = None
        summary = None
        if self._optimizer is not None and session_id is not None:
            optimized = await self._optimizer.optimize(
                session_id, query, self._settings.conversation.max_history_tokens
            )
            messages = optimized.to_messages()
            history_strategy = optimized.strategy.value
            summary = optimized.summary
            turn_log.history_loaded(history_strategy, len(messages), optimized.estimated_tokens)
        else:
            messages = coerce_history(history)

        # ROUTING
        selection = await self._router.route(query, messages, self._tree.leaves, metadata)
        routed = self._tree.require(selection.selected_key)
        turn_log.state_selected(routed.key, selection.confidence, selection.reasoning)

        session = self._sessions.get(session_id) if session_id is not None else None
        turn = _Turn(
            user_id=user_id,
            query=query,
            session_id=session_id,
            history=tuple(messages),
            metadata=metadata,
            selection=selection,
            routed=routed,
            log=turn_log,
            history_strategy=history_strategy,
            summary=summary,
        )
        guard_ctx = GuardContext(
            user_id=user_id,
            user_query=query,
            previous_state=session.last_state if session else None,
            metadata=metadata,
        )

        # ENTER_GUARD
        active = routed
        guard_action = None
        guard_notice = None
        entry = await self._guards.evaluate(routed.on_enter, guard_ctx)
        if not entry.allowed:
            get_metrics().record_guard_denial()
            action = entry.alternative_action
            turn_log.guard_denied(routed.key, "enter", entry.reason or "", action.value if action else None)

            if action == GuardAction.FALLBACK_STATE and entry.fallback_state_key:
                active = self._tree.require(entry.fallback_state_key)
                guard_action = GuardAction.FALLBACK_STATE.value
                guard_notice = entry.custom_message or entry.reason
                logger.info(f"[agent_pipeline] Entry to {routed.key} denied, falling back to {active.key}")
            else:
                return await self._denied(turn, entry)

        # CONTEXT_ASSEMBLY
        contexts, orchestration = await self._assemble_contexts(turn, active)
        turn_log.context_assembled(len(contexts), orchestration.strategy.value if orchestration else None)

        prompt_metadata = dict(metadata)
        if guard_notice:
            prompt_metadata["guard_notice"] = guard_notice
        if orchestration is not None:
            prompt_metadata["context_orchestration"] = {
                "strategy": orchestration.strategy.value,
                "total_score": round(orchestration.total_score, 3),
                "concepts": list(orchestration.analysis.concepts),
            }
        system_message = build_system_message(
            active.full_prompt,
            contexts,
            selected_state=active.key,
            confidence=selection.confidence,
            reasoning=selection.reasoning,
            strategy=orchestration.strategy.value if orchestration else None,
            metadata=prompt_metadata,
        )

        # TOOL_LOOP
        loop = await self._executor.run(
            build_messages(system_message, turn.history, query),
            tool_schemas=self._registry.to_llm_schemas(active.tools),
            allowed_tools=active.tools,
            config=active.llm_config,
            turn_log=turn_log,
        )

        if self._orchestrator is not None:
            await self._orchestrator.observe(
                loop.response, loop.tool_results, query, session_id=session_id or GLOBAL_SESSION
            )

        # LEAVE_GUARD
        leave = await self._guards.evaluate(active.on_leave, guard_ctx)
        if not leave.allowed:
            get_metrics().record_guard_denial()
            turn_log.guard_denied(active.key, "leave", leave.reason or "", None)
            raise GuardDenied(leave.reason, state_key=active.key, phase="leave")

        if session is not None:
            session.last_state = active.key
            session.turns += 1

        persisted = await self._persist(
            turn,
            loop.response,
            state_key=active.key,
            tool_results=loop.tool_results,
            extra={
                "confidence": selection.confidence,
                "reasoning": selection.reasoning,
                "strategy": orchestration.strategy.value if orchestration else None,
                "guard_action": guard_action,
            },
        )

        return QueryResult(
            response=loop.response,
            selected_state=active.key,
            tool_results=loop.tool_results,
            confidence=selection.confidence,
            reasoning=selection.reasoning,
            session_id=session_id,
            strategy=orchestration.strategy.value if orchestration else None,
            history_strategy=history_strategy,
            iterations=loop.iterations,
            persisted=persisted,
            guard_action=guard_action,
            routed_state=routed.key,
            metadata=metadata,
        )

    async def _denied(self, turn: _Turn, entry: GuardResult) -> QueryResult:
        """Answer an entry-guard denial without entering the state."""
        state = turn.routed
        if entry.alternative_action == GuardAction.CUSTOM_RESPONSE:
            response = entry.custom_message or entry.reason or DEFAULT_DENIAL_MESSAGE
            guard_action = GuardAction.CUSTOM_RESPONSE.value
        elif entry.alternative_action == GuardAction.FALLBACK_STATE:
            # Fallback requested without a target state
            response = entry.custom_message or entry.reason or DEFAULT_DENIAL_MESSAGE
            guard_action = "fallback_unavailable"
        else:
            reply = await complete_with_deadline(
                self._llm,
                build_denial_messages(entry.reason or "Condition not met", turn.history, turn.query),
                config=state.llm_config,
                timeout=self._settings.llm_timeout_seconds,
                operation="guard_denial_response",
            )
            response = reply.content
            guard_action = "denied"

        persisted = await self._persist(
            turn,
            response,
            state_key=state.key,
            tool_results=(),
            extra={"guard_denied": True, "guard_reason": entry.reason, "guard_action": guard_action},
        )
        return QueryResult(
            response=response,
            selected_state=state.key,
            confidence=turn.selection.confidence,
            reasoning=turn.selection.reasoning,
            session_id=turn.session_id,
            history_strategy=turn.history_strategy,
            persisted=persisted,
            guard_action=guard_action,
            routed_state=state.key,
            metadata=turn.metadata,
        )

    async def _assemble_contexts(
        self,
        turn: _Turn,
        state: ResolvedState,
    ) -> tuple[list[AssembledContext], OrchestrationResult | None]:
        declared = await self._contexts.resolve(state.contexts)
        if turn.summary:
            declared.append(
                AssembledContext(
                    key="conversation_summary",
                    description="Summary of earlier conversation",
                    content=turn.summary,
                )
            )

        if self._orchestrator is None:
            return declared, None

        orchestration = await self._orchestrator.orchestrate(
            turn.query,
            turn.history,
            self._registry.select(state.tools),
            declared,
            turn.metadata,
            session_id=turn.session_id or GLOBAL_SESSION,
        )
        declared_keys = {c.key for c in declared}
        dynamic = [
            AssembledContext(
                key=f"dynamic_context_{index}",
                description=f"Dynamic context: {candidate.reasoning}",
                content=candidate.content,
                priority=100 + candidate.relevance * 10,
            )
            for index, candidate in enumerate(
                c
                for c in orchestration.selected
                # declared contexts are already in the window
                if not (c.source == CandidateSource.STATIC and c.origin in declared_keys)
            )
        ]
        return dynamic + declared, orchestration

    async def _persist(
        self,
        turn: _Turn,
        response: str,
        *,
        state_key: str,
        tool_results: Sequence[ToolResult],
        extra: dict[str, Any],
    ) -> bool:
        """Store the user and assistant messages; failures are absorbed."""
        if self._optimizer is None or turn.session_id is None:
            return False
        try:
            await self._optimizer.store_message(
                turn.session_id,
                MessageRole.USER,
                turn.query,
                user_id=turn.user_id,
                state_key=state_key,
                metadata=dict(turn.metadata),
            )
            await self._optimizer.store_message(
                turn.session_id,
                MessageRole.ASSISTANT,
                response,
                user_id=turn.user_id,
                state_key=state_key,
                tool_results=[r.to_dict() for r in tool_results],
                metadata={**turn.metadata, **{k: v for k, v in extra.items() if v is not None}},
            )
        except StorageFailure as e:
            logger.error(f"[agent_pipeline] Failed to persist turn for {turn.session_id}: {e}")
            get_metrics().record_storage_failure()
            turn.log.persistence_failed(str(e))
            return False
        return True

    # =========================================================================
    # Conversation management
    # =========================================================================

    def is_persistence_enabled(self) -> bool:
        return self._optimizer is not None

    def _require_optimizer(self) -> ConversationOptimizer:
        if self._optimizer is None:
            raise ConfigurationError("Conversation persistence is not enabled")
        return self._optimizer

    async def get_conversation_history(self, session_id: str, limit: int | None = None) -> list[StoredMessage]:
        return await self._require_optimizer().get_history(session_id, limit)

    async def summarize_session(self, session_id: str) -> str | None:
        return await self._require_optimizer().summarize_session(session_id)

    async def search_conversations(
        self,
        query: str,
        user_id: str | None = None,
        limit: int = 20,
    ) -> list[StoredMessage]:
        return await self._require_optimizer().search_conversations(query, user_id, limit)

    async def cleanup_conversations(self, retention_days: int = 90) -> int:
        """Delete sessions idle for more than ``retention_days``; returns count."""
        return await self._require_optimizer().cleanup(retention_days)

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def state_tree(self) -> StateTree:
        return self._tree

    @property
    def settings(self) -> AgentSettings:
        return self._settings

    def get_available_states(self) -> list[dict[str, Any]]:
        """Leaf states the router may select, as key/description/path."""
        return [
            {"key": s.key, "description": s.description, "path": list(s.path)} for s in self._tree.leaves
        ]

    def get_state(self, key: str) -> ResolvedState | None:
        return self._tree.get(key)

    def get_leaf_states(self) -> list[ResolvedState]:
        return list(self._tree.leaves)

    def get_registered_tools(self) -> list[str]:
        return self._tools.registered_names()

    def get_orchestration_insights(self, session_id: str = GLOBAL_SESSION) -> dict[str, Any] | None:
        if self._orchestrator is None:
            return None
        return self._orchestrator.get_insights(session_id)

    def register_tool(self, spec: ToolSpec, fn: ToolFunction, *, replace: bool = True) -> None:
        """Register a tool's schema and implementation together."""
        self._registry.register(spec, replace=replace)
        self._tools.register(spec.name, fn)


# =============================================================================
# Factory Functions
# =============================================================================


def create_pipeline(
    states: StateNode | Sequence[StateNode] | StateTree,
    *,
    settings: AgentSettings | None = None,
    llm: LLMProvider | None = None,
    storage: ConversationStorage | None = None,
    with_orchestrator: bool = False,
    **kwargs: Any,
) -> AgentPipeline:
    """
    Build a pipeline from settings.

    The LLM provider and the storage backend are created from settings
    when not given. ``storage_backend="none"`` disables persistence.

    Example:
        pipeline = create_pipeline(load_state_tree("states.yaml"), with_orchestrator=True)
    """
    from agento.config.settings import get_settings
    from agento.conversation.storage import create_storage
    from agento.providers.llm import create_llm_provider

    settings = settings or get_settings()
    llm = llm or create_llm_provider(settings)

    if storage is None and settings.storage_backend != "none":
        if settings.storage_backend == "redis":
            storage = create_storage(
                "redis",
                redis_url=settings.redis_url.get_secret_value(),
                key_prefix=settings.redis_key_prefix,
            )
        else:
            storage = create_storage(settings.storage_backend)

    orchestrator = kwargs.pop("orchestrator", None)
    if orchestrator is None and with_orchestrator:
        orchestrator = ContextOrchestrator(
            llm,
            settings=settings.orchestrator,
            knowledge_base=kwargs.pop("knowledge_base", None),
            llm_timeout=settings.llm_timeout_seconds,
        )

    return AgentPipeline(
        states,
        llm=llm,
        settings=settings,
        storage=storage,
        orchestrator=orchestrator,
        **kwargs,
    )
