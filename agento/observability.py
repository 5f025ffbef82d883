"""
Observability for agento.

Structured per-turn logging and in-process metrics.

Design Philosophy:
- Plain ``logging`` for component logs (``[component] message``)
- JSON records for turn lifecycle events, so a turn can be followed
  end to end by its request id
- Counters and simple histograms that can be scraped or exported

Usage:
    turn_log = TurnLogger(request_id="abc-123", session_id="s-1")
    turn_log.turn_started(user_id="u-1", query="check my balance")
    turn_log.state_selected("banking.balance", confidence=92)
    turn_log.turn_completed(success=True, duration_ms=812.4, iterations=2)

    get_metrics().get_stats()
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str | int = logging.INFO) -> None:
    """Configure root logging the way the service entry points expect."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)


# =============================================================================
# Structured Logger
# =============================================================================


class LogLevel(Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class StructuredLogger(Protocol):
    """Loggers that take key-value context instead of formatted strings."""

    def debug(self, message: str, **context: Any) -> None: ...

    def info(self, message: str, **context: Any) -> None: ...

    def warning(self, message: str, **context: Any) -> None: ...

    def error(self, message: str, **context: Any) -> None: ...


@dataclass
class JSONLogger:
    """
    Structured logger that emits one JSON object per record.

    Each record includes timestamp, level, message, any bound context,
    and the request_id when set. Records go through stdlib logging so
    handlers and levels configured by the host application apply.

    Example output:
        {"timestamp": "2026-01-02T10:30:00+00:00", "level": "info",
         "message": "Turn started", "request_id": "abc-123", "user_id": "u-1"}
    """

    name: str = "agento"
    request_id: str | None = None
    extra_context: dict[str, Any] = field(default_factory=dict)
    _python_logger: logging.Logger = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._python_logger = logging.getLogger(self.name)

    def _log(self, level: LogLevel, message: str, context: dict[str, Any]) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level.value,
            "message": message,
            **self.extra_context,
            **context,
        }
        if self.request_id:
            record["request_id"] = self.request_id

        getattr(self._python_logger, level.value)(json.dumps(record, default=str))

    def debug(self, message: str, **context: Any) -> None:
        self._log(LogLevel.DEBUG, message, context)

    def info(self, message: str, **context: Any) -> None:
        self._log(LogLevel.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(LogLevel.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._log(LogLevel.ERROR, message, context)

    def with_context(self, **extra: Any) -> JSONLogger:
        """Create a new logger with additional bound context."""
        return JSONLogger(
            name=self.name,
            request_id=self.request_id,
            extra_context={**self.extra_context, **extra},
        )


# =============================================================================
# Turn Logger
# =============================================================================


@dataclass
class TurnLogger:
    """
    Lifecycle events for one ``process_query`` turn.

    Example:
        turn_log = TurnLogger(request_id="abc-123", session_id="s-1")
        turn_log.turn_started(user_id="u-1", query="hi")
        turn_log.tool_executed("get_balance", success=True, duration_ms=12.0)
    """

    request_id: str
    session_id: str | None = None
    inner: StructuredLogger | None = None

    def __post_init__(self) -> None:
        if self.inner is None:
            self.inner = JSONLogger(
                name="agento.turn",
                request_id=self.request_id,
                extra_context={"session_id": self.session_id} if self.session_id else {},
            )

    def turn_started(self, user_id: str, query: str) -> None:
        self.inner.info("Turn started", user_id=user_id, query_chars=len(query))

    def history_loaded(self, strategy: str, message_count: int, estimated_tokens: int) -> None:
        self.inner.debug(
            "History loaded",
            strategy=strategy,
            message_count=message_count,
            estimated_tokens=estimated_tokens,
        )

    def state_selected(self, state_key: str, confidence: float, reasoning: str = "") -> None:
        self.inner.info(
            "State selected",
            state_key=state_key,
            confidence=confidence,
            reasoning=reasoning[:200],
        )

    def guard_denied(self, state_key: str, phase: str, reason: str, action: str | None) -> None:
        self.inner.warning(
            "Guard denied",
            state_key=state_key,
            phase=phase,
            reason=reason,
            alternative_action=action,
        )

    def context_assembled(self, context_count: int, strategy: str | None) -> None:
        self.inner.debug("Context assembled", context_count=context_count, strategy=strategy)

    def tool_executed(self, tool_name: str, success: bool, duration_ms: float, error: str | None = None) -> None:
        if success:
            self.inner.debug(
                "Tool executed", tool=tool_name, success=True, duration_ms=round(duration_ms, 2)
            )
        else:
            self.inner.warning(
                "Tool failed",
                tool=tool_name,
                success=False,
                duration_ms=round(duration_ms, 2),
                error=error,
            )

    def persistence_failed(self, error: str) -> None:
        self.inner.error("Persistence failed", error=error)

    def turn_completed(
        self,
        success: bool,
        duration_ms: float,
        iterations: int = 0,
        error: str | None = None,
    ) -> None:
        if success:
            self.inner.info(
                "Turn completed",
                success=True,
                duration_ms=round(duration_ms, 2),
                iterations=iterations,
            )
        else:
            self.inner.error(
                "Turn failed",
                success=False,
                duration_ms=round(duration_ms, 2),
                iterations=iterations,
                error=error,
            )


# =============================================================================
# Metrics
# =============================================================================


@dataclass
class AgentMetrics:
    """
    Agent runtime metrics.

    Tracks:
    - Turn counts and durations
    - Tool calls and failures
    - Guard denials
    - Storage failures (absorbed persistence errors)
    - Malformed structured responses, by label

    Can be exported to Prometheus, StatsD, or other systems.
    """

    # Counters
    queries_total: int = 0
    queries_success: int = 0
    queries_failed: int = 0
    tool_calls_total: int = 0
    tool_calls_failed: int = 0
    guard_denials: int = 0
    storage_failures: int = 0
    malformed_responses: dict[str, int] = field(default_factory=dict)

    # Histograms (simplified as lists)
    query_durations_ms: list[float] = field(default_factory=list)
    tool_iterations: list[int] = field(default_factory=list)

    max_histogram_entries: int = 1000

    def record_query(self, success: bool, duration_ms: float, iterations: int = 0) -> None:
        self.queries_total += 1
        if success:
            self.queries_success += 1
        else:
            self.queries_failed += 1
        self.query_durations_ms.append(duration_ms)
        self.tool_iterations.append(iterations)
        self._trim_histogram(self.query_durations_ms)
        self._trim_histogram(self.tool_iterations)

    def record_tool_call(self, success: bool) -> None:
        self.tool_calls_total += 1
        if not success:
            self.tool_calls_failed += 1

    def record_guard_denial(self) -> None:
        self.guard_denials += 1

    def record_storage_failure(self) -> None:
        self.storage_failures += 1

    def record_malformed(self, label: str) -> None:
        self.malformed_responses[label] = self.malformed_responses.get(label, 0) + 1

    def _trim_histogram(self, histogram: list) -> None:
        if len(histogram) > self.max_histogram_entries:
            del histogram[: len(histogram) - self.max_histogram_entries]

    def get_stats(self) -> dict[str, Any]:
        """Get summary statistics."""

        def percentile(data: list[float], p: float) -> float | None:
            if not data:
                return None
            sorted_data = sorted(data)
            k = (len(sorted_data) - 1) * p
            f = int(k)
            c = f + 1 if f + 1 < len(sorted_data) else f
            return sorted_data[f] + (k - f) * (sorted_data[c] - sorted_data[f])

        return {
            "queries": {
                "total": self.queries_total,
                "success": self.queries_success,
                "failed": self.queries_failed,
                "success_rate": (
                    self.queries_success / self.queries_total if self.queries_total > 0 else None
                ),
            },
            "duration_ms": {
                "p50": percentile(self.query_durations_ms, 0.5),
                "p95": percentile(self.query_durations_ms, 0.95),
                "p99": percentile(self.query_durations_ms, 0.99),
            },
            "tools": {
                "calls": self.tool_calls_total,
                "failed": self.tool_calls_failed,
            },
            "guard_denials": self.guard_denials,
            "storage_failures": self.storage_failures,
            "malformed_responses": dict(self.malformed_responses),
        }

    def reset(self) -> None:
        self.queries_total = 0
        self.queries_success = 0
        self.queries_failed = 0
        self.tool_calls_total = 0
        self.tool_calls_failed = 0
        self.guard_denials = 0
        self.storage_failures = 0
        self.malformed_responses.clear()
        self.query_durations_ms.clear()
        self.tool_iterations.clear()


# Global metrics instance (can be replaced with actual metrics backend)
_global_metrics = AgentMetrics()


def get_metrics() -> AgentMetrics:
    """Get the global metrics instance."""
    return _global_metrics


def reset_metrics() -> None:
    """Reset global metrics (useful for testing)."""
    _global_metrics.reset()
