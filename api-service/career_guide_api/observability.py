"""Observability utilities: trace IDs, Prometheus metrics, and LLM call logging.

This module provides:
- Trace ID generation and propagation via context vars
- Prometheus metrics for LLM calls, conversation turns and fallbacks
- Structured logging helpers for LLM request/response correlation
"""

import secrets
import time
from contextvars import ContextVar
from dataclasses import dataclass

import structlog
from prometheus_client import Counter, Gauge, Histogram

logger = structlog.get_logger()

# =============================================================================
# Trace ID Context
# =============================================================================

trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")


def generate_trace_id() -> str:
    """Generate cryptographically secure trace ID for request tracking."""
    return secrets.token_hex(16)


def get_trace_id() -> str:
    """Get current trace ID from context, or empty string if not set."""
    return trace_id_ctx.get()


def set_trace_id(trace_id: str) -> None:
    """Set trace ID in context."""
    trace_id_ctx.set(trace_id)


# =============================================================================
# Prometheus Metrics
# =============================================================================

llm_requests_total = Counter(
    "llm_requests_total",
    "Total LLM API requests",
    ["model", "operation", "status"],
)

llm_tokens_total = Counter(
    "llm_tokens_total",
    "Total tokens used in LLM calls",
    ["model", "operation"],
)

llm_latency_seconds = Histogram(
    "llm_latency_seconds",
    "LLM response latency in seconds",
    ["model", "operation"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

llm_active_requests = Gauge(
    "llm_active_requests",
    "Currently active LLM requests",
    ["model"],
)

conversation_turns_total = Counter(
    "conversation_turns_total",
    "Processed user turns",
    ["outcome"],  # ok, rejected, failed
)

fallback_activations_total = Counter(
    "fallback_activations_total",
    "Sticky fallbacks engaged for a session",
    ["component"],  # analyzer, generative, matching
)

recommendation_passes_total = Counter(
    "recommendation_passes_total",
    "Recommendation computations",
    ["method"],  # reconciled, vector
)

milestones_confirmed_total = Counter(
    "milestones_confirmed_total",
    "Milestones confirmed",
    ["milestone"],
)


def record_turn(outcome: str) -> None:
    conversation_turns_total.labels(outcome=outcome).inc()


def record_fallback(component: str, conversation_id: str, reason: str) -> None:
    """Count a fallback activation and log why it happened."""
    fallback_activations_total.labels(component=component).inc()
    logger.warning(
        "Fallback activated",
        component=component,
        conversation_id=conversation_id,
        reason=reason,
    )


def record_recommendation_pass(method: str, count: int) -> None:
    recommendation_passes_total.labels(method=method).inc()
    logger.info("Recommendations computed", method=method, count=count)


# =============================================================================
# LLM Payload Logging
# =============================================================================


@dataclass
class LLMRequestLog:
    """Structured log data for LLM requests."""

    trace_id: str
    model: str
    operation: str
    system_prompt_chars: int
    history_messages: int
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        if self.timestamp == 0.0:
            self.timestamp = time.time()


def log_llm_request(
    model: str,
    operation: str,
    system_prompt: str,
    history: list[dict[str, str]] | None = None,
) -> LLMRequestLog:
    """Log an LLM request and bump the active-request gauge.

    Returns LLMRequestLog for correlation with the response.
    """
    log_data = LLMRequestLog(
        trace_id=get_trace_id(),
        model=model,
        operation=operation,
        system_prompt_chars=len(system_prompt),
        history_messages=len(history) if history else 0,
    )

    logger.info(
        "llm_request",
        trace_id=log_data.trace_id,
        model=log_data.model,
        operation=log_data.operation,
        system_prompt_chars=log_data.system_prompt_chars,
        history_messages=log_data.history_messages,
    )

    llm_active_requests.labels(model=model).inc()
    return log_data


def log_llm_response(
    request_log: LLMRequestLog,
    tokens_total: int = 0,
    finish_reason: str = "unknown",
    error: str | None = None,
) -> None:
    """Log an LLM response with metrics and correlation."""
    latency_ms = int((time.time() - request_log.timestamp) * 1000)

    if error:
        logger.error(
            "llm_response",
            trace_id=request_log.trace_id,
            model=request_log.model,
            operation=request_log.operation,
            latency_ms=latency_ms,
            error=error,
        )
        status = "error"
    else:
        logger.info(
            "llm_response",
            trace_id=request_log.trace_id,
            model=request_log.model,
            operation=request_log.operation,
            tokens_total=tokens_total,
            latency_ms=latency_ms,
            finish_reason=finish_reason,
        )
        status = "success"

    llm_active_requests.labels(model=request_log.model).dec()
    llm_requests_total.labels(
        model=request_log.model, operation=request_log.operation, status=status
    ).inc()
    if tokens_total > 0:
        llm_tokens_total.labels(model=request_log.model, operation=request_log.operation).inc(
            tokens_total
        )
    llm_latency_seconds.labels(
        model=request_log.model, operation=request_log.operation
    ).observe(latency_ms / 1000.0)
