"""ToolPilot Observability: decision ledger plus OpenTelemetry tracing and metrics.

Tracing is opt-in via the OTEL_EXPORTER_OTLP_ENDPOINT env var.
Without it, all tracing/metrics calls are no-ops.
"""

from toolpilot.observability.metrics import (
    record_decision,
    record_policy_violation,
    record_retry,
    record_tool_call,
)
from toolpilot.observability.recorder import (
    ObservabilityManager,
    categorize_error,
    get_observability_manager,
    replay_context,
    reset_observability_manager,
)
from toolpilot.observability.tracing import get_tracer, init_tracing

__all__ = [
    "ObservabilityManager",
    "categorize_error",
    "get_observability_manager",
    "get_tracer",
    "init_tracing",
    "record_decision",
    "record_policy_violation",
    "record_retry",
    "record_tool_call",
    "replay_context",
    "reset_observability_manager",
]
