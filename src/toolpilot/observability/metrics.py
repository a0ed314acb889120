"""OpenTelemetry metrics for ToolPilot.

Counters and a histogram for decisions, tool calls, retries, policy
violations and circuit breaker transitions. Instruments come from the
OpenTelemetry API; until an SDK meter provider is installed they are
no-ops.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import TYPE_CHECKING

from opentelemetry import metrics

from toolpilot import __version__

if TYPE_CHECKING:
    from collections.abc import Generator

_meter = None
_decisions_total = None
_tool_calls_total = None
_retries_total = None
_policy_violations_total = None
_tool_duration = None
_circuit_transitions_total = None


def _ensure_meter() -> None:
    """Lazily create the meter and instruments."""
    global _meter, _decisions_total, _tool_calls_total, _retries_total
    global _policy_violations_total, _tool_duration, _circuit_transitions_total

    if _meter is not None:
        return

    _meter = metrics.get_meter("toolpilot", __version__)
    _decisions_total = _meter.create_counter(
        "toolpilot.decisions.total",
        description="Total recorded routing decisions",
        unit="1",
    )
    _tool_calls_total = _meter.create_counter(
        "toolpilot.tool_calls.total",
        description="Total tool invocations",
        unit="1",
    )
    _retries_total = _meter.create_counter(
        "toolpilot.retries.total",
        description="Total retry attempts scheduled by the policy decorator",
        unit="1",
    )
    _policy_violations_total = _meter.create_counter(
        "toolpilot.policy_violations.total",
        description="Calls rejected by allow-lists, quotas or approval",
        unit="1",
    )
    _tool_duration = _meter.create_histogram(
        "toolpilot.tool.duration_ms",
        description="Tool call duration in milliseconds",
        unit="ms",
    )
    _circuit_transitions_total = _meter.create_counter(
        "toolpilot.circuit_transitions.total",
        description="Circuit breaker state changes",
        unit="1",
    )


def record_decision(*, outcome: str, tool_count: int) -> None:
    _ensure_meter()
    _decisions_total.add(1, {"toolpilot.outcome": outcome, "toolpilot.tool_count": str(tool_count)})


def record_tool_call(*, tool_name: str, success: bool, risk_level: str = "UNKNOWN") -> None:
    """Record a completed tool invocation."""
    _ensure_meter()
    _tool_calls_total.add(
        1,
        {"toolpilot.tool_name": tool_name, "toolpilot.success": str(success), "toolpilot.risk_level": risk_level},
    )


def record_retry(*, tool_name: str, attempt: int) -> None:
    _ensure_meter()
    _retries_total.add(1, {"toolpilot.tool_name": tool_name, "toolpilot.attempt": str(attempt)})


def record_policy_violation(*, tool_name: str, rule: str) -> None:
    _ensure_meter()
    _policy_violations_total.add(1, {"toolpilot.tool_name": tool_name, "toolpilot.rule": rule})


def record_circuit_transition(*, tool_name: str, state: str) -> None:
    _ensure_meter()
    _circuit_transitions_total.add(1, {"toolpilot.tool_name": tool_name, "toolpilot.circuit_state": state})


def record_tool_duration(*, tool_name: str, duration_ms: float) -> None:
    _ensure_meter()
    _tool_duration.record(duration_ms, {"toolpilot.tool_name": tool_name})


@contextmanager
def measure_tool_duration(tool_name: str) -> Generator[None, None, None]:
    """Context manager to measure and record a tool call's duration."""
    start = time.monotonic()
    try:
        yield
    finally:
        record_tool_duration(tool_name=tool_name, duration_ms=(time.monotonic() - start) * 1000)
