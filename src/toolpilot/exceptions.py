"""
ToolPilot Custom Exceptions

Structured exception hierarchy for the ToolPilot routing pipeline.
All ToolPilot-specific exceptions inherit from ToolPilotError.

Exception hierarchy:
    ToolPilotError
    +-- ConfigurationError       (config file unreadable or invalid)
    +-- DuplicateToolError       (tool name already registered)
    +-- NoApplicablePlanError    (no clause of the utterance resolved to a tool)
    +-- ValidationError          (argument shape invalid, never retried)
    +-- PolicyViolationError     (allow-list or quota breach, call never attempted)
    |   +-- ApprovalDeniedError  (approval gate rejected or timed out)
    +-- ToolExecutionError       (transient tool failure, retried per policy)
    +-- ToolTimeoutError         (attempt exceeded its timeout, retried per policy)
    +-- CircuitOpenError         (tool circuit breaker open, call rejected)
    +-- DependencyFailedError    (an upstream plan step failed, step skipped)

The ``retryable`` class attribute tells the policy decorator whether
another attempt may be made after the error.
"""

from __future__ import annotations


class ToolPilotError(Exception):
    """Base exception for all ToolPilot errors."""

    retryable: bool = False

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(ToolPilotError):
    """Raised when a configuration file cannot be parsed or validated."""

    def __init__(self, source: str, message: str):
        super().__init__(
            f"Invalid configuration in {source}: {message}",
            details={"source": source},
        )
        self.source = source


class DuplicateToolError(ToolPilotError):
    """Raised when a tool name is registered twice."""

    def __init__(self, tool_name: str):
        super().__init__(
            f"Tool '{tool_name}' is already registered",
            details={"tool_name": tool_name},
        )
        self.tool_name = tool_name


class NoApplicablePlanError(ToolPilotError):
    """Raised when no clause of an utterance can be matched to a tool.

    Surfaced to the caller; the turn fails before any execution.
    """

    def __init__(self, utterance: str, clauses: list[str] | None = None):
        super().__init__(
            f"No applicable plan for utterance: {utterance[:80]!r}",
            details={"utterance": utterance, "clauses": clauses or []},
        )
        self.utterance = utterance
        self.clauses = clauses or []


class ValidationError(ToolPilotError):
    """Raised when tool arguments do not satisfy the tool's shape or preconditions.

    Never retried.
    """

    def __init__(self, tool_name: str, message: str, details: dict | None = None):
        super().__init__(
            f"Invalid arguments for '{tool_name}': {message}",
            details={"tool_name": tool_name, **(details or {})},
        )
        self.tool_name = tool_name


class PolicyViolationError(ToolPilotError):
    """Raised when a call breaches an allow-list or a resource quota.

    The underlying tool body is never invoked.
    """

    def __init__(self, tool_name: str, rule: str, message: str, details: dict | None = None):
        super().__init__(
            f"Policy violation for '{tool_name}' ({rule}): {message}",
            details={"tool_name": tool_name, "rule": rule, **(details or {})},
        )
        self.tool_name = tool_name
        self.rule = rule


class ApprovalDeniedError(PolicyViolationError):
    """Raised when the approval gate does not grant execution."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(tool_name, "approval", reason)


class ToolExecutionError(ToolPilotError):
    """Raised when a tool body fails transiently.

    Retried per policy; surfaced only once retries are exhausted.
    """

    retryable = True

    def __init__(
        self,
        tool_name: str,
        message: str,
        attempts: int = 1,
        details: dict | None = None,
    ):
        super().__init__(
            f"Tool '{tool_name}' execution failed: {message}",
            details={"tool_name": tool_name, "attempts": attempts, **(details or {})},
        )
        self.tool_name = tool_name
        self.attempts = attempts


class ToolTimeoutError(ToolPilotError, TimeoutError):
    """Raised when a single attempt exceeds the policy timeout."""

    retryable = True

    def __init__(self, tool_name: str, timeout_ms: int):
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout_ms}ms",
            details={"tool_name": tool_name, "timeout_ms": timeout_ms},
        )
        self.tool_name = tool_name
        self.timeout_ms = timeout_ms


class DependencyFailedError(ToolPilotError):
    """Raised for a plan step whose dependency did not complete."""

    def __init__(self, step_id: str, dependency_id: str):
        super().__init__(
            f"Step '{step_id}' skipped: dependency '{dependency_id}' failed",
            details={"step_id": step_id, "dependency_id": dependency_id},
        )
        self.step_id = step_id
        self.dependency_id = dependency_id


class CircuitOpenError(ToolPilotError):
    """Raised when a tool's circuit breaker rejects a call without running it."""

    def __init__(self, tool_name: str, state: str, failures: int):
        super().__init__(
            f"Circuit breaker {state} for '{tool_name}' after {failures} failure(s), call rejected",
            details={"tool_name": tool_name, "circuit_state": state, "failures": failures},
        )
        self.tool_name = tool_name
        self.state = state
        self.failures = failures
