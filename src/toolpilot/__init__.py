"""
ToolPilot: Safe Tool Routing and Execution for Agents

Usage:
    from toolpilot import AgentExecutor, ToolRegistry
    from toolpilot.tools.builtin import register_all_builtins

    registry = ToolRegistry()
    register_all_builtins(registry)

    executor = AgentExecutor(registry)
    new_state, result = await executor.execute_turn(
        {}, "read config.json and then write output.txt"
    )
"""

__version__ = "0.1.0"

from toolpilot.core.models import (  # noqa: E402
    ApprovalRequest,
    BackoffStrategy,
    Capability,
    CircuitBreakerConfig,
    CircuitState,
    DecisionRecord,
    Outcome,
    Policy,
    ReplayOutcome,
    ReplayResult,
    Report,
    RiskLevel,
    RouteCandidate,
    RouteResult,
)
from toolpilot.engine.executor import AgentExecutor, StepResult, TurnResult  # noqa: E402
from toolpilot.exceptions import (  # noqa: E402
    ApprovalDeniedError,
    CircuitOpenError,
    ConfigurationError,
    DependencyFailedError,
    DuplicateToolError,
    NoApplicablePlanError,
    PolicyViolationError,
    ToolExecutionError,
    ToolPilotError,
    ToolTimeoutError,
    ValidationError,
)
from toolpilot.observability.recorder import (  # noqa: E402
    ObservabilityManager,
    get_observability_manager,
)
from toolpilot.planning.planner import Plan, PlanStep, plan_from_utterance  # noqa: E402
from toolpilot.policy.decorator import CallStats, CircuitBreaker, PolicyWrappedTool, with_policies  # noqa: E402
from toolpilot.routing.patterns import gate  # noqa: E402
from toolpilot.routing.router import Router  # noqa: E402
from toolpilot.safety.engine import SafetyConfig, SafetyEngine  # noqa: E402
from toolpilot.tools.registry import Predicate, Tool, ToolRegistry  # noqa: E402

__all__ = [
    "__version__",
    # Models
    "ApprovalRequest",
    "BackoffStrategy",
    "Capability",
    "CircuitBreakerConfig",
    "CircuitState",
    "DecisionRecord",
    "Outcome",
    "Policy",
    "ReplayOutcome",
    "ReplayResult",
    "Report",
    "RiskLevel",
    "RouteCandidate",
    "RouteResult",
    # Tools
    "Predicate",
    "Tool",
    "ToolRegistry",
    # Routing and planning
    "Plan",
    "PlanStep",
    "Router",
    "gate",
    "plan_from_utterance",
    # Policy and safety
    "CallStats",
    "CircuitBreaker",
    "PolicyWrappedTool",
    "SafetyConfig",
    "SafetyEngine",
    "with_policies",
    # Execution and observability
    "AgentExecutor",
    "ObservabilityManager",
    "StepResult",
    "TurnResult",
    "get_observability_manager",
    # Errors
    "ApprovalDeniedError",
    "CircuitOpenError",
    "ConfigurationError",
    "DependencyFailedError",
    "DuplicateToolError",
    "NoApplicablePlanError",
    "PolicyViolationError",
    "ToolExecutionError",
    "ToolPilotError",
    "ToolTimeoutError",
    "ValidationError",
]
