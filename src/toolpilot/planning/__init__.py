from toolpilot.planning.planner import (
    Plan,
    PlanStep,
    critical_path_ms,
    dependency_graph,
    plan_from_utterance,
    plan_requires_approval,
    plan_summary,
)

__all__ = [
    "Plan",
    "PlanStep",
    "critical_path_ms",
    "dependency_graph",
    "plan_from_utterance",
    "plan_requires_approval",
    "plan_summary",
]
