from toolpilot.policy.decorator import (
    DEFAULT_POLICY_TABLE,
    CallStats,
    CircuitBreaker,
    PolicyWrappedTool,
    backoff_delay_ms,
    merge_policies,
    policy_for,
    with_policies,
)

__all__ = [
    "DEFAULT_POLICY_TABLE",
    "CallStats",
    "CircuitBreaker",
    "PolicyWrappedTool",
    "backoff_delay_ms",
    "merge_policies",
    "policy_for",
    "with_policies",
]
