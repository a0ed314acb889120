from toolpilot.safety.engine import (
    Allowlists,
    IdempotencyConfig,
    Quotas,
    SafetyConfig,
    SafetyEngine,
    StateChange,
    command_allowed,
    host_allowed,
    idempotency_key,
    path_allowed,
)

__all__ = [
    "Allowlists",
    "IdempotencyConfig",
    "Quotas",
    "SafetyConfig",
    "SafetyEngine",
    "StateChange",
    "command_allowed",
    "host_allowed",
    "idempotency_key",
    "path_allowed",
]
