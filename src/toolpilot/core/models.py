"""
ToolPilot Core Data Models

Shared types used across the routing pipeline. This module is the
foundation every other component imports from; it must have zero
internal dependencies beyond pydantic.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ─── Enums ───────────────────────────────────────────────────

class RiskLevel(str, Enum):
    """Ordered risk classification for tools and plans."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @classmethod
    def max_of(cls, levels) -> "RiskLevel":
        """Highest level in ``levels``; LOW for an empty collection."""
        return max(levels, key=lambda level: level.rank, default=cls.LOW)


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class Capability(str, Enum):
    """What a tool is able to touch. Drives allow-list checks."""
    FS_READ = "fs.read"
    FS_WRITE = "fs.write"
    FS_DELETE = "fs.delete"
    NET_HTTP = "net.http"
    SHELL_EXEC = "shell.exec"
    PROCESS_SPAWN = "process.spawn"
    MEMORY_READ = "memory.read"
    MEMORY_WRITE = "memory.write"
    DATABASE_QUERY = "database.query"
    DATABASE_WRITE = "database.write"
    CACHE_READ = "cache.read"
    CACHE_WRITE = "cache.write"


MUTATING_CAPABILITIES = frozenset({
    Capability.FS_WRITE,
    Capability.FS_DELETE,
    Capability.SHELL_EXEC,
    Capability.PROCESS_SPAWN,
    Capability.MEMORY_WRITE,
    Capability.DATABASE_WRITE,
    Capability.CACHE_WRITE,
})

FILESYSTEM_CAPABILITIES = frozenset({
    Capability.FS_READ,
    Capability.FS_WRITE,
    Capability.FS_DELETE,
})


class CandidateReason(str, Enum):
    """Why a tool ended up in the router's candidate list."""
    PATTERN = "pattern"
    CLASSIFIER = "classifier"
    HYBRID = "hybrid"


class Outcome(str, Enum):
    OK = "ok"
    FAIL = "fail"


class BackoffStrategy(str, Enum):
    """Delay schedule between retry attempts."""
    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# ─── Routing ─────────────────────────────────────────────────

class RouteCandidate(BaseModel):
    """A tool considered plausible for an utterance."""
    model_config = ConfigDict(frozen=True)

    tool: str
    score: float = Field(ge=0.0, le=1.0)
    reason: CandidateReason


class RouteResult(BaseModel):
    """Router output: candidates sorted by score, then tool name."""
    candidates: list[RouteCandidate] = Field(default_factory=list)

    @property
    def top(self) -> RouteCandidate | None:
        return self.candidates[0] if self.candidates else None

    @property
    def tool_names(self) -> list[str]:
        return [c.tool for c in self.candidates]


# ─── Policy ──────────────────────────────────────────────────

class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreakerConfig(BaseModel):
    """When to stop calling a tool that keeps failing, and when to try again."""
    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_ms: int = Field(default=60_000, ge=0)
    half_open_max_calls: int = Field(default=1, ge=1)


class Policy(BaseModel):
    """Timeout / retry / approval behaviour applied to a tool call."""
    model_config = ConfigDict(frozen=True)

    timeout_ms: int | None = Field(default=None, gt=0)
    retries: int = Field(default=0, ge=0)
    backoff: BackoffStrategy = BackoffStrategy.NONE
    base_delay_ms: int = Field(default=200, ge=0)
    max_delay_ms: int | None = Field(default=None, ge=0)
    require_approval: bool = False
    circuit_breaker: CircuitBreakerConfig | None = None


class ApprovalRequest(BaseModel):
    """Handed to the approval callback before a gated tool runs."""
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    risk_level: RiskLevel
    reason: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ─── Decision Ledger ─────────────────────────────────────────

class DecisionRecord(BaseModel):
    """Immutable audit entry for one routing-through-execution turn."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"dec-{uuid.uuid4().hex[:12]}")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    input: str
    patterns_matched: list[str] = Field(default_factory=list)
    router_candidates: list[RouteCandidate] = Field(default_factory=list)
    chosen: list[str] = Field(default_factory=list)
    args: dict[str, Any] = Field(default_factory=dict)
    outcome: Outcome
    latency_ms: float = Field(default=0.0, ge=0.0)
    error: str | None = None
    error_type: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_invariants(self) -> "DecisionRecord":
        candidate_names = {c.tool for c in self.router_candidates}
        stray = [tool for tool in self.chosen if tool not in candidate_names]
        if stray:
            raise ValueError(f"chosen tools {stray} are not router candidates")
        if self.outcome == Outcome.OK and not self.chosen:
            raise ValueError("an ok decision must choose at least one tool")
        if self.outcome == Outcome.FAIL and not self.error:
            raise ValueError("a failed decision must carry an error")
        return self


class ReplayOutcome(BaseModel):
    """What a replay function reports for one re-run of a recorded input."""
    outcome: Outcome
    latency_ms: float = Field(default=0.0, ge=0.0)
    error: str | None = None
    error_type: str | None = None


class ReplayResult(BaseModel):
    decision_id: str
    replay_decision_id: str
    input: str
    original_outcome: Outcome
    outcome: Outcome
    replayed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def outcome_changed(self) -> bool:
        return self.outcome != self.original_outcome


class ReplayStats(BaseModel):
    total_replays: int = 0
    successful_replays: int = 0
    failed_replays: int = 0
    outcome_changes: int = 0


class ToolAccuracy(BaseModel):
    correct: int = 0
    total: int = 0

    @property
    def accuracy(self) -> float:
        return self.correct / self.total if self.total else 0.0


class Report(BaseModel):
    """Aggregate view over the decision history. Derived, never stored."""
    total_decisions: int = 0
    tool_accuracy: dict[str, ToolAccuracy] = Field(default_factory=dict)
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    p99_latency_ms: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    pattern_vs_classifier: dict[str, int] = Field(default_factory=dict)
    common_failures: list[tuple[str, int]] = Field(default_factory=list)
