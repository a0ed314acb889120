"""
ToolPilot Policy Decorator

Wraps a tool's handler with the behaviour its risk tier calls for.
A wrapped call runs, in order:

1. Argument validation: the tool's pydantic schema, then its
   preconditions. Failures raise ValidationError and are never retried.
2. Approval gate: when the policy requires approval, the call suspends
   on the approval callback. Denial, timeout, or a missing callback
   raise ApprovalDeniedError.
3. Retry loop: each attempt runs under the policy timeout
   (ToolTimeoutError on expiry). Retryable failures back off and try
   again until retries run out.
4. Postconditions on the returned state.

When the policy carries a circuit_breaker config, steps 3 and 4 run
behind a per-tool CircuitBreaker: a call that fails after its retries
counts as one failure, and an open circuit rejects calls with
CircuitOpenError before the handler runs.

The risk -> policy defaults live in DEFAULT_POLICY_TABLE and nowhere
else.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import pydantic
from pydantic import BaseModel, Field

from toolpilot.core.models import (
    ApprovalRequest,
    BackoffStrategy,
    CircuitBreakerConfig,
    CircuitState,
    Policy,
    RiskLevel,
)
from toolpilot.exceptions import (
    ApprovalDeniedError,
    CircuitOpenError,
    ToolExecutionError,
    ToolPilotError,
    ToolTimeoutError,
    ValidationError,
)
from toolpilot.observability.metrics import (
    measure_tool_duration,
    record_circuit_transition,
    record_retry,
    record_tool_call,
)
from toolpilot.tools.registry import AgentState, Tool

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[ApprovalRequest], bool | Awaitable[bool]]
SleepFn = Callable[[float], Awaitable[Any]]

DEFAULT_BASE_DELAY_MS = 200
DEFAULT_APPROVAL_TIMEOUT_S = 300.0

DEFAULT_POLICY_TABLE: dict[RiskLevel, Policy] = {
    RiskLevel.LOW: Policy(timeout_ms=5_000, retries=0, backoff=BackoffStrategy.NONE),
    RiskLevel.MEDIUM: Policy(
        timeout_ms=15_000,
        retries=2,
        backoff=BackoffStrategy.FIXED,
        base_delay_ms=DEFAULT_BASE_DELAY_MS,
    ),
    RiskLevel.HIGH: Policy(
        timeout_ms=30_000,
        retries=3,
        backoff=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=DEFAULT_BASE_DELAY_MS,
    ),
    RiskLevel.CRITICAL: Policy(
        timeout_ms=30_000,
        retries=1,
        backoff=BackoffStrategy.EXPONENTIAL,
        base_delay_ms=DEFAULT_BASE_DELAY_MS,
        require_approval=True,
    ),
}


def merge_policies(*policies: Policy | None) -> Policy:
    """Layer policies left to right.

    Only fields explicitly set on a later policy override earlier ones.
    """
    merged: dict[str, Any] = {}
    for policy in policies:
        if policy is None:
            continue
        if not merged:
            merged = policy.model_dump()
            continue
        merged.update({name: getattr(policy, name) for name in policy.model_fields_set})
    return Policy(**merged)


def policy_for(tool: Tool, table: Mapping[RiskLevel, Policy] | None = None) -> Policy:
    """Default policy for the tool's risk tier, with its own override applied."""
    table = table or DEFAULT_POLICY_TABLE
    base = table.get(tool.risk, DEFAULT_POLICY_TABLE[tool.risk])
    return merge_policies(base, tool.policy)


def backoff_delay_ms(policy: Policy, retry_number: int) -> int:
    """Delay before retry ``retry_number`` (1-based)."""
    if policy.backoff == BackoffStrategy.NONE:
        delay = 0
    elif policy.backoff == BackoffStrategy.FIXED:
        delay = policy.base_delay_ms
    else:
        delay = policy.base_delay_ms * 2 ** (retry_number - 1)
    if policy.max_delay_ms is not None:
        delay = min(delay, policy.max_delay_ms)
    return delay


class CallStats(BaseModel):
    """Attempts and retry delays of a single wrapped call."""

    attempts: int = 0
    retry_delays_ms: list[int] = Field(default_factory=list)


class CircuitBreaker:
    """Failure tracker for one tool, shared by every wrapped call to it.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failed calls.
    OPEN -> HALF_OPEN once ``recovery_timeout_ms`` has passed since the
    last failure. HALF_OPEN admits at most ``half_open_max_calls`` trial
    calls; a success closes the circuit, a failure opens it again.
    """

    def __init__(
        self,
        tool_name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._tool_name = tool_name
        self._config = config
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure = 0.0
        self._trial_calls = 0

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._cooled_down():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _cooled_down(self) -> bool:
        return (self._clock() - self._last_failure) * 1000 >= self._config.recovery_timeout_ms

    def _transition(self, state: CircuitState) -> None:
        if state == self._state:
            return
        logger.warning(
            "Circuit for %s: %s -> %s",
            self._tool_name,
            self._state.value,
            state.value,
            extra={"tool_name": self._tool_name},
        )
        self._state = state
        record_circuit_transition(tool_name=self._tool_name, state=state.value)

    def before_call(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        if self._state == CircuitState.OPEN:
            if not self._cooled_down():
                raise CircuitOpenError(self._tool_name, CircuitState.OPEN.value, self._failures)
            self._transition(CircuitState.HALF_OPEN)
            self._trial_calls = 0
        if self._state == CircuitState.HALF_OPEN:
            if self._trial_calls >= self._config.half_open_max_calls:
                raise CircuitOpenError(self._tool_name, CircuitState.HALF_OPEN.value, self._failures)
            self._trial_calls += 1

    def record_success(self) -> None:
        self._failures = 0
        self._trial_calls = 0
        self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        self._last_failure = self._clock()
        if self._state == CircuitState.HALF_OPEN or self._failures >= self._config.failure_threshold:
            self._trial_calls = 0
            self._transition(CircuitState.OPEN)

    def release(self) -> None:
        """Give back a trial slot taken by a call that neither passed nor failed."""
        if self._state == CircuitState.HALF_OPEN and self._trial_calls:
            self._trial_calls -= 1

    def reset(self) -> None:
        self._failures = 0
        self._trial_calls = 0
        self._last_failure = 0.0
        self._transition(CircuitState.CLOSED)


class PolicyWrappedTool:
    """A tool plus the policy that governs how it is called.

    ``await wrapped(args, state)`` returns the tool's new state. Pass a
    CallStats to learn how many attempts the call took.
    """

    def __init__(
        self,
        tool: Tool,
        policy: Policy,
        approval_callback: ApprovalCallback | None = None,
        sleep: SleepFn = asyncio.sleep,
        approval_timeout_s: float = DEFAULT_APPROVAL_TIMEOUT_S,
        breaker: CircuitBreaker | None = None,
    ):
        self._tool = tool
        self._policy = policy
        self._approval_callback = approval_callback
        self._sleep = sleep
        self._approval_timeout_s = approval_timeout_s
        if breaker is None and policy.circuit_breaker is not None:
            breaker = CircuitBreaker(tool.name, policy.circuit_breaker)
        self._breaker = breaker

    @property
    def tool(self) -> Tool:
        return self._tool

    @property
    def policy(self) -> Policy:
        return self._policy

    @property
    def breaker(self) -> CircuitBreaker | None:
        return self._breaker

    @property
    def name(self) -> str:
        return self._tool.name

    def normalize(self, args: Mapping[str, Any]) -> dict[str, Any]:
        """Validate ``args`` against the schema and fill in defaults."""
        try:
            model = self._tool.arg_schema.model_validate(dict(args))
        except pydantic.ValidationError as exc:
            raise ValidationError(
                self._tool.name,
                f"{exc.error_count()} field error(s)",
                details={"errors": [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]},
            ) from exc
        return model.model_dump()

    def validate(self, args: Mapping[str, Any], state: AgentState) -> dict[str, Any]:
        """Validate ``args`` against the schema and preconditions.

        Returns the normalized argument dict the handler will receive.
        """
        normalized = self.normalize(args)
        for predicate in self._tool.preconditions:
            if not predicate.check(state, normalized):
                raise ValidationError(
                    self._tool.name,
                    predicate.message,
                    details={"precondition": predicate.name},
                )
        return normalized

    async def __call__(
        self,
        args: Mapping[str, Any],
        state: AgentState,
        stats: CallStats | None = None,
    ) -> AgentState:
        stats = stats if stats is not None else CallStats()
        normalized = self.validate(args, state)

        if self._policy.require_approval:
            await self._await_approval(normalized)

        if self._breaker is None:
            return await self._run_attempts(normalized, state, stats)

        self._breaker.before_call()
        try:
            result = await self._run_attempts(normalized, state, stats)
        except asyncio.CancelledError:
            self._breaker.release()
            raise
        except Exception:
            self._breaker.record_failure()
            raise
        self._breaker.record_success()
        return result

    async def _run_attempts(self, args: dict[str, Any], state: AgentState, stats: CallStats) -> AgentState:
        max_attempts = self._policy.retries + 1
        result: AgentState | None = None
        for attempt in range(1, max_attempts + 1):
            stats.attempts = attempt
            try:
                result = await self._attempt(args, state)
                break
            except ToolPilotError as exc:
                if not exc.retryable or attempt == max_attempts:
                    record_tool_call(tool_name=self.name, success=False, risk_level=self._tool.risk.value)
                    raise
                error: Exception = exc
            except Exception as exc:
                wrapped = ToolExecutionError(
                    self.name,
                    f"{type(exc).__name__}: {exc}",
                    attempts=attempt,
                )
                if attempt == max_attempts:
                    record_tool_call(tool_name=self.name, success=False, risk_level=self._tool.risk.value)
                    raise wrapped from exc
                error = wrapped

            delay = backoff_delay_ms(self._policy, attempt)
            stats.retry_delays_ms.append(delay)
            record_retry(tool_name=self.name, attempt=attempt)
            logger.info(
                "Retrying %s after %dms: %s",
                self.name,
                delay,
                error,
                extra={"tool_name": self.name, "attempt": attempt},
            )
            await self._sleep(delay / 1000)

        for predicate in self._tool.postconditions:
            if not predicate.check(state, result):
                record_tool_call(tool_name=self.name, success=False, risk_level=self._tool.risk.value)
                raise ToolExecutionError(
                    self.name,
                    f"postcondition '{predicate.name}' failed: {predicate.message}",
                    attempts=stats.attempts,
                    details={"postcondition": predicate.name},
                )

        record_tool_call(tool_name=self.name, success=True, risk_level=self._tool.risk.value)
        return result

    async def _attempt(self, args: dict[str, Any], state: AgentState) -> AgentState:
        async def invoke() -> AgentState:
            with measure_tool_duration(self.name):
                outcome = self._tool.handler(args, dict(state))
                if inspect.isawaitable(outcome):
                    outcome = await outcome
            return state if outcome is None else outcome

        timeout_ms = self._policy.timeout_ms
        if timeout_ms is None:
            return await invoke()

        started = time.monotonic()
        try:
            return await asyncio.wait_for(invoke(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            if isinstance(exc, ToolPilotError):
                raise
            elapsed_ms = (time.monotonic() - started) * 1000
            logger.warning(
                "%s timed out after %.0fms",
                self.name,
                elapsed_ms,
                extra={"tool_name": self.name, "duration_ms": round(elapsed_ms, 1)},
            )
            raise ToolTimeoutError(self.name, timeout_ms) from exc

    async def _await_approval(self, args: dict[str, Any]) -> None:
        if self._approval_callback is None:
            raise ApprovalDeniedError(
                self.name,
                "approval required but no approval mechanism available",
            )

        request = ApprovalRequest(
            tool_name=self.name,
            args=args,
            risk_level=self._tool.risk,
            reason=f"{self._tool.risk.value} risk tool requires approval",
        )
        try:
            decision = self._approval_callback(request)
            if inspect.isawaitable(decision):
                decision = await asyncio.wait_for(decision, timeout=self._approval_timeout_s)
        except asyncio.TimeoutError as exc:
            raise ApprovalDeniedError(
                self.name,
                f"approval timed out after {self._approval_timeout_s}s",
            ) from exc
        except Exception as exc:
            raise ApprovalDeniedError(self.name, f"approval callback failed: {exc}") from exc

        if not decision:
            raise ApprovalDeniedError(self.name, "approval rejected")
        logger.info("Approval granted for %s", self.name, extra={"tool_name": self.name})


def with_policies(
    tool: Tool,
    policy: Policy | None = None,
    approval_callback: ApprovalCallback | None = None,
    sleep: SleepFn = asyncio.sleep,
    approval_timeout_s: float = DEFAULT_APPROVAL_TIMEOUT_S,
    table: Mapping[RiskLevel, Policy] | None = None,
    breaker: CircuitBreaker | None = None,
) -> PolicyWrappedTool:
    """Wrap ``tool`` with ``policy`` (default: derived from its risk tier).

    Pass ``breaker`` to share circuit state across wrappers of the same
    tool; otherwise each wrapper with a circuit_breaker policy gets its own.
    """
    return PolicyWrappedTool(
        tool,
        policy if policy is not None else policy_for(tool, table),
        approval_callback=approval_callback,
        sleep=sleep,
        approval_timeout_s=approval_timeout_s,
        breaker=breaker,
    )
