"""
ToolPilot Agent Executor

The inbound surface of the package: ``execute_turn(state, utterance)``.

Per turn:
1. Gate and route the whole utterance (for the decision record)
2. Build a plan over the registered tools
3. Check the plan totals against the safety quotas
4. Run the plan as a DAG of asyncio tasks. Each step goes through the
   safety engine and the policy decorator. Independent steps run
   concurrently; a failed step skips everything downstream of it
5. Record exactly one decision, whatever happened
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from toolpilot.core.models import (
    DecisionRecord,
    Outcome,
    Policy,
    RiskLevel,
    RouteCandidate,
    RouteResult,
)
from toolpilot.exceptions import DependencyFailedError, ToolPilotError
from toolpilot.observability.recorder import ObservabilityManager, get_observability_manager, replay_context
from toolpilot.observability.tracing import get_tracer
from toolpilot.planning.planner import Plan, PlanStep, plan_from_utterance, plan_summary
from toolpilot.policy.decorator import (
    ApprovalCallback,
    CallStats,
    CircuitBreaker,
    SleepFn,
    policy_for,
    with_policies,
)
from toolpilot.routing.args import Extractor
from toolpilot.routing.patterns import PatternRule, gate, matched_patterns
from toolpilot.routing.router import Router
from toolpilot.safety.engine import SafetyEngine
from toolpilot.tools.registry import AgentState, Tool, ToolRegistry

logger = logging.getLogger(__name__)


class StepResult(BaseModel):
    """Outcome of one plan step."""

    step_id: str
    tool: str
    success: bool = False
    skipped: bool = False
    error: str | None = None
    error_type: str | None = None
    attempts: int = 0
    retry_delays_ms: list[int] = Field(default_factory=list)
    duration_ms: float = 0.0


class TurnResult(BaseModel):
    """What execute_turn reports back alongside the new state."""

    success: bool
    execution_time_ms: float
    decision_id: str | None = None
    error: str | None = None
    error_type: str | None = None
    steps: list[StepResult] = Field(default_factory=list)


def _merge_candidates(groups: Iterable[RouteCandidate | None]) -> list[RouteCandidate]:
    best: dict[str, RouteCandidate] = {}
    for candidate in groups:
        if candidate is None:
            continue
        current = best.get(candidate.tool)
        if current is None or candidate.score > current.score:
            best[candidate.tool] = candidate
    return sorted(best.values(), key=lambda c: (-c.score, c.tool))


class AgentExecutor:
    """Runs utterances end to end against a tool registry."""

    def __init__(
        self,
        registry: ToolRegistry,
        router: Router | None = None,
        safety: SafetyEngine | None = None,
        observability: ObservabilityManager | None = None,
        approval_callback: ApprovalCallback | None = None,
        policy_table: Mapping[RiskLevel, Policy] | None = None,
        extra_patterns: Iterable[PatternRule | tuple[str, str]] = (),
        arg_spec: Mapping[str, Extractor] | None = None,
        sleep: SleepFn = asyncio.sleep,
        cancel_on_failure: bool = False,
    ):
        self._registry = registry
        self._router = router or Router()
        self._safety = safety or SafetyEngine()
        self._observability = observability or get_observability_manager()
        self._approval_callback = approval_callback
        self._policy_table = policy_table
        self._extra_patterns = list(extra_patterns)
        self._arg_spec = arg_spec
        self._sleep = sleep
        self._cancel_on_failure = cancel_on_failure
        self._breakers: dict[str, CircuitBreaker] = {}

    @property
    def observability(self) -> ObservabilityManager:
        return self._observability

    @property
    def safety(self) -> SafetyEngine:
        return self._safety

    def circuit_breaker(self, tool_name: str) -> CircuitBreaker | None:
        """The breaker tracking ``tool_name``, once a call to it has been made."""
        return self._breakers.get(tool_name)

    def plan(self, utterance: str) -> Plan:
        """Build (but do not run) the plan for ``utterance``."""
        return plan_from_utterance(
            utterance,
            self._registry.list(),
            router=self._router,
            extra_patterns=self._extra_patterns,
            arg_spec=self._arg_spec,
        )

    async def replay(self, decision_id: str, state: AgentState | None = None) -> tuple[AgentState, TurnResult]:
        """Run a recorded decision's utterance again as a new, marked turn.

        Raises KeyError if ``decision_id`` is not in the ledger.
        """
        original = self._observability.get(decision_id)
        if original is None:
            raise KeyError(decision_id)
        return await self.execute_turn(state or {}, original.input, context=replay_context(original))

    async def execute_turn(
        self,
        state: AgentState,
        utterance: str,
        context: Mapping[str, Any] | None = None,
    ) -> tuple[AgentState, TurnResult]:
        """Route, plan and run ``utterance``.

        Returns the new agent state and a TurnResult. Failures are
        reported in the result (and the decision ledger), not raised.
        ``context`` is copied into the decision record.
        """
        start = time.monotonic()
        tracer = get_tracer()
        extra_context = dict(context or {})

        with tracer.start_as_current_span("toolpilot.turn") as span:
            patterns: list[str] = []
            routed = RouteResult()
            stage = "routing"
            try:
                names = self._registry.names()
                patterns = matched_patterns(utterance, self._extra_patterns)
                gated = gate(utterance, self._extra_patterns) & set(names)
                routed = self._router.restricted_to(names).route(utterance, gated)

                stage = "planning"
                plan = self.plan(utterance)
                self._safety.check_plan(plan)
            except Exception as exc:
                span.set_attribute("toolpilot.success", False)
                span.record_exception(exc)
                elapsed = (time.monotonic() - start) * 1000
                details = exc.details if isinstance(exc, ToolPilotError) else {}
                record = DecisionRecord(
                    input=utterance,
                    patterns_matched=patterns,
                    router_candidates=routed.candidates,
                    chosen=[],
                    outcome=Outcome.FAIL,
                    latency_ms=elapsed,
                    error=str(exc) or type(exc).__name__,
                    error_type=type(exc).__name__,
                    context={"stage": stage, **details, **extra_context},
                )
                decision_id = self._observability.record_decision(record)
                logger.warning(
                    "Turn failed during %s: %s",
                    stage,
                    exc,
                    exc_info=not isinstance(exc, ToolPilotError),
                    extra={"decision_id": decision_id, "outcome": "fail", "duration_ms": round(elapsed, 2)},
                )
                return state, TurnResult(
                    success=False,
                    execution_time_ms=elapsed,
                    decision_id=decision_id,
                    error=record.error,
                    error_type=record.error_type,
                )

            span.set_attribute("toolpilot.plan_steps", len(plan.steps))
            new_state, step_results = await self.run_plan(plan, state)

            elapsed = (time.monotonic() - start) * 1000
            failed = [r for r in step_results if not r.success]
            first_error = next((r for r in failed if not r.skipped), failed[0] if failed else None)

            chosen = list(dict.fromkeys(plan.tool_names))
            candidates = _merge_candidates([*routed.candidates, *(s.candidate for s in plan.steps)])
            record = DecisionRecord(
                input=utterance,
                patterns_matched=patterns,
                router_candidates=candidates,
                chosen=chosen,
                args={s.id: s.args for s in plan.steps},
                outcome=Outcome.FAIL if failed else Outcome.OK,
                latency_ms=elapsed,
                error=first_error.error if first_error else None,
                error_type=first_error.error_type if first_error else None,
                context={
                    "plan": plan_summary(plan),
                    "risk_level": plan.risk_level.value,
                    "steps": [r.model_dump() for r in step_results],
                    **extra_context,
                },
            )
            decision_id = self._observability.record_decision(record)
            span.set_attribute("toolpilot.success", not failed)

            logger.info(
                "Turn %s: %s",
                "completed" if not failed else "failed",
                plan_summary(plan),
                extra={
                    "decision_id": decision_id,
                    "outcome": record.outcome.value,
                    "duration_ms": round(elapsed, 2),
                    "risk_level": plan.risk_level.value,
                },
            )

            return new_state, TurnResult(
                success=not failed,
                execution_time_ms=elapsed,
                decision_id=decision_id,
                error=record.error,
                error_type=record.error_type,
                steps=step_results,
            )

    async def run_plan(self, plan: Plan, state: AgentState) -> tuple[AgentState, list[StepResult]]:
        """Execute ``plan`` as a DAG.

        The returned state is ``state`` updated with the output states of
        the successful steps, applied in plan order.
        """
        results: dict[str, StepResult] = {}
        outputs: dict[str, AgentState] = {}
        tasks: dict[str, asyncio.Task] = {}

        async def run_step(step: PlanStep) -> None:
            try:
                if step.depends_on:
                    await asyncio.wait([tasks[d] for d in step.depends_on])
                for dep in sorted(step.depends_on):
                    if not results.get(dep, StepResult(step_id=dep, tool="")).success:
                        exc = DependencyFailedError(step.id, dep)
                        logger.info(str(exc), extra={"step_id": step.id, "tool_name": step.tool.name})
                        results[step.id] = StepResult(
                            step_id=step.id,
                            tool=step.tool.name,
                            skipped=True,
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )
                        return

                step_input = dict(state)
                for dep in (s.id for s in plan.steps if s.id in step.depends_on):
                    step_input.update(outputs[dep])

                results[step.id] = await self._run_step(step, step_input, outputs)
            except asyncio.CancelledError:
                results[step.id] = StepResult(
                    step_id=step.id,
                    tool=step.tool.name,
                    skipped=True,
                    error="cancelled after a sibling step failed",
                    error_type="CancelledError",
                )
                raise

            if self._cancel_on_failure and not results[step.id].success:
                for other_id, task in tasks.items():
                    if other_id != step.id and not task.done():
                        task.cancel()

        for step in plan.steps:
            tasks[step.id] = asyncio.create_task(run_step(step), name=f"toolpilot-{step.id}")
        await asyncio.gather(*tasks.values(), return_exceptions=True)

        new_state = dict(state)
        ordered = []
        for step in plan.steps:
            # a task cancelled before it started never wrote a result
            result = results.get(step.id) or StepResult(
                step_id=step.id,
                tool=step.tool.name,
                skipped=True,
                error="cancelled after a sibling step failed",
                error_type="CancelledError",
            )
            ordered.append(result)
            if result.success:
                new_state.update(outputs[step.id])
        return new_state, ordered

    def _breaker_for(self, tool: Tool, policy: Policy) -> CircuitBreaker | None:
        if policy.circuit_breaker is None:
            return None
        breaker = self._breakers.get(tool.name)
        if breaker is None or breaker.config != policy.circuit_breaker:
            breaker = CircuitBreaker(tool.name, policy.circuit_breaker)
            self._breakers[tool.name] = breaker
        return breaker

    async def _run_step(self, step: PlanStep, step_input: AgentState, outputs: dict[str, AgentState]) -> StepResult:
        policy = policy_for(step.tool, self._policy_table)
        wrapped = with_policies(
            step.tool,
            policy=policy,
            approval_callback=self._approval_callback,
            sleep=self._sleep,
            breaker=self._breaker_for(step.tool, policy),
        )
        stats = CallStats()
        started = time.monotonic()
        with get_tracer().start_as_current_span("toolpilot.step") as span:
            span.set_attribute("toolpilot.step_id", step.id)
            span.set_attribute("toolpilot.tool_name", step.tool.name)
            try:
                outputs[step.id] = await self._safety.execute(wrapped, step.args, step_input, stats)
            except Exception as exc:
                duration = (time.monotonic() - started) * 1000
                span.record_exception(exc)
                logger.warning(
                    "Step %s (%s) failed: %s",
                    step.id,
                    step.tool.name,
                    exc,
                    extra={"step_id": step.id, "tool_name": step.tool.name, "duration_ms": round(duration, 2)},
                )
                return StepResult(
                    step_id=step.id,
                    tool=step.tool.name,
                    error=str(exc) or type(exc).__name__,
                    error_type=type(exc).__name__,
                    attempts=stats.attempts,
                    retry_delays_ms=list(stats.retry_delays_ms),
                    duration_ms=duration,
                )

        return StepResult(
            step_id=step.id,
            tool=step.tool.name,
            success=True,
            attempts=stats.attempts,
            retry_delays_ms=list(stats.retry_delays_ms),
            duration_ms=(time.monotonic() - started) * 1000,
        )
