"""
ToolPilot Planner

Builds a dependency-annotated plan from a free-form utterance:

1. Split the utterance into clauses on connector words.
2. Per clause: gate + route among the available tools, then try the
   argument extractors in candidate order, falling back to the
   remaining tools in the order they were given.
3. Link each step to the previously resolved step when the connector
   implies data flow.
4. Aggregate budgets and risk.

Dependency inference is a heuristic over connector words, not semantic
analysis of data flow. Sequencing connectors ("then", "after that",
"finally", ...) always chain steps. A bare "and" (or "," / ";") chains
a step only when its tool mutates something, so "read a.txt and write
b.txt" runs the write after the read while "read a.txt and search for
x" runs both concurrently.

Aggregation rule: total time budget is the critical path (longest
chain of summed step budgets through the dependency graph); total
memory budget is the flat sum, since concurrent steps hold memory at
the same time; risk level is the maximum over steps.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from toolpilot.core.models import (
    MUTATING_CAPABILITIES,
    CandidateReason,
    RiskLevel,
    RouteCandidate,
)
from toolpilot.exceptions import NoApplicablePlanError
from toolpilot.routing.args import ARG_SPEC, Clause, Extractor, split_clauses
from toolpilot.routing.patterns import PatternRule, gate
from toolpilot.routing.router import Router
from toolpilot.tools.registry import Tool

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIME_BUDGET_MS = 5000
DEFAULT_STEP_MEMORY_BUDGET_MB = 10
FALLBACK_SCORE = 0.5


class PlanStep(BaseModel):
    """One tool invocation in a plan."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str
    tool: Tool
    args: dict[str, Any] = Field(default_factory=dict)
    depends_on: frozenset[str] = Field(default_factory=frozenset)
    time_budget_ms: int = DEFAULT_STEP_TIME_BUDGET_MS
    memory_budget_mb: int = DEFAULT_STEP_MEMORY_BUDGET_MB
    clause: str = ""
    candidate: RouteCandidate | None = None


class Plan(BaseModel):
    """Ordered steps; every dependency points at an earlier step."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    utterance: str = ""
    steps: list[PlanStep] = Field(default_factory=list)
    total_time_budget_ms: int = 0
    total_memory_budget_mb: int = 0
    risk_level: RiskLevel = RiskLevel.LOW

    @model_validator(mode="after")
    def _check_order(self) -> Plan:
        seen: set[str] = set()
        for step in self.steps:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            if step.id in step.depends_on:
                raise ValueError(f"step '{step.id}' depends on itself")
            unknown = step.depends_on - seen
            if unknown:
                raise ValueError(
                    f"step '{step.id}' depends on {sorted(unknown)}, "
                    "which are not earlier steps in the plan"
                )
            seen.add(step.id)
        return self

    @property
    def tool_names(self) -> list[str]:
        return [s.tool.name for s in self.steps]

    def step(self, step_id: str) -> PlanStep | None:
        for s in self.steps:
            if s.id == step_id:
                return s
        return None


def critical_path_ms(steps: Iterable[PlanStep]) -> int:
    """Longest summed time budget along any dependency chain."""
    finish: dict[str, int] = {}
    for step in steps:
        start = max((finish[d] for d in step.depends_on if d in finish), default=0)
        finish[step.id] = start + step.time_budget_ms
    return max(finish.values(), default=0)


def _resolve_clause(
    clause: Clause,
    tools: list[Tool],
    router: Router,
    arg_spec: Mapping[str, Extractor],
    extra_patterns: Iterable[PatternRule | tuple[str, str]],
) -> tuple[Tool, dict[str, Any], RouteCandidate] | None:
    by_name = {t.name: t for t in tools}
    gated = gate(clause.text, extra_patterns) & set(by_name)
    ranked = router.route(clause.text, gated).candidates

    for candidate in ranked:
        extractor = arg_spec.get(candidate.tool)
        if extractor is None:
            continue
        args = extractor(clause.text)
        if args is not None:
            return by_name[candidate.tool], args, candidate

    tried = {c.tool for c in ranked}
    for tool in tools:
        if tool.name in tried:
            continue
        extractor = arg_spec.get(tool.name)
        if extractor is None:
            continue
        args = extractor(clause.text)
        if args is not None:
            fallback = RouteCandidate(tool=tool.name, score=FALLBACK_SCORE, reason=CandidateReason.PATTERN)
            return tool, args, fallback
    return None


def plan_from_utterance(
    text: str,
    tools: Iterable[Tool],
    router: Router | None = None,
    extra_patterns: Iterable[PatternRule | tuple[str, str]] = (),
    arg_spec: Mapping[str, Extractor] | None = None,
) -> Plan:
    """Build a plan for ``text`` using only ``tools``.

    Raises NoApplicablePlanError when no clause resolves to a tool with
    extractable arguments.
    """
    available = list(tools)
    extractors: dict[str, Extractor] = dict(ARG_SPEC)
    if arg_spec:
        extractors.update(arg_spec)
    extra = list(extra_patterns)
    scoped_router = (router or Router()).restricted_to(t.name for t in available)

    clauses = split_clauses(text)
    steps: list[PlanStep] = []
    for clause in clauses:
        resolved = _resolve_clause(clause, available, scoped_router, extractors, extra)
        if resolved is None:
            logger.debug("No tool resolved for clause %r", clause.text)
            continue
        tool, args, candidate = resolved

        depends_on: frozenset[str] = frozenset()
        if steps and clause.connector is not None:
            mutating = bool(tool.capabilities & MUTATING_CAPABILITIES)
            if clause.sequential or mutating:
                depends_on = frozenset({steps[-1].id})

        steps.append(
            PlanStep(
                id=f"step-{len(steps)}",
                tool=tool,
                args=args,
                depends_on=depends_on,
                time_budget_ms=tool.time_budget_ms or DEFAULT_STEP_TIME_BUDGET_MS,
                memory_budget_mb=tool.memory_budget_mb or DEFAULT_STEP_MEMORY_BUDGET_MB,
                clause=clause.text,
                candidate=candidate,
            )
        )

    if not steps:
        raise NoApplicablePlanError(text, [c.text for c in clauses])

    plan = Plan(
        utterance=text,
        steps=steps,
        total_time_budget_ms=critical_path_ms(steps),
        total_memory_budget_mb=sum(s.memory_budget_mb for s in steps),
        risk_level=RiskLevel.max_of(s.tool.risk for s in steps),
    )
    logger.info(plan_summary(plan), extra={"risk_level": plan.risk_level.value})
    return plan


def plan_summary(plan: Plan) -> str:
    names = " -> ".join(plan.tool_names)
    return (
        f"Plan: {names} ({len(plan.steps)} steps, "
        f"{plan.total_time_budget_ms}ms, {plan.risk_level.value} risk)"
    )


def plan_requires_approval(plan: Plan) -> bool:
    """True for HIGH and CRITICAL plans."""
    return plan.risk_level.rank >= RiskLevel.HIGH.rank


def dependency_graph(plan: Plan) -> dict[str, list[str]]:
    """Step id -> sorted ids of the steps it waits on."""
    return {s.id: sorted(s.depends_on) for s in plan.steps}
