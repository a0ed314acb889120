"""
Tests for the planner.

Verifies:
- Clause resolution, dependency inference and budget aggregation
- NoApplicablePlanError when nothing resolves
- Plan validation of step references
"""

import pytest

from toolpilot.core.models import CandidateReason, RiskLevel
from toolpilot.exceptions import NoApplicablePlanError
from toolpilot.planning.planner import (
    FALLBACK_SCORE,
    Plan,
    PlanStep,
    critical_path_ms,
    dependency_graph,
    plan_from_utterance,
    plan_requires_approval,
    plan_summary,
)


class TestPlanFromUtterance:
    def test_read_then_write(self, registry):
        plan = plan_from_utterance("read config.json and then write output.txt", registry.list())
        assert plan.tool_names == ["read_file", "write_file"]
        read, write = plan.steps
        assert read.args == {"path": "config.json"}
        assert write.args == {"path": "output.txt", "content": ""}
        assert write.depends_on == frozenset({read.id})
        assert read.depends_on == frozenset()
        assert plan.risk_level == RiskLevel.max_of([read.tool.risk, write.tool.risk])
        assert plan.risk_level == RiskLevel.MEDIUM

    def test_and_with_mutating_tool_depends(self, registry):
        plan = plan_from_utterance("read a.txt and write b.txt", registry.list())
        assert plan.steps[1].depends_on == frozenset({plan.steps[0].id})

    def test_and_with_read_only_tool_is_independent(self, registry):
        plan = plan_from_utterance("read a.txt and search for asyncio", registry.list())
        assert plan.tool_names == ["read_file", "search"]
        assert all(not s.depends_on for s in plan.steps)

    def test_budgets(self, registry):
        chained = plan_from_utterance("read a.txt and then write b.txt", registry.list())
        assert chained.total_time_budget_ms == 2000 + 3000
        assert chained.total_memory_budget_mb == 16 + 16

        parallel = plan_from_utterance("read a.txt and search for asyncio", registry.list())
        assert parallel.total_time_budget_ms == 5000
        assert parallel.total_memory_budget_mb == 16 + 32

    def test_two_intents_without_connector_is_one_step(self, registry):
        plan = plan_from_utterance("read a.txt write b.txt", registry.list())
        assert plan.tool_names == ["read_file"]

    def test_candidate_recorded(self, registry):
        plan = plan_from_utterance("read config.json", registry.list())
        cand = plan.steps[0].candidate
        assert cand.tool == "read_file"
        assert cand.score >= 0.7

    def test_no_applicable_plan(self, registry):
        with pytest.raises(NoApplicablePlanError) as exc_info:
            plan_from_utterance("good morning", registry.list())
        assert exc_info.value.clauses == ["good morning"]

    def test_only_given_tools_are_used(self, registry):
        with pytest.raises(NoApplicablePlanError):
            plan_from_utterance("read config.json", [registry.get("search")])

    def test_fallback_candidate(self, make_tool):
        tool = make_tool("echo")
        plan = plan_from_utterance("say hi", [tool], arg_spec={"echo": lambda text: {"text": text}})
        cand = plan.steps[0].candidate
        assert cand.score == FALLBACK_SCORE
        assert cand.reason == CandidateReason.PATTERN

    def test_extra_patterns(self, make_tool):
        tool = make_tool("translate")
        plan = plan_from_utterance(
            "translate hello",
            [tool],
            extra_patterns=[("translate", r"\btranslate\b")],
            arg_spec={"translate": lambda text: {"text": text.split(" ", 1)[1]}},
        )
        assert plan.steps[0].args == {"text": "hello"}
        assert plan.steps[0].candidate.reason == CandidateReason.PATTERN

    def test_default_step_budgets(self, make_tool):
        plan = plan_from_utterance("say hi", [make_tool("echo")], arg_spec={"echo": lambda t: {"text": t}})
        assert plan.total_time_budget_ms == 5000
        assert plan.total_memory_budget_mb == 10


class TestPlanHelpers:
    def test_summary(self, registry):
        plan = plan_from_utterance("read a.txt and then write b.txt", registry.list())
        assert plan_summary(plan) == "Plan: read_file -> write_file (2 steps, 5000ms, MEDIUM risk)"

    def test_requires_approval(self, registry):
        assert not plan_requires_approval(plan_from_utterance("read a.txt", registry.list()))
        assert plan_requires_approval(plan_from_utterance("run ls", registry.list()))

    def test_dependency_graph(self, registry):
        plan = plan_from_utterance("read a.txt and then write b.txt", registry.list())
        assert dependency_graph(plan) == {"step-0": [], "step-1": ["step-0"]}


class TestPlanValidation:
    def _step(self, tool, step_id, deps=(), budget=1000):
        return PlanStep(id=step_id, tool=tool, depends_on=frozenset(deps), time_budget_ms=budget)

    def test_forward_reference_rejected(self, make_tool):
        tool = make_tool()
        with pytest.raises(ValueError):
            Plan(steps=[self._step(tool, "a", ["b"]), self._step(tool, "b")])

    def test_self_reference_rejected(self, make_tool):
        with pytest.raises(ValueError):
            Plan(steps=[self._step(make_tool(), "a", ["a"])])

    def test_duplicate_id_rejected(self, make_tool):
        tool = make_tool()
        with pytest.raises(ValueError):
            Plan(steps=[self._step(tool, "a"), self._step(tool, "a")])

    def test_critical_path_diamond(self, make_tool):
        tool = make_tool()
        steps = [
            self._step(tool, "a", budget=100),
            self._step(tool, "b", ["a"], budget=300),
            self._step(tool, "c", ["a"], budget=50),
            self._step(tool, "d", ["b", "c"], budget=10),
        ]
        assert critical_path_ms(steps) == 410
        assert Plan(steps=steps).step("c").time_budget_ms == 50
